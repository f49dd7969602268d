# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the bulk dispatch service.

Settings are read from an INI file, with environment variables as fallbacks
when an option is absent from the file.

Environment variables (all prefixed with BDS_):
    BDS_CONFIG - Path to config.ini file (default: config.ini)
    BDS_HOST - Server host (default: 0.0.0.0)
    BDS_PORT - Server port (default: 8000)
    BDS_API_TOKEN - API authentication token
    BDS_STATUS_PREFIX - Prefix of returned status locators
    BDS_STORE_CAPACITY - Job records kept after pruning (default: 100)
    BDS_MAX_RECIPIENTS - Recipients accepted per submission (default: 100)
    BDS_LIST_LIMIT - Records returned by a session listing (default: 50)
    BDS_PACING_DELAY_MS - Default pause between sends (default: 1000)
    BDS_TYPING_DELAY_MS - Default typing delay (default: 0)
    BDS_MAX_ACTIVE_JOBS_PER_SESSION - Running-job cap per session (default: unlimited)
    BDS_GATEWAY_URL - Messaging gateway API root
    BDS_GATEWAY_API_KEY - Key sent to the gateway in X-Api-Key
    BDS_GATEWAY_TIMEOUT - Gateway request timeout in seconds (default: 30)
    BDS_GATEWAY_SESSIONS - Comma separated session ids served by the gateway
    BDS_LOG_LEVEL - Logging level (default: INFO)
    BDS_LOG_DELIVERY_ACTIVITY - Log every recipient outcome (default: False)

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [bulk]
        store_capacity = 100
        max_recipients = 100
        default_pacing_delay_ms = 1000
        max_active_jobs_per_session = 2

        [gateway]
        base_url = http://gateway:3000/api/whatsapp
        api_key = gateway-key
        sessions = sales, support

        [logging]
        level = INFO
        delivery_activity = false
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .logger import get_logger

logger = get_logger("ConfigLoader")

ENV_PREFIX = "BDS_"
DEFAULT_CONFIG_FILE = "config.ini"


@dataclass
class EngineSettings:
    """Resolved settings for the engine, HTTP server and gateway sessions.

    Attributes:
        host: Interface the HTTP server binds to.
        port: Port the HTTP server listens on.
        api_token: Token required in ``X-API-Token``; None disables auth.
        status_prefix: Prefix prepended to returned status locators.
        store_capacity: Job records kept by pruning.
        max_recipients: Recipients accepted per submission.
        list_limit: Records returned by a session listing.
        default_pacing_delay_ms: Pause between sends when not specified.
        default_typing_delay_ms: Typing delay when not specified.
        max_active_jobs_per_session: Running-job cap per session, or None.
        gateway_url: Messaging gateway API root, or None.
        gateway_api_key: Key forwarded to the gateway.
        gateway_timeout: Gateway request timeout in seconds.
        gateway_sessions: Session ids registered against the gateway.
        log_level: Root logging level name.
        log_delivery_activity: Log every recipient outcome.
    """

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    status_prefix: str = ""

    store_capacity: int = 100
    max_recipients: int = 100
    list_limit: int = 50
    default_pacing_delay_ms: int = 1000
    default_typing_delay_ms: int = 0
    max_active_jobs_per_session: int | None = None

    gateway_url: str | None = None
    gateway_api_key: str | None = None
    gateway_timeout: float = 30.0
    gateway_sessions: list[str] = field(default_factory=list)

    log_level: str = "INFO"
    log_delivery_activity: bool = False

    def engine_kwargs(self) -> dict[str, object]:
        """Keyword arguments for :class:`~bulk_dispatch.engine.BulkDispatchEngine`."""
        return {
            "store_capacity": self.store_capacity,
            "max_recipients": self.max_recipients,
            "list_limit": self.list_limit,
            "default_pacing_delay_ms": self.default_pacing_delay_ms,
            "default_typing_delay_ms": self.default_typing_delay_ms,
            "max_active_jobs_per_session": self.max_active_jobs_per_session,
            "status_prefix": self.status_prefix,
            "log_delivery_activity": self.log_delivery_activity,
        }


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(config_path: str | os.PathLike[str] | None = None) -> EngineSettings:
    """Load settings from an INI file with ``BDS_*`` environment fallbacks.

    A missing file is not an error: every option then comes from the
    environment or from the defaults of :class:`EngineSettings`.

    Args:
        config_path: Path to the INI file. Defaults to ``$BDS_CONFIG`` or
            ``config.ini``.

    Raises:
        ValueError: If a numeric option cannot be parsed.
    """
    path = Path(config_path or os.getenv(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_FILE))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration from %s", path)

    defaults = EngineSettings()

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(f"{ENV_PREFIX}{env}")

    def get_int(section: str, option: str, env: str, default: int | None) -> int | None:
        value = get(section, option, env)
        if value is None or not value.strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from exc

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None or not value.strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from exc

    def get_str(section: str, option: str, env: str, default: str | None = None) -> str | None:
        value = get(section, option, env)
        if value is None:
            return default
        return value.strip() or default

    sessions_raw = get("gateway", "sessions", "GATEWAY_SESSIONS") or ""
    max_active = get_int("bulk", "max_active_jobs_per_session", "MAX_ACTIVE_JOBS_PER_SESSION", None)

    return EngineSettings(
        host=get_str("server", "host", "HOST", defaults.host) or defaults.host,
        port=get_int("server", "port", "PORT", defaults.port) or defaults.port,
        api_token=get_str("server", "api_token", "API_TOKEN"),
        status_prefix=get_str("server", "status_prefix", "STATUS_PREFIX", "") or "",
        store_capacity=get_int("bulk", "store_capacity", "STORE_CAPACITY", defaults.store_capacity),
        max_recipients=get_int("bulk", "max_recipients", "MAX_RECIPIENTS", defaults.max_recipients),
        list_limit=get_int("bulk", "list_limit", "LIST_LIMIT", defaults.list_limit),
        default_pacing_delay_ms=get_int(
            "bulk", "default_pacing_delay_ms", "PACING_DELAY_MS", defaults.default_pacing_delay_ms
        ),
        default_typing_delay_ms=get_int(
            "bulk", "default_typing_delay_ms", "TYPING_DELAY_MS", defaults.default_typing_delay_ms
        ),
        max_active_jobs_per_session=max_active if max_active and max_active > 0 else None,
        gateway_url=get_str("gateway", "base_url", "GATEWAY_URL"),
        gateway_api_key=get_str("gateway", "api_key", "GATEWAY_API_KEY"),
        gateway_timeout=get_float("gateway", "timeout_seconds", "GATEWAY_TIMEOUT", defaults.gateway_timeout),
        gateway_sessions=[item.strip() for item in sessions_raw.split(",") if item.strip()],
        log_level=(get_str("logging", "level", "LOG_LEVEL", defaults.log_level) or defaults.log_level).upper(),
        log_delivery_activity=_parse_bool(
            get("logging", "delivery_activity", "LOG_DELIVERY_ACTIVITY"), defaults.log_delivery_activity
        ),
    )

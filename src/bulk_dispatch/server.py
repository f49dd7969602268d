# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads its
settings through :func:`~bulk_dispatch.config_loader.load_settings`,
registers the gateway-backed sessions and wires the bulk dispatch engine.

Usage:
    uvicorn bulk_dispatch.server:app --host 0.0.0.0 --port 8000

Environment variables:
    BDS_CONFIG: Path to the INI configuration file (default: config.ini)
    BDS_GATEWAY_URL: Messaging gateway API root
    BDS_GATEWAY_SESSIONS: Comma separated session ids served by the gateway
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import EngineSettings, load_settings
from .engine import BulkDispatchEngine
from .logger import get_logger
from .sessions import GatewaySession, SessionRegistry

logger = get_logger("Server")


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the service process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )


def build_registry(settings: EngineSettings) -> SessionRegistry:
    """Register one :class:`GatewaySession` per configured session id."""
    registry = SessionRegistry()
    if not settings.gateway_url:
        if settings.gateway_sessions:
            logger.warning("Gateway sessions configured without a gateway URL; none registered")
        return registry
    for session_id in settings.gateway_sessions:
        registry.register(
            GatewaySession(
                session_id,
                settings.gateway_url,
                api_key=settings.gateway_api_key,
                timeout=settings.gateway_timeout,
            )
        )
    return registry


def build_app(
    settings: EngineSettings,
    engine: BulkDispatchEngine | None = None,
    sessions: SessionRegistry | None = None,
) -> FastAPI:
    """Create the application for ``settings``.

    The lifespan refreshes the sessions' connection state at startup and
    cancels the dispatch tasks still in flight at shutdown.
    """
    engine = engine or BulkDispatchEngine(**settings.engine_kwargs())
    sessions = sessions if sessions is not None else build_registry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - refreshes sessions, stops the engine."""
        await sessions.refresh_all()
        logger.info("Bulk dispatch service ready (%d session(s))", len(sessions.list()))
        yield
        await engine.stop()

    return create_app(engine, sessions, api_token=settings.api_token, lifespan=lifespan)


# Create the configured application
app = build_app(load_settings())

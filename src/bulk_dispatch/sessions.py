"""Messaging sessions consumed by the bulk dispatch engine.

The engine never delivers messages itself. It drives the ``send`` capability
of a connected :class:`Session`, which reports every attempt as a
:class:`~bulk_dispatch.models.SendOutcome` (or raises).

This module provides:

- The :class:`Session` protocol the engine depends on
- :class:`SessionRegistry`, the lookup used by the HTTP surface to enforce the
  "session exists and is connected" precondition before a submission
- :class:`GatewaySession`, an aiohttp adapter forwarding sends to an upstream
  messaging gateway

Example:
    Registering a gateway-backed session::

        registry = SessionRegistry()
        registry.register(GatewaySession("sales", "http://gateway:3000/api/whatsapp", api_key="k"))
        session = registry.require_connected("sales")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import aiohttp

from .errors import SessionNotConnectedError, SessionNotFoundError
from .logger import get_logger
from .models import SendOutcome

CONNECTED = "connected"

logger = get_logger("Sessions")


@runtime_checkable
class Session(Protocol):
    """A messaging channel able to deliver one message to one recipient."""

    session_id: str
    connection_status: str

    async def send(self, recipient: str, message: str, typing_delay_ms: int = 0) -> SendOutcome:
        ...


def is_connected(session: Session) -> bool:
    return getattr(session, "connection_status", None) == CONNECTED


class SessionRegistry:
    """In-memory lookup of sessions by identifier."""

    def __init__(self, sessions: list[Session] | None = None):
        self._sessions: dict[str, Session] = {}
        for session in sessions or []:
            self.register(session)

    def register(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def unregister(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def require_connected(self, session_id: str) -> Session:
        """Return the session if it exists and is connected.

        Raises:
            SessionNotFoundError: If no session is registered under the id.
            SessionNotConnectedError: If the session is not connected.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not is_connected(session):
            raise SessionNotConnectedError(session_id, getattr(session, "connection_status", None))
        return session

    async def refresh_all(self) -> None:
        """Refresh the connection state of every session that supports it.

        A failing refresh is logged and leaves that session's state as is.
        """
        for session in self.list():
            refresh = getattr(session, "refresh", None)
            if refresh is None:
                continue
            try:
                await refresh()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                logger.warning("Could not refresh session %s: %s", session.session_id, exc)


class GatewaySession:
    """Session backed by an HTTP messaging gateway.

    Each send is a ``POST {base_url}/chats/send`` carrying
    ``{"sessionId", "chatId", "message", "typingTime"}``. The gateway replies
    with ``{"success": bool, "message": str, "data": {"messageId": ...}}``.

    Transport failures (connection errors, timeouts, 5xx answers) are raised
    to the caller.

    Attributes:
        session_id: Identifier of the session on the gateway.
        base_url: Gateway API root, without trailing slash.
        connection_status: Last known connection state.
    """

    def __init__(
        self,
        session_id: str,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        connection_status: str = CONNECTED,
        session_factory: Callable[[], Any] | None = None,
    ):
        """Create a gateway-backed session.

        Args:
            session_id: Identifier of the session on the gateway.
            base_url: Gateway API root, e.g. ``http://gateway:3000/api/whatsapp``.
            api_key: Optional key sent in the ``X-Api-Key`` header.
            timeout: Total timeout in seconds for one gateway request.
            connection_status: Initial connection state.
            session_factory: Callable returning an ``aiohttp.ClientSession``
                compatible async context manager. Defaults to a fresh
                ``aiohttp.ClientSession`` per request.
        """
        self.session_id = session_id
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.connection_status = connection_status
        self._session_factory = session_factory or self._default_session

    def _default_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    def _headers(self) -> dict[str, str] | None:
        if not self.api_key:
            return None
        return {"X-Api-Key": self.api_key}

    async def send(self, recipient: str, message: str, typing_delay_ms: int = 0) -> SendOutcome:
        """Deliver ``message`` to ``recipient`` through the gateway."""
        payload = {
            "sessionId": self.session_id,
            "chatId": recipient,
            "message": message,
            "typingTime": typing_delay_ms,
        }
        async with self._session_factory() as http:
            async with http.post(
                f"{self.base_url}/chats/send",
                json=payload,
                headers=self._headers(),
            ) as resp:
                if resp.status >= 500:
                    resp.raise_for_status()
                data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected gateway response for {recipient}: {data!r}")
        return SendOutcome.from_response(data)

    async def refresh(self) -> str:
        """Fetch the session state from the gateway and return it."""
        async with self._session_factory() as http:
            async with http.get(
                f"{self.base_url}/sessions/{self.session_id}/status",
                headers=self._headers(),
            ) as resp:
                if resp.status == 404:
                    self.connection_status = "not_found"
                    return self.connection_status
                resp.raise_for_status()
                body = await resp.json(content_type=None)
        data = (body.get("data") or {}) if isinstance(body, dict) else {}
        if data.get("isConnected"):
            self.connection_status = CONNECTED
        else:
            self.connection_status = str(data.get("status") or "disconnected")
        return self.connection_status

    def __repr__(self) -> str:
        return f"GatewaySession(id='{self.session_id}', status='{self.connection_status}')"

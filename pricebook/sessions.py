"""Messaging-session status as seen by the core.

The QR/handshake flow lives with the messaging provider; here a session is a
key, its owning tenant and the last status the provider reported.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .errors import IngestionNotAllowed, UnknownSession

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """Provider-reported connection state."""
    NOT_INITIALIZED = "NOT_INITIALIZED"
    PENDING_QR = "PENDING_QR"
    SCAN_QR_CODE = "SCAN_QR_CODE"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"
    LOADING = "LOADING"


@dataclass(frozen=True)
class ChannelSession:
    session_key: str
    tenant_id: str
    status: ConnectionStatus


class SessionDirectory(Protocol):
    """Maps a webhook's session key to its tenant."""

    async def lookup(self, session_key: str) -> ChannelSession | None: ...


class MemorySessionDirectory:
    """Dict-backed directory for tests and local runs."""

    def __init__(self, sessions: list[ChannelSession] | None = None) -> None:
        self._sessions = {s.session_key: s for s in sessions or []}

    def register(self, session: ChannelSession) -> None:
        self._sessions[session.session_key] = session

    async def lookup(self, session_key: str) -> ChannelSession | None:
        return self._sessions.get(session_key)


async def resolve_connected_tenant(directory: SessionDirectory, session_key: str) -> str:
    """Return the tenant behind a webhook delivery, or refuse it.

    Raises:
        UnknownSession: unknown session key
        IngestionNotAllowed: session exists but is not connected
    """
    session = await directory.lookup(session_key)
    if session is None:
        raise UnknownSession(f"session {session_key!r} not found")
    if session.status != ConnectionStatus.CONNECTED:
        logger.warning(
            f"Rejecting delivery for session {session_key}: status {session.status.value}"
        )
        raise IngestionNotAllowed(
            f"session {session_key!r} is {session.status.value}, not CONNECTED"
        )
    return session.tenant_id

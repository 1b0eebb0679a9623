"""The operator session and the single slot that holds it."""

import asyncio
import logging
from datetime import datetime
from uuid import uuid4

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .config import POLICY_REJECT, POLICY_REPLACE
from .engine import SessionEngine
from .protocol import StatusMessage, encode_status

logger = logging.getLogger(__name__)


class SessionBusyError(Exception):
    """Raised when a session is already bound and the policy is ``reject``."""


class Session:
    """One accepted operator connection and the engine driving its runs.

    All writes to the socket go through ``_send_lock``; the status relay and
    a forced close from the slot never write concurrently.
    """

    def __init__(self, websocket: WebSocket, engine: SessionEngine):
        self.session_id = uuid4().hex
        self.ws = websocket
        self.engine = engine
        self.connected_at = datetime.now()
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, msg: StatusMessage) -> None:
        async with self._send_lock:
            if self._closed:
                raise RuntimeError(f"Session {self.session_id} is closed")
            await self.ws.send_text(encode_status(msg))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the socket once. Errors from an already-dead socket are logged."""
        async with self._send_lock:
            if self._closed:
                return
            self._closed = True
            if self.ws.application_state == WebSocketState.DISCONNECTED:
                return
            try:
                await self.ws.close(code=code, reason=reason)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("Close of session %s failed: %s", self.session_id, e)

    def summary(self) -> dict:
        return {
            "session_id": self.session_id,
            "connected_at": self.connected_at.isoformat(),
        }


class SessionSlot:
    """Holds at most one bound session.

    ``bind`` applies the admission policy under a lock: with ``reject`` a
    second session raises :class:`SessionBusyError`; with ``replace`` the
    previous session is returned so the caller can close it.
    """

    def __init__(self, policy: str = POLICY_REJECT):
        if policy not in (POLICY_REJECT, POLICY_REPLACE):
            raise ValueError(f"Unknown session policy: {policy!r}")
        self.policy = policy
        self._current: Session | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Session | None:
        return self._current

    def is_busy(self) -> bool:
        return self._current is not None

    async def bind(self, session: Session) -> Session | None:
        async with self._lock:
            previous = self._current
            if previous is not None and self.policy == POLICY_REJECT:
                raise SessionBusyError(
                    f"Session {previous.session_id} is already active"
                )
            self._current = session
        if previous is not None:
            logger.info("Session %s replaced by %s", previous.session_id, session.session_id)
        else:
            logger.info("Session %s bound", session.session_id)
        return previous

    async def release(self, session: Session) -> bool:
        """Clear the slot if it still holds *session*. Returns True if cleared."""
        async with self._lock:
            if self._current is not session:
                return False
            self._current = None
        logger.info("Session %s released", session.session_id)
        return True

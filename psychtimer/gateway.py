"""Connection gateway: the ``/ws`` endpoint.

Accepts one operator connection, binds it as the current session, and
turns inbound frames into commands for the dispatcher.  It never writes
status frames itself; those go through the control plane's relay.
"""

import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .config import POLICY_REJECT
from .control import ControlPlane
from .protocol import KIND_INSTRUCTIONS, StatusMessage, decode_command
from .session import Session, SessionBusyError

logger = logging.getLogger(__name__)

# Close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_REPLACED = 4000


async def _receive_payload(websocket: WebSocket) -> str | bytes | None:
    """Next text or binary frame, or None once the client has gone."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        return None
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


async def read_commands(control: ControlPlane, session: Session) -> None:
    """Decode frames from *session* until the connection fails."""
    websocket = session.ws
    while True:
        try:
            payload = await _receive_payload(websocket)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.info("Read from session %s failed: %s", session.session_id, e)
            return
        if payload is None:
            logger.info("Session %s disconnected", session.session_id)
            return

        try:
            msg = decode_command(payload)
        except ValidationError as e:
            logger.warning("Malformed command from session %s: %s", session.session_id, e)
            return

        logger.debug("Received message %r", msg)
        control.submit(session, msg)


async def websocket_session(websocket: WebSocket, control: ControlPlane) -> None:
    """WebSocket endpoint handler for /ws."""
    slot = control.slot
    if slot.policy == POLICY_REJECT and slot.is_busy():
        logger.warning("Refusing connection: session %s already active", slot.current.session_id)
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return

    try:
        await websocket.accept()
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        logger.error("WebSocket upgrade failed: %s", e)
        return
    logger.debug("Upgraded to ws")

    session = Session(websocket, control.new_engine())
    try:
        displaced = await slot.bind(session)
    except SessionBusyError as e:
        logger.warning("Refusing connection: %s", e)
        await session.close(code=CLOSE_POLICY_VIOLATION, reason="Session already active")
        return
    if displaced is not None:
        await displaced.close(code=CLOSE_REPLACED, reason="Replaced by a new connection")

    control.publish(StatusMessage(kind=KIND_INSTRUCTIONS, message=control.settings.instructions))

    try:
        await read_commands(control, session)
    finally:
        await slot.release(session)
        if control.settings.cancel_on_disconnect:
            try:
                await session.engine.cancel("")
            except Exception:
                logger.exception("Engine cancel failed after disconnect")
        await session.close()

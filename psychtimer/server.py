import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging

from fastapi import FastAPI, HTTPException, WebSocket
from starlette.requests import Request

from .config import Settings
from .control import ControlPlane
from .engine import EngineFactory, PhasedEngine
from .gateway import websocket_session

logger = logging.getLogger(__name__)


def _control(request_or_ws) -> ControlPlane:
    control = getattr(request_or_ws.app.state, "control", None)
    if control is None:
        raise HTTPException(status_code=503, detail="Control plane not running")
    return control


def create_app(
    settings: Settings | None = None,
    engine_factory: EngineFactory = PhasedEngine,
) -> FastAPI:
    """Build the application.

    The control plane is created on startup so its queues and locks belong
    to the serving event loop.
    """
    settings = settings or Settings.from_env()
    app = FastAPI(title="Psych Timer")
    app.state.settings = settings
    app.state.control = None

    @app.on_event("startup")
    async def startup_event():
        control = ControlPlane(settings, engine_factory)
        control.start()
        app.state.control = control
        logger.info("Control plane started (policy=%s, log_dir=%s)",
                    settings.session_policy, settings.log_dir)

    @app.on_event("shutdown")
    async def shutdown_event():
        control = app.state.control
        if control is not None:
            await control.stop()
            app.state.control = None
        logger.info("Control plane stopped")

    @app.get("/api/session")
    async def api_session(request: Request):
        control = _control(request)
        session = control.slot.current
        if session is None:
            return {"active": False, "session_id": None, "connected_at": None}
        return {"active": True, **session.summary()}

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        control = websocket.app.state.control
        if control is None:
            logger.error("WebSocket request before control plane startup")
            await websocket.close()
            return
        await websocket_session(websocket, control)

    return app


app = create_app()

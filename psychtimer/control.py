"""Control plane: command dispatch and status relay.

Two background loops share the process-wide session slot:

* the dispatcher drains the command queue one command at a time and drives
  the bound session's engine;
* the relay drains the status queue and is the only writer of status
  frames to the bound connection.

Both queues are unbounded ``asyncio.Queue`` objects, so producers never
block and each consumer sees items in enqueue order.
"""

import asyncio
import logging

from starlette.websockets import WebSocketDisconnect

from .config import Settings
from .engine import EngineFactory, PhasedEngine, SessionEngine
from .protocol import (
    ACTION_CANCEL,
    ACTION_CONTINUE,
    ACTION_KEY,
    ACTION_START,
    CommandMessage,
    StatusMessage,
)
from .session import Session, SessionSlot

logger = logging.getLogger(__name__)


def _run_task_done_callback(task: asyncio.Task):
    """Log exceptions from started runs instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Run task %s failed: %s", task.get_name(), exc, exc_info=exc)


class ControlPlane:
    def __init__(self, settings: Settings, engine_factory: EngineFactory = PhasedEngine):
        self.settings = settings
        self.engine_factory = engine_factory
        self.slot = SessionSlot(settings.session_policy)
        self.commands: asyncio.Queue[tuple[Session, CommandMessage]] = asyncio.Queue()
        self.status: asyncio.Queue[StatusMessage] = asyncio.Queue()
        self._runs: dict[asyncio.Task, SessionEngine] = {}
        self._dispatch_task: asyncio.Task | None = None
        self._relay_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def publish(self, msg: StatusMessage) -> None:
        """Queue a status message for the bound connection."""
        self.status.put_nowait(msg)

    def submit(self, session: Session, msg: CommandMessage) -> None:
        """Queue a command received on *session*'s connection."""
        self.commands.put_nowait((session, msg))

    def new_engine(self) -> SessionEngine:
        return self.engine_factory(self.settings, self.publish)

    # ------------------------------------------------------------------
    # Action dispatcher
    # ------------------------------------------------------------------

    async def dispatch(self, session: Session, msg: CommandMessage) -> None:
        if self.slot.current is not session:
            logger.info(
                "Dropping %s from session %s: no longer bound",
                msg.action or "<no action>", session.session_id,
            )
            return

        engine = session.engine
        action = msg.action
        if action == ACTION_START:
            task = asyncio.ensure_future(engine.start(msg.subject_id))
            task.set_name(f"run-{msg.subject_id or 'anonymous'}")
            self._runs[task] = engine
            task.add_done_callback(self._forget_run)
            task.add_done_callback(_run_task_done_callback)
        elif action == ACTION_CANCEL:
            await engine.cancel(msg.subject_id)
        elif action == ACTION_KEY:
            logger.debug(
                "Received key %s (keycode %d) for subject %s",
                msg.content, msg.key_code, msg.subject_id,
            )
            await engine.add_key(msg.content, msg.key_code)
        elif action == ACTION_CONTINUE:
            await engine.resume()
        else:
            logger.debug("Unknown action from the client: %r", action)

    async def _dispatch_loop(self):
        logger.debug("Dispatcher starting")
        while True:
            session, msg = await self.commands.get()
            try:
                logger.debug("Handling command %r", msg)
                await self.dispatch(session, msg)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error dispatching action=%s", msg.action)
            finally:
                self.commands.task_done()

    # ------------------------------------------------------------------
    # Status relay
    # ------------------------------------------------------------------

    async def relay(self, msg: StatusMessage) -> bool:
        """Write *msg* to the bound connection. Returns True on success."""
        session = self.slot.current
        if session is None:
            logger.info("Dropping status %s: no bound session", msg.kind)
            return False
        try:
            await session.send(msg)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.error("Status write to session %s failed: %s", session.session_id, e)
            await session.close()
            return False

    async def _relay_loop(self):
        logger.debug("Status relay starting")
        while True:
            msg = await self.status.get()
            try:
                logger.debug("Server message %r", msg)
                await self.relay(msg)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error relaying status %s", msg.kind)
            finally:
                self.status.task_done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    def start(self):
        if self._dispatch_task is None:
            self._dispatch_task = asyncio.ensure_future(self._dispatch_loop())
        if self._relay_task is None:
            self._relay_task = asyncio.ensure_future(self._relay_loop())

    def _forget_run(self, task: asyncio.Task):
        self._runs.pop(task, None)

    async def stop(self):
        session = self.slot.current

        # Every engine with a live run gets a cooperative cancel, including
        # runs left behind by a dropped or replaced connection.
        engines = []
        for engine in self._runs.values():
            if engine not in engines:
                engines.append(engine)
        for engine in engines:
            try:
                await engine.cancel("")
            except Exception:
                logger.exception("Engine cancel failed during shutdown")

        if self._runs:
            _, pending = await asyncio.wait(set(self._runs), timeout=self.settings.shutdown_grace)
            for task in pending:
                logger.warning("Run %s did not stop within %.1fs; cancelling",
                               task.get_name(), self.settings.shutdown_grace)
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for attr in ("_dispatch_task", "_relay_task"):
            task = getattr(self, attr)
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                setattr(self, attr, None)

        if session is not None:
            await session.close(code=1001)

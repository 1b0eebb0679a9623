"""Session engines: the collaborator that executes one trial run.

The control plane only knows the :class:`SessionEngine` interface. It calls
``start`` as a fire-and-forget task and awaits ``cancel``, ``add_key`` and
``resume`` inline, so those three must return promptly.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from .config import Settings
from .mindware import EventLogError, MindwareFile
from .protocol import (
    KIND_ERROR,
    KIND_FINISHED,
    KIND_STATUS,
    KIND_WAITING,
    StatusMessage,
)

logger = logging.getLogger(__name__)

Publisher = Callable[[StatusMessage], None]

EVENT_KEY = "KEY"
EVENT_CANCEL = "CANCEL"
EVENT_END = "End Event"

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class SessionEngine(ABC):
    """Executes trial runs for one operator session.

    Implementations publish status through the callable given at
    construction and write their own event files.
    """

    def __init__(self, settings: Settings, publish: Publisher):
        self.settings = settings
        self.publish = publish

    @abstractmethod
    async def start(self, subject_id: str) -> None:
        """Run one trial for *subject_id*. May take arbitrarily long."""

    @abstractmethod
    async def cancel(self, subject_id: str) -> None:
        """Ask the in-flight run to stop. Empty *subject_id* matches any run."""

    @abstractmethod
    async def add_key(self, content: str, key_code: int) -> None:
        """Record a key press against the running trial."""

    @abstractmethod
    async def resume(self) -> None:
        """Release a run that is waiting for the operator (CONTINUE)."""

    def notify(self, kind: str, message: str) -> None:
        self.publish(StatusMessage(kind=kind, message=message))


EngineFactory = Callable[[Settings, Publisher], SessionEngine]


@dataclass
class _ActiveRun:
    subject_id: str
    log: MindwareFile | None = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False


def event_file_path(log_dir: Path, subject_id: str, now: datetime | None = None) -> Path:
    now = now or datetime.now()
    safe = _UNSAFE_FILENAME_RE.sub("_", subject_id).strip("._") or "subject"
    return log_dir / f"{safe}_{now.strftime('%Y%m%d-%H%M%S')}.txt"


class PhasedEngine(SessionEngine):
    """Operator-paced run through the configured phases.

    Each phase is logged as an event, then the run waits for CONTINUE (next
    phase) or CANCEL (stop).  Only one run is active at a time; the run is
    claimed before its event file is opened, so a second START arriving
    meanwhile is refused and a CANCEL is not lost.

    Key presses are logged as ``("KEY", content)``.  The key code is only
    written to the debug log; the event file records what was typed.

    Event-file writes go through ``asyncio.to_thread`` so a slow disk never
    stalls the dispatcher or the status relay.
    """

    def __init__(self, settings: Settings, publish: Publisher):
        super().__init__(settings, publish)
        self._run: _ActiveRun | None = None

    @property
    def running(self) -> bool:
        return self._run is not None

    async def start(self, subject_id: str) -> None:
        if not subject_id:
            self.notify(KIND_ERROR, "A subject ID is required to start a run.")
            return
        if self._run is not None:
            self.notify(KIND_ERROR, f"A run for {self._run.subject_id} is already in progress.")
            return

        run = _ActiveRun(subject_id=subject_id)
        self._run = run
        try:
            path = event_file_path(self.settings.log_dir, subject_id)
            try:
                run.log = await asyncio.to_thread(MindwareFile.open, path)
            except EventLogError as e:
                logger.error("Cannot start run for %s: %s", subject_id, e)
                self.notify(KIND_ERROR, f"Could not create event file: {e}")
                return

            logger.info("Run started for %s -> %s", subject_id, path)
            self.notify(KIND_STATUS, f"Run started for {subject_id}")
            await self._run_phases(run)
        except EventLogError as e:
            logger.error("Event file failure during run for %s: %s", subject_id, e)
            self.notify(KIND_ERROR, f"Run aborted, event file could not be written: {e}")
        finally:
            if self._run is run:
                self._run = None
            if run.log is not None:
                run.log.close()

    async def _append(self, run: _ActiveRun, event_type: str, name: str = "") -> None:
        await asyncio.to_thread(run.log.append, event_type, name)

    async def _run_phases(self, run: _ActiveRun) -> None:
        for phase in self.settings.phases:
            if run.cancelled:
                break
            await self._append(run, phase, run.subject_id)
            self.notify(KIND_WAITING, phase)
            await run.wake.wait()
            run.wake.clear()

        if run.cancelled:
            await self._append(run, EVENT_CANCEL)
            logger.info("Run for %s cancelled", run.subject_id)
            self.notify(KIND_FINISHED, "Run cancelled")
        else:
            await self._append(run, EVENT_END)
            logger.info("Run for %s complete", run.subject_id)
            self.notify(KIND_FINISHED, "Run complete")

    async def cancel(self, subject_id: str) -> None:
        run = self._run
        if run is None:
            logger.debug("cancel(%r) with no active run", subject_id)
            return
        if subject_id and subject_id != run.subject_id:
            logger.warning("cancel for %r ignored; active run is %r", subject_id, run.subject_id)
            return
        run.cancelled = True
        run.wake.set()

    async def add_key(self, content: str, key_code: int) -> None:
        run = self._run
        if run is None or run.log is None:
            logger.debug("Key %r (%d) with no active run", content, key_code)
            return
        try:
            await self._append(run, EVENT_KEY, content)
        except EventLogError as e:
            # The run itself notices on its next append; just report here.
            logger.error("Could not log key %r: %s", content, e)
            self.notify(KIND_ERROR, f"Key could not be logged: {e}")

    async def resume(self) -> None:
        run = self._run
        if run is None:
            logger.debug("continue with no active run")
            return
        run.wake.set()

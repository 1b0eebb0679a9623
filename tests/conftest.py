"""Shared fixtures for the Psych Timer test suite."""

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.testclient import TestClient

# Ensure the project root is on sys.path so 'psychtimer' resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from psychtimer.config import Settings  # noqa: E402
from psychtimer.engine import SessionEngine  # noqa: E402
from psychtimer.session import Session  # noqa: E402

ECHO = "ECHO"


class RecordingEngine(SessionEngine):
    """Engine fake that records every call and echoes it as a status.

    ``start`` never finishes until ``release`` is set, like a run waiting
    on an operator who never comes back.
    """

    def __init__(self, settings, publish):
        super().__init__(settings, publish)
        self.calls: list[tuple] = []
        self.release = asyncio.Event()

    async def start(self, subject_id):
        self.calls.append(("start", subject_id))
        self.notify(ECHO, f"start:{subject_id}")
        await self.release.wait()

    async def cancel(self, subject_id):
        self.calls.append(("cancel", subject_id))
        self.notify(ECHO, f"cancel:{subject_id}")

    async def add_key(self, content, key_code):
        self.calls.append(("key", content, key_code))
        self.notify(ECHO, f"key:{content}:{key_code}")

    async def resume(self):
        self.calls.append(("continue",))
        self.notify(ECHO, "continue")


# ---------------------------------------------------------------------------
# Bare session factory: a Session over a mock socket and mock engine
# ---------------------------------------------------------------------------

def make_bare_session(engine=None, ws=None) -> Session:
    """Create a Session whose socket and engine are mocks.

    The socket mock records ``send_text``/``close`` calls; tests inspect
    ``session.ws.send_text.call_args_list`` for outbound frames.
    """
    if ws is None:
        ws = AsyncMock()
        ws.application_state = MagicMock()
    if engine is None:
        engine = AsyncMock(spec=SessionEngine)
    return Session(ws, engine)


def sent_frames(session: Session) -> list[str]:
    return [c.args[0] for c in session.ws.send_text.call_args_list]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll *predicate* on the running loop until it is true or time runs out."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        log_dir=tmp_path / "logs",
        instructions="Press Start when the subject is ready.",
        phases=("Baseline", "Stimulus"),
        shutdown_grace=0.1,
    )


@pytest.fixture
def engines():
    """Every RecordingEngine built by ``recording_factory``, in order."""
    return []


@pytest.fixture
def recording_factory(engines):
    def factory(settings, publish):
        engine = RecordingEngine(settings, publish)
        engines.append(engine)
        return engine
    return factory


@pytest.fixture
def app(settings, recording_factory):
    from psychtimer.server import create_app
    return create_app(settings, recording_factory)


@pytest.fixture
def client(app):
    """TestClient inside its context manager so startup/shutdown hooks run."""
    with TestClient(app) as test_client:
        yield test_client

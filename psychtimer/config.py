"""Runtime settings, read from ``PSYCHTIMER_*`` environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

POLICY_REJECT = "reject"
POLICY_REPLACE = "replace"
_POLICIES = (POLICY_REJECT, POLICY_REPLACE)

DEFAULT_INSTRUCTIONS = (
    "Enter the subject ID and press Start. Press Continue to advance "
    "through each phase, or Cancel to stop the run."
)
DEFAULT_PHASES = ("Baseline", "Stimulus", "Recovery")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items if items else default


@dataclass(frozen=True)
class Settings:
    host: str = "localhost"
    port: int = 8080
    log_dir: Path = Path("event_logs")
    instructions: str = DEFAULT_INSTRUCTIONS
    phases: tuple[str, ...] = field(default=DEFAULT_PHASES)
    session_policy: str = POLICY_REJECT
    cancel_on_disconnect: bool = False
    shutdown_grace: float = 5.0
    debug: bool = False

    def __post_init__(self):
        if self.session_policy not in _POLICIES:
            raise ValueError(
                f"session_policy must be one of {_POLICIES}, got {self.session_policy!r}"
            )
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if self.shutdown_grace < 0:
            raise ValueError("shutdown_grace must be >= 0")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.environ.get("PSYCHTIMER_HOST", "localhost"),
            port=int(os.environ.get("PSYCHTIMER_PORT", "8080")),
            log_dir=Path(os.environ.get("PSYCHTIMER_LOG_DIR", "event_logs")),
            instructions=os.environ.get("PSYCHTIMER_INSTRUCTIONS", DEFAULT_INSTRUCTIONS),
            phases=_env_list("PSYCHTIMER_PHASES", DEFAULT_PHASES),
            session_policy=os.environ.get("PSYCHTIMER_SESSION_POLICY", POLICY_REJECT).strip().lower(),
            cancel_on_disconnect=_env_flag("PSYCHTIMER_CANCEL_ON_DISCONNECT"),
            shutdown_grace=float(os.environ.get("PSYCHTIMER_SHUTDOWN_GRACE", "5")),
            debug=_env_flag("PSYCHTIMER_DEBUG"),
        )

"""MindWare event file writer and reader.

Files follow the MindWare event file layout
(https://support.mindwaretech.com/knowledge-base/kb0080/): a tab-delimited
header row, then a ``Start Event`` row that marks time-zero for the
recording software, then one row per event.  Date and time columns use
fixed ``MM/DD/YYYY`` and ``HH:MM:SS.mmm AM/PM`` layouts.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

HEADER = "Event Type\tName\tDate\tTime"
START_EVENT = "Start Event"

_FIELD_SEP = "\t"


class EventLogError(Exception):
    """The event file could not be created or written."""


@dataclass(frozen=True)
class LogEvent:
    event_type: str
    name: str
    timestamp: datetime

    def to_line(self) -> str:
        return _FIELD_SEP.join((
            self.event_type,
            self.name,
            format_date(self.timestamp),
            format_time(self.timestamp),
        ))


def format_date(ts: datetime) -> str:
    return f"{ts.month:02d}/{ts.day:02d}/{ts.year:04d}"


def format_time(ts: datetime) -> str:
    """12-hour clock with truncated milliseconds.

    Built by hand rather than with ``%p`` so the AM/PM marker does not
    depend on the process locale.
    """
    hour = ts.hour % 12 or 12
    marker = "AM" if ts.hour < 12 else "PM"
    millis = ts.microsecond // 1000
    return f"{hour:02d}:{ts.minute:02d}:{ts.second:02d}.{millis:03d} {marker}"


def parse_timestamp(date_field: str, time_field: str) -> datetime:
    """Inverse of format_date/format_time. Raises ValueError on bad input."""
    clock, _, marker = time_field.partition(" ")
    if marker not in ("AM", "PM"):
        raise ValueError(f"Bad AM/PM marker in {time_field!r}")
    hms, _, millis = clock.partition(".")
    if len(millis) != 3 or not millis.isdigit():
        raise ValueError(f"Bad milliseconds in {time_field!r}")
    parsed = datetime.strptime(f"{date_field} {hms}", "%m/%d/%Y %H:%M:%S")
    if not 1 <= parsed.hour <= 12:
        raise ValueError(f"Hour out of range in {time_field!r}")
    hour = parsed.hour % 12 + (12 if marker == "PM" else 0)
    return parsed.replace(
        hour=hour, microsecond=int(millis) * 1000, tzinfo=timezone.utc,
    )


def _clean(field: str) -> str:
    # One append must always produce exactly one line.
    return field.replace("\r", " ").replace("\n", " ").replace(_FIELD_SEP, " ")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MindwareFile:
    """Append-only event file.

    Every write goes through ``_lock`` so records land on disk in the order
    ``append`` was called, whether callers are event-loop tasks or worker
    threads.
    """

    def __init__(self, path: str | Path, fh):
        self.path = Path(path)
        self._fh = fh
        self._lock = threading.Lock()
        self._events: list[LogEvent] = []
        self._closed = False

    @classmethod
    def open(cls, path: str | Path) -> "MindwareFile":
        """Create (or truncate) *path* and write the header and Start Event."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(path, "w", encoding="utf-8", newline="\n")
        except OSError as e:
            raise EventLogError(f"Cannot create event file {path}: {e}") from e

        log = cls(path, fh)
        try:
            log._write_line(HEADER)
            log.append(START_EVENT, "")
        except EventLogError:
            log.close()
            raise
        logger.info("Opened event file %s", path)
        return log

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> list[LogEvent]:
        with self._lock:
            return list(self._events)

    def _write_line(self, line: str) -> None:
        try:
            self._fh.write(line + "\n")
            self._fh.flush()
        except OSError as e:
            raise EventLogError(f"Cannot write to event file {self.path}: {e}") from e

    def append(self, event_type: str, name: str = "") -> LogEvent:
        with self._lock:
            if self._closed:
                raise EventLogError(f"Event file {self.path} is closed")
            event = LogEvent(_clean(event_type), _clean(name), _utcnow())
            self._write_line(event.to_line())
            self._events.append(event)
        logger.debug("Event %r %r -> %s", event.event_type, event.name, self.path.name)
        return event

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._fh.close()
            except OSError:
                logger.exception("Error closing event file %s", self.path)
        logger.info("Closed event file %s (%d events)", self.path, len(self._events))

    def __enter__(self) -> "MindwareFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ------------------------------------------------------------------
# Reading back
# ------------------------------------------------------------------

def read_events(path: str | Path) -> list[LogEvent]:
    """Parse an event file, skipping the header row.

    Raises ValueError if the header or any row is malformed.
    """
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    if not lines or lines[0] != HEADER:
        raise ValueError(f"{path}: missing or wrong header row")
    events = []
    for lineno, line in enumerate(lines[1:], start=2):
        fields = line.split(_FIELD_SEP)
        if len(fields) != 4:
            raise ValueError(f"{path}:{lineno}: expected 4 fields, got {len(fields)}")
        event_type, name, date_field, time_field = fields
        try:
            ts = parse_timestamp(date_field, time_field)
        except ValueError as e:
            raise ValueError(f"{path}:{lineno}: {e}") from e
        events.append(LogEvent(event_type, name, ts))
    return events


def validate_event_file(path: str | Path) -> list[str]:
    """Return a list of problems with *path*; empty means the file is valid."""
    try:
        events = read_events(path)
    except (OSError, ValueError) as e:
        return [str(e)]

    problems = []
    if not events:
        problems.append("no Start Event row")
    else:
        first = events[0]
        if first.event_type != START_EVENT:
            problems.append(f"first event is {first.event_type!r}, expected {START_EVENT!r}")
        if first.name:
            problems.append(f"Start Event has a name ({first.name!r})")
    for prev, cur in zip(events, events[1:]):
        if cur.timestamp < prev.timestamp:
            problems.append(
                f"timestamp goes backwards at {cur.event_type!r}: "
                f"{format_time(prev.timestamp)} -> {format_time(cur.timestamp)}"
            )
    return problems

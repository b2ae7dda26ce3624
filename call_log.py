"""
Per-call JSONL event log.

Every call gets one ``events.jsonl`` in its session directory. The live
session controller emits lifecycle, transcript and error events; in-process
callbacks get the same events as they happen.

Writer atomicity: POSIX O_APPEND guarantees atomic writes under PIPE_BUF (4096 bytes).
Each JSON line + newline stays under that limit.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic appends
_PIPE_BUF = 4096


class CallEventType(str, Enum):
    """All event types written to a call log."""
    CALL_START = "call_start"
    STATE = "state"
    MESSAGE = "message"
    TURN_COMPLETE = "turn_complete"
    AUDIO_DROPPED = "audio_dropped"
    ERROR = "error"
    RECORDING_SAVED = "recording_saved"
    CALL_END = "call_end"


# Core fields that are not part of the payload
_CORE_FIELDS = {"ts", "type", "sid"}

_TRUNCATED_MARK = "...[truncated]"


def _clip(value: str, excess: int) -> str:
    """Shorten ``value`` so its JSON form shrinks by at least ``excess`` bytes."""
    freed = -len(_TRUNCATED_MARK)
    end = len(value)
    while end > 0 and freed < excess:
        end -= 1
        # Escaped characters take several bytes
        freed += len(json.dumps(value[end])) - 2
    return value[:end] + _TRUNCATED_MARK


@dataclass
class CallEvent:
    """A single event in a call log."""
    ts: float
    type: str
    sid: str
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, type: str, sid: str, **kwargs):
        self.ts = ts
        self.type = type
        self.sid = sid
        self.payload = kwargs

    def to_json_line(self) -> str:
        """Serialize to a single JSON line with trailing newline.

        A line that would exceed PIPE_BUF gets ``truncated: true`` and its
        longest string fields shortened until it fits. If that is not
        enough the payload is dropped.
        """
        line = self._dump(self.payload)
        if len(line.encode()) <= _PIPE_BUF:
            return line

        payload = dict(self.payload, truncated=True)
        text_keys = sorted((k for k, v in payload.items() if isinstance(v, str)),
                           key=lambda k: len(payload[k]), reverse=True)
        for key in text_keys:
            if len(payload[key]) <= len(_TRUNCATED_MARK):
                break
            line = self._dump(payload)
            overflow = len(line.encode()) - _PIPE_BUF
            if overflow <= 0:
                return line
            payload[key] = _clip(payload[key], overflow)

        line = self._dump(payload)
        if len(line.encode()) <= _PIPE_BUF:
            return line
        return self._dump({"truncated": True})

    def _dump(self, payload: dict) -> str:
        data = {"ts": self.ts, "type": self.type, "sid": self.sid, **payload}
        return json.dumps(data, separators=(',', ':')) + "\n"

    @classmethod
    def from_json_line(cls, line: str) -> "CallEvent":
        data = json.loads(line.strip())
        core = {k: data.pop(k) for k in list(_CORE_FIELDS) if k in data}
        return cls(**core, **data)


class CallEventLog:
    """Append-only call log with in-process listeners.

    Usage:
        log = CallEventLog(session_dir, session_id)
        log.open()
        log.on("*", callback)
        log.emit("state", state="connected")
        log.read_recent(last_n=10)
        log.close()
    """

    def __init__(self, session_dir: Path, sid: str):
        self._session_dir = Path(session_dir).expanduser()
        self._sid = sid
        self._path = self._session_dir / "events.jsonl"
        self._file = None
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def path(self) -> Path:
        return self._path

    @property
    def sid(self) -> str:
        return self._sid

    def open(self):
        """Open the JSONL file for appending."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def on(self, event_type: str, callback: Callable):
        """Register a callback for one event type, or "*" for all."""
        self._callbacks.setdefault(event_type, []).append(callback)

    def emit(self, event_type: str, **payload):
        """Write the event (if open) and fire callbacks."""
        evt = CallEvent(ts=time.time(), type=str(getattr(event_type, "value", event_type)),
                        sid=self._sid, **payload)
        if self._file:
            try:
                self._file.write(evt.to_json_line())
                self._file.flush()
            except OSError as e:
                logger.error("Call log write error: %s", e)
        for cb_type in (evt.type, "*"):
            for cb in self._callbacks.get(cb_type, []):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Call log callback error for %s: %s", evt.type, e)

    def read_recent(self, last_n: int = 50, event_type: str | None = None,
                    since_ts: float | None = None) -> list[CallEvent]:
        """Read recent events back from the file."""
        if not self._path.exists():
            return []
        if event_type is not None:
            event_type = str(getattr(event_type, "value", event_type))

        events = []
        try:
            with open(self._path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        evt = CallEvent.from_json_line(line)
                    except (json.JSONDecodeError, KeyError, TypeError):
                        continue
                    if event_type and evt.type != event_type:
                        continue
                    if since_ts and evt.ts < since_ts:
                        continue
                    events.append(evt)
        except OSError:
            return []

        if last_n:
            events = events[-last_n:]
        return events

"""
Trace event writer for SuperPancake.

Records connection lifecycle transitions and command outcomes as a stream of
versioned events. Sinks decide where the events go; ``JsonlTraceSink`` writes
one JSON object per line.

Usage:
    tracer = Tracer(run_id=str(uuid.uuid4()), sink=JsonlTraceSink("traces/run.jsonl"))
    session = await Session.connect(port=9222, tracer=tracer)
    ...
    tracer.close()
"""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class TraceEvent:
    """A single event in the trace."""

    v: int  # Schema version
    type: str  # Event type
    ts: str  # ISO 8601 timestamp
    run_id: str
    seq: int
    data: dict[str, Any]
    ts_ms: int | None = None  # Unix timestamp in milliseconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "v": self.v,
            "type": self.type,
            "ts": self.ts,
            "run_id": self.run_id,
            "seq": self.seq,
            "data": self.data,
        }
        if self.ts_ms is not None:
            result["ts_ms"] = self.ts_ms
        return result


class TraceSink(ABC):
    """Abstract interface for trace event sinks."""

    @abstractmethod
    def emit(self, event: dict[str, Any]) -> None:
        """
        Emit a trace event.

        Args:
            event: Event dictionary (from TraceEvent.to_dict())
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the sink and flush any buffered data."""
        pass


class JsonlTraceSink(TraceSink):
    """JSONL file sink. Appends one JSON object per line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Append mode, line buffered
        self._file = open(self.path, "a", encoding="utf-8", buffering=1)

    def emit(self, event: dict[str, Any]) -> None:
        json_str = json.dumps(event, ensure_ascii=False, default=str)
        self._file.write(json_str + "\n")

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class MemoryTraceSink(TraceSink):
    """Keeps events in a list. Handy for tests and for inspecting a short run."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.closed = False

    def emit(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]


@dataclass
class Tracer:
    """
    Trace event builder and emitter.

    Owns the sequence counter and offers helpers for the events the
    connection manager and session produce.
    """

    run_id: str
    sink: TraceSink
    seq: int = field(default=0, init=False)
    total_events: int = field(default=0, init=False)
    commands_ok: int = field(default=0, init=False)
    commands_failed: int = field(default=0, init=False)

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        """
        Emit a trace event.

        Args:
            event_type: Type of event (e.g. 'state_change', 'command')
            data: Event-specific payload
        """
        self.seq += 1
        self.total_events += 1

        ts_ms = int(time.time() * 1000)
        ts = time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime())

        event = TraceEvent(
            v=1,
            type=event_type,
            ts=ts,
            ts_ms=ts_ms,
            run_id=self.run_id,
            seq=self.seq,
            data=data,
        )
        self.sink.emit(event.to_dict())

    def emit_state_change(self, previous: str, current: str, reason: str | None = None) -> None:
        data: dict[str, Any] = {"from": previous, "to": current}
        if reason:
            data["reason"] = reason
        self.emit("state_change", data)

    def emit_lifecycle(self, event: str, data: dict[str, Any] | None = None) -> None:
        self.emit("lifecycle", {"event": event, **(data or {})})

    def emit_command(
        self,
        method: str,
        request_id: int,
        duration_ms: int,
        error: BaseException | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "method": method,
            "request_id": request_id,
            "duration_ms": duration_ms,
            "ok": error is None,
        }
        if error is None:
            self.commands_ok += 1
        else:
            self.commands_failed += 1
            data["error"] = {"type": type(error).__name__, "message": str(error)}
        self.emit("command", data)

    def get_stats(self) -> dict[str, int]:
        return {
            "total_events": self.total_events,
            "commands_ok": self.commands_ok,
            "commands_failed": self.commands_failed,
        }

    def close(self) -> None:
        self.sink.close()

"""Synapse — the observability nervous system.

Every dispatch in Kiln produces SynapseEvents: definition requests, each
failed synthesis attempt, executions and their outcomes. The SynapseEventBus
collects them in-memory AND (optionally) appends them to
<trace_dir>/<correlation_id>.jsonl so ``kiln trace`` works across processes.
"""

from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger().bind(component="synapse")

# Default trace directory, created on first write
_TRACE_DIR = Path.home() / ".kiln" / "traces"

# Events kept in memory; older ones are still on disk when persisting
DEFAULT_MAX_EVENTS = 10_000


class SynapseEvent(BaseModel):
    """A single event in the Synapse nervous system."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str = Field(
        description="Ties this event to a single dispatch call"
    )
    event_type: str = Field(
        description="Type: dispatch_start, function_created, synthesis_attempt_failed, "
        "synthesis_exhausted, function_executed, function_failed, function_not_found"
    )
    source: str = Field(description="Component that emitted this event (e.g., 'synthesis.repair')")
    target: str = Field(default="", description="Function name the event concerns")
    payload: dict[str, Any] = Field(default_factory=dict)
    error: str = Field(default="", description="Error message if this is an error event")
    duration_ms: float = Field(default=0.0, description="Duration of the operation, if applicable")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SynapseTrace(BaseModel):
    """Complete trace of one dispatch, assembled from its events."""

    correlation_id: str
    events: list[SynapseEvent] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)
    total_duration_ms: float = 0.0
    success: bool = True
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SynapseEventBus:
    """In-memory event bus with file-based persistence.

    The in-memory buffer is a ring of the last ``max_events`` events.
    """

    def __init__(
        self,
        trace_dir: Path | None = None,
        persist: bool = True,
        max_events: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self._events: deque[SynapseEvent] = deque(maxlen=max_events)
        self._trace_dir = trace_dir or _TRACE_DIR
        self._persist = persist

    def emit(self, event: SynapseEvent) -> None:
        """Emit an event — stores in memory and appends to trace file."""
        self._events.append(event)
        if self._persist:
            self._write_to_file(event)

    def _write_to_file(self, event: SynapseEvent) -> None:
        try:
            self._trace_dir.mkdir(parents=True, exist_ok=True)
            trace_file = self._trace_dir / f"{event.correlation_id}.jsonl"
            with trace_file.open("a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")
        except OSError as exc:
            # Never crash the pipeline because of tracing
            logger.warning("trace_write_failed", error=str(exc))

    def get_trace(self, correlation_id: str) -> SynapseTrace:
        """Assemble a full trace — checks memory first, then disk."""
        events = [e for e in self._events if e.correlation_id == correlation_id]
        if not events:
            events = self._load_from_file(correlation_id)

        events.sort(key=lambda e: e.timestamp)
        trace = SynapseTrace(
            correlation_id=correlation_id,
            events=events,
            functions=sorted({e.target for e in events if e.target}),
        )

        if events:
            trace.started_at = events[0].timestamp
            trace.completed_at = events[-1].timestamp
            total = (trace.completed_at - trace.started_at).total_seconds() * 1000
            trace.total_duration_ms = round(total, 2)
            trace.success = not any(e.error for e in events)

        return trace

    def _load_from_file(self, correlation_id: str) -> list[SynapseEvent]:
        trace_file = self._trace_dir / f"{correlation_id}.jsonl"
        if not trace_file.exists():
            return []
        events = []
        try:
            with trace_file.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        events.append(SynapseEvent.model_validate_json(line))
        except (OSError, ValueError) as exc:
            logger.warning("trace_read_failed", correlation_id=correlation_id, error=str(exc))
        return events

    def list_traces(self, limit: int = 20) -> list[str]:
        """List recent correlation IDs from persisted trace files (newest first)."""
        if not self._trace_dir.exists():
            return []
        files = sorted(
            self._trace_dir.glob("*.jsonl"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        return [f.stem for f in files[:limit]]

    def events_for(self, correlation_id: str) -> list[SynapseEvent]:
        """In-memory events for one correlation id, in emission order."""
        return [e for e in self._events if e.correlation_id == correlation_id]

    def clear(self) -> None:
        """Clear in-memory events (does not delete files)."""
        self._events.clear()

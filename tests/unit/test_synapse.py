"""SynapseEventBus — bounded in-memory buffer, trace assembly, disk fallback."""

from __future__ import annotations

from kiln.models.synapse import SynapseEvent, SynapseEventBus


def _event(cid: str, n: int, **kwargs) -> SynapseEvent:
    return SynapseEvent(
        correlation_id=cid, event_type="dispatch_start", source="test", target=f"f{n}", **kwargs
    )


def test_buffer_drops_oldest_events_past_limit():
    bus = SynapseEventBus(persist=False, max_events=3)
    for n in range(5):
        bus.emit(_event(f"cid-{n}", n))

    assert bus.events_for("cid-0") == []
    assert bus.events_for("cid-1") == []
    assert [e.target for e in bus.events_for("cid-4")] == ["f4"]
    assert len(bus.events_for("cid-2")) == 1


def test_get_trace_assembles_functions_and_success():
    bus = SynapseEventBus(persist=False)
    bus.emit(_event("cid", 1))
    bus.emit(_event("cid", 2, error="boom"))

    trace = bus.get_trace("cid")
    assert trace.functions == ["f1", "f2"]
    assert trace.success is False
    assert len(trace.events) == 2


def test_evicted_events_still_readable_from_disk(tmp_path):
    bus = SynapseEventBus(trace_dir=tmp_path, persist=True, max_events=1)
    bus.emit(_event("old", 1))
    bus.emit(_event("new", 2))

    assert bus.events_for("old") == []
    trace = bus.get_trace("old")
    assert [e.target for e in trace.events] == ["f1"]
    assert bus.list_traces() and "old" in bus.list_traces()

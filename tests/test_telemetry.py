"""Tests for in-process telemetry events."""

from __future__ import annotations

from mithril.services import telemetry


def test_listeners_receive_payload_copies() -> None:
    received: list[dict] = []
    telemetry.register_event_listener("stream.started", received.append)
    try:
        telemetry.emit("stream.started", {"stream_id": "s1", "model": "coder"})
        telemetry.emit("stream.finished", {"stream_id": "s1"})
    finally:
        telemetry.unregister_event_listener("stream.started", received.append)

    telemetry.emit("stream.started", {"stream_id": "s2"})

    assert received == [{"event": "stream.started", "stream_id": "s1", "model": "coder"}]


def test_failing_listener_does_not_break_emit() -> None:
    received: list[dict] = []

    def _broken(payload: dict) -> None:
        raise RuntimeError("boom")

    telemetry.register_event_listener("plan.created", _broken)
    telemetry.register_event_listener("plan.created", received.append)
    try:
        telemetry.emit("plan.created", {"plan_id": "todo_1"})
    finally:
        telemetry.unregister_event_listener("plan.created", _broken)
        telemetry.unregister_event_listener("plan.created", received.append)

    assert received == [{"event": "plan.created", "plan_id": "todo_1"}]


def test_in_memory_sink_keeps_bounded_tail() -> None:
    sink = telemetry.InMemoryTelemetrySink(capacity=10)
    sink.attach("intent.classified")
    try:
        for index in range(12):
            telemetry.emit("intent.classified", {"index": index})
    finally:
        sink.detach("intent.classified")
    telemetry.emit("intent.classified", {"index": 99})

    assert len(sink) == 10
    assert sink.names() == ["intent.classified"] * 10
    assert [event.payload["index"] for event in sink.tail(2)] == [10, 11]

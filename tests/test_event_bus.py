"""Tests for the live-update event bus."""

import asyncio

import pytest

from flowcanvas.runtime.event_bus import EventBus, EventType, GraphEvent


@pytest.mark.asyncio
async def test_subscribers_receive_matching_events(bus):
    received: list[GraphEvent] = []

    async def on_status(event: GraphEvent):
        received.append(event)

    bus.subscribe(event_types=[EventType.NODE_STATUS_CHANGED], handler=on_status)

    await bus.emit_node_status("run-1", "n1", "running")
    await bus.emit_node_updated("run-1", "n1", {"content": "x"})

    assert len(received) == 1
    assert received[0].node_id == "n1"
    assert received[0].data == {"status": "running"}


@pytest.mark.asyncio
async def test_run_and_node_filters(bus):
    received: list[str] = []

    async def handler(event: GraphEvent):
        received.append(f"{event.run_id}/{event.node_id}")

    bus.subscribe(
        event_types=[EventType.NODE_STATUS_CHANGED],
        handler=handler,
        filter_run="run-1",
        filter_node="n1",
    )

    await bus.emit_node_status("run-1", "n1", "running")
    await bus.emit_node_status("run-1", "n2", "running")
    await bus.emit_node_status("run-2", "n1", "running")

    assert received == ["run-1/n1"]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(bus):
    received = []

    async def handler(event: GraphEvent):
        received.append(event)

    sub_id = bus.subscribe(event_types=[EventType.RUN_STARTED], handler=handler)
    assert bus.unsubscribe(sub_id) is True
    assert bus.unsubscribe(sub_id) is False

    await bus.emit_run_started("run-1", "group-1", ["a"])

    assert received == []


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_publish(bus):
    received = []

    async def broken(event: GraphEvent):
        raise RuntimeError("handler bug")

    async def healthy(event: GraphEvent):
        received.append(event)

    bus.subscribe(event_types=[EventType.RUN_COMPLETED], handler=broken)
    bus.subscribe(event_types=[EventType.RUN_COMPLETED], handler=healthy)

    await bus.emit_run_completed("run-1", {"succeeded": []})

    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_is_bounded_and_newest_first():
    bus = EventBus(max_history=3)
    for i in range(5):
        await bus.emit_node_status("run-1", f"n{i}", "idle")

    history = bus.get_history()
    assert [e.node_id for e in history] == ["n4", "n3", "n2"]
    assert bus.get_stats()["events_by_type"] == {"node_status_changed": 3}


@pytest.mark.asyncio
async def test_wait_for_returns_event_or_times_out(bus):
    async def later():
        await asyncio.sleep(0.01)
        await bus.emit_connections("run-1", "n1", ["a-n1"], active=True)

    task = asyncio.create_task(later())
    event = await bus.wait_for(EventType.CONNECTIONS_ACTIVATED, timeout=1)
    await task

    assert event.data == {"connection_ids": ["a-n1"]}
    assert await bus.wait_for(EventType.RUN_COMPLETED, timeout=0.01) is None


def test_event_serialisation():
    event = GraphEvent(type=EventType.NODE_UPDATED, run_id="r", node_id="n", data={"a": 1})
    payload = event.to_dict()
    assert payload["type"] == "node_updated"
    assert payload["data"] == {"a": 1}
    assert "timestamp" in payload

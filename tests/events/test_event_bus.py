"""Tests for the governance event bus."""

import pytest

from amendgov.events.bus import Event, EventBus


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("amendment.created", handler)
    await bus.emit("amendment.created", {"amendment_id": "a1"}, source="engine")

    assert len(received) == 1
    assert received[0].data["amendment_id"] == "a1"
    assert received[0].source == "engine"


@pytest.mark.asyncio
async def test_wildcard_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event.topic)

    bus.subscribe("escalation.*", handler)
    await bus.emit("escalation.created")
    await bus.emit("escalation.resolved")
    await bus.emit("safety.reverted")  # should NOT match

    assert received == ["escalation.created", "escalation.resolved"]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("*", handler)
    assert bus.subscriber_count == 1
    bus.unsubscribe("*", handler)
    await bus.emit("amendment.created")

    assert received == []
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_propagate():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("boom")

    async def healthy(event: Event):
        received.append(event)

    bus.subscribe("*", broken)
    bus.subscribe("*", healthy)
    event = await bus.emit("safety.reverted")

    assert event.topic == "safety.reverted"
    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_newest_first_and_filtered():
    bus = EventBus()
    await bus.emit("amendment.created", {"n": 1})
    await bus.emit("safety.reverted", {"n": 2})
    await bus.emit("amendment.activated", {"n": 3})

    assert [e.data["n"] for e in bus.history()] == [3, 2, 1]
    assert [e.data["n"] for e in bus.history("amendment.*")] == [3, 1]
    assert [e.data["n"] for e in bus.history(limit=1)] == [3]
    assert bus.topics() == ["amendment.activated", "amendment.created", "safety.reverted"]


@pytest.mark.asyncio
async def test_history_limit():
    bus = EventBus(history_limit=3)
    for i in range(5):
        await bus.emit("review.agent_reviewed", {"i": i})
    assert [e.data["i"] for e in bus.history()] == [4, 3, 2]

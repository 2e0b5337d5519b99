"""Tests for the live subscriber registry."""

import asyncio

import pytest

from notifications import SubscriberRegistry, format_sse


@pytest.mark.asyncio
async def test_subscribe_sends_connected_frame():
    registry = SubscriberRegistry()

    subscriber = registry.subscribe("user-1")

    event = await subscriber.next_event(timeout=1)
    assert event == {"type": "connected", "clientId": subscriber.id}
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_publish_is_scoped_to_owner():
    registry = SubscriberRegistry()
    mine = [registry.subscribe("user-1"), registry.subscribe("user-1")]
    theirs = registry.subscribe("user-2")

    delivered = registry.publish("user-1", {"type": "job.updated"})

    assert delivered == 2
    for subscriber in mine:
        assert subscriber.queue.qsize() == 2
    assert theirs.queue.qsize() == 1


@pytest.mark.asyncio
async def test_full_subscriber_does_not_block_others():
    registry = SubscriberRegistry(max_pending=1)
    stuck = registry.subscribe("user-1")  # queue already holds the connected frame
    healthy = registry.subscribe("user-1")
    await healthy.next_event(timeout=1)

    delivered = registry.publish("user-1", {"type": "job.updated"})

    assert delivered == 1
    assert stuck.queue.qsize() == 1
    assert await healthy.next_event(timeout=1) == {"type": "job.updated"}


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    registry = SubscriberRegistry()
    subscriber = registry.subscribe("user-1")

    registry.unsubscribe(subscriber)
    registry.unsubscribe(subscriber)

    assert len(registry) == 0
    assert registry.publish("user-1", {"type": "job.updated"}) == 0


@pytest.mark.asyncio
async def test_next_event_times_out():
    subscriber = SubscriberRegistry().subscribe("user-1")
    await subscriber.next_event(timeout=1)

    with pytest.raises(asyncio.TimeoutError):
        await subscriber.next_event(timeout=0.01)


def test_format_sse():
    assert format_sse({"type": "connected"}) == 'data: {"type": "connected"}\n\n'

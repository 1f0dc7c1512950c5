"""
Unit tests for the TransitionBus.
"""

import pytest

from tweet_pipeline.coordinator import DeliveryState, TransitionBus, TransitionEvent


def make_event(state=DeliveryState.DELIVERED, **kw) -> TransitionEvent:
    defaults = dict(
        event_id="e1",
        state=state,
        previous=DeliveryState.IN_FLIGHT,
        attempt_count=0,
        pending=0,
        in_flight=0,
        dead_lettered=0,
    )
    defaults.update(kw)
    return TransitionEvent(**defaults)


@pytest.mark.asyncio
async def test_subscribe_and_publish():
    bus = TransitionBus()
    received = []

    async def sub(evt):
        received.append(evt)

    bus.subscribe(sub)
    bus.subscribe(sub)  # duplicate ignored
    assert bus.subscriber_count == 1

    await bus.publish(make_event())
    assert len(received) == 1
    assert received[0].state is DeliveryState.DELIVERED


@pytest.mark.asyncio
async def test_subscriber_error_isolated():
    bus = TransitionBus()
    received = []

    async def bad(evt):
        raise RuntimeError("boom")

    async def good(evt):
        received.append(evt.event_id)

    bus.subscribe(bad)
    bus.subscribe(good)
    await bus.publish(make_event(event_id="e9"))
    assert received == ["e9"]


@pytest.mark.asyncio
async def test_unsubscribe_is_safe():
    bus = TransitionBus()

    async def sub(evt):
        pass

    bus.subscribe(sub)
    bus.unsubscribe(sub)
    bus.unsubscribe(sub)
    assert bus.subscriber_count == 0
    await bus.publish(make_event())


def test_transition_event_is_immutable():
    evt = make_event()
    with pytest.raises(AttributeError):
        evt.pending = 3  # type: ignore

"""
Unit tests for ActionDispatcher (idempotent fan-out).
"""

import asyncio

import pytest

from tweet_pipeline.coordinator import ActionDispatcher
from tweet_pipeline.models import Action


def snipe(event_id="e1") -> Action:
    return Action.snipe(chain_id=1, chain_name="ethereum", token_address="0xabc", event_id=event_id)


@pytest.mark.asyncio
async def test_dispatch_once_per_event_id():
    d = ActionDispatcher()
    calls = []
    d.register(calls.append)

    assert await d.dispatch(snipe())
    assert not await d.dispatch(snipe())
    assert len(calls) == 1
    assert d.dispatched == 1
    assert d.duplicates == 1
    assert d.seen("e1")


@pytest.mark.asyncio
async def test_async_and_sync_callbacks():
    d = ActionDispatcher()
    got = []

    async def async_cb(action):
        await asyncio.sleep(0)
        got.append(("async", action.action))

    d.register(lambda a: got.append(("sync", a.action)))
    d.register(async_cb)
    assert d.callback_count == 2

    await d.dispatch(snipe())
    assert got == [("sync", "snipe"), ("async", "snipe")]


@pytest.mark.asyncio
async def test_callback_failure_is_isolated():
    d = ActionDispatcher()
    got = []

    def bad(action):
        raise RuntimeError("wallet locked")

    d.register(bad)
    d.register(got.append)
    assert await d.dispatch(snipe())
    assert len(got) == 1

    # a failed callback does not reopen the key
    assert not await d.dispatch(snipe())


@pytest.mark.asyncio
async def test_concurrent_redelivery_invokes_once():
    d = ActionDispatcher()
    calls = []

    async def slow(action):
        await asyncio.sleep(0.01)
        calls.append(action.event_id)

    d.register(slow)
    results = await asyncio.gather(*[d.dispatch(snipe()) for _ in range(5)])
    assert results.count(True) == 1
    assert calls == ["e1"]


@pytest.mark.asyncio
async def test_content_key_without_event_id():
    d = ActionDispatcher()
    calls = []
    d.register(calls.append)

    await d.dispatch(Action(action="snipe", params={"token_address": "0x1"}))
    await d.dispatch(Action(action="snipe", params={"token_address": "0x1"}))
    await d.dispatch(Action(action="snipe", params={"token_address": "0x2"}))
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_window_is_bounded():
    d = ActionDispatcher(window=2)
    d.register(lambda a: None)
    for key in ("a", "b", "c"):
        await d.dispatch(snipe(key))
    assert not d.seen("a")
    assert d.seen("b") and d.seen("c")
    assert await d.dispatch(snipe("a"))


def test_invalid_window():
    with pytest.raises(ValueError):
        ActionDispatcher(window=0)

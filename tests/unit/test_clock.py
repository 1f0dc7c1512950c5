"""
Unit tests for the clock implementations.
"""

import asyncio

import pytest

from tweet_pipeline.clock import ManualClock, MonotonicClock


@pytest.mark.asyncio
async def test_manual_clock_wakes_due_sleepers_in_order():
    clock = ManualClock()
    woke = []

    async def sleeper(name, deadline):
        await clock.sleep_until(deadline)
        woke.append(name)

    tasks = [
        asyncio.create_task(sleeper("late", 2.0)),
        asyncio.create_task(sleeper("early", 1.0)),
    ]
    await asyncio.sleep(0)
    assert clock.pending_sleepers == 2

    clock.advance(1.0)
    await asyncio.sleep(0)
    assert woke == ["early"]

    clock.advance(5.0)
    await asyncio.gather(*tasks)
    assert woke == ["early", "late"]
    assert clock.now() == 6.0


@pytest.mark.asyncio
async def test_manual_clock_past_deadline_returns_immediately():
    clock = ManualClock(start=10.0)
    await clock.sleep_until(3.0)
    assert clock.pending_sleepers == 0


def test_manual_clock_rejects_negative_advance():
    with pytest.raises(ValueError):
        ManualClock().advance(-1)


@pytest.mark.asyncio
async def test_monotonic_clock_sleeps():
    clock = MonotonicClock()
    start = clock.now()
    await clock.sleep_until(start + 0.01)
    assert clock.now() >= start + 0.01

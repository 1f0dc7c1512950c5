"""
Pytest configuration and fixtures for tweet-pipeline.

Provides cross-platform event loop configuration, an in-memory broker and
test-friendly settings.
"""

import asyncio
import sys
from typing import Any, Awaitable, Callable

import pytest

from tweet_pipeline.broker import Ack
from tweet_pipeline.errors import ConnError, PublishError
from tweet_pipeline.settings import PipelineSettings

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeDelivery:
    """Stand-in for broker.Delivery that records how it was settled."""

    def __init__(self, queue: str, message_id: str, body: Any, redeliveries: int = 0):
        self.queue = queue
        self.message_id = message_id
        self.body = body
        self.raw = body
        self.redeliveries = redeliveries
        self.acked = False
        self.nacked: list[bool] = []
        self.settled = False

    async def ack(self) -> None:
        self.acked = True
        self.settled = True

    async def nack(self, requeue: bool = True) -> None:
        self.nacked.append(requeue)
        self.settled = True


class FakeBroker:
    """In-memory broker implementing the coordinator's Broker protocol."""

    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []
        self.publish_calls = 0
        self.handlers: dict[str, Callable[[Any], Awaitable[None]]] = {}
        self.fail_times = 0
        self.always_fail = False
        self.closed = False
        self._connected = asyncio.Event()
        self._connected.set()
        self._seq = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def disconnect(self) -> None:
        self._connected.clear()

    def reconnect(self) -> None:
        self._connected.set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def publish(self, queue: str, message: dict) -> Ack:
        self.publish_calls += 1
        await asyncio.sleep(0)
        if not self.connected:
            raise ConnError("broker disconnected")
        if self.always_fail:
            raise PublishError("broker busy")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise PublishError("broker busy")
        self._seq += 1
        self.published.append((queue, message))
        return Ack(queue, f"{self._seq}-0")

    async def consume(self, queue: str, handler) -> None:
        self.handlers[queue] = handler

    async def deliver(self, queue: str, body: Any, redeliveries: int = 0) -> FakeDelivery:
        self._seq += 1
        delivery = FakeDelivery(queue, f"{self._seq}-0", body, redeliveries)
        await self.handlers[queue](delivery)
        return delivery

    async def close(self) -> None:
        self.closed = True
        self._connected.clear()

    def published_on(self, queue: str) -> list[dict]:
        return [m for q, m in self.published if q == queue]


class CollectDLQ:
    """Dead-letter sink that keeps records in memory."""

    def __init__(self) -> None:
        self.records = []

    async def save(self, record) -> None:
        self.records.append(record)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def dlq():
    return CollectDLQ()


@pytest.fixture
def settings(tmp_path):
    """Fast retries and short grace periods for real-time tests."""
    return PipelineSettings(
        pipeline_id="test",
        buffer_capacity=10,
        max_retry_attempts=3,
        initial_retry_delay_ms=1,
        max_retry_delay_ms=5,
        publish_timeout_sec=1.0,
        shutdown_grace_sec=1.0,
        dlq_path=str(tmp_path / "dlq.ndjson"),
    )


@pytest.fixture
def raw_tweet():
    return {
        "source": "Twitter",
        "payload": {"text": "0xAbC... announced"},
        "createdAt": 1700000000,
    }

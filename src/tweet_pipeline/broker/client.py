"""
Broker client over Redis Streams.

Each queue is a stream read through a consumer group, which gives manual
acknowledgement (XACK) and redelivery of unacknowledged messages after a
consumer restart. Message bodies are JSON in a single ``body`` field.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import ResponseError

from ..coordinator.policy import RetryPolicy
from ..errors import ConnError, PipelineError, map_broker_error
from ..metrics.registry import metrics_registry as m


@dataclass(frozen=True)
class Ack:
    """Broker acknowledgement of a publish."""

    queue: str
    message_id: str


@dataclass(frozen=True)
class BrokerConfig:
    url: str = "redis://localhost:6379/0"
    consumer_group: str = "tweet-pipeline"
    consumer_name: str = "worker-1"
    reconnect_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(initial_backoff_ms=500, max_backoff_ms=30_000)
    )
    read_count: int = 10
    block_ms: int = 1000
    stream_maxlen: int | None = None
    dead_suffix: str = ".dead"


class Delivery:
    """One consumed message awaiting ``ack()`` or ``nack()``."""

    def __init__(
        self,
        client: "BrokerClient",
        queue: str,
        message_id: str,
        raw: str,
        body: Any,
        redeliveries: int = 0,
    ):
        self._client = client
        self.queue = queue
        self.message_id = message_id
        self.raw = raw
        self.body = body
        self.redeliveries = redeliveries
        self.settled = False

    async def ack(self) -> None:
        if self.settled:
            return
        await self._client._ack(self.queue, self.message_id)
        self.settled = True

    async def nack(self, requeue: bool = True) -> None:
        """Reject the message: re-append it to the queue, or move it to the dead stream."""
        if self.settled:
            return
        if requeue:
            await self._client._append(
                self.queue, {"body": self.raw, "redeliveries": self.redeliveries + 1}
            )
        else:
            await self._client._append(
                self.queue + self._client.config.dead_suffix,
                {"body": self.raw, "redeliveries": self.redeliveries, "origin_id": self.message_id},
            )
            logger.warning(f"Message {self.message_id} on {self.queue} moved to dead stream")
        await self._client._ack(self.queue, self.message_id)
        self.settled = True


Handler = Callable[[Delivery], Awaitable[None]]
RedisFactory = Callable[[str], Any]


def _default_factory(url: str) -> Any:
    return aioredis.from_url(url, decode_responses=True)


class BrokerClient:
    """Owned broker connection with automatic reconnect.

    Publishes while disconnected fail fast with ``ConnError`` so the caller can
    buffer; consumers suspend until the connection is back.

    Example:
        broker = BrokerClient(BrokerConfig(url="redis://localhost:6379/0"))
        await broker.connect()
        ack = await broker.publish("tweet_events", {"text": "gm"})
        await broker.consume("actions_to_take", handler)
    """

    def __init__(self, config: Optional[BrokerConfig] = None, *, redis_factory=None):
        self.config = config or BrokerConfig()
        self._factory: RedisFactory = redis_factory or _default_factory
        self._redis: Any = None
        self._connected = asyncio.Event()
        self._closed = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._consumers: dict[str, asyncio.Task] = {}
        self.reconnects = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    # ---------- connection ----------

    async def connect(self) -> "BrokerClient":
        """Open the connection.

        Raises:
            ConnError: broker unreachable
        """
        self._closed = False
        await self._open()
        logger.info(f"Broker connected ({self.config.url})")
        return self

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """Force-close: stop consumers and the reconnect loop, drop the connection."""
        self._closed = True
        self._connected.clear()
        tasks = list(self._consumers.values())
        if self._reconnect_task is not None:
            tasks.append(self._reconnect_task)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumers.clear()
        self._reconnect_task = None
        await self._drop_connection()
        logger.info("Broker connection closed")

    async def _open(self) -> None:
        r = self._factory(self.config.url)
        try:
            await r.ping()
            for queue in self._consumers:
                await self._ensure_group(r, queue)
        except Exception as exc:
            await _quiet_close(r)
            raise ConnError(f"broker unreachable at {self.config.url}: {exc}") from exc
        self._redis = r
        self._connected.set()

    async def _drop_connection(self) -> None:
        r, self._redis = self._redis, None
        if r is not None:
            await _quiet_close(r)

    def _connection_lost(self, exc: Exception) -> None:
        if self._closed or not self._connected.is_set():
            return
        self._connected.clear()
        logger.warning(f"Broker connection lost: {exc}")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        await self._drop_connection()
        policy = self.config.reconnect_policy
        attempt = 0
        while not self._closed:
            attempt += 1
            delay = policy.next_backoff_sec(attempt)
            logger.info(f"Reconnecting to broker in {delay:.2f}s (attempt {attempt})")
            await asyncio.sleep(delay)
            try:
                await self._open()
            except ConnError as exc:
                m.broker_reconnects_total.labels("failure").inc()
                logger.warning(f"Reconnect attempt {attempt} failed: {exc}")
                continue
            self.reconnects += 1
            m.broker_reconnects_total.labels("success").inc()
            logger.info(f"Broker reconnected after {attempt} attempt(s)")
            return

    # ---------- publish ----------

    async def publish(self, queue: str, message: dict[str, Any]) -> Ack:
        """Append ``message`` to ``queue``.

        Raises:
            ConnError: not connected (fail fast, caller buffers)
            PublishError: transient broker failure
        """
        body = json.dumps(message, default=str)
        msg_id = await self._append(queue, {"body": body})
        return Ack(queue, msg_id)

    async def _append(self, queue: str, fields: dict[str, Any]) -> str:
        r = self._redis
        if r is None or not self._connected.is_set():
            raise ConnError("broker disconnected")
        kwargs: dict[str, Any] = {}
        if self.config.stream_maxlen:
            kwargs = {"maxlen": self.config.stream_maxlen, "approximate": True}
        try:
            return str(await r.xadd(queue, fields, **kwargs))
        except Exception as exc:
            raise self._translate(exc) from exc

    async def _ack(self, queue: str, message_id: str) -> None:
        r = self._redis
        if r is None or not self._connected.is_set():
            raise ConnError("broker disconnected")
        try:
            await r.xack(queue, self.config.consumer_group, message_id)
        except Exception as exc:
            raise self._translate(exc) from exc

    def _translate(self, exc: Exception) -> Exception:
        err = map_broker_error(exc)
        if isinstance(err, ConnError):
            self._connection_lost(err)
        return err

    # ---------- consume ----------

    async def consume(self, queue: str, handler: Handler) -> None:
        """Register ``handler`` for every message delivered on ``queue``.

        The handler owns acknowledgement. Messages this consumer left unacked
        in an earlier run are delivered first.
        """
        if queue in self._consumers:
            raise ValueError(f"already consuming {queue}")
        if self._redis is not None and self.connected:
            try:
                await self._ensure_group(self._redis, queue)
            except Exception as exc:
                raise self._translate(exc) from exc
        self._consumers[queue] = asyncio.create_task(
            self._consume_loop(queue, handler), name=f"consume:{queue}"
        )
        logger.info(f"Consuming {queue} as {self.config.consumer_group}/{self.config.consumer_name}")

    async def _ensure_group(self, r: Any, queue: str) -> None:
        try:
            await r.xgroup_create(queue, self.config.consumer_group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _consume_loop(self, queue: str, handler: Handler) -> None:
        cursor = "0"  # replay our own pending entries first, then switch to new ones
        while not self._closed:
            if not self.connected:
                await self._connected.wait()
                cursor = "0"
                continue
            try:
                resp = await self._redis.xreadgroup(
                    self.config.consumer_group,
                    self.config.consumer_name,
                    {queue: cursor},
                    count=self.config.read_count,
                    block=None if cursor != ">" else self.config.block_ms,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                err = self._translate(exc)
                if not isinstance(err, ConnError):
                    logger.warning(f"Read from {queue} failed: {err}")
                    await asyncio.sleep(self.config.block_ms / 1000)
                continue

            entries = _entries(resp)
            if cursor != ">" and not entries:
                cursor = ">"
                continue

            for msg_id, fields in entries:
                if cursor != ">":
                    cursor = msg_id
                try:
                    if not fields:
                        # trimmed from the stream while pending
                        await self._ack(queue, msg_id)
                        continue
                    await self._dispatch(queue, msg_id, fields, handler)
                except PipelineError as exc:
                    # still pending in the group; replayed after reconnect
                    logger.warning(f"Could not settle {msg_id} on {queue}: {exc}")
                    break

    async def _dispatch(
        self, queue: str, msg_id: str, fields: dict[str, Any], handler: Handler
    ) -> None:
        raw = fields.get("body", "")
        try:
            body = json.loads(raw)
        except (TypeError, ValueError):
            body = None
        delivery = Delivery(
            self, queue, msg_id, raw, body, redeliveries=int(fields.get("redeliveries", 0) or 0)
        )
        if body is None:
            logger.warning(f"Undecodable message {msg_id} on {queue}")
            await delivery.nack(requeue=False)
            return
        try:
            await handler(delivery)
        except Exception as exc:
            logger.exception(f"Handler for {queue} failed on {msg_id}: {exc}")
            if not delivery.settled:
                await delivery.nack(requeue=True)


def _entries(resp: Any) -> list[tuple[str, dict[str, Any]]]:
    """Normalize XREADGROUP replies (RESP2 list or RESP3 dict) to (id, fields) pairs."""
    if not resp:
        return []
    streams = resp.items() if isinstance(resp, dict) else resp
    out: list[tuple[str, dict[str, Any]]] = []
    for _, messages in streams:
        if messages and messages[0] and isinstance(messages[0][0], (list, tuple)):
            # RESP3 wraps the entry list one level deeper
            messages = messages[0]
        for msg_id, fields in messages:
            out.append((str(msg_id), dict(fields or {})))
    return out


async def _quiet_close(r: Any) -> None:
    try:
        await r.aclose()
    except Exception as exc:
        logger.debug(f"Ignoring error while closing broker connection: {exc}")

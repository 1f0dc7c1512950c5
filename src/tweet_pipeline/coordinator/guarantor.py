"""
Delivery Guarantor.

Per-event state machine::

    pending -> in_flight -> delivered
                         -> retrying -> in_flight ...
                         -> dead_lettered      (attempts exhausted)
                         -> pending            (broker disconnected, not counted)

Retries are not slept on here: a failed attempt records ``next_retry_at`` on
the injected clock and the owner polls ``due()`` / ``next_wake()``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from loguru import logger

from ..clock import Clock, MonotonicClock
from ..errors import ConnError, EventValidationError, PublishError
from ..metrics.registry import metrics_registry as m
from ..models import Event
from .dlq import DLQRecord, describe_error
from .policy import RetryPolicy
from .transitions import TransitionBus, TransitionEvent
from .types import DeadLetterSink, DeliveryState, Publisher

if TYPE_CHECKING:
    from ..broker.client import Ack


@dataclass
class DeliveryAttempt:
    event: Event
    state: DeliveryState = DeliveryState.PENDING
    attempt_count: int = 0
    last_error: str | None = None
    next_retry_at: float | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def event_id(self) -> str:
        return self.event.id


@dataclass(frozen=True)
class DeliveryOutcome:
    event_id: str
    state: DeliveryState
    attempt_count: int
    ack: Optional["Ack"] = None
    error: str | None = None
    next_retry_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (DeliveryState.DELIVERED, DeliveryState.DEAD_LETTERED)


class DeliveryGuarantor:
    """Ensures every tracked event is either published or dead-lettered."""

    def __init__(
        self,
        publisher: Publisher,
        queue: str,
        dead_letters: DeadLetterSink,
        *,
        policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        bus: Optional[TransitionBus] = None,
        publish_timeout: float | None = None,
        pipeline_id: str = "default",
    ):
        self._publisher = publisher
        self._queue = queue
        self._dlq = dead_letters
        self._policy = policy or RetryPolicy()
        self._clock = clock or MonotonicClock()
        self._bus = bus or TransitionBus()
        self._timeout = publish_timeout
        self._pid = pipeline_id

        self._records: dict[str, DeliveryAttempt] = {}
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self.delivered = 0
        self.dead_lettered = 0

    # ---------- inspection ----------

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def pending(self) -> int:
        return sum(
            1
            for r in self._records.values()
            if r.state in (DeliveryState.PENDING, DeliveryState.RETRYING)
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, event_id: str) -> Optional[DeliveryAttempt]:
        return self._records.get(event_id)

    def records(self) -> list[DeliveryAttempt]:
        return list(self._records.values())

    def due(self) -> list[str]:
        """Ids of retrying events whose backoff has elapsed, earliest first."""
        now = self._clock.now()
        ready = [
            r
            for r in self._records.values()
            if r.state is DeliveryState.RETRYING
            and r.next_retry_at is not None
            and r.next_retry_at <= now
        ]
        ready.sort(key=lambda r: r.next_retry_at)
        return [r.event_id for r in ready]

    def next_wake(self) -> float | None:
        """Earliest scheduled retry, or None when nothing is waiting."""
        times = [
            r.next_retry_at
            for r in self._records.values()
            if r.state is DeliveryState.RETRYING and r.next_retry_at is not None
        ]
        return min(times) if times else None

    # ---------- lifecycle ----------

    async def track(self, event: Event) -> DeliveryAttempt:
        """Start guaranteeing ``event`` (idempotent for the same event)."""
        rec = self._records.get(event.id)
        if rec is not None:
            if rec.event != event:
                raise EventValidationError(f"duplicate event id {event.id}")
            return rec
        rec = DeliveryAttempt(event)
        self._records[event.id] = rec
        await self._emit(rec, None)
        return rec

    async def attempt(self, event_id: str) -> DeliveryOutcome:
        """Run one publish attempt for a tracked event.

        Raises:
            KeyError: event is not tracked
            RuntimeError: an attempt for this event is already in flight
        """
        rec = self._records[event_id]
        if rec.state is DeliveryState.IN_FLIGHT:
            raise RuntimeError(f"attempt for {event_id} already in flight")

        prev = rec.state
        rec.state = DeliveryState.IN_FLIGHT
        rec.next_retry_at = None
        self._in_flight += 1
        self._idle.clear()
        await self._emit(rec, prev)

        t0 = time.perf_counter()
        try:
            ack = await self._publish(rec.event)
        except ConnError as exc:
            self._observe_latency(t0, "disconnected")
            return await self._on_disconnected(rec, exc)
        except asyncio.CancelledError:
            self._settle()
            rec.state = DeliveryState.PENDING
            raise
        except Exception as exc:
            self._observe_latency(t0, "error")
            return await self._on_failure(rec, exc)

        self._observe_latency(t0, "ok")
        self._settle()
        del self._records[event_id]
        rec.state = DeliveryState.DELIVERED
        self.delivered += 1
        await self._emit(rec, DeliveryState.IN_FLIGHT)
        logger.debug(f"Delivered {event_id} after {rec.attempt_count + 1} attempt(s)")
        return DeliveryOutcome(event_id, rec.state, rec.attempt_count, ack=ack)

    async def dead_letter(
        self, event_id: str, reason: str, error: BaseException | str | None = None
    ) -> DeliveryOutcome:
        """Force an event out of the machine (e.g. on shutdown) with a DLQ record."""
        rec = self._records[event_id]
        if error is not None:
            rec.last_error = describe_error(error)
            rec.errors.append(rec.last_error)
        return await self._to_dead_letter(rec, reason)

    def forget(self, event_id: str) -> Optional[DeliveryAttempt]:
        """Stop tracking without a dead-letter record; the caller takes the event back."""
        rec = self._records.get(event_id)
        if rec is None:
            return None
        if rec.state is DeliveryState.IN_FLIGHT:
            raise RuntimeError(f"cannot forget {event_id} while in flight")
        del self._records[event_id]
        m.delivery_pending.labels(self._pid).set(self.pending)
        logger.debug(f"Released {event_id} back to caller after {rec.attempt_count} attempt(s)")
        return rec

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no attempt is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ---------- internals ----------

    async def _publish(self, event: Event) -> "Ack":
        coro = self._publisher.publish(self._queue, event.to_wire())
        if self._timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, self._timeout)
        except asyncio.TimeoutError as exc:
            raise PublishError(f"publish timed out after {self._timeout}s") from exc

    async def _on_disconnected(self, rec: DeliveryAttempt, exc: ConnError) -> DeliveryOutcome:
        self._settle()
        rec.state = DeliveryState.PENDING
        rec.last_error = describe_error(exc)
        await self._emit(rec, DeliveryState.IN_FLIGHT, rec.last_error)
        logger.info(f"Broker unavailable, {rec.event_id} returned for buffering")
        return DeliveryOutcome(rec.event_id, rec.state, rec.attempt_count, error=rec.last_error)

    async def _on_failure(self, rec: DeliveryAttempt, exc: Exception) -> DeliveryOutcome:
        self._settle()
        rec.attempt_count += 1
        rec.last_error = describe_error(exc)
        rec.errors.append(rec.last_error)

        if not self._policy.classify_retryable(exc):
            logger.error(f"Non-retryable publish error for {rec.event_id}: {rec.last_error}")
            return await self._to_dead_letter(rec, "not_retryable")
        if rec.attempt_count >= self._policy.max_attempts:
            return await self._to_dead_letter(rec, "retries_exhausted")

        delay = self._policy.next_backoff_sec(rec.attempt_count)
        rec.next_retry_at = self._clock.now() + delay
        rec.state = DeliveryState.RETRYING
        await self._emit(rec, DeliveryState.IN_FLIGHT, rec.last_error)
        logger.warning(
            f"Publish failed for {rec.event_id} "
            f"(attempt {rec.attempt_count}/{self._policy.max_attempts}): {rec.last_error}; "
            f"retry in {delay:.3f}s"
        )
        return DeliveryOutcome(
            rec.event_id,
            rec.state,
            rec.attempt_count,
            error=rec.last_error,
            next_retry_at=rec.next_retry_at,
        )

    async def _to_dead_letter(self, rec: DeliveryAttempt, reason: str) -> DeliveryOutcome:
        prev = rec.state
        record = DLQRecord.from_failure(
            rec.event,
            rec.last_error,
            attempt_count=rec.attempt_count,
            errors=rec.errors,
            reason=reason,
        )
        try:
            await self._dlq.save(record)
        except Exception as exc:
            # the record must survive somewhere
            logger.error(f"Dead-letter sink failed ({exc}); record: {record.to_json()}")

        self._records.pop(rec.event_id, None)
        rec.state = DeliveryState.DEAD_LETTERED
        self.dead_lettered += 1
        m.dead_lettered_total.labels(self._pid, reason).inc()
        await self._emit(rec, prev, rec.last_error)
        logger.error(
            f"Dead-lettered {rec.event_id} after {rec.attempt_count} attempt(s) "
            f"({reason}): {rec.last_error}"
        )
        return DeliveryOutcome(rec.event_id, rec.state, rec.attempt_count, error=rec.last_error)

    def _settle(self) -> None:
        self._in_flight -= 1
        if self._in_flight == 0:
            self._idle.set()

    def _observe_latency(self, t0: float, outcome: str) -> None:
        m.publish_latency_ms.labels(self._pid, outcome).observe((time.perf_counter() - t0) * 1000)

    async def _emit(
        self, rec: DeliveryAttempt, previous: Optional[DeliveryState], error: str | None = None
    ) -> None:
        pending, in_flight = self.pending, self._in_flight
        m.delivery_transitions_total.labels(self._pid, rec.state.value).inc()
        m.delivery_pending.labels(self._pid).set(pending)
        m.delivery_in_flight.labels(self._pid).set(in_flight)
        logger.debug(
            f"{rec.event_id}: {previous.value if previous else '-'} -> {rec.state.value} "
            f"(pending={pending} in_flight={in_flight} dead_lettered={self.dead_lettered})"
        )
        await self._bus.publish(
            TransitionEvent(
                event_id=rec.event_id,
                state=rec.state,
                previous=previous,
                attempt_count=rec.attempt_count,
                pending=pending,
                in_flight=in_flight,
                dead_lettered=self.dead_lettered,
                error=error,
            )
        )

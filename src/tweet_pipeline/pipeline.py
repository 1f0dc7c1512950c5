"""
Pipeline Coordinator.

Producer -> IngressBuffer -> publish loop -> DeliveryGuarantor -> broker
(``tweet_events``), and broker (``actions_to_take``) -> ActionDispatcher ->
callbacks. Optionally runs an analysis stage that turns ingress messages
into Actions with a caller-supplied detector.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

from loguru import logger

from .broker.client import Delivery
from .clock import Clock, MonotonicClock
from .coordinator.buffer import IngressBuffer
from .coordinator.dispatcher import ActionDispatcher
from .coordinator.dlq import DeadLetterQueue
from .coordinator.guarantor import DeliveryGuarantor
from .coordinator.policy import RetryPolicy
from .coordinator.transitions import TransitionBus
from .coordinator.types import (
    ActionCallback,
    Broker,
    DeadLetterSink,
    DeliveryState,
    Detector,
)
from .errors import (
    CapacityExceededError,
    ConnError,
    EventValidationError,
    PipelineError,
    PublishError,
)
from .metrics.registry import metrics_registry as m
from .models import Event, parse_action, parse_event
from .settings import PipelineSettings


@dataclass(frozen=True)
class PipelineHealth:
    accepting: bool
    broker_connected: bool
    buffer_size: int
    buffer_capacity: int
    buffer_evicted: int
    pending: int
    in_flight: int
    delivered: int
    dead_lettered: int
    actions_dispatched: int
    workers_alive: int


class PipelineCoordinator:
    """Moves events to the broker with at-least-once delivery and dispatches Actions.

    Example:
        broker = await BrokerClient(settings.broker_config()).connect()
        async with PipelineCoordinator(broker, settings=settings) as coord:
            coord.on_action(place_order)
            event_id = await coord.submit(raw_tweet)
    """

    def __init__(
        self,
        broker: Broker,
        *,
        settings: Optional[PipelineSettings] = None,
        dead_letters: Optional[DeadLetterSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        detector: Optional[Detector] = None,
    ):
        s = settings or PipelineSettings()
        self._s = s
        self._pid = s.pipeline_id
        self._broker = broker
        self._clock = clock or MonotonicClock()
        self._dlq = dead_letters or DeadLetterQueue(s.dlq_path)
        self._detector = detector

        self.transitions = TransitionBus()
        self._guarantor = DeliveryGuarantor(
            broker,
            s.ingress_queue,
            self._dlq,
            policy=retry_policy or s.retry_policy(),
            clock=self._clock,
            bus=self.transitions,
            publish_timeout=s.publish_timeout_sec,
            pipeline_id=self._pid,
        )
        self._buffer: Optional[IngressBuffer] = None
        if s.buffer_enabled:
            self._buffer = IngressBuffer(
                s.buffer_capacity,
                on_evict=self._on_evict,
                on_high=self._on_backpressure_high,
                on_low=self._on_backpressure_low,
            )
        self._dispatcher = ActionDispatcher(window=s.dedupe_window, pipeline_id=self._pid)

        self._action_sem = asyncio.Semaphore(s.max_concurrent_actions)
        self._analysis_sem = asyncio.Semaphore(s.max_concurrent_analysis)
        self._wakeup = asyncio.Event()
        self._attempts: dict[str, asyncio.Task] = {}
        self._handlers: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._publisher_task: Optional[asyncio.Task] = None
        self._accepting = False
        self._stopped = False

    # ---------- properties ----------

    @property
    def buffer(self) -> Optional[IngressBuffer]:
        return self._buffer

    @property
    def guarantor(self) -> DeliveryGuarantor:
        return self._guarantor

    @property
    def dispatcher(self) -> ActionDispatcher:
        return self._dispatcher

    # ---------- lifecycle ----------

    async def __aenter__(self) -> "PipelineCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop(drain=True)

    async def start(self) -> None:
        if self._publisher_task is not None:
            return
        self._accepting = True
        self._stopped = False
        self._publisher_task = asyncio.create_task(self._publish_loop(), name="publish-loop")
        await self._broker.consume(self._s.action_queue, self._on_action_delivery)
        if self._detector is not None:
            await self._broker.consume(self._s.ingress_queue, self._on_event_delivery)
        logger.info(
            f"Pipeline {self._pid} started "
            f"(buffer={'on' if self._buffer is not None else 'off'}, analysis={'on' if self._detector is not None else 'off'})"
        )

    async def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop accepting, drain the buffer within the grace period, then force-close the broker.

        Events still held when the grace period ends are dead-lettered with
        reason ``shutdown``.
        """
        if self._stopped:
            return
        self._stopped = True
        self._accepting = False
        grace = self._s.shutdown_grace_sec if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace

        if drain and self._publisher_task is not None:
            try:
                await asyncio.wait_for(self._until_drained(), grace)
            except asyncio.TimeoutError:
                logger.warning(f"Drain did not finish within {grace}s ({len(self._guarantor)} held)")

        if self._publisher_task is not None:
            self._publisher_task.cancel()
            await asyncio.gather(self._publisher_task, return_exceptions=True)
            self._publisher_task = None

        remaining = max(0.0, deadline - loop.time())
        await self._guarantor.wait_idle(remaining)
        for t in list(self._attempts.values()):
            t.cancel()
        await asyncio.gather(*self._attempts.values(), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for event_id in [e.id for e in self._held_events()]:
            if event_id in self._guarantor:
                await self._guarantor.dead_letter(event_id, "shutdown", "pipeline stopped")
            if self._buffer is not None:
                self._buffer.release(event_id)
        self._track_buffer_size()

        remaining = max(0.0, deadline - loop.time())
        if self._handlers:
            _, still_running = await asyncio.wait(set(self._handlers), timeout=remaining)
            for t in still_running:
                t.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        await self._broker.close()
        logger.info(
            f"Pipeline {self._pid} stopped "
            f"(delivered={self._guarantor.delivered} dead_lettered={self._guarantor.dead_lettered})"
        )

    # ---------- public API ----------

    async def submit(self, raw: Any) -> str:
        """Validate and enqueue an event; returns its id.

        Raises:
            EventValidationError: malformed or duplicate event
            PipelineError: coordinator stopped
            ConnError/PublishError: only when buffering is disabled
        """
        if self._stopped:
            raise PipelineError("pipeline is stopped")
        event = parse_event(raw)
        if event.id in self._guarantor or (self._buffer is not None and event.id in self._buffer):
            raise EventValidationError(f"duplicate event id {event.id}")

        if self._buffer is None:
            return await self._submit_direct(event)

        await self._guarantor.track(event)
        self._buffer.push(event)
        self._track_buffer_size()
        self._wakeup.set()
        logger.debug(f"Accepted {event.id} from {event.source}")
        return event.id

    async def submit_many(self, raws: list[Any]) -> list[str]:
        return [await self.submit(r) for r in raws]

    def on_action(self, callback: ActionCallback) -> ActionCallback:
        """Register a callback invoked once per Action (usable as a decorator)."""
        self._dispatcher.register(callback)
        return callback

    def health(self) -> PipelineHealth:
        workers = [self._publisher_task] if self._publisher_task is not None else []
        return PipelineHealth(
            accepting=self._accepting,
            broker_connected=self._broker.connected,
            buffer_size=len(self._buffer) if self._buffer is not None else 0,
            buffer_capacity=self._buffer.capacity if self._buffer is not None else 0,
            buffer_evicted=self._buffer.evicted_count if self._buffer is not None else 0,
            pending=self._guarantor.pending,
            in_flight=self._guarantor.in_flight,
            delivered=self._guarantor.delivered,
            dead_lettered=self._guarantor.dead_lettered,
            actions_dispatched=self._dispatcher.dispatched,
            workers_alive=sum(1 for t in workers if not t.done()),
        )

    # ---------- publish path ----------

    async def _submit_direct(self, event: Event) -> str:
        await self._guarantor.track(event)
        outcome = await self._guarantor.attempt(event.id)
        if outcome.state is DeliveryState.DELIVERED:
            return event.id
        if outcome.state is not DeliveryState.DEAD_LETTERED:
            # caller takes the event back
            self._guarantor.forget(event.id)
        if outcome.state is DeliveryState.PENDING:
            raise ConnError(outcome.error or "broker disconnected")
        raise PublishError(outcome.error or "publish failed")

    async def _publish_loop(self) -> None:
        while True:
            if not self._broker.connected:
                await self._wait_for(self._broker.wait_connected())
                continue

            if self._buffer is not None:
                for event in self._buffer.drain():
                    if not self._broker.connected:
                        self._buffer.restore(event.id)
                        break
                    self._start_attempt(event.id)

            for event_id in self._guarantor.due():
                if event_id not in self._attempts:
                    self._start_attempt(event_id)

            wake = self._guarantor.next_wake()
            await self._wait_for(self._clock.sleep_until(wake) if wake is not None else None)

    async def _wait_for(self, other: Optional[Coroutine]) -> None:
        """Sleep until woken by a submit/attempt result, or ``other`` completes."""
        waiters = [asyncio.ensure_future(self._wakeup.wait())]
        if other is not None:
            waiters.append(asyncio.ensure_future(other))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
            self._wakeup.clear()

    def _start_attempt(self, event_id: str) -> None:
        task = asyncio.create_task(self._run_attempt(event_id), name=f"attempt:{event_id}")
        self._attempts[event_id] = task
        task.add_done_callback(lambda t, eid=event_id: self._attempt_done(eid, t))

    def _attempt_done(self, event_id: str, task: asyncio.Task) -> None:
        # a newer attempt may already own the slot
        if self._attempts.get(event_id) is task:
            del self._attempts[event_id]

    async def _run_attempt(self, event_id: str) -> None:
        if event_id not in self._guarantor:
            # dead-lettered (evicted) before the attempt started
            return
        try:
            outcome = await self._guarantor.attempt(event_id)
        except Exception as exc:
            logger.exception(f"Delivery attempt for {event_id} crashed: {exc}")
            if self._buffer is not None:
                self._buffer.restore(event_id)
            return
        finally:
            self._wakeup.set()

        if outcome.terminal:
            if self._buffer is not None:
                self._buffer.release(event_id)
                self._track_buffer_size()
        elif outcome.state is DeliveryState.PENDING:
            if self._buffer is None or not self._buffer.restore(event_id):
                await self._guarantor.dead_letter(event_id, "evicted", outcome.error)

    async def _until_drained(self) -> None:
        while len(self._guarantor) or self._attempts:
            await asyncio.sleep(0.01)

    def _held_events(self) -> list[Event]:
        held = {rec.event_id: rec.event for rec in self._guarantor.records()}
        if self._buffer is not None:
            for e in self._buffer.events():
                held.setdefault(e.id, e)
        return list(held.values())

    # ---------- buffer callbacks ----------

    def _on_evict(self, event: Event, err: CapacityExceededError, was_in_flight: bool) -> None:
        m.buffer_evictions_total.labels(self._pid).inc()
        self._track_buffer_size()
        if was_in_flight:
            # the guarantor still owns it; a failed attempt will dead-letter it
            return
        rec = self._guarantor.get(event.id)
        if rec is not None and rec.state is DeliveryState.PENDING:
            self._spawn_background(self._dead_letter_if_held(event.id, "evicted", err))

    async def _dead_letter_if_held(self, event_id: str, reason: str, err: Exception) -> None:
        if event_id in self._guarantor:
            await self._guarantor.dead_letter(event_id, reason, err)

    def _track_buffer_size(self) -> None:
        if self._buffer is not None:
            m.buffer_size.labels(self._pid).set(len(self._buffer))

    def _on_backpressure_high(self, size: int) -> None:
        logger.warning(f"Ingress buffer high watermark: {size}/{self._s.buffer_capacity}")

    def _on_backpressure_low(self, size: int) -> None:
        logger.info(f"Ingress buffer recovered: {size}/{self._s.buffer_capacity}")

    def _spawn_background(self, coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---------- consume path ----------

    async def _on_action_delivery(self, delivery: Delivery) -> None:
        await self._action_sem.acquire()
        self._spawn_handler(self._handle_action(delivery), self._action_sem)

    async def _on_event_delivery(self, delivery: Delivery) -> None:
        await self._analysis_sem.acquire()
        self._spawn_handler(self._analyze(delivery), self._analysis_sem)

    def _spawn_handler(self, coro: Coroutine, sem: asyncio.Semaphore) -> None:
        task = asyncio.create_task(coro)
        self._handlers.add(task)

        def _done(t: asyncio.Task) -> None:
            self._handlers.discard(t)
            sem.release()
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Handler task failed: {t.exception()!r}")

        task.add_done_callback(_done)

    async def _handle_action(self, delivery: Delivery) -> None:
        try:
            try:
                action = parse_action(delivery.body)
            except EventValidationError as exc:
                logger.warning(f"Malformed action {delivery.message_id}: {exc}")
                await delivery.nack(requeue=False)
                return
            await self._dispatcher.dispatch(action)
            await delivery.ack()
        except PipelineError as exc:
            # left pending on the broker; a redelivery is deduplicated
            logger.warning(f"Could not settle action {delivery.message_id}: {exc}")
        except Exception as exc:
            logger.exception(f"Action handler crashed on {delivery.message_id}: {exc}")
            await self._try_nack(delivery)

    async def _analyze(self, delivery: Delivery) -> None:
        try:
            try:
                event = parse_event(delivery.body)
            except EventValidationError as exc:
                logger.warning(f"Malformed event {delivery.message_id}: {exc}")
                await delivery.nack(requeue=False)
                return

            try:
                result = self._detector(event)
                if inspect.isawaitable(result):
                    result = await result
                action = parse_action(result) if result is not None else None
            except Exception as exc:
                requeue = self._may_requeue(delivery)
                logger.error(
                    f"Detector failed on {event.id} ({type(exc).__name__}: {exc}); "
                    f"{'requeued' if requeue else 'dead-lettered'}"
                )
                await delivery.nack(requeue=requeue)
                return

            if action is not None:
                if action.event_id is None:
                    action = action.model_copy(update={"event_id": event.id})
                await self._broker.publish(self._s.action_queue, action.to_wire())
                logger.info(f"Detected {action.action} for {event.id}")
            await delivery.ack()
        except PublishError as exc:
            logger.warning(f"Could not publish action for {delivery.message_id}: {exc}")
            await self._try_nack(delivery)
        except PipelineError as exc:
            logger.warning(f"Could not settle event {delivery.message_id}: {exc}")
        except Exception as exc:
            logger.exception(f"Analysis crashed on {delivery.message_id}: {exc}")
            await self._try_nack(delivery, requeue=self._may_requeue(delivery))

    def _may_requeue(self, delivery: Delivery) -> bool:
        return delivery.redeliveries + 1 < self._s.max_redeliveries

    async def _try_nack(self, delivery: Delivery, requeue: bool = True) -> None:
        try:
            await delivery.nack(requeue=requeue)
        except PipelineError as exc:
            logger.warning(f"Could not requeue {delivery.message_id}: {exc}")

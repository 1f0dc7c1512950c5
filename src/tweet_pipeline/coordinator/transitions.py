"""
Delivery state-transition feedback.

In-process pub/sub for observing every Event state change (pending,
in-flight, retrying, delivered, dead-lettered) together with the current
counters. Each coordinator owns its own bus.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from loguru import logger

from .types import DeliveryState


@dataclass(frozen=True)
class TransitionEvent:
    """Immutable state-transition notification.

    Attributes:
        event_id: Event whose state changed
        state: New state
        previous: Prior state (None when first tracked)
        attempt_count: Failed attempts so far
        pending: Events waiting for a publish attempt (incl. retrying)
        in_flight: Publish attempts currently outstanding
        dead_lettered: Total dead-lettered since start
        error: Last error text, if the transition was caused by one
    """

    event_id: str
    state: DeliveryState
    previous: Optional[DeliveryState]
    attempt_count: int
    pending: int
    in_flight: int
    dead_lettered: int
    error: str | None = None


class TransitionSubscriber(Protocol):
    async def __call__(self, event: TransitionEvent) -> None: ...


class TransitionBus:
    """Fan-out of transition events with error isolation.

    One subscriber's failure does not affect others. Best-effort delivery.

    Example:
        bus = TransitionBus()

        async def on_transition(evt: TransitionEvent):
            if evt.state is DeliveryState.DEAD_LETTERED:
                await page_someone(evt.event_id)

        bus.subscribe(on_transition)
    """

    def __init__(self) -> None:
        self._subs: list[TransitionSubscriber] = []

    def subscribe(self, callback: TransitionSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Transition subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: TransitionSubscriber) -> None:
        """No-op if callback not found (safe to call multiple times)."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Transition subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: TransitionEvent) -> None:
        if not self._subs:
            return

        # Iterate over copy to allow unsubscribe during iteration
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.debug(f"Transition subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from loguru import logger

from ..errors import CapacityExceededError, EventValidationError
from ..models import Event
from .types import SlotState

# (event, error, was_in_flight)
EvictionCallback = Callable[[Event, CapacityExceededError, bool], None]
WatermarkCallback = Callable[[int], None]


@dataclass
class BufferSlot:
    event: Event
    state: SlotState = SlotState.ENQUEUED


class IngressBuffer:
    """Bounded FIFO of events awaiting a successful publish.

    Never blocks: when full, ``push`` evicts the oldest slot (preferring one
    that is not in flight) and returns False. Slots stay in the buffer while
    in flight so a failed publish can ``restore`` them for the next ``drain``.

    With no slot in flight the buffer keeps exactly the ``capacity`` most
    recent events. While some are in flight an older in-flight slot can
    outlive a newer enqueued one.
    """

    def __init__(
        self,
        capacity: int = 10,
        high_watermark: int | None = None,
        low_watermark: int | None = None,
        *,
        on_evict: Optional[EvictionCallback] = None,
        on_high: Optional[WatermarkCallback] = None,
        on_low: Optional[WatermarkCallback] = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._capacity = capacity
        self._slots: OrderedDict[str, BufferSlot] = OrderedDict()

        self._high_wm = (
            high_watermark if high_watermark is not None else max(1, int(0.8 * capacity))
        )
        self._low_wm = low_watermark if low_watermark is not None else int(0.5 * capacity)
        self._on_evict = on_evict
        self._on_high = on_high
        self._on_low = on_low
        self._high_fired = False  # avoid duplicate signals

        self.evicted_count = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._slots)

    @property
    def enqueued(self) -> int:
        return sum(1 for s in self._slots.values() if s.state is SlotState.ENQUEUED)

    @property
    def in_flight(self) -> int:
        return sum(1 for s in self._slots.values() if s.state is SlotState.IN_FLIGHT)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def events(self) -> list[Event]:
        """Snapshot of held events, oldest first."""
        return [s.event for s in self._slots.values()]

    def push(self, event: Event) -> bool:
        """Append an event; returns False if an older slot had to be evicted."""
        if event.id in self._slots:
            raise EventValidationError(f"duplicate event id {event.id}")

        accepted = True
        if len(self._slots) >= self._capacity:
            self._evict_oldest()
            accepted = False

        self._slots[event.id] = BufferSlot(event)
        self._maybe_signal_high()
        return accepted

    def drain(self) -> Iterator[Event]:
        """Lazily yield enqueued events in FIFO order, marking each in flight.

        Re-evaluated on every step, so events pushed while draining are picked
        up, and a fresh ``drain()`` after a failure yields restored slots again.
        """
        while True:
            slot = next(
                (s for s in self._slots.values() if s.state is SlotState.ENQUEUED), None
            )
            if slot is None:
                return
            slot.state = SlotState.IN_FLIGHT
            yield slot.event

    def restore(self, event_id: str) -> bool:
        """Put an in-flight slot back in the queue after a failed publish."""
        slot = self._slots.get(event_id)
        if slot is None:
            return False
        slot.state = SlotState.ENQUEUED
        return True

    def release(self, event_id: str) -> Optional[Event]:
        """Drop a slot once its event is delivered (or terminally dead-lettered)."""
        slot = self._slots.pop(event_id, None)
        if slot is None:
            return None
        slot.state = SlotState.RELEASED
        self._maybe_signal_low()
        return slot.event

    def _evict_oldest(self) -> None:
        victim = next(
            (s for s in self._slots.values() if s.state is SlotState.ENQUEUED),
            next(iter(self._slots.values())),
        )
        del self._slots[victim.event.id]
        was_in_flight = victim.state is SlotState.IN_FLIGHT
        victim.state = SlotState.EVICTED
        self.evicted_count += 1

        err = CapacityExceededError(self._capacity, victim.event.id)
        logger.warning(f"Ingress buffer overflow: event {victim.event.id} lost ({err})")
        if self._on_evict:
            self._on_evict(victim.event, err, was_in_flight)

    def _maybe_signal_high(self) -> None:
        if not self._high_fired and len(self._slots) >= self._high_wm:
            self._high_fired = True
            if self._on_high:
                self._on_high(len(self._slots))

    def _maybe_signal_low(self) -> None:
        if self._high_fired and len(self._slots) <= self._low_wm:
            self._high_fired = False
            if self._on_low:
                self._on_low(len(self._slots))

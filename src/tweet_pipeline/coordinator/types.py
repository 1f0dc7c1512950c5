from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Protocol, Union

if TYPE_CHECKING:
    from ..broker.client import Ack
    from ..models import Action, Event
    from .dlq import DLQRecord

# Callbacks may be plain functions or coroutines
ActionCallback = Callable[["Action"], Union[None, Awaitable[None]]]
Detector = Callable[["Event"], Union[Optional["Action"], Awaitable[Optional["Action"]]]]


class DeliveryState(str, Enum):
    """Per-event delivery lifecycle."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


class SlotState(str, Enum):
    """Ingress buffer slot lifecycle."""

    ENQUEUED = "enqueued"
    IN_FLIGHT = "in_flight"
    RELEASED = "released"
    EVICTED = "evicted"


class Publisher(Protocol):
    """Anything that can put one message on a named queue."""

    async def publish(self, queue: str, message: dict[str, Any]) -> "Ack": ...


class DeadLetterSink(Protocol):
    """Terminal store for events that could not be delivered."""

    async def save(self, record: "DLQRecord") -> None: ...


class Broker(Publisher, Protocol):
    """Broker surface the coordinator depends on (see ``broker.BrokerClient``)."""

    @property
    def connected(self) -> bool: ...

    async def wait_connected(self, timeout: float | None = None) -> bool: ...

    async def consume(self, queue: str, handler: Callable[[Any], Awaitable[None]]) -> None: ...

    async def close(self) -> None: ...

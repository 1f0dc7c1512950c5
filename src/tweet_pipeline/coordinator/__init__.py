"""Delivery building blocks

Pieces the PipelineCoordinator is assembled from:
- IngressBuffer (bounded FIFO, oldest-drop eviction, watermarks)
- RetryPolicy with capped exponential backoff
- DeliveryGuarantor per-event state machine
- ActionDispatcher with event-id idempotency
- TransitionBus for state-change feedback
- Dead Letter Queue (file-based NDJSON)
"""

from .types import DeliveryState, SlotState, Publisher, DeadLetterSink, Broker
from .policy import RetryPolicy, default_retry_classifier
from .buffer import IngressBuffer, BufferSlot
from .dlq import DeadLetterQueue, DLQRecord
from .transitions import TransitionBus, TransitionEvent
from .guarantor import DeliveryGuarantor, DeliveryAttempt, DeliveryOutcome
from .dispatcher import ActionDispatcher

__all__ = [
    # types
    "DeliveryState",
    "SlotState",
    "Publisher",
    "DeadLetterSink",
    "Broker",
    "BufferSlot",
    "DeliveryAttempt",
    "DeliveryOutcome",
    "DLQRecord",
    "TransitionEvent",
    # policies
    "RetryPolicy",
    "default_retry_classifier",
    # runtime
    "IngressBuffer",
    "DeliveryGuarantor",
    "ActionDispatcher",
    "TransitionBus",
    # tooling
    "DeadLetterQueue",
]

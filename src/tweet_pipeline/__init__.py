"""
tweet-pipeline

Message-driven pipeline coordinator between a tweet stream ingester and a
downstream sentiment/token detector, bridged by Redis Streams.

Usage:
    from tweet_pipeline import BrokerClient, PipelineCoordinator, get_settings

    settings = get_settings()
    broker = await BrokerClient(settings.broker_config()).connect()
    async with PipelineCoordinator(broker, settings=settings) as coord:
        coord.on_action(handle_action)
        await coord.submit({"source": "Twitter", "payload": {...}, "createdAt": 1700000000})
"""

from .broker import Ack, BrokerClient, BrokerConfig, Delivery
from .clock import Clock, ManualClock, MonotonicClock
from .errors import (
    CapacityExceededError,
    ConnError,
    EventValidationError,
    PipelineError,
    PublishError,
)
from .models import Action, Event, TweetMessage
from .pipeline import PipelineCoordinator, PipelineHealth
from .settings import PipelineSettings, get_settings

__version__ = "0.1.0"
__all__ = [
    "Ack",
    "BrokerClient",
    "BrokerConfig",
    "Delivery",
    "Clock",
    "ManualClock",
    "MonotonicClock",
    "PipelineError",
    "EventValidationError",
    "ConnError",
    "PublishError",
    "CapacityExceededError",
    "Action",
    "Event",
    "TweetMessage",
    "PipelineCoordinator",
    "PipelineHealth",
    "PipelineSettings",
    "get_settings",
]

"""Broker client: durable publish/consume with manual acknowledgement."""

from .client import Ack, BrokerClient, BrokerConfig, Delivery, Handler

__all__ = ["Ack", "BrokerClient", "BrokerConfig", "Delivery", "Handler"]

"""Reliable multi-consumer pub/sub over a shared Redis store (at-least-once, no broker process)."""

from durable_pubsub.ack import Acknowledgement
from durable_pubsub.client import Client
from durable_pubsub.config import ClientOptions, ConnectionOptions, DeliveryPolicy, RetryOptions
from durable_pubsub.errors import (
    ConfigurationError,
    Fault,
    PubSubError,
    StoreError,
    StoreUnavailable,
)
from durable_pubsub.message import Delivery
from durable_pubsub.publisher import Publisher
from durable_pubsub.registry import Registry
from durable_pubsub.store import MemoryStore, Store
from durable_pubsub.subscriber import DeliveryLoop, LoopState

__all__ = [
    "Acknowledgement",
    "Client",
    "ClientOptions",
    "ConnectionOptions",
    "DeliveryPolicy",
    "RetryOptions",
    "ConfigurationError",
    "Fault",
    "PubSubError",
    "StoreError",
    "StoreUnavailable",
    "Delivery",
    "Publisher",
    "Registry",
    "MemoryStore",
    "Store",
    "DeliveryLoop",
    "LoopState",
]

"""Observability: structured logging and in-memory metrics for the delivery protocol."""

from durable_pubsub.observability.logger import get_logger
from durable_pubsub.observability.metrics import Metrics

__all__ = ["get_logger", "Metrics"]

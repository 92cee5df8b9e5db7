"""Structured logging for delivery events (publish, dequeue, dispatch, ack)."""

import logging
import sys

LOGGER_PREFIX = "durable_pubsub"


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Return a configured logger; bare component names are put under the package prefix."""
    if not name.startswith(LOGGER_PREFIX):
        name = f"{LOGGER_PREFIX}.{name}"
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
            )
        )
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger

"""Error types and fault records surfaced to the hosting application."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional


class PubSubError(Exception):
    """Base class for every error raised by durable_pubsub."""


class ConfigurationError(PubSubError):
    """Bad options or a malformed subscription map; raised before any loop starts."""


class StoreError(PubSubError):
    """The shared store rejected an operation (wrong type, bad reply)."""


class StoreUnavailable(StoreError):
    """Transient store fault (connection lost, timeout); safe to retry."""


# Operation names carried by Fault.operation
OP_PUBLISH = "publish"
OP_DEQUEUE = "dequeue"
OP_FETCH = "fetch"
OP_DISPATCH = "dispatch"
OP_ACKNOWLEDGE = "acknowledge"
OP_RECOVER = "recover"


@dataclass
class Fault:
    """A failure that did not stop the client, handed to the error handler."""

    operation: str
    error: BaseException
    producer: Optional[str] = None
    message_key: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def transient(self) -> bool:
        return isinstance(self.error, StoreUnavailable)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "error": f"{type(self.error).__name__}: {self.error}",
            "producer": self.producer,
            "message_key": self.message_key,
            "transient": self.transient,
            "timestamp": self.timestamp.isoformat(),
        }


ErrorHandler = Callable[[Fault], None]

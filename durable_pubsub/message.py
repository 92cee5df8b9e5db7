"""Message identity and the delivery record handed to the dispatcher."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional, Union

from durable_pubsub.keys import MESSAGE_KEY_SEPARATOR

if TYPE_CHECKING:
    from durable_pubsub.ack import Acknowledgement

Payload = Union[bytes, str]


def new_message_key(action: str) -> str:
    """Random, non-enumerable key: ``action:uuid4``."""
    return f"{action}{MESSAGE_KEY_SEPARATOR}{uuid.uuid4()}"


def action_from_key(message_key: str) -> str:
    """The action is everything before the first separator."""
    return message_key.split(MESSAGE_KEY_SEPARATOR, 1)[0]


def topic_for(producer: str, action: str) -> str:
    return f"{producer}.{action}"


@dataclass
class Delivery:
    """A fetched message on its way to the consumer callback."""

    producer: str
    message_key: str
    payload: Optional[Payload]
    acknowledge: "Acknowledgement"
    recovered: bool = False
    # Called when the callback fails, so an ack-gated loop is not left waiting
    release: Optional[Callable[[], None]] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def action(self) -> str:
        return action_from_key(self.message_key)

    @property
    def topic(self) -> str:
        return topic_for(self.producer, self.action)

    def to_dict(self) -> dict:
        """Serialize for logging."""
        return {
            "producer": self.producer,
            "message_key": self.message_key,
            "topic": self.topic,
            "recovered": self.recovered,
            "fetched_at": self.fetched_at.isoformat(),
        }

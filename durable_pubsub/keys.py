"""Shared-store key layout. Other implementations of the protocol read the same keys, so these are fixed."""

MESSAGE_KEY_SEPARATOR = ":"


def consumers_key(producer: str, action: str) -> str:
    """Set of consumer identities registered for (producer, action)."""
    return f"{producer}.{action}.consumers"


def payload_key(producer: str, message_key: str) -> str:
    return f"{producer}.message.{message_key}"


def reads_key(producer: str, message_key: str) -> str:
    """Integer read-counter: consumers still expected to acknowledge."""
    return f"{producer}.reads.{message_key}"


def queue_key(producer: str, consumer: str) -> str:
    """Per-consumer fan-out queue; carries every action of this producer."""
    return f"{producer}.{consumer}.message"


def dequeued_key(consumer: str) -> str:
    """In-flight record shared by every instance of a consumer identity."""
    return f"{consumer}.dequeued"


def processing_key(consumer: str, instance_tag: str) -> str:
    """In-flight record private to one running instance."""
    return f"{consumer}.processing.{instance_tag}"

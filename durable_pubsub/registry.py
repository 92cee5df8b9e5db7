"""Consumer-set registry kept in the shared store."""

from typing import Set

from durable_pubsub.errors import ConfigurationError
from durable_pubsub.keys import consumers_key
from durable_pubsub.observability import get_logger
from durable_pubsub.store import Store


class Registry:
    """Resolves and mutates the consumer set of each (producer, action)."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self._logger = get_logger("registry")

    async def subscribe(self, producer: str, action: str, consumer: str) -> bool:
        """
        Add consumer to the consumer set of (producer, action). Idempotent.
        Returns True if the consumer was newly added. Does not start delivery.
        """
        if producer == consumer:
            raise ConfigurationError(f"{consumer!r} cannot subscribe to its own action {action!r}")
        added = await self._store.sadd(consumers_key(producer, action), consumer)
        self._logger.info(
            "subscribed",
            extra={
                "producer": producer,
                "action": action,
                "consumer": consumer,
                "already_registered": not added,
            },
        )
        return bool(added)

    async def consumers(self, producer: str, action: str) -> Set[str]:
        """Return the consumer set of (producer, action); empty if nobody registered."""
        return await self._store.smembers(consumers_key(producer, action))

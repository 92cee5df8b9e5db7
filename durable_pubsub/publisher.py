"""Publisher: fans a message out to every registered consumer of an action."""

from typing import Optional

from durable_pubsub.keys import payload_key, queue_key, reads_key
from durable_pubsub.message import Payload, new_message_key
from durable_pubsub.observability import Metrics, get_logger
from durable_pubsub.registry import Registry
from durable_pubsub.retry import RetryPolicy, retry_call
from durable_pubsub.store import Store


class Publisher:
    """Stores a message once and pushes its key onto each consumer's queue."""

    def __init__(
        self,
        identity: str,
        store: Store,
        registry: Registry,
        message_ttl: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self._identity = identity
        self._store = store
        self._registry = registry
        self._message_ttl = message_ttl
        self._retry = retry_policy or RetryPolicy()
        self._metrics = metrics or Metrics()
        self._logger = get_logger(f"publisher.{identity}")

    @property
    def identity(self) -> str:
        return self._identity

    async def publish(self, action: str, payload: Payload) -> Optional[str]:
        """
        Publish payload for action. Returns the message key, or None when no
        consumer is registered, in which case nothing is stored or queued.
        """
        extra = {"producer": self._identity, "action": action}
        consumers = await retry_call(
            "consumers",
            lambda: self._registry.consumers(self._identity, action),
            self._retry,
            self._logger,
            **extra,
        )
        # Counter and fan-out must agree, so the producer is left out of both
        consumers.discard(self._identity)
        if not consumers:
            self._metrics.increment("publish_skipped")
            self._logger.warning("no_consumers", extra=extra)
            return None

        key = new_message_key(action)
        extra["message_key"] = key
        await retry_call(
            "store_payload",
            lambda: self._store.set(payload_key(self._identity, key), payload, ttl=self._message_ttl),
            self._retry,
            self._logger,
            **extra,
        )
        await retry_call(
            "store_reads",
            lambda: self._store.set(reads_key(self._identity, key), len(consumers), ttl=self._message_ttl),
            self._retry,
            self._logger,
            **extra,
        )
        for consumer in sorted(consumers):
            await retry_call(
                "fan_out",
                lambda c=consumer: self._store.lpush(queue_key(self._identity, c), key),
                self._retry,
                self._logger,
                consumer=consumer,
                **extra,
            )

        self._metrics.increment("published")
        self._logger.info(
            "published",
            extra={**extra, "consumer_count": len(consumers)},
        )
        return key

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(identity={self._identity!r})"

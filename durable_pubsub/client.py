"""Client: one participant identity, its store handle, callback and delivery policy.

A participant can publish its own actions and consume other producers'
actions through the same client. Nothing is kept in module state; every
loop, acknowledgment and publish reads what it needs from the client that
created it.
"""

import asyncio
import uuid
from collections.abc import Mapping, Sequence
from typing import Any, Dict, List, Optional, Set

from durable_pubsub.ack import Acknowledgement
from durable_pubsub.config import ClientOptions, DeliveryPolicy, check_action, check_subscribe_to
from durable_pubsub.dispatcher import Callback, Dispatcher
from durable_pubsub.errors import OP_PUBLISH, OP_RECOVER, ConfigurationError, ErrorHandler, Fault, StoreError
from durable_pubsub.keys import dequeued_key, payload_key, processing_key
from durable_pubsub.message import Payload
from durable_pubsub.observability import Metrics, get_logger
from durable_pubsub.publisher import Publisher
from durable_pubsub.registry import Registry
from durable_pubsub.retry import retry_call
from durable_pubsub.store import Store
from durable_pubsub.subscriber import DeliveryLoop, recovery_order


class Client:
    """Reliable publish/subscribe participant.

    Usage::

        async with Client(identity="billing", store=store) as client:
            await client.subscribe({"orders": ["order.created"]}, on_event)
            client.publish("invoice.sent", b"...")
    """

    def __init__(
        self,
        options: Optional[ClientOptions] = None,
        *,
        store: Optional[Store] = None,
        callback: Optional[Callback] = None,
        on_error: Optional[ErrorHandler] = None,
        **values: Any,
    ) -> None:
        if options is None:
            options = ClientOptions.build(**values)
        elif values:
            raise ConfigurationError("pass either a ClientOptions instance or keyword options, not both")
        self._options = options
        self._identity = options.identity
        # Tags this process's in-flight record under the per-instance policy
        self._instance_tag = uuid.uuid4().hex
        if store is None:
            from durable_pubsub.redis_store import RedisStore

            store = RedisStore.from_options(options.connection)
            self._owns_store = True
        else:
            self._owns_store = False
        self._store = store
        self._callback = callback
        self._on_error = on_error
        self._metrics = Metrics()
        self._logger = get_logger(f"client.{self._identity}")

        self._publish_retry = options.retry.policy(options.retry.publish_attempts)
        self._ack_retry = options.retry.policy(options.retry.ack_attempts)
        self._loop_retry = options.retry.policy(None)

        self._registry = Registry(store)
        self._publisher = Publisher(
            self._identity,
            store,
            self._registry,
            message_ttl=options.message_ttl,
            retry_policy=self._publish_retry,
            metrics=self._metrics,
        )
        self._dispatcher = Dispatcher(self._identity, self._report, self._metrics)
        if callback is not None:
            self._dispatcher.set_callback(callback)

        self._loops: Dict[str, DeliveryLoop] = {}
        self._pending_publishes: Set[asyncio.Task] = set()
        self._pending_acks: Set[asyncio.Future] = set()
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscribe_lock = asyncio.Lock()
        self._started = False

    # ---- Properties ----

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def instance_tag(self) -> str:
        return self._instance_tag

    @property
    def policy(self) -> DeliveryPolicy:
        return self._options.policy

    @property
    def options(self) -> ClientOptions:
        return self._options

    @property
    def store(self) -> Store:
        return self._store

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def metrics(self) -> Metrics:
        return self._metrics

    @property
    def started(self) -> bool:
        return self._started

    @property
    def record_key(self) -> str:
        """Key of this client's in-flight record."""
        if self.policy is DeliveryPolicy.SHARED:
            return dequeued_key(self._identity)
        return processing_key(self._identity, self._instance_tag)

    def producers(self) -> List[str]:
        """Producers this client currently listens to."""
        return sorted(self._loops)

    # ---- Lifecycle ----

    async def start(self) -> None:
        """Start the dispatcher, then subscribe from options when a callback was given."""
        if self._started:
            return
        self._begin()
        if self._options.subscribe_to:
            if self._callback is None:
                self._logger.warning(
                    "subscribe_to_without_callback",
                    extra={"producers": sorted(self._options.subscribe_to)},
                )
            else:
                await self.subscribe(self._options.subscribe_to, self._callback)
        self._logger.info(
            "started",
            extra={
                "identity": self._identity,
                "policy": self.policy.value,
                "instance_tag": self._instance_tag,
            },
        )

    def _begin(self) -> None:
        if self._started:
            return
        self._event_loop = asyncio.get_running_loop()
        self._dispatcher.start()
        self._started = True

    async def stop(self) -> None:
        """
        Stop every delivery loop, dispatch what was already fetched, then wait
        for outstanding publishes and acknowledgments.
        """
        if not self._started:
            return
        loops = list(self._loops.values())
        await asyncio.gather(*(loop.stop() for loop in loops))
        self._loops.clear()
        self._metrics.set_gauge("listening_producers", 0)
        await self._dispatcher.stop()
        if self._pending_publishes:
            await asyncio.gather(*list(self._pending_publishes), return_exceptions=True)
        if self._pending_acks:
            await asyncio.gather(*list(self._pending_acks), return_exceptions=True)
        if self._owns_store:
            await self._store.close()
        self._started = False
        self._logger.info("stopped", extra={"identity": self._identity})

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ---- Publish ----

    def publish(self, action: str, payload: Payload) -> "asyncio.Task[Optional[str]]":
        """
        Fire-and-forget publish. Returns at once; the task it hands back may be
        awaited for the message key but does not have to be. Store failures go
        to the error handler.
        """
        try:
            check_action(action)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        task = asyncio.get_running_loop().create_task(self._publish(action, payload))
        self._pending_publishes.add(task)
        task.add_done_callback(self._pending_publishes.discard)
        return task

    async def _publish(self, action: str, payload: Payload) -> Optional[str]:
        try:
            return await self._publisher.publish(action, payload)
        except StoreError as e:
            self._metrics.increment("faults")
            self._report(Fault(operation=OP_PUBLISH, error=e, producer=self._identity))
            return None

    # ---- Subscribe ----

    async def subscribe(self, subscribe_to: Mapping, callback: Callback) -> None:
        """
        Register this identity as a consumer of every (producer, action) in
        subscribe_to and start one delivery loop per producer not already
        listened to. The callback replaces any earlier one.
        """
        subscriptions = self._validate_subscriptions(subscribe_to)
        if not callable(callback):
            raise ConfigurationError("callback must be callable")
        self._callback = callback
        self._dispatcher.set_callback(callback)
        self._begin()

        async with self._subscribe_lock:
            for producer, actions in subscriptions.items():
                for action in actions:
                    await retry_call(
                        "subscribe",
                        lambda p=producer, a=action: self._registry.subscribe(p, a, self._identity),
                        self._publish_retry,
                        self._logger,
                        producer=producer,
                    )
                await self._listen(producer)
            if self.policy is DeliveryPolicy.SHARED:
                await self._warn_orphans()

    def _validate_subscriptions(self, subscribe_to: Any) -> Dict[str, List[str]]:
        if not isinstance(subscribe_to, Mapping):
            raise ConfigurationError("subscribe_to must map producer identities to action lists")
        subscriptions: Dict[str, List[str]] = {}
        for producer, actions in subscribe_to.items():
            if not isinstance(producer, str):
                raise ConfigurationError(f"producer identity must be a string, got {producer!r}")
            if isinstance(actions, (str, bytes)) or not isinstance(actions, Sequence):
                raise ConfigurationError(f"actions for {producer!r} must be a list of strings")
            if not all(isinstance(action, str) for action in actions):
                raise ConfigurationError(f"actions for {producer!r} must be a list of strings")
            if producer == self._identity:
                raise ConfigurationError(f"{producer!r} cannot subscribe to its own actions")
            subscriptions[producer] = list(actions)
        try:
            return check_subscribe_to(subscriptions)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    async def _listen(self, producer: str) -> None:
        """Recover, then start the loop for producer; no-op if one already runs."""
        if producer in self._loops:
            return
        loop = DeliveryLoop(
            producer=producer,
            identity=self._identity,
            policy=self.policy,
            record_key=self.record_key,
            store=self._store,
            dispatcher=self._dispatcher,
            make_ack=self._make_ack,
            on_error=self._report,
            metrics=self._metrics,
            block_timeout=self._options.block_timeout,
            retry_policy=self._loop_retry,
        )
        self._loops[producer] = loop
        await loop.recover()
        loop.start()
        self._metrics.set_gauge("listening_producers", len(self._loops))

    async def orphans(self) -> List[str]:
        """
        Keys on the shared in-flight record whose payload none of the
        listened-to producers still holds, oldest first. Such keys can no
        longer be recovered; they may still belong to a producer this client
        does not listen to, so they are reported and left in place.
        """
        keys = await retry_call(
            "orphans",
            lambda: self._store.lrange(self.record_key, 0, -1),
            self._publish_retry,
            self._logger,
        )
        orphaned = []
        for key in recovery_order(keys):
            held = False
            for producer in self._loops:
                if await self._store.get(payload_key(producer, key)) is not None:
                    held = True
                    break
            if not held:
                orphaned.append(key)
        return orphaned

    async def _warn_orphans(self) -> None:
        try:
            orphaned = await self.orphans()
        except StoreError as e:
            self._metrics.increment("faults")
            self._report(Fault(operation=OP_RECOVER, error=e, producer=self._identity))
            return
        self._metrics.set_gauge("orphaned_in_flight", len(orphaned))
        if orphaned:
            self._logger.warning(
                "recovery_orphans",
                extra={"identity": self._identity, "record": self.record_key, "message_keys": orphaned},
            )

    def _make_ack(self, producer: str, message_key: str, on_settled=None) -> Acknowledgement:
        return Acknowledgement(
            producer=producer,
            message_key=message_key,
            record_key=self.record_key,
            store=self._store,
            retry_policy=self._ack_retry,
            on_error=self._report,
            metrics=self._metrics,
            loop=self._event_loop,
            pending=self._pending_acks,
            on_settled=on_settled,
        )

    # ---- Errors ----

    def _report(self, fault: Fault) -> None:
        """Hand a fault to the caller's handler; without one, log it."""
        if self._on_error is None:
            self._logger.error("fault", extra=fault.to_dict())
            return
        try:
            self._on_error(fault)
        except Exception:
            self._logger.exception("error_handler_failed", extra=fault.to_dict())

    def describe(self) -> Dict[str, Any]:
        """Summary for health endpoints."""
        return {
            "identity": self._identity,
            "policy": self.policy.value,
            "instance_tag": self._instance_tag,
            "started": self._started,
            "producers": self.producers(),
            "pending_dispatch": self._dispatcher.pending,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(identity={self._identity!r}, policy={self.policy.value})"

"""Delivery loop: one long-lived task per subscribed producer.

The loop blocks on the producer's fan-out queue, moves each key onto the
consumer's in-flight record in the same store operation, fetches the
payload and hands the message to the dispatcher. Under the shared policy
it re-arms right away; under the per-instance policy it waits for the
acknowledgment first.
"""

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Set

from durable_pubsub.ack import Acknowledgement
from durable_pubsub.config import DeliveryPolicy
from durable_pubsub.dispatcher import Dispatcher
from durable_pubsub.errors import OP_DEQUEUE, OP_FETCH, OP_RECOVER, ErrorHandler, Fault, StoreError
from durable_pubsub.keys import payload_key, queue_key
from durable_pubsub.message import Delivery, Payload
from durable_pubsub.observability import Metrics, get_logger
from durable_pubsub.retry import FOREVER, RetryPolicy, retry_call
from durable_pubsub.store import Store

# (producer, message_key, on_settled) -> Acknowledgement
AckFactory = Callable[[str, str, Optional[Callable[[], None]]], Acknowledgement]


class LoopState(str, Enum):
    WAITING = "waiting"
    FETCHED = "fetched"
    DISPATCHED = "dispatched"
    STOPPED = "stopped"


class DeliveryLoop:
    """Consumes one producer's queue for one consumer identity."""

    def __init__(
        self,
        producer: str,
        identity: str,
        policy: DeliveryPolicy,
        record_key: str,
        store: Store,
        dispatcher: Dispatcher,
        make_ack: AckFactory,
        on_error: ErrorHandler,
        metrics: Metrics,
        block_timeout: float = 0,
        retry_policy: RetryPolicy = FOREVER,
    ) -> None:
        self._producer = producer
        self._identity = identity
        self._policy = policy
        self._record_key = record_key
        self._queue_key = queue_key(producer, identity)
        self._store = store
        self._dispatcher = dispatcher
        self._make_ack = make_ack
        self._on_error = on_error
        self._metrics = metrics
        self._block_timeout = block_timeout
        self._retry = retry_policy
        self._state = LoopState.STOPPED
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._logger = get_logger(f"subscriber.{identity}.{producer}")

    @property
    def producer(self) -> str:
        return self._producer

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ---- Recovery ----

    async def recover(self) -> int:
        """
        Replay leftovers of the shared in-flight record, oldest first, before
        the first dequeue. Only keys whose payload is stored under this
        producer belong to it; the rest are left for their own loop.
        Returns the number of messages handed to the dispatcher.
        """
        if self._policy is not DeliveryPolicy.SHARED:
            return 0
        extra = {"producer": self._producer, "consumer": self._identity}
        try:
            keys = await retry_call(
                "recover",
                lambda: self._store.lrange(self._record_key, 0, -1),
                self._retry,
                self._logger,
                **extra,
            )
        except StoreError as e:
            self._fault(OP_RECOVER, e)
            return 0

        replayed = 0
        for key in recovery_order(keys):
            try:
                payload = await self._fetch(key)
            except StoreError as e:
                self._fault(OP_RECOVER, e, key)
                continue
            if payload is None:
                self._logger.debug("recovery_unmatched", extra={**extra, "message_key": key})
                continue
            self._hand_off(key, payload, recovered=True)
            replayed += 1
        self._metrics.increment("recovered", replayed)
        self._logger.info("recovered", extra={**extra, "replayed": replayed, "leftover": len(keys)})
        return replayed

    # ---- Loop ----

    def start(self) -> None:
        """Start the loop task (idempotent). Recovery, if any, must already be done."""
        if self.running:
            return
        self._stopping.clear()
        self._state = LoopState.WAITING
        self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        """Stop dequeuing; a key already dequeued is still fetched and handed off."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._state = LoopState.STOPPED

    async def run(self) -> None:
        extra = {"producer": self._producer, "consumer": self._identity, "policy": self._policy.value}
        self._logger.info("listening", extra=extra)
        while not self._stopping.is_set():
            try:
                await self._step()
            except Exception as e:
                self._logger.exception("loop_error", extra={**extra, "error": str(e)})
                self._fault(OP_DEQUEUE, e)
                await self._sleep_or_stop(self._retry.backoff_base)
        self._state = LoopState.STOPPED
        self._logger.info("stopped", extra=extra)

    async def _step(self) -> None:
        self._state = LoopState.WAITING
        key = await self._dequeue()
        if key is None:
            return
        self._state = LoopState.FETCHED
        try:
            payload = await self._fetch(key)
        except StoreError as e:
            # Left on the in-flight record; the shared policy replays it on restart
            self._fault(OP_FETCH, e, key)
            return
        if payload is None:
            await self._drop_missing(key)
            return
        settled = self._hand_off(key, payload)
        self._state = LoopState.DISPATCHED
        if settled is not None:
            await self._wait_or_stop(settled)

    async def _dequeue(self) -> Optional[str]:
        """Block until a key is moved onto the in-flight record, or until stop."""
        attempt = 0
        while not self._stopping.is_set():
            move = asyncio.ensure_future(
                retry_call(
                    "dequeue",
                    lambda: self._store.blocking_move(self._queue_key, self._record_key, self._block_timeout),
                    self._retry,
                    self._logger,
                    producer=self._producer,
                )
            )
            stopper = asyncio.ensure_future(self._stopping.wait())
            try:
                await asyncio.wait({move, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stopper.cancel()
            if not move.done():
                move.cancel()
                await asyncio.wait({move})
                if move.cancelled():
                    return None
            try:
                return move.result()
            except StoreError as e:
                attempt += 1
                self._fault(OP_DEQUEUE, e)
                await self._sleep_or_stop(self._retry.delay(attempt))
        return None

    async def _fetch(self, key: str) -> Optional[Payload]:
        return await retry_call(
            "fetch",
            lambda: self._store.get(payload_key(self._producer, key)),
            self._retry,
            self._logger,
            producer=self._producer,
            message_key=key,
        )

    def _hand_off(self, key: str, payload: Payload, recovered: bool = False) -> Optional[asyncio.Event]:
        """Queue the delivery for the dispatcher; returns the ack gate under the per-instance policy."""
        settled: Optional[asyncio.Event] = None
        if self._policy is DeliveryPolicy.INSTANCE:
            settled = asyncio.Event()
        release = settled.set if settled is not None else None
        delivery = Delivery(
            producer=self._producer,
            message_key=key,
            payload=payload,
            acknowledge=self._make_ack(self._producer, key, release),
            recovered=recovered,
            release=release,
        )
        self._dispatcher.submit(delivery)
        return settled

    async def _drop_missing(self, key: str) -> None:
        """The payload expired or was collected: forget the key without touching the counter."""
        extra = {"producer": self._producer, "consumer": self._identity, "message_key": key}
        self._logger.warning("payload_missing", extra=extra)
        try:
            await retry_call(
                "drop_missing",
                lambda: self._store.lrem(self._record_key, 0, key),
                self._retry,
                self._logger,
                **extra,
            )
        except StoreError as e:
            self._fault(OP_FETCH, e, key)

    async def _wait_or_stop(self, settled: asyncio.Event) -> None:
        gate = asyncio.ensure_future(settled.wait())
        stopper = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({gate, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gate.cancel()
            stopper.cancel()

    async def _sleep_or_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), delay)
        except asyncio.TimeoutError:
            pass

    def _fault(self, operation: str, error: BaseException, key: Optional[str] = None) -> None:
        self._metrics.increment("faults")
        self._on_error(Fault(operation=operation, error=error, producer=self._producer, message_key=key))

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(producer={self._producer!r}, "
            f"identity={self._identity!r}, state={self._state.value})"
        )


def recovery_order(keys: List[str]) -> List[str]:
    """Oldest-first, de-duplicated view of an in-flight record read left to right.

    New entries are pushed on the left, so the oldest one is last.
    """
    seen: Set[str] = set()
    ordered = []
    for key in reversed(keys):
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered

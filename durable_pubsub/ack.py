"""Acknowledgment and read-counter garbage collection.

An acknowledgment removes the message key from the consumer's in-flight
record, then decrements the message's shared read-counter. Only the
consumer whose decrement returns exactly zero deletes the payload and the
counter, so the pair is collected once no matter how many consumers
acknowledge concurrently. A decrement below zero means the counter had
already expired; the recreated key is deleted again.
"""

import asyncio
import concurrent.futures
from typing import Callable, Optional, Set, Union

from durable_pubsub.errors import OP_ACKNOWLEDGE, ErrorHandler, Fault, StoreError
from durable_pubsub.keys import payload_key, reads_key
from durable_pubsub.observability import Metrics, get_logger
from durable_pubsub.retry import RetryPolicy, retry_call
from durable_pubsub.store import Store


class Acknowledgement:
    """Single-use acknowledgment bound to (producer, message key, in-flight record).

    Calling it starts the acknowledgment and returns a handle that can be
    awaited; every later call returns the same handle. From a thread other
    than the event loop's, the handle is a ``concurrent.futures.Future``.
    """

    def __init__(
        self,
        producer: str,
        message_key: str,
        record_key: str,
        store: Store,
        retry_policy: RetryPolicy,
        on_error: ErrorHandler,
        metrics: Metrics,
        loop: asyncio.AbstractEventLoop,
        pending: Optional[Set["asyncio.Future"]] = None,
        on_settled: Optional[Callable[[], None]] = None,
    ) -> None:
        self.producer = producer
        self.message_key = message_key
        self.record_key = record_key
        self._store = store
        self._retry = retry_policy
        self._on_error = on_error
        self._metrics = metrics
        self._loop = loop
        self._pending = pending if pending is not None else set()
        self._on_settled = on_settled
        self._handle: Optional[Union[asyncio.Task, concurrent.futures.Future]] = None
        self._logger = get_logger(f"ack.{producer}")

    @property
    def called(self) -> bool:
        return self._handle is not None

    def __call__(self) -> Union[asyncio.Task, concurrent.futures.Future]:
        if self._handle is not None:
            return self._handle
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            task = self._loop.create_task(self._run())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            self._handle = task
        else:
            self._handle = asyncio.run_coroutine_threadsafe(self._run(), self._loop)
        return self._handle

    async def _run(self) -> bool:
        try:
            return await self.acknowledge()
        finally:
            if self._on_settled is not None:
                self._on_settled()

    async def acknowledge(self) -> bool:
        """Run the acknowledgment. Returns True if this call removed the in-flight entry."""
        extra = {"producer": self.producer, "message_key": self.message_key}
        try:
            removed = await retry_call(
                "ack_remove",
                lambda: self._store.lrem(self.record_key, 0, self.message_key),
                self._retry,
                self._logger,
                **extra,
            )
        except StoreError as e:
            self._report(e)
            return False
        if not removed:
            self._logger.info("ack_duplicate", extra=extra)
            return False

        counter = reads_key(self.producer, self.message_key)
        try:
            remaining = await retry_call(
                "ack_decrement",
                lambda: self._store.decr(counter),
                self._retry,
                self._logger,
                **extra,
            )
            self._metrics.increment("acknowledged")
            if remaining < 0:
                # The counter had expired; DECR recreated it at -1 without a TTL
                await retry_call(
                    "collect",
                    lambda: self._store.delete(counter, payload_key(self.producer, self.message_key)),
                    self._retry,
                    self._logger,
                    **extra,
                )
                self._logger.warning("counter_expired", extra={**extra, "reads_remaining": remaining})
            elif remaining == 0:
                await retry_call(
                    "collect",
                    lambda: self._store.delete(counter, payload_key(self.producer, self.message_key)),
                    self._retry,
                    self._logger,
                    **extra,
                )
                self._metrics.increment("collected")
                self._logger.info("collected", extra=extra)
            else:
                self._logger.info("acknowledged", extra={**extra, "reads_remaining": remaining})
        except StoreError as e:
            self._report(e)
        return True

    def _report(self, error: StoreError) -> None:
        self._metrics.increment("faults")
        self._on_error(
            Fault(
                operation=OP_ACKNOWLEDGE,
                error=error,
                producer=self.producer,
                message_key=self.message_key,
            )
        )

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(producer={self.producer!r}, "
            f"message_key={self.message_key!r}, called={self.called})"
        )

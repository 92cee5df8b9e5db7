"""Single dispatch point: delivery loops hand fetched messages over a queue, one drain task runs the callback."""

import asyncio
import inspect
from typing import Any, Callable, Optional

from durable_pubsub.ack import Acknowledgement
from durable_pubsub.errors import OP_DISPATCH, ErrorHandler, Fault
from durable_pubsub.message import Delivery, Payload
from durable_pubsub.observability import Metrics, get_logger

# Consumer callback: (topic, payload, acknowledge); may be a coroutine function
Callback = Callable[[str, Optional[Payload], Acknowledgement], Any]

# Sentinel to end drain_loop once everything queued before it is dispatched
_DRAIN_SENTINEL = None


class Dispatcher:
    """Runs the consumer callback for every delivery, in hand-off order."""

    def __init__(self, identity: str, on_error: ErrorHandler, metrics: Metrics) -> None:
        self._identity = identity
        self._on_error = on_error
        self._metrics = metrics
        self._callback: Optional[Callback] = None
        self._queue: "asyncio.Queue[Optional[Delivery]]" = asyncio.Queue()
        self._drain_task: Optional[asyncio.Task] = None
        self._closed = False
        self._logger = get_logger(f"dispatcher.{identity}")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def set_callback(self, callback: Callback) -> None:
        self._callback = callback

    def submit(self, delivery: Delivery) -> None:
        """Queue a delivery for the callback. Accepted even while closing, so nothing fetched is lost."""
        self._queue.put_nowait(delivery)

    async def dispatch(self, delivery: Delivery) -> None:
        """Invoke the callback for one delivery; failures become faults."""
        extra = {"consumer": self._identity, **delivery.to_dict()}
        if self._callback is None:
            raise RuntimeError("no consumer callback registered")
        try:
            result = self._callback(delivery.topic, delivery.payload, delivery.acknowledge)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._metrics.increment("faults")
            self._logger.exception("callback_failed", extra={**extra, "error": str(e)})
            if delivery.release is not None:
                delivery.release()
            self._on_error(
                Fault(
                    operation=OP_DISPATCH,
                    error=e,
                    producer=delivery.producer,
                    message_key=delivery.message_key,
                )
            )
            return
        self._metrics.increment("delivered")
        self._logger.info("dispatched", extra=extra)

    async def drain_loop(self) -> None:
        """Dispatch queued deliveries until the sentinel is reached."""
        while True:
            delivery = await self._queue.get()
            if delivery is _DRAIN_SENTINEL:
                break
            await self.dispatch(delivery)

    def start(self) -> None:
        """Start the drain task (idempotent)."""
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._closed = False
        self._drain_task = asyncio.get_running_loop().create_task(self.drain_loop())

    async def stop(self) -> None:
        """Dispatch everything already queued, then end the drain task."""
        if self._closed:
            return
        self._closed = True
        if self._drain_task is None:
            return
        self._queue.put_nowait(_DRAIN_SENTINEL)
        await self._drain_task
        self._drain_task = None

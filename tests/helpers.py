"""Shared test doubles and polling helpers."""

import asyncio
import inspect
from typing import Callable, Dict

from durable_pubsub.errors import StoreUnavailable
from durable_pubsub.store import MemoryStore


class FlakyStore(MemoryStore):
    """MemoryStore whose named operations fail with StoreUnavailable a set number of times."""

    def __init__(self, failures: Dict[str, int] | None = None) -> None:
        super().__init__()
        self.failures: Dict[str, int] = dict(failures or {})
        self.calls: Dict[str, int] = {}

    def _maybe_fail(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        remaining = self.failures.get(name, 0)
        if remaining:
            if remaining > 0:
                self.failures[name] = remaining - 1
            raise StoreUnavailable(f"{name}: connection reset")

    async def smembers(self, key):
        self._maybe_fail("smembers")
        return await super().smembers(key)

    async def lpush(self, key, value):
        self._maybe_fail("lpush")
        return await super().lpush(key, value)

    async def lrem(self, key, count, value):
        self._maybe_fail("lrem")
        return await super().lrem(key, count, value)

    async def decr(self, key):
        self._maybe_fail("decr")
        return await super().decr(key)

    async def blocking_move(self, source, destination, timeout=0):
        self._maybe_fail("blocking_move")
        return await super().blocking_move(source, destination, timeout)


async def eventually(predicate: Callable, timeout: float = 2.0) -> None:
    """Poll predicate (sync or async) until it is truthy or fail after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


FAST_RETRY = {"backoff_base": 0.001, "backoff_mult": 1.0, "max_backoff": 0.01}

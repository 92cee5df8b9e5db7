"""Store adapter interface and an in-process implementation.

The protocol only relies on atomic single-key operations: plain values
with optional expiry, sets, lists and an integer decrement. There is no
multi-key transaction anywhere in the delivery protocol.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

from durable_pubsub.message import Payload


@runtime_checkable
class Store(Protocol):
    """Operations the delivery protocol needs from the shared store.

    Implementations raise ``StoreUnavailable`` for transient faults and
    ``StoreError`` for anything else.
    """

    async def get(self, key: str) -> Optional[Payload]:
        ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def sadd(self, key: str, member: str) -> int:
        ...

    async def smembers(self, key: str) -> Set[str]:
        ...

    async def lpush(self, key: str, value: str) -> int:
        ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        ...

    async def lrem(self, key: str, count: int, value: str) -> int:
        ...

    async def decr(self, key: str) -> int:
        ...

    async def blocking_move(self, source: str, destination: str, timeout: float = 0) -> Optional[str]:
        """Pop the right end of ``source`` onto the left of ``destination``.

        Blocks until an element is available; ``timeout`` 0 waits forever,
        otherwise ``None`` is returned when it expires.
        """
        ...

    async def close(self) -> None:
        ...


class MemoryStore:
    """Single-process Store with Redis semantics, for tests and embedded use."""

    def __init__(self) -> None:
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._sets: Dict[str, Set[str]] = {}
        # index 0 is the left end
        self._lists: Dict[str, List[str]] = {}
        self._cond = asyncio.Condition()

    def _live_value(self, key: str) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._values[key]
            return None
        return value

    def keys(self) -> List[str]:
        """Every live key, sorted; useful for inspecting protocol state."""
        live = [k for k in list(self._values) if self._live_value(k) is not None]
        return sorted(live + list(self._sets) + list(self._lists))

    async def get(self, key: str) -> Optional[Payload]:
        return self._live_value(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.monotonic() + ttl if ttl else None
        self._values[key] = (value, expires_at)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live_value(key) is not None:
                del self._values[key]
                removed += 1
            elif self._sets.pop(key, None) is not None or self._lists.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, member: str) -> int:
        members = self._sets.setdefault(key, set())
        if member in members:
            return 0
        members.add(member)
        return 1

    async def smembers(self, key: str) -> Set[str]:
        return set(self._sets.get(key, ()))

    async def lpush(self, key: str, value: str) -> int:
        async with self._cond:
            items = self._lists.setdefault(key, [])
            items.insert(0, value)
            self._cond.notify_all()
            return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        items = self._lists.get(key, [])
        end = None if stop == -1 else stop + 1
        return list(items[start:end])

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lists.get(key)
        if not items:
            return 0
        kept: List[str] = []
        removed = 0
        for item in items:
            if item == value and (count == 0 or removed < abs(count)):
                removed += 1
                continue
            kept.append(item)
        if kept:
            self._lists[key] = kept
        else:
            del self._lists[key]
        return removed

    async def decr(self, key: str) -> int:
        current = self._live_value(key)
        value = int(current if current is not None else 0) - 1
        expires_at = self._values[key][1] if key in self._values else None
        self._values[key] = (value, expires_at)
        return value

    async def blocking_move(self, source: str, destination: str, timeout: float = 0) -> Optional[str]:
        async with self._cond:
            ready = lambda: bool(self._lists.get(source))  # noqa: E731
            if timeout:
                try:
                    await asyncio.wait_for(self._cond.wait_for(ready), timeout)
                except asyncio.TimeoutError:
                    return None
            else:
                await self._cond.wait_for(ready)
            items = self._lists[source]
            value = items.pop()
            if not items:
                del self._lists[source]
            self._lists.setdefault(destination, []).insert(0, value)
            return value

    async def close(self) -> None:
        return None

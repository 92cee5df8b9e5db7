"""Store adapter backed by Redis (redis-py asyncio client)."""

from typing import TYPE_CHECKING, Any, List, Optional, Set

import redis.asyncio as redis
from redis import exceptions as redis_errors

from durable_pubsub.errors import StoreError, StoreUnavailable
from durable_pubsub.message import Payload

if TYPE_CHECKING:
    from durable_pubsub.config import ConnectionOptions

_TRANSIENT = (redis_errors.ConnectionError, redis_errors.TimeoutError, ConnectionError, OSError)


def _text(value: Any) -> Any:
    """Keys and members come back as bytes unless the client decodes responses."""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class RedisStore:
    """Store over a ``redis.asyncio.Redis`` client.

    Payloads are returned exactly as Redis hands them back (``bytes`` with the
    default client); keys, members and list entries are always ``str``.
    """

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def from_options(cls, options: "ConnectionOptions") -> "RedisStore":
        client = redis.Redis(
            host=options.host,
            port=options.port,
            db=options.db,
            password=options.password,
        )
        return cls(client)

    @property
    def client(self) -> "redis.Redis":
        return self._client

    async def _call(self, command: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await getattr(self._client, command)(*args, **kwargs)
        except _TRANSIENT as e:
            raise StoreUnavailable(f"{command} failed: {e}") from e
        except redis_errors.RedisError as e:
            raise StoreError(f"{command} failed: {e}") from e

    async def get(self, key: str) -> Optional[Payload]:
        return await self._call("get", key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self._call("set", key, value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        return int(await self._call("delete", *keys))

    async def sadd(self, key: str, member: str) -> int:
        return int(await self._call("sadd", key, member))

    async def smembers(self, key: str) -> Set[str]:
        return {_text(m) for m in await self._call("smembers", key)}

    async def lpush(self, key: str, value: str) -> int:
        return int(await self._call("lpush", key, value))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return [_text(v) for v in await self._call("lrange", key, start, stop)]

    async def lrem(self, key: str, count: int, value: str) -> int:
        return int(await self._call("lrem", key, count, value))

    async def decr(self, key: str) -> int:
        return int(await self._call("decr", key))

    async def blocking_move(self, source: str, destination: str, timeout: float = 0) -> Optional[str]:
        return _text(await self._call("brpoplpush", source, destination, timeout))

    async def close(self) -> None:
        await self._client.aclose()

from __future__ import annotations

import pytest
from redis import exceptions as redis_errors

from durable_pubsub.config import ConnectionOptions
from durable_pubsub.errors import StoreError, StoreUnavailable
from durable_pubsub.redis_store import RedisStore


class RecordingRedis:
    """Stands in for redis.asyncio.Redis: records commands and replays canned replies."""

    def __init__(self, replies: dict | None = None, errors: dict | None = None) -> None:
        self.replies = replies or {}
        self.errors = errors or {}
        self.commands: list[tuple] = []
        self.closed = False

    def __getattr__(self, command: str):
        async def call(*args, **kwargs):
            self.commands.append((command, args, kwargs))
            if command in self.errors:
                raise self.errors[command]
            return self.replies.get(command)

        return call

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_commands_follow_the_redis_protocol() -> None:
    client = RecordingRedis(
        replies={
            "smembers": {b"b", b"c"},
            "brpoplpush": b"order.created:1",
            "lrange": [b"order.created:2", b"order.created:1"],
            "decr": 0,
            "lrem": 1,
            "get": b"P1",
        }
    )
    store = RedisStore(client)

    await store.set("a.message.order.created:1", "P1", ttl=86400)
    assert await store.smembers("a.order.created.consumers") == {"b", "c"}
    assert await store.blocking_move("a.b.message", "b.dequeued") == "order.created:1"
    assert await store.lrange("b.dequeued", 0, -1) == ["order.created:2", "order.created:1"]
    assert await store.lrem("b.dequeued", 0, "order.created:1") == 1
    assert await store.decr("a.reads.order.created:1") == 0
    assert await store.get("a.message.order.created:1") == b"P1"

    assert client.commands[0] == ("set", ("a.message.order.created:1", "P1"), {"ex": 86400})
    assert client.commands[2] == ("brpoplpush", ("a.b.message", "b.dequeued", 0), {})
    assert client.commands[4] == ("lrem", ("b.dequeued", 0, "order.created:1"), {})


@pytest.mark.asyncio
async def test_blocking_move_timeout_returns_none() -> None:
    store = RedisStore(RecordingRedis(replies={"brpoplpush": None}))

    assert await store.blocking_move("a.b.message", "b.dequeued", timeout=1) is None


@pytest.mark.asyncio
async def test_connection_faults_are_transient() -> None:
    store = RedisStore(RecordingRedis(errors={"lpush": redis_errors.ConnectionError("reset")}))

    with pytest.raises(StoreUnavailable):
        await store.lpush("a.b.message", "order.created:1")


@pytest.mark.asyncio
async def test_reply_errors_are_not_transient() -> None:
    store = RedisStore(RecordingRedis(errors={"decr": redis_errors.ResponseError("WRONGTYPE")}))

    with pytest.raises(StoreError) as info:
        await store.decr("a.reads.order.created:1")
    assert not isinstance(info.value, StoreUnavailable)


@pytest.mark.asyncio
async def test_close_closes_the_client() -> None:
    client = RecordingRedis()
    await RedisStore(client).close()

    assert client.closed is True


def test_from_options_builds_a_client() -> None:
    store = RedisStore.from_options(ConnectionOptions(host="redis.internal", port=6380, db=2))

    kwargs = store.client.connection_pool.connection_kwargs
    assert kwargs["host"] == "redis.internal"
    assert kwargs["port"] == 6380
    assert kwargs["db"] == 2

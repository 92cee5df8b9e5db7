from __future__ import annotations

import asyncio

import pytest


@pytest.mark.asyncio
async def test_blocking_move_waits_for_a_push(store) -> None:
    waiter = asyncio.ensure_future(store.blocking_move("q", "inflight"))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await store.lpush("q", "k1")

    assert await asyncio.wait_for(waiter, 1) == "k1"
    assert await store.lrange("inflight", 0, -1) == ["k1"]
    assert "q" not in store.keys()


@pytest.mark.asyncio
async def test_blocking_move_times_out(store) -> None:
    assert await store.blocking_move("q", "inflight", timeout=0.01) is None


@pytest.mark.asyncio
async def test_cancelled_move_leaves_the_queue_untouched(store) -> None:
    waiter = asyncio.ensure_future(store.blocking_move("q", "inflight"))
    await asyncio.sleep(0.01)
    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)

    await store.lpush("q", "k1")

    assert await store.lrange("q", 0, -1) == ["k1"]


@pytest.mark.asyncio
async def test_values_expire(store) -> None:
    await store.set("k", "v", ttl=1)
    assert await store.get("k") == "v"

    store._values["k"] = ("v", 0.0)

    assert await store.get("k") is None
    assert store.keys() == []


@pytest.mark.asyncio
async def test_decr_and_lrem(store) -> None:
    await store.set("reads", 2)
    assert await store.decr("reads") == 1
    assert await store.decr("reads") == 0

    for value in ("x", "y", "x"):
        await store.lpush("l", value)
    assert await store.lrem("l", 0, "x") == 2
    assert await store.lrem("l", 0, "x") == 0
    assert await store.lrange("l", 0, -1) == ["y"]
    assert await store.delete("reads", "l", "missing") == 2

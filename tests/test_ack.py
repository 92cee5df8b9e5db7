from __future__ import annotations

import asyncio
import logging

import pytest

from durable_pubsub.ack import Acknowledgement
from durable_pubsub.errors import OP_ACKNOWLEDGE, Fault
from durable_pubsub.observability import Metrics
from durable_pubsub.publisher import Publisher
from durable_pubsub.registry import Registry
from durable_pubsub.retry import RetryPolicy
from tests.helpers import FlakyStore


async def _publish_to(store, consumers: list[str], payload: str = "P1") -> str:
    registry = Registry(store)
    for consumer in consumers:
        await registry.subscribe("a", "order.created", consumer)
    return await Publisher("a", store, registry).publish("order.created", payload)


def _ack(store, consumer: str, key: str, faults: list[Fault] | None = None, **kwargs) -> Acknowledgement:
    sink = faults if faults is not None else []
    return Acknowledgement(
        producer="a",
        message_key=key,
        record_key=f"{consumer}.dequeued",
        store=store,
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(backoff_base=0.001)),
        on_error=sink.append,
        metrics=kwargs.pop("metrics", Metrics()),
        loop=asyncio.get_running_loop(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_counter_reaches_zero_only_after_every_consumer_acks(store) -> None:
    key = await _publish_to(store, ["b", "c"])
    assert await store.blocking_move("a.b.message", "b.dequeued") == key
    assert await store.blocking_move("a.c.message", "c.dequeued") == key

    assert await _ack(store, "b", key).acknowledge() is True
    assert await store.get(f"a.reads.{key}") == 1
    assert await store.get(f"a.message.{key}") == "P1"

    assert await _ack(store, "c", key).acknowledge() is True
    assert await store.get(f"a.reads.{key}") is None
    assert await store.get(f"a.message.{key}") is None
    assert await store.lrange("b.dequeued", 0, -1) == []
    assert await store.lrange("c.dequeued", 0, -1) == []


@pytest.mark.asyncio
async def test_calling_acknowledge_twice_has_the_effect_of_once(store) -> None:
    key = await _publish_to(store, ["b", "c"])
    await store.blocking_move("a.b.message", "b.dequeued")
    ack = _ack(store, "b", key)

    first = ack()
    second = ack()

    assert first is second
    assert await first is True
    assert await store.get(f"a.reads.{key}") == 1


@pytest.mark.asyncio
async def test_stale_acknowledgement_does_not_decrement(store) -> None:
    key = await _publish_to(store, ["b", "c"])
    await store.blocking_move("a.b.message", "b.dequeued")

    assert await _ack(store, "b", key).acknowledge() is True
    # a second, independent handle for the same delivery finds nothing in flight
    assert await _ack(store, "b", key).acknowledge() is False
    assert await store.get(f"a.reads.{key}") == 1


@pytest.mark.asyncio
async def test_ack_removes_by_value_with_several_keys_in_flight(store) -> None:
    first = await _publish_to(store, ["b"], "M1")
    second = await _publish_to(store, ["b"], "M2")
    await store.blocking_move("a.b.message", "b.dequeued")
    await store.blocking_move("a.b.message", "b.dequeued")

    await _ack(store, "b", second).acknowledge()

    assert await store.lrange("b.dequeued", 0, -1) == [first]
    assert await store.get(f"a.message.{first}") == "M1"
    assert await store.get(f"a.message.{second}") is None


@pytest.mark.asyncio
async def test_on_settled_runs_after_the_ack() -> None:
    store = FlakyStore()
    key = await _publish_to(store, ["b"])
    await store.blocking_move("a.b.message", "b.dequeued")
    settled = asyncio.Event()

    await _ack(store, "b", key, on_settled=settled.set)()

    assert settled.is_set()


@pytest.mark.asyncio
async def test_transient_remove_failure_is_retried() -> None:
    store = FlakyStore({"lrem": 2})
    key = await _publish_to(store, ["b"])
    await store.blocking_move("a.b.message", "b.dequeued")

    assert await _ack(store, "b", key).acknowledge() is True
    assert store.calls["lrem"] == 3
    assert store.keys() == ["a.order.created.consumers"]


@pytest.mark.asyncio
async def test_decrement_that_keeps_failing_is_escalated() -> None:
    store = FlakyStore({"decr": -1})
    key = await _publish_to(store, ["b"])
    await store.blocking_move("a.b.message", "b.dequeued")
    faults: list[Fault] = []
    metrics = Metrics()

    ack = _ack(store, "b", key, faults, retry_policy=RetryPolicy(max_attempts=3, backoff_base=0.001), metrics=metrics)
    assert await ack.acknowledge() is True

    assert store.calls["decr"] == 3
    assert len(faults) == 1
    assert faults[0].operation == OP_ACKNOWLEDGE
    assert faults[0].message_key == key
    assert faults[0].transient is True
    assert metrics.get_counter("faults") == 1
    # counter untouched, payload kept for the TTL to reclaim
    assert await store.get(f"a.reads.{key}") == 1


@pytest.mark.asyncio
async def test_concurrent_acks_collect_the_message_exactly_once(store, caplog) -> None:
    consumers = ["b", "c", "d"]
    key = await _publish_to(store, consumers)
    for consumer in consumers:
        await store.blocking_move(f"a.{consumer}.message", f"{consumer}.dequeued")
    metrics = Metrics()

    with caplog.at_level(logging.INFO):
        results = await asyncio.gather(*(_ack(store, c, key, metrics=metrics)() for c in consumers))

    assert results == [True, True, True]
    assert metrics.get_counter("acknowledged") == 3
    assert metrics.get_counter("collected") == 1
    assert [r.getMessage() for r in caplog.records].count("collected") == 1
    assert store.keys() == ["a.order.created.consumers"]


@pytest.mark.asyncio
async def test_late_ack_after_counter_expiry_leaves_no_key_behind(caplog) -> None:
    store = FlakyStore()
    registry = Registry(store)
    await registry.subscribe("a", "order.created", "b")
    key = await Publisher("a", store, registry, message_ttl=60).publish("order.created", "P1")
    await store.blocking_move("a.b.message", "b.dequeued")
    # both keys reach their TTL before the consumer acknowledges
    for expired in (f"a.message.{key}", f"a.reads.{key}"):
        store._values[expired] = (store._values[expired][0], 0.0)
    metrics = Metrics()

    with caplog.at_level(logging.WARNING):
        assert await _ack(store, "b", key, metrics=metrics).acknowledge() is True

    assert store.calls["decr"] == 1
    assert store.keys() == ["a.order.created.consumers"]
    assert metrics.get_counter("collected") == 0
    assert any(r.getMessage() == "counter_expired" for r in caplog.records)

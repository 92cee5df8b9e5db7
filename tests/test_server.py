from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from durable_pubsub.config import ClientOptions
from durable_pubsub.registry import Registry
from durable_pubsub.server import create_app
from durable_pubsub.store import MemoryStore


def _app(store: MemoryStore, **options):
    return create_app(ClientOptions.build(identity="a", **options), store=store)


def test_health_reports_the_running_client() -> None:
    store = MemoryStore()
    with TestClient(_app(store, policy="instance")) as http:
        response = http.get("/api/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["identity"] == "a"
    assert body["policy"] == "instance"
    assert body["producers"] == []


def test_publish_is_accepted_and_fanned_out_before_shutdown() -> None:
    store = MemoryStore()
    asyncio.run(Registry(store).subscribe("a", "order.created", "b"))

    with TestClient(_app(store)) as http:
        response = http.post("/api/v1/publish", json={"action": "order.created", "payload": "P1"})
        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "action": "order.created"}

    queued = [k for k in store.keys() if k.startswith("a.message.order.created:")]
    assert len(queued) == 1
    assert "a.b.message" in store.keys()


def test_publish_rejects_bad_action() -> None:
    with TestClient(_app(MemoryStore())) as http:
        response = http.post("/api/v1/publish", json={"action": "order:created", "payload": "P1"})

    assert response.status_code == 400
    assert response.json()["error"] == "BAD_REQUEST"


def test_stats_expose_metrics() -> None:
    with TestClient(_app(MemoryStore())) as http:
        response = http.get("/api/v1/stats")

    assert response.status_code == 200
    assert set(response.json()) == {"counters", "gauges"}


def test_requests_before_startup_get_503() -> None:
    http = TestClient(_app(MemoryStore()))

    response = http.get("/api/v1/health")

    assert response.status_code == 503
    assert response.json()["error"] == "NOT_STARTED"


def test_lifespan_subscribes_from_options() -> None:
    store = MemoryStore()
    received: list = []

    def callback(topic, payload, acknowledge) -> None:
        received.append(topic)

    app = create_app(
        ClientOptions.build(identity="b", subscribe_to={"a": ["order.created"]}),
        store=store,
        callback=callback,
    )
    with TestClient(app) as http:
        body = http.get("/api/v1/health").json()

    assert body["producers"] == ["a"]
    assert "b" in asyncio.run(store.smembers("a.order.created.consumers"))

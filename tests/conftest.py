import pytest

from durable_pubsub.store import MemoryStore


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()

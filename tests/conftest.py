import asyncio
from typing import Any

import pytest
import pytest_asyncio

from fastapi_cachecoord.backends.memory import MemoryBackend
from fastapi_cachecoord.coordinator import CacheCoordinator
from fastapi_cachecoord.exceptions import StoreUnavailableError
from fastapi_cachecoord.store import MemoryStore


class CountingStore(MemoryStore):
    """Memory store that counts calls, can be paused and can fail on demand."""

    def __init__(self, records: dict[str, Any] | None = None) -> None:
        super().__init__(records)
        self.load_calls: list[str] = []
        self.save_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.failing: set[str] = set()

    async def load(self, key: str) -> Any:
        self.load_calls.append(key)
        await self.gate.wait()
        if key in self.failing:
            msg = f"store down for {key}"
            raise StoreUnavailableError(msg)
        return await super().load(key)

    async def save(self, key: str, value: Any) -> None:
        self.save_calls.append(key)
        if key in self.failing:
            msg = f"store down for {key}"
            raise StoreUnavailableError(msg)
        await super().save(key, value)

    async def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        if key in self.failing:
            msg = f"store down for {key}"
            raise StoreUnavailableError(msg)
        await super().delete(key)


@pytest.fixture
def store() -> CountingStore:
    return CountingStore({"user:1": {"name": "A"}, "user:3": {"name": "C"}})


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest_asyncio.fixture
async def coordinator(store: CountingStore, memory_backend: MemoryBackend):
    coordinator = CacheCoordinator(store, memory_backend)
    yield coordinator
    await coordinator.aclose()

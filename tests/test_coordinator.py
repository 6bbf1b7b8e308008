"""Tests for read-through, write-invalidate and single-flight behavior."""

import asyncio

import pytest

from fastapi_cachecoord.backends.memory import MemoryBackend
from fastapi_cachecoord.config import CoordinatorConfig
from fastapi_cachecoord.coordinator import CacheCoordinator
from fastapi_cachecoord.exceptions import KeyNotFoundError
from fastapi_cachecoord.exceptions import StoreUnavailableError
from fastapi_cachecoord.store import MemoryStore
from fastapi_cachecoord.types import EntryState

from conftest import CountingStore


async def _settle(coordinator: CacheCoordinator) -> None:
    """Wait for every outstanding load task."""
    while coordinator.pending_loads:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_read_through_then_hit(coordinator, store, memory_backend):
    assert await coordinator.read("user:1") == {"name": "A"}
    assert store.load_calls == ["user:1"]

    entry = await memory_backend.get("user:1")
    assert entry is not None
    assert entry.state == EntryState.VALID

    assert await coordinator.read("user:1") == {"name": "A"}
    assert store.load_calls == ["user:1"]
    assert coordinator.stats.hits == 1
    assert coordinator.stats.misses == 1


@pytest.mark.asyncio
async def test_write_invalidates_then_read_returns_new_value(
    coordinator, store, memory_backend
):
    await coordinator.read("user:1")
    await coordinator.write("user:1", {"name": "B"})

    entry = await memory_backend.get("user:1")
    assert entry.state == EntryState.INVALIDATED

    assert await coordinator.read("user:1") == {"name": "B"}
    assert store.load_calls == ["user:1", "user:1"]


@pytest.mark.asyncio
async def test_load_failure_is_surfaced_and_not_cached(
    coordinator, store, memory_backend
):
    store.failing.add("user:2")

    with pytest.raises(StoreUnavailableError):
        await coordinator.read("user:2")

    assert await memory_backend.get("user:2") is None
    assert coordinator.stats.load_failures == 1

    # The failure is not cached: the next read goes to the store again
    store.failing.clear()
    await store.save("user:2", {"name": "B"})
    assert await coordinator.read("user:2") == {"name": "B"}


@pytest.mark.asyncio
async def test_concurrent_misses_issue_one_load(coordinator, store):
    store.gate.clear()
    readers = [asyncio.create_task(coordinator.read("user:1")) for _ in range(25)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    store.gate.set()

    results = await asyncio.gather(*readers)

    assert all(result == {"name": "A"} for result in results)
    assert store.load_calls == ["user:1"]
    assert coordinator.stats.coalesced == 24


@pytest.mark.asyncio
async def test_concurrent_failure_reaches_every_waiter(coordinator, store):
    store.failing.add("user:1")
    store.gate.clear()
    readers = [asyncio.create_task(coordinator.read("user:1")) for _ in range(5)]
    await asyncio.sleep(0)
    store.gate.set()

    results = await asyncio.gather(*readers, return_exceptions=True)

    assert all(isinstance(r, StoreUnavailableError) for r in results)
    assert store.load_calls == ["user:1"]


@pytest.mark.asyncio
async def test_distinct_keys_load_independently(coordinator, store):
    store.gate.clear()
    first = asyncio.create_task(coordinator.read("user:1"))
    second = asyncio.create_task(coordinator.read("user:3"))
    await asyncio.sleep(0)
    store.gate.set()

    assert await first == {"name": "A"}
    assert await second == {"name": "C"}
    assert sorted(store.load_calls) == ["user:1", "user:3"]


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_affect_others(
    coordinator, store, memory_backend
):
    store.gate.clear()
    cancelled = asyncio.create_task(coordinator.read("user:1"))
    survivor = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)

    cancelled.cancel()
    await asyncio.sleep(0)
    store.gate.set()

    assert await survivor == {"name": "A"}
    with pytest.raises(asyncio.CancelledError):
        await cancelled
    assert store.load_calls == ["user:1"]
    assert (await memory_backend.get("user:1")).state == EntryState.VALID


@pytest.mark.asyncio
async def test_load_completes_when_every_waiter_cancelled(
    coordinator, store, memory_backend
):
    store.gate.clear()
    reader = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)
    reader.cancel()
    store.gate.set()
    await _settle(coordinator)

    entry = await memory_backend.get("user:1")
    assert entry is not None
    assert entry.value == {"name": "A"}


@pytest.mark.asyncio
async def test_write_during_inflight_read_discards_stale_load(
    coordinator, store, memory_backend
):
    store.gate.clear()
    early_reader = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)

    await coordinator.write("user:1", {"name": "B"})

    # A read issued after the write must not join the pre-write load
    late_reader = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)
    store.gate.set()

    assert await late_reader == {"name": "B"}
    await early_reader
    await _settle(coordinator)

    assert store.load_calls == ["user:1", "user:1"]
    assert coordinator.stats.discarded_loads >= 1
    entry = await memory_backend.get("user:1")
    assert entry.value == {"name": "B"}


@pytest.mark.asyncio
async def test_stale_load_never_overwrites_newer_entry(store, memory_backend):
    coordinator = CacheCoordinator(store, memory_backend)
    store.gate.clear()
    reader = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)

    await coordinator.invalidate("user:1")
    store.gate.set()
    await reader
    await _settle(coordinator)

    assert coordinator.stats.discarded_loads == 1
    assert await memory_backend.get("user:1") is None


@pytest.mark.asyncio
async def test_read_your_writes(coordinator):
    for value in ({"name": "B"}, {"name": "C"}, {"name": "D"}):
        await coordinator.write("user:1", value)
        assert await coordinator.read("user:1") == value


@pytest.mark.asyncio
async def test_failed_write_leaves_cache_untouched(coordinator, store, memory_backend):
    await coordinator.read("user:1")
    before = await memory_backend.get("user:1")
    store.failing.add("user:1")

    with pytest.raises(StoreUnavailableError):
        await coordinator.write("user:1", {"name": "B"})

    after = await memory_backend.get("user:1")
    assert after.state == EntryState.VALID
    assert after.version == before.version
    assert await coordinator.read("user:1") == {"name": "A"}


@pytest.mark.asyncio
async def test_write_maps_os_errors_to_store_unavailable(memory_backend):
    class BrokenStore(MemoryStore):
        async def save(self, key, value):
            raise ConnectionResetError("reset by peer")

    coordinator = CacheCoordinator(BrokenStore(), memory_backend)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await coordinator.write("user:1", 1)
    assert isinstance(exc_info.value.__cause__, ConnectionResetError)


@pytest.mark.asyncio
async def test_load_timeout_is_a_load_failure(memory_backend):
    class TimingOutStore(MemoryStore):
        async def load(self, key):
            raise asyncio.TimeoutError

    coordinator = CacheCoordinator(TimingOutStore(), memory_backend)

    with pytest.raises(StoreUnavailableError):
        await coordinator.read("user:1")
    assert await memory_backend.get("user:1") is None


@pytest.mark.asyncio
async def test_delete_invalidates(coordinator, store, memory_backend):
    await coordinator.read("user:1")
    await coordinator.delete("user:1")

    assert (await memory_backend.get("user:1")).state == EntryState.INVALIDATED
    with pytest.raises(KeyNotFoundError):
        await coordinator.read("user:1")


@pytest.mark.asyncio
async def test_failed_delete_leaves_cache_untouched(coordinator, store, memory_backend):
    await coordinator.read("user:1")
    store.failing.add("user:1")

    with pytest.raises(StoreUnavailableError):
        await coordinator.delete("user:1")

    assert (await memory_backend.get("user:1")).state == EntryState.VALID


@pytest.mark.asyncio
async def test_all_keys_scope_invalidates_everything(store, memory_backend):
    config = CoordinatorConfig(invalidation_scope="all-keys")
    coordinator = CacheCoordinator(store, memory_backend, config)
    await coordinator.read("user:1")
    await coordinator.read("user:3")

    await coordinator.write("user:1", {"name": "B"})

    assert (await memory_backend.get("user:1")).state == EntryState.INVALIDATED
    assert (await memory_backend.get("user:3")).state == EntryState.INVALIDATED
    assert await coordinator.read("user:3") == {"name": "C"}


@pytest.mark.asyncio
async def test_single_key_scope_keeps_other_keys(coordinator, memory_backend):
    await coordinator.read("user:1")
    await coordinator.read("user:3")

    await coordinator.write("user:1", {"name": "B"})

    assert (await memory_backend.get("user:3")).state == EntryState.VALID


@pytest.mark.asyncio
async def test_write_through_updates_entry(store, memory_backend):
    coordinator = CacheCoordinator(
        store, memory_backend, CoordinatorConfig(write_through=True)
    )
    await coordinator.read("user:1")
    await coordinator.write("user:1", {"name": "B"})

    entry = await memory_backend.get("user:1")
    assert entry.state == EntryState.VALID
    assert entry.value == {"name": "B"}
    assert entry.version == 2
    assert await coordinator.read("user:1") == {"name": "B"}
    assert store.load_calls == ["user:1"]


@pytest.mark.asyncio
async def test_expired_entry_is_reloaded(store, memory_backend):
    coordinator = CacheCoordinator(store, memory_backend, CoordinatorConfig(ttl=0.05))
    await coordinator.read("user:1")
    await store.save("user:1", {"name": "Z"})
    await asyncio.sleep(0.1)

    assert await coordinator.read("user:1") == {"name": "Z"}
    assert store.load_calls == ["user:1", "user:1"]
    entry = await memory_backend.get("user:1")
    assert entry.version == 2


@pytest.mark.asyncio
async def test_per_key_ttl(store, memory_backend):
    config = CoordinatorConfig(ttl=60, key_ttls={"user:": 5})
    coordinator = CacheCoordinator(store, memory_backend, config)

    entry = await coordinator.read_entry("user:1")

    assert entry.ttl_remaining() <= 5


@pytest.mark.asyncio
async def test_not_found_is_not_cached_by_default(coordinator, store, memory_backend):
    with pytest.raises(KeyNotFoundError):
        await coordinator.read("user:404")
    with pytest.raises(KeyNotFoundError):
        await coordinator.read("user:404")

    assert store.load_calls == ["user:404", "user:404"]
    assert await memory_backend.get("user:404") is None


@pytest.mark.asyncio
async def test_not_found_cached_when_configured(store, memory_backend):
    config = CoordinatorConfig(not_found_ttl=60)
    coordinator = CacheCoordinator(store, memory_backend, config)

    with pytest.raises(KeyNotFoundError):
        await coordinator.read("user:404")
    with pytest.raises(KeyNotFoundError):
        await coordinator.read("user:404")

    assert store.load_calls == ["user:404"]
    entry = await memory_backend.get("user:404")
    assert entry.found is False

    await coordinator.write("user:404", {"name": "new"})
    assert await coordinator.read("user:404") == {"name": "new"}


@pytest.mark.asyncio
async def test_coalesce_window_supersedes_old_load(store, memory_backend):
    config = CoordinatorConfig(coalesce_window=0.01)
    coordinator = CacheCoordinator(store, memory_backend, config)
    store.gate.clear()
    first = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0.05)

    second = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)
    store.gate.set()

    assert await first == {"name": "A"}
    assert await second == {"name": "A"}
    assert store.load_calls == ["user:1", "user:1"]


@pytest.mark.asyncio
async def test_pass_through_backend_always_loads(store):
    coordinator = CacheCoordinator(store, MemoryBackend(max_entries=0))

    assert await coordinator.read("user:1") == {"name": "A"}
    assert await coordinator.read("user:1") == {"name": "A"}
    assert store.load_calls == ["user:1", "user:1"]


@pytest.mark.asyncio
async def test_repeated_invalidate_is_idempotent(coordinator, memory_backend):
    await coordinator.read("user:1")
    await coordinator.invalidate("user:1")
    first = (await memory_backend.get("user:1")).to_dict()

    await coordinator.invalidate("user:1")

    assert (await memory_backend.get("user:1")).to_dict() == first


@pytest.mark.asyncio
async def test_aclose_cancels_pending_loads(coordinator, store):
    store.gate.clear()
    reader = asyncio.create_task(coordinator.read("user:1"))
    await asyncio.sleep(0)
    assert coordinator.pending_loads == 1

    await coordinator.aclose()

    with pytest.raises(asyncio.CancelledError):
        await reader
    assert coordinator.pending_loads == 0


@pytest.mark.asyncio
async def test_waiter_keeps_loaded_value_when_write_lands_before_wakeup(
    memory_backend,
):
    class GatedWriteStore(CountingStore):
        async def save(self, key, value):
            await self.gate.wait()
            await super().save(key, value)

    store = GatedWriteStore({"user:1": {"name": "A"}})
    coordinator = CacheCoordinator(store, memory_backend)
    store.gate.clear()
    reader = asyncio.create_task(coordinator.read("user:1"))
    writer = asyncio.create_task(coordinator.write("user:1", {"name": "B"}))
    await asyncio.sleep(0)

    # The load resolves first, then the write invalidates before the reader wakes
    store.gate.set()
    await writer

    assert await reader == {"name": "A"}
    assert (await memory_backend.get("user:1")).state == EntryState.INVALIDATED
    assert await coordinator.read("user:1") == {"name": "B"}
    await coordinator.aclose()

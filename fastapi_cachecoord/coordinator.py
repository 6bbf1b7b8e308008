"""Cache coordinator: read-through, write-invalidate and single-flight loads."""

import asyncio
import time
from collections import Counter
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import replace
from logging import getLogger
from typing import Any
from typing import Optional

from .backends import BaseEntryCache
from .backends import MemoryBackend
from .config import CoordinatorConfig
from .exceptions import ConcurrentInvalidationRaceError
from .exceptions import KeyNotFoundError
from .exceptions import StoreError
from .exceptions import StoreUnavailableError
from .store import StoreAdapter
from .types import CacheEntry
from .types import LoadRequest
from .types import compute_etag

logger = getLogger(__name__)


@dataclass
class CacheStats:
    """Coordinator counters."""

    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    loads: int = 0
    load_failures: int = 0
    discarded_loads: int = 0
    invalidations: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CacheCoordinator:
    """Mediate reads and writes so the entry cache and the store stay consistent.

    Reads are served from the entry cache when the entry is valid and
    unexpired. Misses are loaded from the store exactly once per key no
    matter how many readers arrive concurrently; the load runs in its own
    task so a cancelled reader never cancels it. Successful mutations bump an
    invalidation generation and invalidate the cache, and a load that
    observed an older generation is never written back to the cache.
    """

    def __init__(
        self,
        store: StoreAdapter,
        backend: Optional[BaseEntryCache] = None,
        config: Optional[CoordinatorConfig] = None,
    ) -> None:
        self.store = store
        self.backend = backend if backend is not None else MemoryBackend()
        self.config = config if config is not None else CoordinatorConfig()
        self.stats = CacheStats()
        self._inflight: dict[str, LoadRequest] = {}
        self._outstanding: Counter[str] = Counter()
        self._tasks: set[asyncio.Task[None]] = set()
        self._clock = 0
        self._global_generation = 0
        self._key_generations: dict[str, int] = {}

    @property
    def pending_loads(self) -> int:
        return len(self._tasks)

    def _generation(self, key: str) -> int:
        return max(self._key_generations.get(key, 0), self._global_generation)

    def _bump_generation(self, key: Optional[str] = None) -> None:
        self._clock += 1
        if key is None:
            self._global_generation = self._clock
            self._key_generations.clear()
        elif self._outstanding[key] > 0:
            # Only keys with a load in progress need a per-key generation.
            self._key_generations[key] = self._clock

    def _joinable(self, request: LoadRequest) -> bool:
        window = self.config.coalesce_window
        return window is None or time.monotonic() - request.started_at <= window

    async def read(self, key: str) -> Any:
        """Return the value for a key, loading it from the store on a miss.

        Raises:
            KeyNotFoundError: If the store has no such key
            StoreUnavailableError: If the store could not be reached
        """
        entry = await self.read_entry(key)
        return entry.value

    async def read_entry(self, key: str) -> CacheEntry:
        """Like ``read`` but return the entry with its version metadata."""
        entry = await self.backend.get(key)
        if entry is not None and entry.is_fresh():
            self.stats.hits += 1
            if not entry.found:
                raise KeyNotFoundError(key)
            logger.debug("Cache hit for <%s> (version %d)", key, entry.version)
            return entry

        self.stats.misses += 1
        request = self._join_or_start(key, entry)
        request.waiters += 1
        try:
            # Shielded so a cancelled reader leaves the load and other waiters alone
            return await asyncio.shield(request.future)
        finally:
            request.waiters -= 1

    def _join_or_start(self, key: str, entry: Optional[CacheEntry]) -> LoadRequest:
        generation = self._generation(key)
        request = self._inflight.get(key)
        if (
            request is not None
            and request.generation == generation
            and self._joinable(request)
        ):
            self.stats.coalesced += 1
            logger.debug("Joining in-flight load for <%s>", key)
            return request

        request = LoadRequest(
            key=key,
            future=asyncio.get_running_loop().create_future(),
            generation=generation,
        )
        self._inflight[key] = request
        self._outstanding[key] += 1
        task = asyncio.create_task(self._load(request, entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return request

    async def _load(self, request: LoadRequest, previous: Optional[CacheEntry]) -> None:
        key = request.key
        self.stats.loads += 1
        logger.debug("Loading <%s> from store", key)
        try:
            if previous is not None and previous.is_expired():
                await self.backend.mark_revalidating(key)
            value = await self.store.load(key)
        except KeyNotFoundError as exc:
            await self._cache_not_found(request)
            self._finish(request, exc=exc)
            return
        except StoreError as exc:
            self.stats.load_failures += 1
            logger.warning("Store load of <%s> failed: %s", key, exc)
            self._finish(request, exc=exc)
            return
        except (asyncio.TimeoutError, OSError) as exc:
            self.stats.load_failures += 1
            logger.warning("Store load of <%s> failed: %s", key, exc)
            error = StoreUnavailableError(f"Store load of {key!r} failed: {exc}")
            error.__cause__ = exc
            self._finish(request, exc=error)
            return
        except asyncio.CancelledError:
            self._finish(request, cancelled=True)
            raise
        except Exception as exc:
            self.stats.load_failures += 1
            logger.exception("Unexpected error loading <%s>", key)
            self._finish(request, exc=exc)
            return

        try:
            entry = await self._populate(request, value)
        except ConcurrentInvalidationRaceError as exc:
            self.stats.discarded_loads += 1
            logger.info("%s", exc)
            entry = CacheEntry(key=key, value=value, version=0, etag=compute_etag(value))
        except asyncio.CancelledError:
            self._finish(request, cancelled=True)
            raise
        self._finish(request, result=entry)

    async def _populate(self, request: LoadRequest, value: Any) -> CacheEntry:
        key = request.key
        if request.generation != self._generation(key):
            msg = f"Discarding load of <{key}>: invalidated while in flight"
            raise ConcurrentInvalidationRaceError(msg)

        entry = await self.backend.put(key, value, self.config.ttl_for(key))
        if request.generation != self._generation(key):
            # An invalidation landed while the put was in progress
            await self.backend.invalidate(key)
            msg = f"Discarding load of <{key}>: invalidated while being stored"
            raise ConcurrentInvalidationRaceError(msg)
        return entry

    async def _cache_not_found(self, request: LoadRequest) -> None:
        ttl = self.config.not_found_ttl
        if ttl is None or request.generation != self._generation(request.key):
            return
        await self.backend.put(request.key, None, ttl, found=False)

    def _finish(
        self,
        request: LoadRequest,
        result: Optional[CacheEntry] = None,
        exc: Optional[BaseException] = None,
        cancelled: bool = False,
    ) -> None:
        key = request.key
        if self._inflight.get(key) is request:
            del self._inflight[key]
        self._outstanding[key] -= 1
        if self._outstanding[key] <= 0:
            del self._outstanding[key]
            self._key_generations.pop(key, None)

        future = request.future
        if future.done():
            return
        if cancelled:
            future.cancel()
        elif exc is not None:
            future.set_exception(exc)
            # Mark retrieved so an unobserved failure is not reported by the loop
            future.exception()
        else:
            # Waiters get their own copy; the backend may replace or reclaim its entry
            future.set_result(replace(result) if result is not None else None)

    async def write(self, key: str, value: Any) -> None:
        """Save a value to the store, then invalidate (or update) the cache.

        On failure the cache is left untouched and the error is raised.
        """
        try:
            await self.store.save(key, value)
        except (asyncio.TimeoutError, OSError) as exc:
            msg = f"Store save of {key!r} failed: {exc}"
            raise StoreUnavailableError(msg) from exc

        if self.config.write_through:
            if self.config.invalidation_scope == "all-keys":
                await self.invalidate_all()
            else:
                self._bump_generation(key)
            await self.backend.put(key, value, self.config.ttl_for(key))
            logger.debug("Wrote through <%s>", key)
        else:
            await self._invalidate_scope(key)

    async def delete(self, key: str) -> None:
        """Delete a key from the store, then invalidate the cache."""
        try:
            await self.store.delete(key)
        except (asyncio.TimeoutError, OSError) as exc:
            msg = f"Store delete of {key!r} failed: {exc}"
            raise StoreUnavailableError(msg) from exc

        await self._invalidate_scope(key)

    async def _invalidate_scope(self, key: str) -> None:
        if self.config.invalidation_scope == "all-keys":
            await self.invalidate_all()
        else:
            await self.invalidate(key)

    async def invalidate(self, key: str) -> None:
        """Invalidate one key; in-flight loads for it will not be cached."""
        self._bump_generation(key)
        self.stats.invalidations += 1
        await self.backend.invalidate(key)
        logger.debug("Invalidated <%s>", key)

    async def invalidate_all(self) -> None:
        """Invalidate every key; in-flight loads will not be cached."""
        self._bump_generation()
        self.stats.invalidations += 1
        await self.backend.invalidate_all()
        logger.debug("Invalidated all keys")

    async def aclose(self) -> None:
        """Cancel outstanding loads."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

import asyncio
import time
from collections import OrderedDict
from dataclasses import replace
from logging import getLogger
from typing import Any
from typing import Optional

from fastapi_cachecoord.types import CacheEntry
from fastapi_cachecoord.types import EntryState
from fastapi_cachecoord.types import compute_etag

from .base import BaseEntryCache

logger = getLogger(__name__)


class MemoryBackend(BaseEntryCache):
    """In-memory entry cache backend implementation.

    Args:
        max_entries: Optional capacity bound; the least recently written
            entry is evicted when exceeded. ``0`` means no capacity at all,
            which turns the cache into a pass-through.
        cleanup_interval: Seconds between expired entry sweeps
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        cleanup_interval: float = 60,
    ) -> None:
        if max_entries is not None and max_entries < 0:
            msg = "max_entries must be >= 0"
            raise ValueError(msg)
        self.cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self.lock = asyncio.Lock()
        self.max_entries = max_entries
        self.cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    @property
    def available(self) -> bool:
        return self.max_entries != 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self.lock:
            return self.cache.get(key)

    async def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        *,
        found: bool = True,
    ) -> CacheEntry:
        now = time.time()
        async with self.lock:
            previous = self.cache.pop(key, None)
            entry = CacheEntry(
                key=key,
                value=value,
                version=previous.version + 1 if previous else 1,
                expires_at=now + ttl if ttl is not None else None,
                updated_at=now,
                found=found,
                etag=compute_etag(value) if found else None,
            )
            if not self.available:
                logger.warning("Memory backend has no capacity, dropping <%s>", key)
                return entry

            self.cache[key] = entry
            if self.max_entries is not None:
                while len(self.cache) > self.max_entries:
                    evicted, _ = self.cache.popitem(last=False)
                    logger.debug("Evicted <%s> under capacity pressure", evicted)
            return entry

    async def invalidate(self, key: str) -> None:
        async with self.lock:
            entry = self.cache.get(key)
            if entry is not None:
                self.cache[key] = replace(
                    entry, state=EntryState.INVALIDATED, value=None
                )

    async def invalidate_all(self) -> None:
        async with self.lock:
            for key, entry in list(self.cache.items()):
                self.cache[key] = replace(
                    entry, state=EntryState.INVALIDATED, value=None
                )

    async def mark_revalidating(self, key: str) -> None:
        async with self.lock:
            entry = self.cache.get(key)
            if entry is not None and entry.state == EntryState.VALID:
                self.cache[key] = replace(entry, state=EntryState.REVALIDATING)

    async def delete(self, key: str) -> None:
        async with self.lock:
            self.cache.pop(key, None)

    async def clear(self) -> None:
        async with self.lock:
            self.cache.clear()

    async def entries(self) -> list[CacheEntry]:
        async with self.lock:
            return list(self.cache.values())

    async def _run_cleanup(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            await self.cleanup()

    def start_cleanup(self) -> None:
        """Start the periodic cleanup task on the running loop."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._run_cleanup())

    def stop_cleanup(self) -> None:
        """Stop the periodic cleanup task if it is running."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def cleanup(self) -> None:
        """Reclaim expired and invalidated entries."""
        async with self.lock:
            now = time.time()
            stale_keys = [
                k
                for k, v in self.cache.items()
                if v.state == EntryState.INVALIDATED or v.is_expired(now)
            ]
            for key in stale_keys:
                self.cache.pop(key, None)

from abc import ABC
from abc import abstractmethod
from typing import Any
from typing import Optional

from fastapi_cachecoord.types import CacheEntry


class BaseEntryCache(ABC):
    """Base class for all entry cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Retrieve an entry without side effects."""

    @abstractmethod
    async def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        *,
        found: bool = True,
    ) -> CacheEntry:
        """Create or overwrite an entry, bumping its version."""

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        """Mark an entry invalidated so it is never served as valid again."""

    @abstractmethod
    async def invalidate_all(self) -> None:
        """Mark every tracked entry invalidated."""

    @abstractmethod
    async def mark_revalidating(self, key: str) -> None:
        """Flag a valid entry as being reloaded from the store."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove an entry from the cache."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all entries."""

    @abstractmethod
    async def entries(self) -> list[CacheEntry]:
        """Snapshot of every tracked entry."""

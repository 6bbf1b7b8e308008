"""Store adapter interface to the authoritative data store."""

import asyncio
import copy
from abc import ABC
from abc import abstractmethod
from logging import getLogger
from typing import Any

from .exceptions import KeyNotFoundError
from .exceptions import StoreUnavailableError

logger = getLogger(__name__)


class StoreAdapter(ABC):
    """Thin interface to the authoritative store; no caching logic.

    Implementations raise ``KeyNotFoundError`` for absent keys and
    ``StoreUnavailableError`` when the store cannot be reached. Calls are
    never retried by the coordinator.
    """

    @abstractmethod
    async def load(self, key: str) -> Any:
        """Load the authoritative value for a key."""

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Persist a value for a key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key from the store."""


class MemoryStore(StoreAdapter):
    """Dict-backed store adapter.

    Values are deep-copied on the way in and out so callers can never
    mutate the authoritative record through a returned object.
    """

    def __init__(self, records: dict[str, Any] | None = None) -> None:
        self.records: dict[str, Any] = copy.deepcopy(records) if records else {}

    async def load(self, key: str) -> Any:
        try:
            return copy.deepcopy(self.records[key])
        except KeyError:
            raise KeyNotFoundError(key) from None

    async def save(self, key: str, value: Any) -> None:
        self.records[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self.records.pop(key, None)


class TimeoutStore(StoreAdapter):
    """Bound every call of a wrapped adapter with a timeout.

    A call that exceeds ``timeout`` seconds raises ``StoreUnavailableError``.
    """

    def __init__(self, store: StoreAdapter, timeout: float) -> None:
        if timeout <= 0:
            msg = "timeout must be positive"
            raise ValueError(msg)
        self.store = store
        self.timeout = timeout

    async def _call(self, operation: str, key: str, *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                getattr(self.store, operation)(key, *args), self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Store %s of <%s> timed out after %.3fs", operation, key, self.timeout
            )
            msg = f"Store {operation} of {key!r} timed out"
            raise StoreUnavailableError(msg) from exc

    async def load(self, key: str) -> Any:
        return await self._call("load", key)

    async def save(self, key: str, value: Any) -> None:
        await self._call("save", key, value)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

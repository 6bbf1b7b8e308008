"""Client-side stale-while-revalidate mirror of the coordinator's state."""

import asyncio
import time
from abc import ABC
from abc import abstractmethod
from collections import Counter
from dataclasses import dataclass
from functools import partial
from logging import getLogger
from typing import Any
from typing import Optional
from urllib.parse import quote

import httpx
from starlette.status import HTTP_304_NOT_MODIFIED
from starlette.status import HTTP_404_NOT_FOUND
from starlette.status import HTTP_503_SERVICE_UNAVAILABLE

from .config import ClientCacheConfig
from .coordinator import CacheCoordinator
from .exceptions import ClientRollbackError
from .exceptions import KeyNotFoundError
from .exceptions import RemoteError
from .exceptions import StoreUnavailableError
from .types import ClientRead
from .types import RemoteValue

logger = getLogger(__name__)


class RemoteSource(ABC):
    """The coordinator's public read/write surface as seen by a client."""

    @abstractmethod
    async def fetch(self, key: str, etag: Optional[str] = None) -> Optional[RemoteValue]:
        """Fetch a value, or return None when it still matches ``etag``."""

    @abstractmethod
    async def push(self, key: str, value: Any) -> None:
        """Write a value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key."""


class CoordinatorRemote(RemoteSource):
    """In-process remote talking to a coordinator directly."""

    def __init__(self, coordinator: CacheCoordinator) -> None:
        self.coordinator = coordinator

    async def fetch(self, key: str, etag: Optional[str] = None) -> Optional[RemoteValue]:
        entry = await self.coordinator.read_entry(key)
        if etag is not None and entry.etag == etag:
            return None
        return RemoteValue(
            key=key,
            value=entry.value,
            version=entry.version,
            etag=entry.etag,
            updated_at=entry.updated_at,
        )

    async def push(self, key: str, value: Any) -> None:
        await self.coordinator.write(key, value)

    async def remove(self, key: str) -> None:
        await self.coordinator.delete(key)


class HttpRemote(RemoteSource):
    """Remote talking to the routes mounted by ``add_routes`` over HTTP."""

    def __init__(self, client: httpx.AsyncClient, prefix: str = "/cache") -> None:
        self.client = client
        self.prefix = prefix

    def _url(self, key: str) -> str:
        return f"{self.prefix}/entries/{quote(key, safe=':')}"

    def _raise_for_status(self, key: str, response: httpx.Response) -> None:
        if response.status_code == HTTP_404_NOT_FOUND:
            raise KeyNotFoundError(key)
        if response.status_code == HTTP_503_SERVICE_UNAVAILABLE:
            msg = f"Remote store unavailable for {key!r}: {response.text}"
            raise StoreUnavailableError(msg)
        if response.is_error:
            msg = f"Unexpected status {response.status_code} for {key!r}"
            raise RemoteError(msg)

    async def _send(self, method: str, key: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, self._url(key), **kwargs)
        except httpx.TransportError as exc:
            msg = f"{method} {key!r} failed: {exc}"
            raise RemoteError(msg) from exc
        self._raise_for_status(key, response)
        return response

    async def fetch(self, key: str, etag: Optional[str] = None) -> Optional[RemoteValue]:
        headers = {"If-None-Match": etag} if etag else {}
        response = await self._send("GET", key, headers=headers)
        if response.status_code == HTTP_304_NOT_MODIFIED:
            return None
        data = response.json()
        return RemoteValue(
            key=key,
            value=data["value"],
            version=data["version"],
            etag=data.get("etag"),
            updated_at=data.get("updated_at"),
        )

    async def push(self, key: str, value: Any) -> None:
        await self._send("PUT", key, json={"value": value})

    async def remove(self, key: str) -> None:
        await self._send("DELETE", key)


@dataclass
class LocalCopy:
    value: Any
    version: Optional[int]
    etag: Optional[str]
    fetched_at: float


class RevalidatingClientCache:
    """Stale-while-revalidate cache mirroring a remote surface.

    Reads with a local copy return immediately; copies older than the
    freshness window are reported stale and refreshed in the background.
    Only one revalidation per key is outstanding at a time. Each local
    mutation bumps the key's revision so a revalidation started before it is
    neither reused nor allowed to overwrite the optimistic value.
    """

    def __init__(
        self,
        remote: RemoteSource,
        config: Optional[ClientCacheConfig] = None,
    ) -> None:
        self.remote = remote
        self.config = config if config is not None else ClientCacheConfig()
        self._copies: dict[str, LocalCopy] = {}
        self._revisions: Counter[str] = Counter()
        self._revalidations: dict[str, tuple[int, "asyncio.Task[LocalCopy]"]] = {}
        self._awaited: set["asyncio.Task[LocalCopy]"] = set()

    def _is_stale(self, copy: LocalCopy) -> bool:
        return time.monotonic() - copy.fetched_at >= self.config.freshness_window

    def pending(self, key: str) -> "Optional[asyncio.Task[LocalCopy]]":
        """The outstanding revalidation for a key, if any."""
        current = self._revalidations.get(key)
        return current[1] if current is not None else None

    async def read(self, key: str) -> ClientRead:
        """Serve the local copy, revalidating it in the background when stale.

        Without a local copy the read waits for the remote.
        """
        copy = self._copies.get(key)
        if copy is None:
            copy = await self._await_revalidation(key)
            return ClientRead(value=copy.value, is_stale=False, version=copy.version)

        is_stale = self._is_stale(copy)
        if is_stale:
            self._revalidation(key)
        return ClientRead(value=copy.value, is_stale=is_stale, version=copy.version)

    async def revalidate(self, key: str) -> ClientRead:
        """Refresh a key from the remote now, joining any outstanding refresh."""
        copy = await self._await_revalidation(key)
        return ClientRead(value=copy.value, is_stale=False, version=copy.version)

    def _revalidation(self, key: str) -> "asyncio.Task[LocalCopy]":
        revision = self._revisions[key]
        current = self._revalidations.get(key)
        if current is not None and current[0] == revision and not current[1].done():
            return current[1]

        task = asyncio.create_task(self._revalidate(key, revision))
        self._revalidations[key] = (revision, task)
        task.add_done_callback(partial(self._revalidation_done, key))
        return task

    def _revalidation_done(self, key: str, task: "asyncio.Task[LocalCopy]") -> None:
        current = self._revalidations.get(key)
        if current is not None and current[1] is task:
            del self._revalidations[key]
        awaited = task in self._awaited
        self._awaited.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not awaited:
            logger.warning("Background revalidation of <%s> failed: %s", key, exc)

    async def _await_revalidation(self, key: str) -> LocalCopy:
        task = self._revalidation(key)
        self._awaited.add(task)
        return await asyncio.shield(task)

    async def _revalidate(self, key: str, revision: int) -> LocalCopy:
        copy = self._copies.get(key)
        try:
            result = await self.remote.fetch(key, etag=copy.etag if copy else None)
            if result is None and self._copies.get(key) is None:
                # The copy the etag came from is gone; fetch the full value
                result = await self.remote.fetch(key)
        except KeyNotFoundError:
            if self._revisions[key] == revision:
                self._copies.pop(key, None)
            raise

        current = self._copies.get(key)
        if result is None:
            if current is None:
                msg = f"Remote reported {key!r} unchanged without an etag"
                raise RemoteError(msg)
            if self._revisions[key] == revision:
                current.fetched_at = time.monotonic()
            return current

        fresh = LocalCopy(
            value=result.value,
            version=result.version,
            etag=result.etag,
            fetched_at=time.monotonic(),
        )
        if self._revisions[key] != revision:
            # A local mutation, removal or invalidation happened meanwhile;
            # only callers blocked on this fetch see its result.
            logger.debug("Not storing revalidation of <%s> superseded locally", key)
            return current if current is not None else fresh

        self._copies[key] = fresh
        return fresh

    async def mutate(self, key: str, value: Any) -> None:
        """Optimistically update a key, rolling back if the remote write fails.

        Raises:
            ClientRollbackError: If the remote write failed; the local copy
                is restored to its pre-mutation state
        """
        previous = self._copies.get(key)
        self._revisions[key] += 1
        revision = self._revisions[key]
        self._copies[key] = LocalCopy(
            value=value,
            version=previous.version if previous else None,
            etag=None,
            fetched_at=time.monotonic(),
        )
        try:
            await self.remote.push(key, value)
        except Exception as exc:
            self._rollback(key, revision, previous)
            msg = f"Write of {key!r} failed, local copy restored: {exc}"
            raise ClientRollbackError(key, msg) from exc

        if self.config.revalidate_on_mutate:
            self._revalidation(key)

    async def remove(self, key: str) -> None:
        """Optimistically drop a key, restoring it if the remote delete fails."""
        previous = self._copies.pop(key, None)
        self._revisions[key] += 1
        revision = self._revisions[key]
        try:
            await self.remote.remove(key)
        except Exception as exc:
            self._rollback(key, revision, previous)
            msg = f"Delete of {key!r} failed, local copy restored: {exc}"
            raise ClientRollbackError(key, msg) from exc

    def _rollback(self, key: str, revision: int, previous: Optional[LocalCopy]) -> None:
        if self._revisions[key] != revision:
            # A later local mutation owns the copy now
            return
        if previous is None:
            self._copies.pop(key, None)
        else:
            self._copies[key] = previous
        logger.info("Rolled back local copy of <%s>", key)

    def invalidate(self, key: str) -> None:
        """Forget the local copy so the next read goes to the remote."""
        self._revisions[key] += 1
        self._copies.pop(key, None)

    async def aclose(self) -> None:
        """Cancel outstanding revalidations."""
        tasks = [task for _, task in self._revalidations.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

import time
from logging import getLogger
from typing import TYPE_CHECKING
from typing import Any
from typing import Optional

import orjson

from fastapi_cachecoord.exceptions import CacheCoordError
from fastapi_cachecoord.types import CacheEntry
from fastapi_cachecoord.types import EntryState
from fastapi_cachecoord.types import compute_etag

from .base import BaseEntryCache

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = getLogger(__name__)


class AsyncRedisEntryCache(BaseEntryCache):
    """Redis-backed entry cache.

    Entries outlive their freshness window by ``retention`` seconds so an
    expired entry stays visible as a revalidation candidate. Connection
    errors and timeouts degrade the cache to a pass-through: reads report
    absent and writes are dropped with a warning.
    """

    client: "Redis"

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: Optional[str] = None,
        db: int = 0,
        socket_timeout: float = 1.0,
        socket_connect_timeout: float = 1.0,
        key_prefix: str = "cachecoord:",
        retention: float = 60.0,
        **kwargs: Any,
    ) -> None:
        try:
            from redis.asyncio import Redis
            from redis.exceptions import ConnectionError as RedisConnectionError
            from redis.exceptions import TimeoutError as RedisTimeoutError
            from redis.exceptions import WatchError
        except ImportError:
            msg = "redis[hiredis] is not installed. Please install it with 'pip install \"redis[hiredis]\"' "
            raise CacheCoordError(msg)

        self.client = Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            **kwargs,
        )
        self.key_prefix = key_prefix
        self.retention = retention
        self._unavailable_errors: tuple[type[Exception], ...] = (
            RedisConnectionError,
            RedisTimeoutError,
        )
        self._watch_error: type[Exception] = WatchError

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}entry:{key}"

    def _version_key(self, key: str) -> str:
        return f"{self.key_prefix}version:{key}"

    def _serialize(self, entry: CacheEntry) -> bytes:
        return orjson.dumps(entry.to_dict())

    def _deserialize(self, raw: bytes | str) -> CacheEntry:
        return CacheEntry.from_dict(orjson.loads(raw))

    def _expiry_ms(self, ttl: Optional[float]) -> Optional[int]:
        if ttl is None:
            return None
        return int((ttl + self.retention) * 1000)

    def _unavailable(self, operation: str, key: str, exc: Exception) -> None:
        logger.warning(
            "Redis unavailable during %s of <%s>, passing through: %s",
            operation,
            key,
            exc,
        )

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self.client.get(self._make_key(key))
        except self._unavailable_errors as exc:
            self._unavailable("get", key, exc)
            return None
        if raw is None:
            return None
        return self._deserialize(raw)

    async def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        *,
        found: bool = True,
    ) -> CacheEntry:
        now = time.time()
        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl if ttl is not None else None,
            updated_at=now,
            found=found,
            etag=compute_etag(value) if found else None,
        )
        px = self._expiry_ms(ttl)
        try:
            entry.version = await self.client.incr(self._version_key(key))
            await self.client.set(self._make_key(key), self._serialize(entry), px=px)
            if px is not None:
                await self.client.pexpire(self._version_key(key), px)
        except self._unavailable_errors as exc:
            self._unavailable("put", key, exc)
        return entry

    async def _rewrite_state(self, key: str, state: EntryState) -> None:
        """Change an entry's state under WATCH so a concurrent put is never lost.

        If the entry changes between the read and the write the transaction
        aborts and the rewrite is retried against the new entry.
        """
        redis_key = self._make_key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(redis_key)
                    raw = await pipe.get(redis_key)
                    if raw is None:
                        return
                    entry = self._deserialize(raw)
                    revalidating = state == EntryState.REVALIDATING
                    if revalidating and entry.state != EntryState.VALID:
                        return
                    entry.state = state
                    if state == EntryState.INVALIDATED:
                        entry.value = None
                    pipe.multi()
                    pipe.set(redis_key, self._serialize(entry), keepttl=True)
                    await pipe.execute()
                    return
                except self._watch_error:
                    logger.debug("Entry <%s> changed during state rewrite, retrying", key)
                    continue

    async def invalidate(self, key: str) -> None:
        try:
            await self._rewrite_state(key, EntryState.INVALIDATED)
        except self._unavailable_errors as exc:
            self._unavailable("invalidate", key, exc)

    async def invalidate_all(self) -> None:
        entry_prefix = self._make_key("")
        try:
            async for redis_key in self.client.scan_iter(match=f"{entry_prefix}*"):
                name = redis_key.decode() if isinstance(redis_key, bytes) else redis_key
                await self._rewrite_state(
                    name[len(entry_prefix) :], EntryState.INVALIDATED
                )
        except self._unavailable_errors as exc:
            self._unavailable("invalidate_all", "*", exc)

    async def mark_revalidating(self, key: str) -> None:
        try:
            await self._rewrite_state(key, EntryState.REVALIDATING)
        except self._unavailable_errors as exc:
            self._unavailable("mark_revalidating", key, exc)

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._make_key(key))
        except self._unavailable_errors as exc:
            self._unavailable("delete", key, exc)

    async def clear(self) -> None:
        try:
            keys = [k async for k in self.client.scan_iter(match=f"{self.key_prefix}*")]
            if keys:
                await self.client.delete(*keys)
        except self._unavailable_errors as exc:
            self._unavailable("clear", "*", exc)

    async def entries(self) -> list[CacheEntry]:
        try:
            keys = [
                k async for k in self.client.scan_iter(match=f"{self._make_key('')}*")
            ]
            if not keys:
                return []
            raws = await self.client.mget(keys)
        except self._unavailable_errors as exc:
            self._unavailable("entries", "*", exc)
            return []
        return [self._deserialize(raw) for raw in raws if raw is not None]

    async def close(self) -> None:
        await self.client.aclose()

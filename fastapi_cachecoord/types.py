"""Type definitions and type aliases for FastAPI-CacheCoord."""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import Literal

import orjson

# Cache key separator - using ||| to avoid conflicts with ids that contain ':'
CACHE_KEY_SEPARATOR = "|||"

CacheKey = str

InvalidationScope = Literal["single-key", "all-keys"]


def make_cache_key(*parts: object) -> CacheKey:
    """Build a deterministic cache key from its logical parts.

    Args:
        parts: Components such as entity type and id, or a query signature

    Returns:
        The joined key

    Raises:
        ValueError: If no parts are given or a part contains the separator
    """
    if not parts:
        msg = "At least one key part is required"
        raise ValueError(msg)

    rendered = [str(part) for part in parts]
    for part in rendered:
        if CACHE_KEY_SEPARATOR in part:
            msg = f"Key part must not contain {CACHE_KEY_SEPARATOR!r}: {part!r}"
            raise ValueError(msg)
    return CACHE_KEY_SEPARATOR.join(rendered)


def compute_etag(value: Any) -> str:
    """Weak ETag derived from the JSON rendering of a value."""
    if isinstance(value, bytes):
        content = value
    else:
        content = orjson.dumps(
            value,
            default=str,
            option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
        )
    return f'W/"{hashlib.md5(content).hexdigest()}"'  # noqa: S324


class EntryState(str, Enum):
    """Lifecycle state of a cache entry."""

    VALID = "valid"
    REVALIDATING = "revalidating"
    INVALIDATED = "invalidated"


@dataclass
class CacheEntry:
    """Cached value with version and expiry metadata.

    Args:
        key: The cache key
        value: The cached payload (cleared on invalidation)
        version: Monotonic per-key counter bumped on every put
        expires_at: Epoch timestamp when this entry expires (None = never expires)
        state: Lifecycle state
        updated_at: Epoch timestamp of the last put
        found: False for a negative (NotFound) entry
        etag: Weak ETag of the value
    """

    key: CacheKey
    value: Any
    version: int = 1
    expires_at: float | None = None
    state: EntryState = EntryState.VALID
    updated_at: float = field(default_factory=time.time)
    found: bool = True
    etag: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (time.time() if now is None else now)

    def is_fresh(self, now: float | None = None) -> bool:
        """Whether the entry may be served without going to the store."""
        return self.state == EntryState.VALID and not self.is_expired(now)

    def ttl_remaining(self, now: float | None = None) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - (time.time() if now is None else now))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "version": self.version,
            "expires_at": self.expires_at,
            "state": self.state.value,
            "updated_at": self.updated_at,
            "found": self.found,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            value=data["value"],
            version=data["version"],
            expires_at=data["expires_at"],
            state=EntryState(data["state"]),
            updated_at=data["updated_at"],
            found=data.get("found", True),
            etag=data.get("etag"),
        )


@dataclass
class LoadRequest:
    """In-flight store load shared by every reader of the same key.

    Args:
        key: The key being loaded
        future: Resolved with the loaded entry or the load failure
        generation: Invalidation generation observed when the load started
        started_at: Monotonic timestamp of the load start
        waiters: Number of readers awaiting the future
    """

    key: CacheKey
    future: "asyncio.Future[CacheEntry]"
    generation: int
    started_at: float = field(default_factory=time.monotonic)
    waiters: int = 0


@dataclass
class RemoteValue:
    """Value returned by a remote cache surface with staleness metadata."""

    key: CacheKey
    value: Any
    version: int
    etag: str | None = None
    updated_at: float | None = None


@dataclass
class ClientRead:
    """Result of a client cache read."""

    value: Any
    is_stale: bool
    version: int | None = None

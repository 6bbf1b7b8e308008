"""Coordinator and client cache configuration settings."""

from pydantic import BaseModel
from pydantic import Field

from .types import CacheKey
from .types import InvalidationScope


class CoordinatorConfig(BaseModel):
    """Cache coordinator configuration settings."""

    # Freshness
    ttl: float | None = Field(
        default=60.0,
        gt=0,
        description="Global freshness window in seconds (None = entries never expire)",
    )
    key_ttls: dict[str, float] = Field(
        default_factory=dict,
        description="Per-key-prefix TTL overrides; the longest matching prefix wins",
    )
    not_found_ttl: float | None = Field(
        default=None,
        gt=0,
        description="Cache NotFound results for this many seconds (None = never cache them)",
    )

    # Invalidation
    invalidation_scope: InvalidationScope = Field(
        default="single-key",
        description="Invalidate only the written key, or every key, after a mutation",
    )
    write_through: bool = Field(
        default=False,
        description="Store the written value in the cache instead of invalidating it",
    )

    # Coalescing
    coalesce_window: float | None = Field(
        default=None,
        gt=0,
        description="Max age in seconds of an in-flight load a reader may join (None = always join)",
    )

    def ttl_for(self, key: CacheKey) -> float | None:
        """Resolve the freshness window for a key."""
        matches = [prefix for prefix in self.key_ttls if key.startswith(prefix)]
        if matches:
            return self.key_ttls[max(matches, key=len)]
        return self.ttl


class ClientCacheConfig(BaseModel):
    """Client revalidation cache configuration settings."""

    freshness_window: float = Field(
        default=30.0,
        ge=0,
        description="Age in seconds after which a local copy is served as stale",
    )
    revalidate_on_mutate: bool = Field(
        default=True,
        description="Refetch from the remote after a successful mutation instead of trusting the optimistic value",
    )

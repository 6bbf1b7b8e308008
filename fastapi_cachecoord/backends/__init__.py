"""Entry cache backend implementations for FastAPI-CacheCoord."""

from .base import BaseEntryCache
from .memory import MemoryBackend
from .redis import AsyncRedisEntryCache

__all__ = [
    "AsyncRedisEntryCache",
    "BaseEntryCache",
    "MemoryBackend",
]

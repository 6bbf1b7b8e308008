"""FastAPI-CacheCoord: read-through, write-invalidate cache coordination for FastAPI."""

from .client import CoordinatorRemote as CoordinatorRemote
from .client import HttpRemote as HttpRemote
from .client import RevalidatingClientCache as RevalidatingClientCache
from .config import ClientCacheConfig as ClientCacheConfig
from .config import CoordinatorConfig as CoordinatorConfig
from .coordinator import CacheCoordinator as CacheCoordinator
from .dependencies import get_coordinator as get_coordinator
from .proxy import CoordinatorProxy as CoordinatorProxy
from .routes import add_routes as add_routes
from .store import MemoryStore as MemoryStore
from .store import StoreAdapter as StoreAdapter
from .types import make_cache_key as make_cache_key

__all__ = [
    "CacheCoordinator",
    "ClientCacheConfig",
    "CoordinatorConfig",
    "CoordinatorProxy",
    "CoordinatorRemote",
    "HttpRemote",
    "MemoryStore",
    "RevalidatingClientCache",
    "StoreAdapter",
    "add_routes",
    "get_coordinator",
    "make_cache_key",
]

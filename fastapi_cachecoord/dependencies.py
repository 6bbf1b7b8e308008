"""FastAPI dependencies for the cache coordinator."""

from typing import Annotated

from fastapi import Depends
from fastapi import HTTPException
from starlette.status import HTTP_503_SERVICE_UNAVAILABLE

from .coordinator import CacheCoordinator
from .exceptions import BackendNotFoundError
from .proxy import CoordinatorProxy


def get_coordinator() -> CacheCoordinator:
    """Resolve the configured coordinator or answer 503."""
    try:
        return CoordinatorProxy.get_coordinator()
    except BackendNotFoundError as exc:
        raise HTTPException(
            status_code=HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


Coordinator = Annotated[CacheCoordinator, Depends(get_coordinator)]

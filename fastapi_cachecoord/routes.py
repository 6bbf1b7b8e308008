"""Public read/write routes served by the cache coordinator."""

import math
import time
from typing import Any

from fastapi import APIRouter
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi import Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.status import HTTP_304_NOT_MODIFIED
from starlette.status import HTTP_404_NOT_FOUND
from starlette.status import HTTP_503_SERVICE_UNAVAILABLE

from .dependencies import Coordinator
from .directives import CacheControl
from .directives import DirectiveType
from .exceptions import KeyNotFoundError
from .exceptions import StoreError
from .types import CacheEntry
from .types import EntryState


class WriteBody(BaseModel):
    """Request body for writes."""

    value: Any


def _store_error(exc: StoreError) -> HTTPException:
    if isinstance(exc, KeyNotFoundError):
        return HTTPException(status_code=HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


def _cache_control(entry: CacheEntry, stale_while_revalidate: int | None) -> str:
    cache_control = CacheControl()
    cache_control.add(DirectiveType.PRIVATE)
    remaining = entry.ttl_remaining()
    if remaining is not None:
        cache_control.add(DirectiveType.MAX_AGE, math.ceil(remaining))
    if stale_while_revalidate is not None:
        cache_control.add(DirectiveType.STALE_WHILE_REVALIDATE, stale_while_revalidate)
    return str(cache_control)


def add_routes(
    app: FastAPI,
    prefix: str = "/cache",
    stale_while_revalidate: int | None = None,
) -> None:
    """Mount the public cache routes on an application.

    Args:
        app: The application to extend
        prefix: Path prefix of every route
        stale_while_revalidate: Optional ``stale-while-revalidate`` hint in seconds
    """
    router = APIRouter(prefix=prefix, tags=["cache"])

    @router.get("/entries/{key:path}")
    async def read_entry(key: str, request: Request, coordinator: Coordinator) -> Response:
        try:
            entry = await coordinator.read_entry(key)
        except StoreError as exc:
            raise _store_error(exc) from exc

        headers = {
            "ETag": entry.etag or "",
            "Cache-Control": _cache_control(entry, stale_while_revalidate),
        }
        if entry.etag and request.headers.get("if-none-match") == entry.etag:
            return Response(status_code=HTTP_304_NOT_MODIFIED, headers=headers)

        return JSONResponse(
            content={
                "key": entry.key,
                "value": entry.value,
                "version": entry.version,
                "etag": entry.etag,
                "updated_at": entry.updated_at,
                "expires_at": entry.expires_at,
            },
            headers=headers,
        )

    @router.put("/entries/{key:path}")
    @router.post("/entries/{key:path}")
    async def write_entry(
        key: str, body: WriteBody, coordinator: Coordinator
    ) -> dict[str, str]:
        try:
            await coordinator.write(key, body.value)
        except StoreError as exc:
            raise _store_error(exc) from exc
        return {"key": key, "status": "written"}

    @router.delete("/entries/{key:path}")
    async def delete_entry(key: str, coordinator: Coordinator) -> dict[str, str]:
        try:
            await coordinator.delete(key)
        except StoreError as exc:
            raise _store_error(exc) from exc
        return {"key": key, "status": "deleted"}

    @router.get("/stats")
    async def stats(coordinator: Coordinator) -> dict[str, Any]:
        entries = await coordinator.backend.entries()
        now = time.time()
        invalidated = sum(1 for e in entries if e.state == EntryState.INVALIDATED)
        expired = sum(
            1 for e in entries if e.state != EntryState.INVALIDATED and e.is_expired(now)
        )
        return {
            "counters": coordinator.stats.to_dict(),
            "pending_loads": coordinator.pending_loads,
            "entries": {
                "total": len(entries),
                "valid": sum(1 for e in entries if e.is_fresh(now)),
                "invalidated": invalidated,
                "expired": expired,
            },
        }

    app.include_router(router)

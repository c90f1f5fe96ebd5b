"""Shared dependencies for ObraCalc web routes.

The application lifespan stores one ``Services`` bundle and one arq pool
on ``app.state``; route handlers receive them through ``Depends()``.

Usage:
    from fastapi import Depends
    from obracalc.web.dependencies import get_services

    @router.get("/catalog/search")
    async def search(services: Services = Depends(get_services)):
        ...
"""

from __future__ import annotations

from arq.connections import ArqRedis
from fastapi import HTTPException, Request

from obracalc.bootstrap import Services


def get_services(request: Request) -> Services:
    """Services bundle built at startup."""
    return request.app.state.services


def get_queue(request: Request) -> ArqRedis:
    """arq pool used to enqueue ingestion jobs.

    Raises 503 when the queue could not be reached at startup.
    """
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return queue

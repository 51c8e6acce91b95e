"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine
from guardsync.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(engine: Engine = Depends(get_engine)) -> HealthResponse:
    """Check server health and dispatch pool load."""
    return HealthResponse(
        status="ok",
        dispatch_workers=engine.pool.max_workers,
        active_calls=engine.pool.active_count,
        queued_calls=engine.pool.queue_size,
    )

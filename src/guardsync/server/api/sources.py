"""Third-party source and sync job API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    SourceConnectRequest,
    SourceResponse,
    SourceUpdateRequest,
    SyncJobResponse,
    SyncRequest,
    source_to_response,
    sync_job_to_response,
)

router = APIRouter(prefix="/api", tags=["sources"], dependencies=[Depends(require_api_token)])


# === Sources ===


@router.post(
    "/children/{child_id}/sources",
    response_model=SourceResponse,
    status_code=status.HTTP_201_CREATED,
)
def connect_source(
    child_id: str,
    request: SourceConnectRequest,
    engine: Engine = Depends(get_engine),
) -> SourceResponse:
    """Connect a registered source type to a child."""
    try:
        source = engine.sync.connect_source(
            child_id,
            request.slug,
            tier=request.tier,
            auto_sync=request.auto_sync,
            config=request.config,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return source_to_response(source)


@router.get("/children/{child_id}/sources", response_model=list[SourceResponse])
def list_sources(child_id: str, engine: Engine = Depends(get_engine)) -> list[SourceResponse]:
    try:
        sources = engine.sync.list_sources(child_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [source_to_response(s) for s in sources]


@router.get("/sources/{source_id}", response_model=SourceResponse)
def get_source(source_id: str, engine: Engine = Depends(get_engine)) -> SourceResponse:
    try:
        source = engine.sync.get_source(source_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return source_to_response(source)


@router.patch("/sources/{source_id}", response_model=SourceResponse)
def update_source(
    source_id: str,
    request: SourceUpdateRequest,
    engine: Engine = Depends(get_engine),
) -> SourceResponse:
    try:
        engine.sync.get_source(source_id)
        source = engine.sync.set_auto_sync(source_id, request.auto_sync)
    except GuardSyncError as e:
        raise http_error(e) from e
    return source_to_response(source)


@router.delete("/sources/{source_id}", response_model=SourceResponse)
def disconnect_source(source_id: str, engine: Engine = Depends(get_engine)) -> SourceResponse:
    """Disconnect a source; its sync history is kept."""
    try:
        source = engine.sync.disconnect_source(source_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return source_to_response(source)


# === Sync jobs ===


@router.post(
    "/sources/{source_id}/sync",
    response_model=SyncJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_sync(
    source_id: str,
    request: SyncRequest | None = None,
    engine: Engine = Depends(get_engine),
) -> SyncJobResponse:
    """Push the child's resolved rules to a source.

    Categories the source can't take are reported as unsupported in the
    returned job; the rest settle asynchronously.
    """
    request = request or SyncRequest()
    try:
        job = engine.sync.trigger_sync(
            source_id,
            mode=request.mode,
            trigger_type=request.trigger_type,
            category=request.category,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return sync_job_to_response(job)


@router.get("/sources/{source_id}/jobs", response_model=list[SyncJobResponse])
def list_sync_jobs(
    source_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> list[SyncJobResponse]:
    try:
        jobs = engine.sync.list_sync_jobs(source_id, limit)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [sync_job_to_response(j) for j in jobs]


@router.get("/sync-jobs/{job_id}", response_model=SyncJobResponse)
def get_sync_job(job_id: str, engine: Engine = Depends(get_engine)) -> SyncJobResponse:
    try:
        job = engine.sync.get_sync_job(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return sync_job_to_response(job)


@router.post(
    "/sync-jobs/{job_id}/retry",
    response_model=SyncJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def retry_sync_job(job_id: str, engine: Engine = Depends(get_engine)) -> SyncJobResponse:
    try:
        job = engine.sync.retry(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return sync_job_to_response(job)


@router.post("/sync-jobs/{job_id}/cancel", response_model=SyncJobResponse)
def cancel_sync_job(job_id: str, engine: Engine = Depends(get_engine)) -> SyncJobResponse:
    try:
        job = engine.sync.cancel(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return sync_job_to_response(job)

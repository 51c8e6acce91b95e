"""Enforcement job API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    EnforceRequest,
    EnforcementJobResponse,
    job_to_response,
)

router = APIRouter(prefix="/api", tags=["enforcement"], dependencies=[Depends(require_api_token)])


@router.post(
    "/children/{child_id}/enforce",
    response_model=EnforcementJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_enforcement(
    child_id: str,
    request: EnforceRequest | None = None,
    engine: Engine = Depends(get_engine),
) -> EnforcementJobResponse:
    """Start enforcing a child's resolved rules on linked platforms.

    Returns immediately with the pending job; poll ``/api/jobs/{id}``
    for per-platform results.
    """
    request = request or EnforceRequest()
    try:
        job = engine.enforcement.trigger(
            child_id, platform_ids=request.platform_ids, trigger_type=request.trigger_type
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return job_to_response(job)


@router.get("/children/{child_id}/jobs", response_model=list[EnforcementJobResponse])
def list_jobs(
    child_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> list[EnforcementJobResponse]:
    """List a child's enforcement jobs, newest first."""
    try:
        jobs = engine.enforcement.list_jobs(child_id, limit)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [job_to_response(j) for j in jobs]


@router.get("/jobs/{job_id}", response_model=EnforcementJobResponse)
def get_job(job_id: str, engine: Engine = Depends(get_engine)) -> EnforcementJobResponse:
    try:
        job = engine.enforcement.get_job(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return job_to_response(job)


@router.post(
    "/jobs/{job_id}/retry",
    response_model=EnforcementJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def retry_job(job_id: str, engine: Engine = Depends(get_engine)) -> EnforcementJobResponse:
    """Re-dispatch the platforms of a settled job that have failed rules."""
    try:
        job = engine.enforcement.retry(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return job_to_response(job)


@router.post("/jobs/{job_id}/cancel", response_model=EnforcementJobResponse)
def cancel_job(job_id: str, engine: Engine = Depends(get_engine)) -> EnforcementJobResponse:
    try:
        job = engine.enforcement.cancel(job_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return job_to_response(job)

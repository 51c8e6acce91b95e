"""Compliance link API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from guardsync.core.errors import GuardSyncError
from guardsync.core.types import ComplianceStatus
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    LinkCreateRequest,
    LinkResponse,
    LinkUpdateRequest,
    link_to_response,
)

router = APIRouter(prefix="/api", tags=["links"], dependencies=[Depends(require_api_token)])


@router.post(
    "/families/{family_id}/links",
    response_model=LinkResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_link(
    family_id: str,
    request: LinkCreateRequest,
    engine: Engine = Depends(get_engine),
) -> LinkResponse:
    """Link a family to a registered platform."""
    try:
        engine.registry.platform(request.platform_id)
        link = engine.db.create_link(
            family_id, request.platform_id, request.status.value, request.external_id
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    except IntegrityError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Family {family_id} is already linked to {request.platform_id}",
        ) from e
    return link_to_response(link)


@router.get("/families/{family_id}/links", response_model=list[LinkResponse])
def list_links(
    family_id: str,
    link_status: ComplianceStatus | None = None,
    engine: Engine = Depends(get_engine),
) -> list[LinkResponse]:
    status_value = link_status.value if link_status is not None else None
    return [link_to_response(link) for link in engine.db.list_links(family_id, status_value)]


@router.get("/links/{link_id}", response_model=LinkResponse)
def get_link(link_id: str, engine: Engine = Depends(get_engine)) -> LinkResponse:
    link = engine.db.get_link(link_id)
    if link is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Compliance link not found: {link_id}",
        )
    return link_to_response(link)


@router.patch("/links/{link_id}", response_model=LinkResponse)
def update_link(
    link_id: str,
    request: LinkUpdateRequest,
    engine: Engine = Depends(get_engine),
) -> LinkResponse:
    """Change a link's verification status."""
    try:
        link = engine.db.update_link_status(link_id, request.status.value)
    except GuardSyncError as e:
        raise http_error(e) from e
    return link_to_response(link)

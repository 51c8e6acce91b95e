"""Family and child API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from guardsync.core.errors import FamilyNotFound
from guardsync.server.api.deps import get_db, http_error, require_api_token
from guardsync.server.database import Database
from guardsync.server.schemas import (
    ChildCreateRequest,
    ChildResponse,
    FamilyCreateRequest,
    FamilyResponse,
    child_to_response,
    family_to_response,
)

router = APIRouter(prefix="/api", tags=["families"], dependencies=[Depends(require_api_token)])


@router.post("/families", response_model=FamilyResponse, status_code=status.HTTP_201_CREATED)
def create_family(
    request: FamilyCreateRequest,
    db: Database = Depends(get_db),
) -> FamilyResponse:
    """Create a family."""
    return family_to_response(db.create_family(request.name))


@router.get("/families/{family_id}", response_model=FamilyResponse)
def get_family(family_id: str, db: Database = Depends(get_db)) -> FamilyResponse:
    family = db.get_family(family_id)
    if family is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Family not found: {family_id}",
        )
    return family_to_response(family)


@router.post(
    "/families/{family_id}/children",
    response_model=ChildResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_child(
    family_id: str,
    request: ChildCreateRequest,
    db: Database = Depends(get_db),
) -> ChildResponse:
    """Add a child to a family."""
    try:
        child = db.create_child(family_id, request.name, request.birth_date)
    except FamilyNotFound as e:
        raise http_error(e) from e
    return child_to_response(child)


@router.get("/families/{family_id}/children", response_model=list[ChildResponse])
def list_children(family_id: str, db: Database = Depends(get_db)) -> list[ChildResponse]:
    if db.get_family(family_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Family not found: {family_id}",
        )
    return [child_to_response(c) for c in db.list_children(family_id)]


@router.get("/children/{child_id}", response_model=ChildResponse)
def get_child(child_id: str, db: Database = Depends(get_db)) -> ChildResponse:
    child = db.get_child(child_id)
    if child is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Child not found: {child_id}",
        )
    return child_to_response(child)

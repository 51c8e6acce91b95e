"""Read-only catalog routes: rule categories, platforms and source types."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.rules import CATALOG_VERSION, catalog
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    CatalogResponse,
    CategoryResponse,
    GuidedStepResponse,
    PlatformResponse,
    SourceTypeResponse,
    platform_to_response,
    source_type_to_response,
    step_to_response,
)

router = APIRouter(prefix="/api", tags=["catalog"], dependencies=[Depends(require_api_token)])


@router.get("/categories", response_model=CatalogResponse)
def list_categories() -> CatalogResponse:
    """List every rule category with its family and config schema."""
    return CatalogResponse(
        version=CATALOG_VERSION,
        categories=[CategoryResponse(**entry) for entry in catalog()],
    )


@router.get("/platforms", response_model=list[PlatformResponse])
def list_platforms(engine: Engine = Depends(get_engine)) -> list[PlatformResponse]:
    platforms = sorted(engine.registry.platforms.values(), key=lambda p: p.platform_id)
    return [platform_to_response(p) for p in platforms]


@router.get("/platforms/{platform_id}", response_model=PlatformResponse)
def get_platform(platform_id: str, engine: Engine = Depends(get_engine)) -> PlatformResponse:
    try:
        return platform_to_response(engine.registry.platform(platform_id))
    except GuardSyncError as e:
        raise http_error(e) from e


@router.get("/source-types", response_model=list[SourceTypeResponse])
def list_source_types(engine: Engine = Depends(get_engine)) -> list[SourceTypeResponse]:
    sources = sorted(engine.registry.sources.values(), key=lambda s: s.slug)
    return [source_type_to_response(s) for s in sources]


@router.get("/source-types/{slug}/guide/{category}", response_model=list[GuidedStepResponse])
def get_guided_steps(
    slug: str,
    category: str,
    engine: Engine = Depends(get_engine),
) -> list[GuidedStepResponse]:
    """Get manual setup steps for one category of a guided source."""
    try:
        steps = engine.sync.guided_steps(slug, category)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [step_to_response(s) for s in steps]

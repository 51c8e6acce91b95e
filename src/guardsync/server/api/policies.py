"""Policy and rule API routes.

Every write carries the policy version the caller last read; a stale
version is answered with 409 Conflict.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import get_engine, http_error, require_api_token
from guardsync.server.schemas import (
    BulkUpsertRequest,
    DefaultsRequest,
    PolicyCreateRequest,
    PolicyResponse,
    PolicyUpdateRequest,
    ResolvedRuleSetResponse,
    RuleCreateRequest,
    RuleResponse,
    RuleUpdateRequest,
    VersionRequest,
    policy_to_response,
    resolved_to_response,
    rule_to_response,
)

router = APIRouter(prefix="/api", tags=["policies"], dependencies=[Depends(require_api_token)])


# === Policies ===


@router.post(
    "/children/{child_id}/policies",
    response_model=PolicyResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_policy(
    child_id: str,
    request: PolicyCreateRequest,
    engine: Engine = Depends(get_engine),
) -> PolicyResponse:
    """Create a policy for a child (draft unless a status is given)."""
    try:
        policy = engine.policies.create_policy(
            child_id, request.name, priority=request.priority, status=request.status
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


@router.get("/children/{child_id}/policies", response_model=list[PolicyResponse])
def list_policies(child_id: str, engine: Engine = Depends(get_engine)) -> list[PolicyResponse]:
    try:
        policies = engine.policies.list_policies(child_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [policy_to_response(p) for p in policies]


@router.get("/children/{child_id}/resolved", response_model=ResolvedRuleSetResponse)
def get_resolved_rules(
    child_id: str, engine: Engine = Depends(get_engine)
) -> ResolvedRuleSetResponse:
    """Get the child's resolved rule set across all active policies."""
    try:
        resolved = engine.policies.resolved(child_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return resolved_to_response(resolved)


@router.get("/policies/{policy_id}", response_model=PolicyResponse)
def get_policy(policy_id: str, engine: Engine = Depends(get_engine)) -> PolicyResponse:
    """Get a policy; soft-deleted policies stay readable."""
    try:
        policy = engine.policies.get_policy(policy_id, include_deleted=True)
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


@router.patch("/policies/{policy_id}", response_model=PolicyResponse)
def update_policy(
    policy_id: str,
    request: PolicyUpdateRequest,
    engine: Engine = Depends(get_engine),
) -> PolicyResponse:
    try:
        policy = engine.policies.update_policy(
            policy_id,
            request.expected_version,
            name=request.name,
            priority=request.priority,
            status=request.status,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


@router.post("/policies/{policy_id}/activate", response_model=PolicyResponse)
def activate_policy(
    policy_id: str,
    request: VersionRequest,
    engine: Engine = Depends(get_engine),
) -> PolicyResponse:
    try:
        policy = engine.policies.activate(policy_id, request.expected_version)
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


@router.post("/policies/{policy_id}/pause", response_model=PolicyResponse)
def pause_policy(
    policy_id: str,
    request: VersionRequest,
    engine: Engine = Depends(get_engine),
) -> PolicyResponse:
    try:
        policy = engine.policies.pause(policy_id, request.expected_version)
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


@router.delete("/policies/{policy_id}", response_model=PolicyResponse)
def delete_policy(
    policy_id: str,
    expected_version: int,
    engine: Engine = Depends(get_engine),
) -> PolicyResponse:
    """Soft-delete a policy."""
    try:
        policy = engine.policies.delete_policy(policy_id, expected_version)
    except GuardSyncError as e:
        raise http_error(e) from e
    return policy_to_response(policy)


# === Rules ===


@router.get("/policies/{policy_id}/rules", response_model=list[RuleResponse])
def list_rules(policy_id: str, engine: Engine = Depends(get_engine)) -> list[RuleResponse]:
    try:
        rules = engine.policies.list_rules(policy_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [rule_to_response(r) for r in rules]


@router.post(
    "/policies/{policy_id}/rules",
    response_model=RuleResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_rule(
    policy_id: str,
    request: RuleCreateRequest,
    engine: Engine = Depends(get_engine),
) -> RuleResponse:
    """Add a rule; the config is validated against the category's schema."""
    try:
        rule = engine.policies.create_rule(
            policy_id,
            request.expected_version,
            request.category,
            enabled=request.enabled,
            config=request.config,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return rule_to_response(rule)


@router.put("/policies/{policy_id}/rules", response_model=list[RuleResponse])
def bulk_upsert_rules(
    policy_id: str,
    request: BulkUpsertRequest,
    engine: Engine = Depends(get_engine),
) -> list[RuleResponse]:
    """Create or replace several rules under one version bump."""
    try:
        rules = engine.policies.bulk_upsert(
            policy_id,
            request.expected_version,
            [(r.category, r.enabled, r.config) for r in request.rules],
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return [rule_to_response(r) for r in rules]


@router.post("/policies/{policy_id}/defaults", response_model=list[RuleResponse])
def generate_defaults(
    policy_id: str,
    request: DefaultsRequest,
    engine: Engine = Depends(get_engine),
) -> list[RuleResponse]:
    """Fill a policy with age-appropriate default rules."""
    try:
        rules = engine.policies.generate_defaults(
            policy_id, request.expected_version, age=request.age
        )
    except (GuardSyncError, ValueError) as e:
        raise http_error(e) from e
    return [rule_to_response(r) for r in rules]


@router.get("/policies/{policy_id}/rules/{category}", response_model=RuleResponse)
def get_rule(policy_id: str, category: str, engine: Engine = Depends(get_engine)) -> RuleResponse:
    try:
        rule = engine.policies.get_rule(policy_id, category)
    except GuardSyncError as e:
        raise http_error(e) from e
    return rule_to_response(rule)


@router.patch("/policies/{policy_id}/rules/{category}", response_model=RuleResponse)
def update_rule(
    policy_id: str,
    category: str,
    request: RuleUpdateRequest,
    engine: Engine = Depends(get_engine),
) -> RuleResponse:
    try:
        rule = engine.policies.update_rule(
            policy_id,
            request.expected_version,
            category,
            enabled=request.enabled,
            config=request.config,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return rule_to_response(rule)


@router.delete("/policies/{policy_id}/rules/{category}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(
    policy_id: str,
    category: str,
    expected_version: int,
    engine: Engine = Depends(get_engine),
) -> Response:
    try:
        engine.policies.delete_rule(policy_id, expected_version, category)
    except GuardSyncError as e:
        raise http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)

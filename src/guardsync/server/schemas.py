"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from guardsync.core.types import ApiTier, ComplianceStatus, PolicyStatus, SyncMode, TriggerType
from guardsync.engine.capabilities import Capability, GuidedStep, PlatformRegistration, SourceRegistration
from guardsync.engine.compiler import ResolvedRuleSet
from guardsync.engine.devices import PollResult
from guardsync.server.models import (
    Child,
    CompiledPolicy,
    ComplianceLink,
    Device,
    DeviceReport,
    EnforcementJob,
    EnforcementResult,
    Family,
    Policy,
    Rule,
    Source,
    SourceSyncJob,
    SourceSyncResult,
    Webhook,
    WebhookDelivery,
)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    dispatch_workers: int
    active_calls: int
    queued_calls: int


# === Family schemas ===


class FamilyCreateRequest(BaseModel):
    name: str = Field(min_length=1)


class FamilyResponse(BaseModel):
    id: str
    name: str
    created_at: str


class ChildCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    birth_date: date | None = None


class ChildResponse(BaseModel):
    id: str
    family_id: str
    name: str
    birth_date: str | None
    created_at: str


# === Policy schemas ===


class PolicyCreateRequest(BaseModel):
    """Request body for policy creation."""

    name: str = Field(min_length=1)
    priority: int = 0
    status: PolicyStatus = PolicyStatus.DRAFT


class PolicyUpdateRequest(BaseModel):
    """Request body for policy updates; ``expected_version`` guards against lost updates."""

    expected_version: int
    name: str | None = None
    priority: int | None = None
    status: PolicyStatus | None = None


class VersionRequest(BaseModel):
    expected_version: int


class PolicyResponse(BaseModel):
    id: str
    child_id: str
    name: str
    status: str
    priority: int
    version: int
    created_at: str
    updated_at: str
    deleted_at: str | None


class RuleCreateRequest(BaseModel):
    expected_version: int
    category: str
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class RuleUpdateRequest(BaseModel):
    expected_version: int
    enabled: bool | None = None
    config: dict[str, Any] | None = None


class RuleUpsertItem(BaseModel):
    category: str
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class BulkUpsertRequest(BaseModel):
    expected_version: int
    rules: list[RuleUpsertItem]


class DefaultsRequest(BaseModel):
    """Request body for age-based defaults; the child's birth date is used without ``age``."""

    expected_version: int
    age: int | None = Field(default=None, ge=0, le=25)


class RuleResponse(BaseModel):
    id: str
    policy_id: str
    category: str
    enabled: bool
    config: dict[str, Any]
    created_at: str
    updated_at: str


class ResolvedRuleResponse(BaseModel):
    category: str
    enabled: bool
    config: dict[str, Any]
    policy_id: str
    priority: int


class ResolvedRuleSetResponse(BaseModel):
    child_id: str
    version_key: int
    primary_policy_id: str | None
    contributing_policy_ids: list[str]
    fingerprint: str
    rules: list[ResolvedRuleResponse]


# === Catalog schemas ===


class CategoryResponse(BaseModel):
    category: str
    family: str
    config_schema: dict[str, Any]


class CatalogResponse(BaseModel):
    version: int
    categories: list[CategoryResponse]


class CapabilityResponse(BaseModel):
    category: str
    support_level: str
    read_write: str
    notes: str


class PlatformResponse(BaseModel):
    platform_id: str
    name: str
    category: str
    capabilities: list[CapabilityResponse]


class SourceTypeResponse(BaseModel):
    slug: str
    display_name: str
    tiers: dict[str, list[CapabilityResponse]]


class GuidedStepResponse(BaseModel):
    step_number: int
    title: str
    description: str
    deep_link: str | None


# === Compliance link schemas ===


class LinkCreateRequest(BaseModel):
    platform_id: str
    status: ComplianceStatus = ComplianceStatus.UNVERIFIED
    external_id: str | None = None


class LinkUpdateRequest(BaseModel):
    status: ComplianceStatus


class LinkResponse(BaseModel):
    id: str
    family_id: str
    platform_id: str
    status: str
    external_id: str | None
    verified_at: str | None
    last_enforcement_at: str | None
    last_enforcement_status: str | None
    created_at: str


# === Enforcement schemas ===


class EnforceRequest(BaseModel):
    """Request body for triggering enforcement; all eligible platforms without ``platform_ids``."""

    platform_ids: list[str] | None = None
    trigger_type: TriggerType = TriggerType.MANUAL


class EnforcementResultResponse(BaseModel):
    id: str
    platform_id: str
    compliance_link_id: str | None
    status: str
    rules_applied: int
    rules_skipped: int
    rules_failed: int
    details: list[dict[str, Any]]
    error_message: str | None
    attempts: int
    started_at: str | None
    completed_at: str | None


class EnforcementJobResponse(BaseModel):
    id: str
    child_id: str
    policy_id: str | None
    policy_version: int
    trigger_type: str
    status: str
    cancel_requested: bool
    created_at: str
    started_at: str | None
    completed_at: str | None
    results: list[EnforcementResultResponse]


# === Source schemas ===


class SourceConnectRequest(BaseModel):
    slug: str
    tier: ApiTier = ApiTier.MANAGED
    auto_sync: bool = False
    config: dict[str, Any] = Field(default_factory=dict)


class SourceUpdateRequest(BaseModel):
    auto_sync: bool


class SourceResponse(BaseModel):
    id: str
    child_id: str
    family_id: str
    source_slug: str
    display_name: str
    api_tier: str
    status: str
    auto_sync: bool
    capabilities: dict[str, Any]
    sync_version: int
    last_sync_at: str | None
    last_sync_status: str | None
    error_message: str | None
    created_at: str
    updated_at: str


class SyncRequest(BaseModel):
    mode: SyncMode = SyncMode.FULL
    category: str | None = None
    trigger_type: TriggerType = TriggerType.MANUAL


class SyncResultResponse(BaseModel):
    id: str
    category: str
    status: str
    source_value: dict[str, Any] | None
    source_response: dict[str, Any] | None
    error_message: str | None
    attempts: int
    updated_at: str


class SyncJobResponse(BaseModel):
    id: str
    source_id: str
    child_id: str
    sync_mode: str
    trigger_type: str
    status: str
    cancel_requested: bool
    rules_pushed: int
    rules_skipped: int
    rules_failed: int
    rules_unsupported: int
    created_at: str
    started_at: str | None
    completed_at: str | None
    results: list[SyncResultResponse]


# === Device schemas ===


class DeviceRegisterRequest(BaseModel):
    platform_id: str
    device_name: str = Field(min_length=1)
    device_model: str | None = None
    os_version: str | None = None
    app_version: str | None = None


class DeviceResponse(BaseModel):
    id: str
    child_id: str
    family_id: str
    platform_id: str
    device_name: str
    device_model: str | None
    os_version: str | None
    app_version: str | None
    status: str
    last_policy_version: int
    last_seen_at: str | None
    last_ack_at: str | None
    created_at: str


class DeviceRegisterResponse(BaseModel):
    """Registration response; ``api_key`` is only ever returned here."""

    api_key: str
    device: DeviceResponse


class CompiledPolicyResponse(BaseModel):
    version: int
    policy_id: str | None
    fingerprint: str
    rules: list[dict[str, Any]]
    created_at: str


class PollResponse(BaseModel):
    up_to_date: bool
    version: int
    policy: CompiledPolicyResponse | None = None


class DeviceReportRequest(BaseModel):
    report_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class DeviceReportResponse(BaseModel):
    id: str
    device_id: str
    report_type: str
    payload: dict[str, Any]
    reported_at: str


# === Webhook schemas ===


class WebhookCreateRequest(BaseModel):
    url: str = Field(min_length=1)
    events: list[str] = Field(default_factory=lambda: ["*"], min_length=1)


class WebhookUpdateRequest(BaseModel):
    url: str | None = None
    events: list[str] | None = None
    active: bool | None = None


class WebhookResponse(BaseModel):
    id: str
    family_id: str
    url: str
    events: list[str]
    active: bool
    created_at: str
    updated_at: str


class WebhookCreateResponse(BaseModel):
    """Creation response; ``secret`` is only ever returned here."""

    secret: str
    webhook: WebhookResponse


class DeliveryResponse(BaseModel):
    id: str
    webhook_id: str
    event: str
    attempts: int
    success: bool
    response_code: int | None
    last_error: str | None
    next_retry_at: str | None
    failed_permanently: bool
    created_at: str
    last_attempt_at: str | None


# === Converters ===


def family_to_response(family: Family) -> FamilyResponse:
    return FamilyResponse(id=family.id, name=family.name, created_at=family.created_at.isoformat())


def child_to_response(child: Child) -> ChildResponse:
    return ChildResponse(
        id=child.id,
        family_id=child.family_id,
        name=child.name,
        birth_date=_iso(child.birth_date),
        created_at=child.created_at.isoformat(),
    )


def policy_to_response(policy: Policy) -> PolicyResponse:
    """Convert Policy to response model."""
    return PolicyResponse(
        id=policy.id,
        child_id=policy.child_id,
        name=policy.name,
        status=policy.status,
        priority=policy.priority,
        version=policy.version,
        created_at=policy.created_at.isoformat(),
        updated_at=policy.updated_at.isoformat(),
        deleted_at=_iso(policy.deleted_at),
    )


def rule_to_response(rule: Rule) -> RuleResponse:
    return RuleResponse(
        id=rule.id,
        policy_id=rule.policy_id,
        category=rule.category,
        enabled=rule.enabled,
        config=rule.config,
        created_at=rule.created_at.isoformat(),
        updated_at=rule.updated_at.isoformat(),
    )


def resolved_to_response(resolved: ResolvedRuleSet) -> ResolvedRuleSetResponse:
    return ResolvedRuleSetResponse(
        child_id=resolved.child_id,
        version_key=resolved.version_key,
        primary_policy_id=resolved.primary_policy_id,
        contributing_policy_ids=sorted(resolved.contributing_policy_ids),
        fingerprint=resolved.fingerprint,
        rules=[
            ResolvedRuleResponse(
                category=r.category.value,
                enabled=r.enabled,
                config=r.config_dict(),
                policy_id=r.policy_id,
                priority=r.priority,
            )
            for r in resolved.ordered()
        ],
    )


def _capabilities(capabilities: Any) -> list[CapabilityResponse]:
    items: list[tuple[Any, Capability]] = sorted(capabilities.items(), key=lambda kv: kv[0].value)
    return [
        CapabilityResponse(
            category=category.value,
            support_level=cap.support_level.value,
            read_write=cap.read_write.value,
            notes=cap.notes,
        )
        for category, cap in items
    ]


def platform_to_response(platform: PlatformRegistration) -> PlatformResponse:
    return PlatformResponse(
        platform_id=platform.platform_id,
        name=platform.name,
        category=platform.category.value,
        capabilities=_capabilities(platform.capabilities),
    )


def source_type_to_response(source: SourceRegistration) -> SourceTypeResponse:
    return SourceTypeResponse(
        slug=source.slug,
        display_name=source.display_name,
        tiers={tier.value: _capabilities(caps) for tier, caps in source.tiers.items()},
    )


def step_to_response(step: GuidedStep) -> GuidedStepResponse:
    return GuidedStepResponse(
        step_number=step.step_number,
        title=step.title,
        description=step.description,
        deep_link=step.deep_link,
    )


def link_to_response(link: ComplianceLink) -> LinkResponse:
    return LinkResponse(
        id=link.id,
        family_id=link.family_id,
        platform_id=link.platform_id,
        status=link.status,
        external_id=link.external_id,
        verified_at=_iso(link.verified_at),
        last_enforcement_at=_iso(link.last_enforcement_at),
        last_enforcement_status=link.last_enforcement_status,
        created_at=link.created_at.isoformat(),
    )


def result_to_response(result: EnforcementResult) -> EnforcementResultResponse:
    return EnforcementResultResponse(
        id=result.id,
        platform_id=result.platform_id,
        compliance_link_id=result.compliance_link_id,
        status=result.status,
        rules_applied=result.rules_applied,
        rules_skipped=result.rules_skipped,
        rules_failed=result.rules_failed,
        details=result.details,
        error_message=result.error_message,
        attempts=result.attempts,
        started_at=_iso(result.started_at),
        completed_at=_iso(result.completed_at),
    )


def job_to_response(job: EnforcementJob) -> EnforcementJobResponse:
    """Convert EnforcementJob (with results loaded) to response model."""
    return EnforcementJobResponse(
        id=job.id,
        child_id=job.child_id,
        policy_id=job.policy_id,
        policy_version=job.policy_version,
        trigger_type=job.trigger_type,
        status=job.status,
        cancel_requested=job.cancel_requested,
        created_at=job.created_at.isoformat(),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        results=[result_to_response(r) for r in job.results],
    )


def source_to_response(source: Source) -> SourceResponse:
    return SourceResponse(
        id=source.id,
        child_id=source.child_id,
        family_id=source.family_id,
        source_slug=source.source_slug,
        display_name=source.display_name,
        api_tier=source.api_tier,
        status=source.status,
        auto_sync=source.auto_sync,
        capabilities=source.capabilities,
        sync_version=source.sync_version,
        last_sync_at=_iso(source.last_sync_at),
        last_sync_status=source.last_sync_status,
        error_message=source.error_message,
        created_at=source.created_at.isoformat(),
        updated_at=source.updated_at.isoformat(),
    )


def sync_result_to_response(result: SourceSyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        id=result.id,
        category=result.category,
        status=result.status,
        source_value=result.source_value,
        source_response=result.source_response,
        error_message=result.error_message,
        attempts=result.attempts,
        updated_at=result.updated_at.isoformat(),
    )


def sync_job_to_response(job: SourceSyncJob) -> SyncJobResponse:
    """Convert SourceSyncJob (with results loaded) to response model."""
    return SyncJobResponse(
        id=job.id,
        source_id=job.source_id,
        child_id=job.child_id,
        sync_mode=job.sync_mode,
        trigger_type=job.trigger_type,
        status=job.status,
        cancel_requested=job.cancel_requested,
        rules_pushed=job.rules_pushed,
        rules_skipped=job.rules_skipped,
        rules_failed=job.rules_failed,
        rules_unsupported=job.rules_unsupported,
        created_at=job.created_at.isoformat(),
        started_at=_iso(job.started_at),
        completed_at=_iso(job.completed_at),
        results=[sync_result_to_response(r) for r in job.results],
    )


def device_to_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        child_id=device.child_id,
        family_id=device.family_id,
        platform_id=device.platform_id,
        device_name=device.device_name,
        device_model=device.device_model,
        os_version=device.os_version,
        app_version=device.app_version,
        status=device.status,
        last_policy_version=device.last_policy_version,
        last_seen_at=_iso(device.last_seen_at),
        last_ack_at=_iso(device.last_ack_at),
        created_at=device.created_at.isoformat(),
    )


def snapshot_to_response(snapshot: CompiledPolicy) -> CompiledPolicyResponse:
    return CompiledPolicyResponse(
        version=snapshot.version,
        policy_id=snapshot.policy_id,
        fingerprint=snapshot.fingerprint,
        rules=snapshot.rules,
        created_at=snapshot.created_at.isoformat(),
    )


def poll_to_response(result: PollResult) -> PollResponse:
    return PollResponse(
        up_to_date=result.up_to_date,
        version=result.version,
        policy=snapshot_to_response(result.snapshot) if result.snapshot is not None else None,
    )


def report_to_response(report: DeviceReport) -> DeviceReportResponse:
    return DeviceReportResponse(
        id=report.id,
        device_id=report.device_id,
        report_type=report.report_type,
        payload=report.payload,
        reported_at=report.reported_at.isoformat(),
    )


def webhook_to_response(webhook: Webhook) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        family_id=webhook.family_id,
        url=webhook.url,
        events=webhook.events,
        active=webhook.active,
        created_at=webhook.created_at.isoformat(),
        updated_at=webhook.updated_at.isoformat(),
    )


def delivery_to_response(delivery: WebhookDelivery) -> DeliveryResponse:
    return DeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event=delivery.event,
        attempts=delivery.attempts,
        success=delivery.success,
        response_code=delivery.response_code,
        last_error=delivery.last_error,
        next_retry_at=_iso(delivery.next_retry_at),
        failed_permanently=delivery.failed_permanently,
        created_at=delivery.created_at.isoformat(),
        last_attempt_at=_iso(delivery.last_attempt_at),
    )

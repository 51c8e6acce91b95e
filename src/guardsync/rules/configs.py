"""Typed per-category rule configuration.

Each rule category has exactly one pydantic model describing its config
payload. Raw payloads are validated when a rule is written, so the
compiler and the adapters only ever see typed, immutable configs.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from guardsync.core.errors import InvalidRuleConfig
from guardsync.rules.categories import CATEGORY_FAMILIES, RuleCategory, parse_category

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

Weekday = Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
ALL_DAYS: list[Weekday] = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
ContactMode = Literal["everyone", "friends_only", "contacts_only", "approved_only", "none"]


class RuleConfig(BaseModel):
    """Base class of every category config."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class TimeWindow(RuleConfig):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _check_clock(cls, value: str) -> str:
        match = _TIME_RE.match(value)
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError(f"expected HH:MM, got {value!r}")
        hour, minute = match.groups()
        return f"{int(hour):02d}:{minute}"


# === Content ===


class ContentRatingConfig(RuleConfig):
    """Maximum allowed rating per rating system (e.g. ``{"mpaa": "PG"}``)."""

    max_ratings: dict[str, str] = Field(min_length=1)


class TitleListConfig(RuleConfig):
    titles: list[str] = Field(min_length=1)


class DescriptorBlockConfig(RuleConfig):
    descriptors: list[str] = Field(min_length=1)


# === Time ===


class DailyLimitConfig(RuleConfig):
    daily_minutes: int = Field(ge=0, le=1440)


class WeekSchedule(RuleConfig):
    weekday: TimeWindow | None = None
    weekend: TimeWindow | None = None


class ScheduledHoursConfig(RuleConfig):
    """Windows during which device use is allowed."""

    schedule: WeekSchedule


class AppLimit(RuleConfig):
    bundle_id: str = Field(min_length=1)
    daily_minutes: int = Field(ge=0, le=1440)


class PerAppLimitConfig(RuleConfig):
    limits: list[AppLimit] = Field(min_length=1)


class DowntimeConfig(TimeWindow):
    days: list[Weekday] = Field(default_factory=lambda: list(ALL_DAYS))


# === Purchase ===


class ApprovalConfig(RuleConfig):
    require_approval: bool = True


class SpendingCapConfig(RuleConfig):
    amount: float = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    period: Literal["daily", "weekly", "monthly"] = "monthly"


class BlockIapConfig(RuleConfig):
    block_iap: bool = True


# === Social ===


class ContactModeConfig(RuleConfig):
    mode: ContactMode


# === Web ===


class CategoryBlockConfig(RuleConfig):
    categories: list[str] = Field(min_length=1)


class DomainListConfig(RuleConfig):
    domains: list[str] = Field(min_length=1)

    @field_validator("domains")
    @classmethod
    def _normalize_domains(cls, value: list[str]) -> list[str]:
        domains = [d.strip().lower().rstrip(".") for d in value]
        if any(not d or " " in d for d in domains):
            raise ValueError("domains must be non-empty host names")
        return domains


class FilterLevelConfig(RuleConfig):
    level: Literal["strict", "moderate", "light", "off"]


# === Privacy ===


class ProfileVisibilityConfig(RuleConfig):
    visibility: Literal["private", "friends", "public"]


# === Monitoring and notification ===


class AlertsConfig(RuleConfig):
    enabled: bool = True
    alert_types: list[str] = Field(default_factory=list)


class UsageTimerConfig(RuleConfig):
    interval_minutes: int = Field(ge=1, le=240)


class ReportConfig(RuleConfig):
    frequency: Literal["daily", "weekly", "monthly"] = "weekly"


# === Algorithmic safety ===


class FeedControlConfig(RuleConfig):
    mode: Literal["chronological", "algorithmic", "off"]


class AddictiveDesignConfig(RuleConfig):
    disable_infinite_scroll: bool = True
    disable_autoplay: bool = True
    disable_streaks: bool = True
    disable_like_counts: bool = True
    disable_daily_rewards: bool = True


# === Advertising, data and compliance ===


class TargetedAdBlockConfig(RuleConfig):
    block_targeted_ads: bool = True


class GeolocationConfig(RuleConfig):
    geolocation_allowed: bool = False


class MinAgeConfig(RuleConfig):
    enabled: bool = True
    min_age: int | None = Field(default=None, ge=0, le=21)


class ToggleConfig(RuleConfig):
    enabled: bool = True


CONFIG_MODELS: dict[RuleCategory, type[RuleConfig]] = {
    RuleCategory.CONTENT_RATING: ContentRatingConfig,
    RuleCategory.CONTENT_BLOCK_TITLE: TitleListConfig,
    RuleCategory.CONTENT_ALLOW_TITLE: TitleListConfig,
    RuleCategory.CONTENT_ALLOWLIST_MODE: ToggleConfig,
    RuleCategory.CONTENT_DESCRIPTOR_BLOCK: DescriptorBlockConfig,
    RuleCategory.TIME_DAILY_LIMIT: DailyLimitConfig,
    RuleCategory.TIME_SCHEDULED_HOURS: ScheduledHoursConfig,
    RuleCategory.TIME_PER_APP_LIMIT: PerAppLimitConfig,
    RuleCategory.TIME_DOWNTIME: DowntimeConfig,
    RuleCategory.PURCHASE_APPROVAL: ApprovalConfig,
    RuleCategory.PURCHASE_SPENDING_CAP: SpendingCapConfig,
    RuleCategory.PURCHASE_BLOCK_IAP: BlockIapConfig,
    RuleCategory.SOCIAL_CONTACTS: ContactModeConfig,
    RuleCategory.SOCIAL_CHAT_CONTROL: ContactModeConfig,
    RuleCategory.SOCIAL_MULTIPLAYER: ContactModeConfig,
    RuleCategory.WEB_SAFESEARCH: ToggleConfig,
    RuleCategory.WEB_CATEGORY_BLOCK: CategoryBlockConfig,
    RuleCategory.WEB_CUSTOM_ALLOWLIST: DomainListConfig,
    RuleCategory.WEB_CUSTOM_BLOCKLIST: DomainListConfig,
    RuleCategory.WEB_FILTER_LEVEL: FilterLevelConfig,
    RuleCategory.PRIVACY_LOCATION: ToggleConfig,
    RuleCategory.PRIVACY_PROFILE_VISIBILITY: ProfileVisibilityConfig,
    RuleCategory.PRIVACY_DATA_SHARING: ToggleConfig,
    RuleCategory.PRIVACY_ACCOUNT_CREATION: ApprovalConfig,
    RuleCategory.MONITORING_ACTIVITY: ToggleConfig,
    RuleCategory.MONITORING_ALERTS: AlertsConfig,
    RuleCategory.ALGO_FEED_CONTROL: FeedControlConfig,
    RuleCategory.ADDICTIVE_DESIGN_CONTROL: AddictiveDesignConfig,
    RuleCategory.NOTIFICATION_CURFEW: TimeWindow,
    RuleCategory.USAGE_TIMER_NOTIFICATION: UsageTimerConfig,
    RuleCategory.TARGETED_AD_BLOCK: TargetedAdBlockConfig,
    RuleCategory.DM_RESTRICTION: ContactModeConfig,
    RuleCategory.AGE_GATE: MinAgeConfig,
    RuleCategory.DATA_DELETION_REQUEST: ToggleConfig,
    RuleCategory.GEOLOCATION_OPT_IN: GeolocationConfig,
    RuleCategory.CSAM_REPORTING: ToggleConfig,
    RuleCategory.LIBRARY_FILTER_COMPLIANCE: ToggleConfig,
    RuleCategory.AI_MINOR_INTERACTION: ToggleConfig,
    RuleCategory.SOCIAL_MEDIA_MIN_AGE: MinAgeConfig,
    RuleCategory.IMAGE_RIGHTS_MINOR: ToggleConfig,
    RuleCategory.PARENTAL_CONSENT_GATE: ToggleConfig,
    RuleCategory.PARENTAL_EVENT_NOTIFICATION: AlertsConfig,
    RuleCategory.SCREEN_TIME_REPORT: ReportConfig,
    RuleCategory.COMMERCIAL_DATA_BAN: ToggleConfig,
    RuleCategory.ALGORITHMIC_AUDIT: ToggleConfig,
}


def _format_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "config"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


def validate_config(category: str | RuleCategory, raw: Mapping[str, Any] | None) -> RuleConfig:
    """Validate a raw config payload against its category's model.

    Args:
        category: Rule category name.
        raw: Untyped config payload (``None`` is treated as empty).

    Returns:
        Immutable typed config.

    Raises:
        InvalidCategory: If the category is unknown.
        InvalidRuleConfig: If the payload does not match the schema.
    """
    parsed = parse_category(category)
    model = CONFIG_MODELS[parsed]
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(dict(raw or {}))
    except ValidationError as e:
        raise InvalidRuleConfig(parsed.value, _format_errors(e)) from e


def config_schema(category: RuleCategory) -> dict[str, Any]:
    """JSON schema of a category's config payload."""
    return CONFIG_MODELS[category].model_json_schema()


def catalog() -> list[dict[str, Any]]:
    """Describe every category: name, family and config JSON schema."""
    return [
        {
            "category": category.value,
            "family": CATEGORY_FAMILIES[category].value,
            "config_schema": config_schema(category),
        }
        for category in RuleCategory
    ]

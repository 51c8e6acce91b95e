"""Capability registry.

Declares, per platform and per source type, which rule categories an
integration supports, at what fidelity and in which direction. The
registry is built once from a static registration table and is never
mutated while serving requests.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from guardsync.core.errors import PlatformNotFound, SourceTypeNotFound
from guardsync.core.types import ApiTier, PlatformCategory, ReadWrite, SupportLevel
from guardsync.rules.categories import RuleCategory

if TYPE_CHECKING:
    from guardsync.engine.adapters import Adapter


@dataclass(frozen=True)
class Capability:
    """Support for one category."""

    support_level: SupportLevel = SupportLevel.FULL
    read_write: ReadWrite = ReadWrite.PUSH_ONLY
    notes: str = ""

    @property
    def pushable(self) -> bool:
        """Whether rules of this category can be pushed to the integration."""
        return self.support_level != SupportLevel.NONE and self.read_write != ReadWrite.PULL_ONLY

    def to_dict(self) -> dict[str, str]:
        data = {"support_level": self.support_level.value, "read_write": self.read_write.value}
        if self.notes:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Capability:
        return cls(
            support_level=SupportLevel(data.get("support_level", "none")),
            read_write=ReadWrite(data.get("read_write", "push_only")),
            notes=data.get("notes", ""),
        )


CapabilityMap = Mapping[RuleCategory, Capability]


class CapabilityGroup(str, Enum):
    """Coarse feature groups integrations advertise."""

    CONTENT_RATING = "content_rating"
    TIME_LIMIT = "time_limit"
    SCHEDULED_HOURS = "scheduled_hours"
    PURCHASE_CONTROL = "purchase_control"
    WEB_FILTERING = "web_filtering"
    SAFE_SEARCH = "safe_search"
    SOCIAL_CONTROL = "social_control"
    LOCATION_TRACKING = "location_tracking"
    ACTIVITY_MONITORING = "activity_monitoring"
    PRIVACY_CONTROL = "privacy_control"
    ALGORITHMIC_SAFETY = "algorithmic_safety"
    NOTIFICATION_CONTROL = "notification_control"
    AD_DATA_CONTROL = "ad_data_control"
    AGE_VERIFICATION = "age_verification"
    COMPLIANCE_REPORTING = "compliance_reporting"


GROUP_CATEGORIES: dict[CapabilityGroup, tuple[RuleCategory, ...]] = {
    CapabilityGroup.CONTENT_RATING: (
        RuleCategory.CONTENT_RATING,
        RuleCategory.CONTENT_BLOCK_TITLE,
        RuleCategory.CONTENT_ALLOW_TITLE,
        RuleCategory.CONTENT_ALLOWLIST_MODE,
        RuleCategory.CONTENT_DESCRIPTOR_BLOCK,
    ),
    CapabilityGroup.TIME_LIMIT: (
        RuleCategory.TIME_DAILY_LIMIT,
        RuleCategory.TIME_PER_APP_LIMIT,
    ),
    CapabilityGroup.SCHEDULED_HOURS: (
        RuleCategory.TIME_SCHEDULED_HOURS,
        RuleCategory.TIME_DOWNTIME,
    ),
    CapabilityGroup.PURCHASE_CONTROL: (
        RuleCategory.PURCHASE_APPROVAL,
        RuleCategory.PURCHASE_SPENDING_CAP,
        RuleCategory.PURCHASE_BLOCK_IAP,
    ),
    CapabilityGroup.WEB_FILTERING: (
        RuleCategory.WEB_CATEGORY_BLOCK,
        RuleCategory.WEB_CUSTOM_ALLOWLIST,
        RuleCategory.WEB_CUSTOM_BLOCKLIST,
        RuleCategory.WEB_FILTER_LEVEL,
    ),
    CapabilityGroup.SAFE_SEARCH: (RuleCategory.WEB_SAFESEARCH,),
    CapabilityGroup.SOCIAL_CONTROL: (
        RuleCategory.SOCIAL_CONTACTS,
        RuleCategory.SOCIAL_CHAT_CONTROL,
        RuleCategory.SOCIAL_MULTIPLAYER,
        RuleCategory.DM_RESTRICTION,
    ),
    CapabilityGroup.LOCATION_TRACKING: (
        RuleCategory.PRIVACY_LOCATION,
        RuleCategory.GEOLOCATION_OPT_IN,
    ),
    CapabilityGroup.ACTIVITY_MONITORING: (
        RuleCategory.MONITORING_ACTIVITY,
        RuleCategory.MONITORING_ALERTS,
        RuleCategory.SCREEN_TIME_REPORT,
    ),
    CapabilityGroup.PRIVACY_CONTROL: (
        RuleCategory.PRIVACY_PROFILE_VISIBILITY,
        RuleCategory.PRIVACY_DATA_SHARING,
        RuleCategory.PRIVACY_ACCOUNT_CREATION,
        RuleCategory.DATA_DELETION_REQUEST,
    ),
    CapabilityGroup.ALGORITHMIC_SAFETY: (
        RuleCategory.ALGO_FEED_CONTROL,
        RuleCategory.ADDICTIVE_DESIGN_CONTROL,
        RuleCategory.ALGORITHMIC_AUDIT,
    ),
    CapabilityGroup.NOTIFICATION_CONTROL: (
        RuleCategory.NOTIFICATION_CURFEW,
        RuleCategory.USAGE_TIMER_NOTIFICATION,
        RuleCategory.PARENTAL_EVENT_NOTIFICATION,
    ),
    CapabilityGroup.AD_DATA_CONTROL: (
        RuleCategory.TARGETED_AD_BLOCK,
        RuleCategory.COMMERCIAL_DATA_BAN,
    ),
    CapabilityGroup.AGE_VERIFICATION: (
        RuleCategory.AGE_GATE,
        RuleCategory.SOCIAL_MEDIA_MIN_AGE,
        RuleCategory.PARENTAL_CONSENT_GATE,
    ),
    CapabilityGroup.COMPLIANCE_REPORTING: (
        RuleCategory.CSAM_REPORTING,
        RuleCategory.LIBRARY_FILTER_COMPLIANCE,
        RuleCategory.AI_MINOR_INTERACTION,
        RuleCategory.IMAGE_RIGHTS_MINOR,
    ),
}


def declare(
    full: Iterable[CapabilityGroup] = (),
    partial: Iterable[CapabilityGroup] = (),
    read_write: ReadWrite = ReadWrite.PUSH_ONLY,
    overrides: Mapping[RuleCategory, Capability] | None = None,
) -> dict[RuleCategory, Capability]:
    """Expand capability groups into a per-category declaration.

    Args:
        full: Groups enforced at full fidelity.
        partial: Groups enforced at partial fidelity.
        read_write: Direction for every expanded category.
        overrides: Per-category entries applied last.

    Returns:
        Category to Capability mapping.
    """
    declaration: dict[RuleCategory, Capability] = {}
    for level, groups in ((SupportLevel.PARTIAL, partial), (SupportLevel.FULL, full)):
        for group in groups:
            for category in GROUP_CATEGORIES[group]:
                declaration[category] = Capability(level, read_write)
    declaration.update(overrides or {})
    return declaration


def supported_categories(capabilities: CapabilityMap) -> list[RuleCategory]:
    """Categories with a support level other than none."""
    return [c for c, cap in capabilities.items() if cap.support_level != SupportLevel.NONE]


@dataclass(frozen=True)
class GuidedStep:
    """Manual setup instruction for a guided-tier source."""

    step_number: int
    title: str
    description: str
    deep_link: str | None = None


@dataclass(frozen=True)
class PlatformRegistration:
    """Static registration of a first-party platform."""

    platform_id: str
    name: str
    category: PlatformCategory
    adapter: Adapter
    capabilities: CapabilityMap

    def supported(self) -> list[RuleCategory]:
        return supported_categories(self.capabilities)


@dataclass(frozen=True)
class SourceRegistration:
    """Static registration of a third-party source type.

    Attributes:
        slug: Stable source type identifier.
        display_name: Human readable name.
        adapter: Adapter pushing rules to the source.
        tiers: Capability declaration per API tier.
        guided_steps: Manual setup steps per category for the guided tier.
    """

    slug: str
    display_name: str
    adapter: Adapter
    tiers: Mapping[ApiTier, CapabilityMap]
    guided_steps: Mapping[RuleCategory, tuple[GuidedStep, ...]] = field(default_factory=dict)

    def capabilities_for(self, tier: ApiTier) -> CapabilityMap:
        return self.tiers.get(tier, {})


class CapabilityRegistry:
    """Read-only lookup of platforms and source types."""

    def __init__(
        self,
        platforms: Iterable[PlatformRegistration] = (),
        sources: Iterable[SourceRegistration] = (),
    ) -> None:
        self._platforms = MappingProxyType({p.platform_id: p for p in platforms})
        self._sources = MappingProxyType({s.slug: s for s in sources})

    @property
    def platforms(self) -> Mapping[str, PlatformRegistration]:
        return self._platforms

    @property
    def sources(self) -> Mapping[str, SourceRegistration]:
        return self._sources

    def platform(self, platform_id: str) -> PlatformRegistration:
        """Look up a platform.

        Raises:
            PlatformNotFound: If the platform is not registered.
        """
        try:
            return self._platforms[platform_id]
        except KeyError:
            raise PlatformNotFound(f"Platform not found: {platform_id}") from None

    def source(self, slug: str) -> SourceRegistration:
        """Look up a source type.

        Raises:
            SourceTypeNotFound: If the source type is not registered.
        """
        try:
            return self._sources[slug]
        except KeyError:
            raise SourceTypeNotFound(f"Source type not found: {slug}") from None

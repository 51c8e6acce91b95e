"""Default registration table of platforms and source types."""

from __future__ import annotations

from collections.abc import Iterable

from guardsync.adapters.stub import DnsProfileAdapter, InMemoryAdapter, ScreenTimeAdapter
from guardsync.core.types import ApiTier, PlatformCategory, ReadWrite, SupportLevel
from guardsync.engine.capabilities import (
    Capability,
    CapabilityGroup,
    CapabilityRegistry,
    GuidedStep,
    PlatformRegistration,
    SourceRegistration,
    declare,
)
from guardsync.rules.categories import RuleCategory

G = CapabilityGroup
C = RuleCategory


def _cap(
    level: SupportLevel = SupportLevel.FULL,
    read_write: ReadWrite = ReadWrite.PUSH_ONLY,
    notes: str = "",
) -> Capability:
    return Capability(level, read_write, notes)


def guided_steps(
    display_name: str, website: str, categories: Iterable[RuleCategory]
) -> dict[RuleCategory, tuple[GuidedStep, ...]]:
    """Manual setup instructions for each category of a guided source."""
    steps = {}
    for category in categories:
        setting = category.value.replace("_", " ")
        steps[category] = (
            GuidedStep(
                1,
                f"Open {display_name}",
                f"Open the {display_name} app on the child's device or visit {website}.",
                website,
            ),
            GuidedStep(
                2,
                "Navigate to Parental Controls",
                f"In {display_name}, go to Settings or the Parental Controls section.",
            ),
            GuidedStep(
                3,
                "Configure the rule",
                f"Locate the '{setting}' setting in {display_name} and set it to match the policy.",
            ),
            GuidedStep(
                4,
                "Verify configuration",
                "Once configured, mark this rule as set up.",
            ),
        )
    return steps


def default_platforms() -> list[PlatformRegistration]:
    return [
        PlatformRegistration(
            "nextdns",
            "NextDNS",
            PlatformCategory.DNS,
            DnsProfileAdapter("nextdns"),
            declare(full=[G.WEB_FILTERING, G.SAFE_SEARCH]),
        ),
        PlatformRegistration(
            "cleanbrowsing",
            "CleanBrowsing",
            PlatformCategory.DNS,
            DnsProfileAdapter("cleanbrowsing"),
            declare(
                full=[G.SAFE_SEARCH],
                overrides={
                    C.WEB_FILTER_LEVEL: _cap(notes="Family, adult and security filter profiles"),
                    C.WEB_CATEGORY_BLOCK: _cap(SupportLevel.PARTIAL),
                },
            ),
        ),
        PlatformRegistration(
            "netflix",
            "Netflix",
            PlatformCategory.STREAMING,
            InMemoryAdapter("netflix"),
            declare(
                full=[G.CONTENT_RATING],
                overrides={
                    C.CONTENT_ALLOWLIST_MODE: _cap(SupportLevel.NONE),
                    C.ALGO_FEED_CONTROL: _cap(SupportLevel.PARTIAL, notes="Autoplay previews only"),
                },
            ),
        ),
        PlatformRegistration(
            "xbox",
            "Xbox",
            PlatformCategory.GAMING,
            InMemoryAdapter("xbox"),
            declare(
                full=[G.CONTENT_RATING, G.TIME_LIMIT, G.PURCHASE_CONTROL],
                partial=[G.SOCIAL_CONTROL],
                overrides={C.CONTENT_DESCRIPTOR_BLOCK: _cap(SupportLevel.NONE)},
            ),
        ),
        PlatformRegistration(
            "apple_screen_time",
            "Apple Screen Time",
            PlatformCategory.DEVICE,
            ScreenTimeAdapter("apple_screen_time"),
            declare(
                full=[G.TIME_LIMIT, G.SCHEDULED_HOURS, G.PURCHASE_CONTROL, G.CONTENT_RATING],
                partial=[G.WEB_FILTERING, G.PRIVACY_CONTROL, G.NOTIFICATION_CONTROL],
            ),
        ),
        PlatformRegistration(
            "android_family",
            "Android Family Controls",
            PlatformCategory.DEVICE,
            ScreenTimeAdapter("android_family"),
            declare(
                full=[G.TIME_LIMIT, G.SCHEDULED_HOURS, G.LOCATION_TRACKING],
                partial=[G.PURCHASE_CONTROL, G.ACTIVITY_MONITORING],
            ),
        ),
        PlatformRegistration(
            "chrome",
            "Chrome",
            PlatformCategory.BROWSER,
            InMemoryAdapter("chrome"),
            declare(full=[G.SAFE_SEARCH, G.WEB_FILTERING], partial=[G.ACTIVITY_MONITORING]),
        ),
    ]


def default_sources() -> list[SourceRegistration]:
    bark_managed = {
        C.MONITORING_ACTIVITY: _cap(read_write=ReadWrite.PULL_ONLY, notes="Activity monitoring"),
        C.MONITORING_ALERTS: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.WEB_FILTER_LEVEL: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.WEB_CATEGORY_BLOCK: _cap(),
        C.WEB_SAFESEARCH: _cap(),
        C.TIME_SCHEDULED_HOURS: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.TIME_DAILY_LIMIT: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.SOCIAL_CHAT_CONTROL: _cap(read_write=ReadWrite.PULL_ONLY),
        C.SOCIAL_MEDIA_MIN_AGE: _cap(),
        C.DM_RESTRICTION: _cap(),
        C.CONTENT_RATING: _cap(),
        C.NOTIFICATION_CURFEW: _cap(),
        C.PRIVACY_LOCATION: _cap(read_write=ReadWrite.PULL_ONLY),
    }
    qustodio_managed = {
        C.TIME_DAILY_LIMIT: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.TIME_SCHEDULED_HOURS: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.TIME_PER_APP_LIMIT: _cap(),
        C.TIME_DOWNTIME: _cap(),
        C.WEB_FILTER_LEVEL: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.WEB_CATEGORY_BLOCK: _cap(read_write=ReadWrite.BIDIRECTIONAL),
        C.WEB_SAFESEARCH: _cap(),
        C.MONITORING_ACTIVITY: _cap(read_write=ReadWrite.PULL_ONLY),
        C.MONITORING_ALERTS: _cap(),
        C.CONTENT_RATING: _cap(),
        C.PURCHASE_APPROVAL: _cap(SupportLevel.PARTIAL, notes="Via app blocking"),
        C.SOCIAL_MEDIA_MIN_AGE: _cap(),
    }
    return [
        SourceRegistration(
            slug="bark",
            display_name="Bark",
            adapter=InMemoryAdapter("bark"),
            tiers={
                ApiTier.MANAGED: bark_managed,
                ApiTier.GUIDED: {c: _cap(SupportLevel.PARTIAL) for c in bark_managed},
            },
            guided_steps=guided_steps("Bark", "https://www.bark.us", bark_managed),
        ),
        SourceRegistration(
            slug="qustodio",
            display_name="Qustodio",
            adapter=InMemoryAdapter("qustodio"),
            tiers={
                ApiTier.MANAGED: qustodio_managed,
                ApiTier.GUIDED: {c: _cap(SupportLevel.PARTIAL) for c in qustodio_managed},
            },
            guided_steps=guided_steps("Qustodio", "https://www.qustodio.com", qustodio_managed),
        ),
        SourceRegistration(
            slug="net_nanny",
            display_name="Net Nanny",
            adapter=InMemoryAdapter("net_nanny"),
            tiers={ApiTier.GUIDED: declare(partial=[G.WEB_FILTERING, G.SAFE_SEARCH, G.TIME_LIMIT])},
            guided_steps=guided_steps(
                "Net Nanny",
                "https://www.netnanny.com",
                declare(partial=[G.WEB_FILTERING, G.SAFE_SEARCH, G.TIME_LIMIT]),
            ),
        ),
    ]


def default_registry() -> CapabilityRegistry:
    """Registry with the built-in platforms and source types."""
    return CapabilityRegistry(default_platforms(), default_sources())

"""Closed catalog of rule categories.

The catalog is versioned: adding, removing or renaming a category bumps
``CATALOG_VERSION`` so stored rules and compiled snapshots can be traced
back to the catalog they were written against.
"""

from __future__ import annotations

from enum import Enum

from guardsync.core.errors import InvalidCategory

CATALOG_VERSION = 3


class RuleFamily(str, Enum):
    """Grouping of rule categories."""

    CONTENT = "content"
    TIME = "time"
    PURCHASE = "purchase"
    SOCIAL = "social"
    WEB = "web"
    PRIVACY = "privacy"
    MONITORING = "monitoring"
    ALGORITHMIC_SAFETY = "algorithmic_safety"
    NOTIFICATION = "notification"
    ADVERTISING_DATA = "advertising_data"
    COMPLIANCE_EXPANSION = "compliance_expansion"


class RuleCategory(str, Enum):
    """Every rule category a policy can define."""

    # Content
    CONTENT_RATING = "content_rating"
    CONTENT_BLOCK_TITLE = "content_block_title"
    CONTENT_ALLOW_TITLE = "content_allow_title"
    CONTENT_ALLOWLIST_MODE = "content_allowlist_mode"
    CONTENT_DESCRIPTOR_BLOCK = "content_descriptor_block"
    # Time
    TIME_DAILY_LIMIT = "time_daily_limit"
    TIME_SCHEDULED_HOURS = "time_scheduled_hours"
    TIME_PER_APP_LIMIT = "time_per_app_limit"
    TIME_DOWNTIME = "time_downtime"
    # Purchase
    PURCHASE_APPROVAL = "purchase_approval"
    PURCHASE_SPENDING_CAP = "purchase_spending_cap"
    PURCHASE_BLOCK_IAP = "purchase_block_iap"
    # Social
    SOCIAL_CONTACTS = "social_contacts"
    SOCIAL_CHAT_CONTROL = "social_chat_control"
    SOCIAL_MULTIPLAYER = "social_multiplayer"
    # Web
    WEB_SAFESEARCH = "web_safesearch"
    WEB_CATEGORY_BLOCK = "web_category_block"
    WEB_CUSTOM_ALLOWLIST = "web_custom_allowlist"
    WEB_CUSTOM_BLOCKLIST = "web_custom_blocklist"
    WEB_FILTER_LEVEL = "web_filter_level"
    # Privacy
    PRIVACY_LOCATION = "privacy_location"
    PRIVACY_PROFILE_VISIBILITY = "privacy_profile_visibility"
    PRIVACY_DATA_SHARING = "privacy_data_sharing"
    PRIVACY_ACCOUNT_CREATION = "privacy_account_creation"
    # Monitoring
    MONITORING_ACTIVITY = "monitoring_activity"
    MONITORING_ALERTS = "monitoring_alerts"
    # Algorithmic safety
    ALGO_FEED_CONTROL = "algo_feed_control"
    ADDICTIVE_DESIGN_CONTROL = "addictive_design_control"
    # Notification
    NOTIFICATION_CURFEW = "notification_curfew"
    USAGE_TIMER_NOTIFICATION = "usage_timer_notification"
    # Advertising and data
    TARGETED_AD_BLOCK = "targeted_ad_block"
    DM_RESTRICTION = "dm_restriction"
    AGE_GATE = "age_gate"
    DATA_DELETION_REQUEST = "data_deletion_request"
    GEOLOCATION_OPT_IN = "geolocation_opt_in"
    # Compliance expansion
    CSAM_REPORTING = "csam_reporting"
    LIBRARY_FILTER_COMPLIANCE = "library_filter_compliance"
    AI_MINOR_INTERACTION = "ai_minor_interaction"
    SOCIAL_MEDIA_MIN_AGE = "social_media_min_age"
    IMAGE_RIGHTS_MINOR = "image_rights_minor"
    PARENTAL_CONSENT_GATE = "parental_consent_gate"
    PARENTAL_EVENT_NOTIFICATION = "parental_event_notification"
    SCREEN_TIME_REPORT = "screen_time_report"
    COMMERCIAL_DATA_BAN = "commercial_data_ban"
    ALGORITHMIC_AUDIT = "algorithmic_audit"


_FAMILY_PREFIXES: tuple[tuple[str, RuleFamily], ...] = (
    ("content_", RuleFamily.CONTENT),
    ("time_", RuleFamily.TIME),
    ("purchase_", RuleFamily.PURCHASE),
    ("social_contacts", RuleFamily.SOCIAL),
    ("social_chat", RuleFamily.SOCIAL),
    ("social_multiplayer", RuleFamily.SOCIAL),
    ("web_", RuleFamily.WEB),
    ("privacy_", RuleFamily.PRIVACY),
    ("monitoring_", RuleFamily.MONITORING),
    ("algo_feed", RuleFamily.ALGORITHMIC_SAFETY),
    ("addictive_", RuleFamily.ALGORITHMIC_SAFETY),
    ("notification_", RuleFamily.NOTIFICATION),
    ("usage_timer", RuleFamily.NOTIFICATION),
)

_ADVERTISING_DATA = {
    RuleCategory.TARGETED_AD_BLOCK,
    RuleCategory.DM_RESTRICTION,
    RuleCategory.AGE_GATE,
    RuleCategory.DATA_DELETION_REQUEST,
    RuleCategory.GEOLOCATION_OPT_IN,
}


def _family_of(category: RuleCategory) -> RuleFamily:
    if category in _ADVERTISING_DATA:
        return RuleFamily.ADVERTISING_DATA
    for prefix, family in _FAMILY_PREFIXES:
        if category.value.startswith(prefix):
            return family
    return RuleFamily.COMPLIANCE_EXPANSION


CATEGORY_FAMILIES: dict[RuleCategory, RuleFamily] = {c: _family_of(c) for c in RuleCategory}


def parse_category(value: str | RuleCategory) -> RuleCategory:
    """Parse a category name.

    Args:
        value: Category name or enum member.

    Returns:
        The matching RuleCategory.

    Raises:
        InvalidCategory: If the name is not in the catalog.
    """
    if isinstance(value, RuleCategory):
        return value
    try:
        return RuleCategory(value)
    except ValueError as e:
        raise InvalidCategory(f"Unknown rule category: {value}") from e


def categories_in(family: RuleFamily) -> list[RuleCategory]:
    """List the categories of a family in catalog order."""
    return [c for c, f in CATEGORY_FAMILIES.items() if f == family]

"""Age-appropriate default rules for a new policy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from guardsync.rules.categories import RuleCategory


@dataclass(frozen=True)
class DefaultRule:
    category: RuleCategory
    enabled: bool
    config: dict[str, Any]


def age_on(birth_date: date, today: date | None = None) -> int:
    """Age in whole years at ``today``."""
    today = today or date.today()
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return max(years, 0)


def _by_age(age: int, bands: tuple[int, ...], values: tuple[Any, ...]) -> Any:
    for limit, value in zip(bands, values, strict=False):
        if age <= limit:
            return value
    return values[-1]


def default_rules_for_age(age: int) -> list[DefaultRule]:
    """Build the default rule set for a child of the given age.

    Args:
        age: Age in whole years.

    Returns:
        One DefaultRule per category, configs already valid for their schema.
    """
    daily_minutes = _by_age(age, (6, 9, 12, 16), (60, 90, 120, 180, 240))
    bedtime = _by_age(age, (6, 9, 12, 16), (19, 20, 21, 22, 23))
    filter_level = _by_age(age, (9, 12), ("strict", "moderate", "light"))
    max_ratings = _by_age(
        age,
        (6, 9, 12, 16),
        (
            {"mpaa": "G", "tv": "TV-Y", "esrb": "E"},
            {"mpaa": "PG", "tv": "TV-Y7", "esrb": "E"},
            {"mpaa": "PG", "tv": "TV-PG", "esrb": "E10+"},
            {"mpaa": "PG-13", "tv": "TV-14", "esrb": "T"},
            {"mpaa": "R", "tv": "TV-MA", "esrb": "M"},
        ),
    )

    rules = [
        DefaultRule(RuleCategory.CONTENT_RATING, True, {"max_ratings": dict(max_ratings)}),
        DefaultRule(RuleCategory.WEB_SAFESEARCH, True, {"enabled": True}),
        DefaultRule(RuleCategory.MONITORING_ACTIVITY, True, {"enabled": True}),
        DefaultRule(RuleCategory.TIME_DAILY_LIMIT, True, {"daily_minutes": daily_minutes}),
        DefaultRule(
            RuleCategory.TIME_SCHEDULED_HOURS,
            True,
            {
                "schedule": {
                    "weekday": {"start": "07:00", "end": f"{bedtime:02d}:00"},
                    "weekend": {"start": "08:00", "end": f"{min(bedtime + 1, 23):02d}:00"},
                }
            },
        ),
        DefaultRule(RuleCategory.WEB_FILTER_LEVEL, True, {"level": filter_level}),
        DefaultRule(RuleCategory.PRIVACY_PROFILE_VISIBILITY, True, {"visibility": "private"}),
        DefaultRule(RuleCategory.ALGO_FEED_CONTROL, True, {"mode": "chronological"}),
        DefaultRule(RuleCategory.TARGETED_AD_BLOCK, True, {"block_targeted_ads": True}),
        DefaultRule(RuleCategory.GEOLOCATION_OPT_IN, True, {"geolocation_allowed": False}),
        DefaultRule(RuleCategory.DATA_DELETION_REQUEST, True, {"enabled": True}),
    ]

    if age < 18:
        rules.append(DefaultRule(RuleCategory.PURCHASE_APPROVAL, True, {"require_approval": True}))
        rules.append(DefaultRule(RuleCategory.PURCHASE_BLOCK_IAP, age < 13, {"block_iap": age < 13}))

    if age < 13:
        rules += [
            DefaultRule(RuleCategory.SOCIAL_CHAT_CONTROL, True, {"mode": "friends_only"}),
            DefaultRule(RuleCategory.PRIVACY_ACCOUNT_CREATION, True, {"require_approval": True}),
            DefaultRule(RuleCategory.AGE_GATE, True, {"enabled": True, "min_age": 13}),
            DefaultRule(RuleCategory.DM_RESTRICTION, True, {"mode": "none"}),
            DefaultRule(RuleCategory.ADDICTIVE_DESIGN_CONTROL, True, {}),
            DefaultRule(RuleCategory.NOTIFICATION_CURFEW, True, {"start": "20:00", "end": "07:00"}),
            DefaultRule(RuleCategory.USAGE_TIMER_NOTIFICATION, True, {"interval_minutes": 15}),
        ]
    elif age <= 16:
        rules += [
            DefaultRule(RuleCategory.AGE_GATE, False, {"enabled": False}),
            DefaultRule(RuleCategory.DM_RESTRICTION, True, {"mode": "contacts_only"}),
            DefaultRule(
                RuleCategory.ADDICTIVE_DESIGN_CONTROL,
                True,
                {
                    "disable_infinite_scroll": True,
                    "disable_autoplay": True,
                    "disable_streaks": False,
                    "disable_like_counts": False,
                    "disable_daily_rewards": False,
                },
            ),
            DefaultRule(RuleCategory.NOTIFICATION_CURFEW, True, {"start": "22:00", "end": "06:00"}),
            DefaultRule(RuleCategory.USAGE_TIMER_NOTIFICATION, True, {"interval_minutes": 30}),
        ]

    return rules

"""Tests for the category catalog and typed rule configs."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from guardsync.core.errors import InvalidCategory, InvalidRuleConfig
from guardsync.rules import (
    CATEGORY_FAMILIES,
    CONFIG_MODELS,
    RuleCategory,
    RuleFamily,
    catalog,
    categories_in,
    parse_category,
    validate_config,
)


class TestCatalog:
    """Tests for the category catalog."""

    def test_every_category_has_a_config_model(self) -> None:
        """Should map every category to a config model."""
        assert set(CONFIG_MODELS) == set(RuleCategory)

    def test_every_category_has_a_family(self) -> None:
        """Should assign every category to a family."""
        assert set(CATEGORY_FAMILIES) == set(RuleCategory)

    def test_family_assignment(self) -> None:
        """Should group categories by their family."""
        assert CATEGORY_FAMILIES[RuleCategory.TIME_DAILY_LIMIT] == RuleFamily.TIME
        assert CATEGORY_FAMILIES[RuleCategory.WEB_SAFESEARCH] == RuleFamily.WEB
        assert CATEGORY_FAMILIES[RuleCategory.DM_RESTRICTION] == RuleFamily.ADVERTISING_DATA
        assert CATEGORY_FAMILIES[RuleCategory.SOCIAL_MEDIA_MIN_AGE] == RuleFamily.COMPLIANCE_EXPANSION
        assert CATEGORY_FAMILIES[RuleCategory.ALGO_FEED_CONTROL] == RuleFamily.ALGORITHMIC_SAFETY

    def test_categories_in_family(self) -> None:
        """Should list a family's categories in catalog order."""
        assert categories_in(RuleFamily.PURCHASE) == [
            RuleCategory.PURCHASE_APPROVAL,
            RuleCategory.PURCHASE_SPENDING_CAP,
            RuleCategory.PURCHASE_BLOCK_IAP,
        ]

    def test_catalog_entries(self) -> None:
        """Should describe each category with its family and JSON schema."""
        entries = {e["category"]: e for e in catalog()}
        assert len(entries) == len(RuleCategory)
        entry = entries["time_daily_limit"]
        assert entry["family"] == "time"
        assert "daily_minutes" in entry["config_schema"]["properties"]


class TestParseCategory:
    """Tests for parse_category."""

    def test_parses_name(self) -> None:
        assert parse_category("web_safesearch") == RuleCategory.WEB_SAFESEARCH

    def test_passes_enum_through(self) -> None:
        assert parse_category(RuleCategory.AGE_GATE) is RuleCategory.AGE_GATE

    def test_rejects_unknown(self) -> None:
        """Should raise InvalidCategory for names outside the catalog."""
        with pytest.raises(InvalidCategory, match="not_a_category"):
            parse_category("not_a_category")


class TestValidateConfig:
    """Tests for per-category config validation."""

    def test_valid_daily_limit(self) -> None:
        config = validate_config("time_daily_limit", {"daily_minutes": 90})
        assert config.model_dump() == {"daily_minutes": 90}

    def test_rejects_out_of_range(self) -> None:
        """Should reject values outside the schema's bounds."""
        with pytest.raises(InvalidRuleConfig, match="daily_minutes"):
            validate_config("time_daily_limit", {"daily_minutes": 2000})

    def test_rejects_unknown_fields(self) -> None:
        """Should reject fields the category does not define."""
        with pytest.raises(InvalidRuleConfig):
            validate_config("web_safesearch", {"enabled": True, "strict": True})

    def test_rejects_missing_required(self) -> None:
        with pytest.raises(InvalidRuleConfig) as exc_info:
            validate_config(RuleCategory.WEB_FILTER_LEVEL, {})
        assert exc_info.value.category == "web_filter_level"

    def test_none_is_empty_config(self) -> None:
        """Should treat None as an empty payload, applying defaults."""
        config = validate_config("purchase_approval", None)
        assert config.model_dump() == {"require_approval": True}

    def test_unknown_category(self) -> None:
        with pytest.raises(InvalidCategory):
            validate_config("bogus", {})

    def test_normalizes_clock_times(self) -> None:
        """Should zero-pad HH:MM times."""
        config = validate_config("notification_curfew", {"start": "7:30", "end": "21:00"})
        assert config.model_dump() == {"start": "07:30", "end": "21:00"}

    def test_rejects_bad_clock_time(self) -> None:
        with pytest.raises(InvalidRuleConfig):
            validate_config("time_downtime", {"start": "25:00", "end": "07:00"})

    def test_normalizes_domains(self) -> None:
        """Should lowercase domains and strip trailing dots."""
        config = validate_config("web_custom_blocklist", {"domains": ["Example.COM.", " b.org "]})
        assert config.model_dump() == {"domains": ["example.com", "b.org"]}

    def test_rejects_empty_domain(self) -> None:
        with pytest.raises(InvalidRuleConfig):
            validate_config("web_custom_allowlist", {"domains": [""]})

    def test_downtime_defaults_to_every_day(self) -> None:
        config = validate_config("time_downtime", {"start": "21:00", "end": "07:00"})
        assert config.model_dump()["days"] == ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

    def test_configs_are_immutable(self) -> None:
        """Should return frozen models."""
        config = validate_config("time_daily_limit", {"daily_minutes": 60})
        with pytest.raises(ValidationError):
            config.daily_minutes = 30  # type: ignore[misc]

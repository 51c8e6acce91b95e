"""Rule model - category catalog, typed configs, and age defaults."""

from guardsync.rules.categories import (
    CATALOG_VERSION,
    CATEGORY_FAMILIES,
    RuleCategory,
    RuleFamily,
    categories_in,
    parse_category,
)
from guardsync.rules.configs import (
    CONFIG_MODELS,
    RuleConfig,
    catalog,
    config_schema,
    validate_config,
)
from guardsync.rules.defaults import DefaultRule, age_on, default_rules_for_age

__all__ = [
    # Catalog
    "CATALOG_VERSION",
    "CATEGORY_FAMILIES",
    "RuleCategory",
    "RuleFamily",
    "categories_in",
    "parse_category",
    # Configs
    "CONFIG_MODELS",
    "RuleConfig",
    "catalog",
    "config_schema",
    "validate_config",
    # Defaults
    "DefaultRule",
    "age_on",
    "default_rules_for_age",
]

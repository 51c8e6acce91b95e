"""Policy compiler.

Merges a child's active policies into one resolved rule set:
- For each category, the enabled rule of the highest-priority active
  policy wins.
- Equal priorities go to the most recently updated rule, then to the
  lexically smallest policy id.
- Categories are independent and disabled rules never win.

``resolve_rules`` is pure. ``PolicyCompiler`` loads policies from the
database and caches the result per child until invalidated.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from guardsync.core.errors import NoActivePolicy
from guardsync.rules.categories import RuleCategory, parse_category
from guardsync.rules.configs import RuleConfig, validate_config

if TYPE_CHECKING:
    from guardsync.server.database import Database
    from guardsync.server.models import Policy

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class ResolvedRule:
    """The winning rule for one category."""

    category: RuleCategory
    config: RuleConfig
    policy_id: str
    rule_id: str
    priority: int
    updated_at: datetime
    enabled: bool = True

    def config_dict(self) -> dict[str, Any]:
        return self.config.model_dump(mode="json")

    @property
    def config_hash(self) -> str:
        """Stable hash of category, enabled flag and config."""
        body = _canonical(
            {"category": self.category.value, "enabled": self.enabled, "config": self.config_dict()}
        )
        return hashlib.sha256(body.encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "enabled": self.enabled,
            "config": self.config_dict(),
            "policy_id": self.policy_id,
        }


@dataclass(frozen=True)
class ResolvedRuleSet:
    """Compiler output for one child.

    Attributes:
        child_id: Child the set was compiled for.
        rules: Winning rule per category; absent categories are untouched.
        contributing_policy_ids: Policies that won at least one category.
        version_key: Max version among contributing policies.
        primary_policy_id: Highest-priority contributing policy.
    """

    child_id: str
    rules: Mapping[RuleCategory, ResolvedRule]
    contributing_policy_ids: frozenset[str] = field(default_factory=frozenset)
    version_key: int = 0
    primary_policy_id: str | None = None

    def __len__(self) -> int:
        return len(self.rules)

    def __contains__(self, category: object) -> bool:
        return category in self.rules

    def get(self, category: RuleCategory) -> ResolvedRule | None:
        return self.rules.get(category)

    def categories(self) -> list[RuleCategory]:
        return sorted(self.rules, key=lambda c: c.value)

    def ordered(self) -> list[ResolvedRule]:
        """Rules in category name order."""
        return [self.rules[c] for c in self.categories()]

    def filter(self, categories: Iterable[RuleCategory]) -> list[ResolvedRule]:
        """Rules for the given categories, in category name order."""
        wanted = set(categories)
        return [r for r in self.ordered() if r.category in wanted]

    @property
    def fingerprint(self) -> str:
        """Hash of every resolved rule; changes whenever the set changes."""
        body = _canonical([r.to_dict() for r in self.ordered()])
        return hashlib.sha256(body.encode()).hexdigest()


def _wins_over(candidate: tuple[Policy, Any], current: tuple[Policy, Any]) -> bool:
    c_policy, c_rule = candidate
    k_policy, k_rule = current
    if c_policy.priority != k_policy.priority:
        return c_policy.priority > k_policy.priority
    if c_rule.updated_at != k_rule.updated_at:
        return c_rule.updated_at > k_rule.updated_at
    return c_policy.id < k_policy.id


def resolve_rules(child_id: str, policies: Iterable[Policy]) -> ResolvedRuleSet:
    """Resolve the winning rule per category.

    Args:
        child_id: Child the policies belong to.
        policies: Policies with their ``rules`` loaded; only active,
            non-deleted ones are considered.

    Returns:
        The resolved rule set.

    Raises:
        NoActivePolicy: If none of the policies is active.
    """
    active = [p for p in policies if p.status == "active" and p.deleted_at is None]
    if not active:
        raise NoActivePolicy(f"No active policy for child {child_id}")

    winners: dict[RuleCategory, tuple[Policy, Any]] = {}
    for policy in active:
        for rule in policy.rules:
            if not rule.enabled:
                continue
            category = parse_category(rule.category)
            current = winners.get(category)
            if current is None or _wins_over((policy, rule), current):
                winners[category] = (policy, rule)

    rules: dict[RuleCategory, ResolvedRule] = {}
    for category, (policy, rule) in winners.items():
        rules[category] = ResolvedRule(
            category=category,
            config=validate_config(category, rule.config),
            policy_id=policy.id,
            rule_id=rule.id,
            priority=policy.priority,
            updated_at=rule.updated_at,
        )

    contributing = [p for p in active if any(r.policy_id == p.id for r in rules.values())]
    primary = max(contributing, key=lambda p: (p.priority, p.updated_at), default=None)
    return ResolvedRuleSet(
        child_id=child_id,
        rules=rules,
        contributing_policy_ids=frozenset(p.id for p in contributing),
        version_key=max((p.version for p in contributing), default=0),
        primary_policy_id=primary.id if primary is not None else None,
    )


class PolicyCompiler:
    """Loads and caches resolved rule sets per child.

    Cache entries are keyed by the max version among contributing
    policies and dropped by ``invalidate`` whenever a policy or rule of
    the child changes.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._lock = threading.Lock()
        self._cache: dict[str, ResolvedRuleSet] = {}
        self._generations: dict[str, int] = {}

    def compile(self, child_id: str) -> ResolvedRuleSet:
        """Resolve a child's rule set, using the cache when valid.

        Raises:
            NoActivePolicy: If the child has no active policy.
        """
        with self._lock:
            cached = self._cache.get(child_id)
            generation = self._generations.get(child_id, 0)
        if cached is not None:
            return cached

        resolved = resolve_rules(child_id, self._db.list_active_policies_with_rules(child_id))
        with self._lock:
            # Skip caching if invalidated while loading
            if self._generations.get(child_id, 0) == generation:
                self._cache[child_id] = resolved
        logger.debug(
            "Compiled %d rules for child %s (version key %d)",
            len(resolved),
            child_id,
            resolved.version_key,
        )
        return resolved

    def invalidate(self, child_id: str) -> None:
        with self._lock:
            self._cache.pop(child_id, None)
            self._generations[child_id] = self._generations.get(child_id, 0) + 1

    def cached_version(self, child_id: str) -> int | None:
        """Version key of the cached entry, if any."""
        with self._lock:
            cached = self._cache.get(child_id)
        return cached.version_key if cached is not None else None

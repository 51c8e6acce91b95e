"""In-memory reference adapters.

These adapters keep each child's native settings in a dict instead of
calling a remote service. They are used by the default registration
table and in tests, where failures, outages and slow calls can be
simulated.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from guardsync.core.errors import AdapterUnavailable
from guardsync.engine.adapters import Adapter, RuleOutcome
from guardsync.rules.categories import RuleCategory

if TYPE_CHECKING:
    from guardsync.engine.compiler import ResolvedRule

logger = logging.getLogger(__name__)


class InMemoryAdapter(Adapter):
    """Adapter applying rules to an in-memory settings store.

    Re-applying a rule whose config is already stored reports skipped,
    so replaying a job never fails.

    Args:
        name: Integration name used in logs and outcome details.
        fail_categories: Categories rejected with a failed outcome.
        delay: Seconds each ``apply`` call sleeps before doing anything.
    """

    def __init__(
        self,
        name: str,
        fail_categories: Iterable[RuleCategory] = (),
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.fail_categories = set(fail_categories)
        self.delay = delay
        self.available = True
        self.calls: list[tuple[str, list[RuleCategory]]] = []
        self._lock = threading.Lock()
        self._applied: dict[tuple[str, RuleCategory], str] = {}
        self._settings: dict[str, dict[str, Any]] = {}

    def translate(self, rule: ResolvedRule) -> dict[str, Any]:
        """Native settings written for a rule."""
        return {rule.category.value: rule.config_dict()}

    def settings(self, child_id: str) -> dict[str, Any]:
        """Snapshot of the native settings stored for a child."""
        with self._lock:
            return dict(self._settings.get(child_id, {}))

    def apply(self, child_id: str, rules: Sequence[ResolvedRule]) -> list[RuleOutcome]:
        with self._lock:
            self.calls.append((child_id, [r.category for r in rules]))
        if self.delay:
            time.sleep(self.delay)
        if not self.available:
            raise AdapterUnavailable(f"{self.name} is unreachable")

        outcomes = []
        for rule in rules:
            if rule.category in self.fail_categories:
                outcomes.append(RuleOutcome.failed(rule.category, f"rejected by {self.name}"))
                continue
            key = (child_id, rule.category)
            native = self.translate(rule)
            with self._lock:
                if self._applied.get(key) == rule.config_hash:
                    outcomes.append(RuleOutcome.skipped(rule.category, "already applied"))
                    continue
                self._applied[key] = rule.config_hash
                self._settings.setdefault(child_id, {}).update(native)
            outcomes.append(RuleOutcome.applied(rule.category, settings=native))
        logger.debug("%s applied %d rules for child %s", self.name, len(rules), child_id)
        return outcomes


_DNS_BLOCKLISTS = {
    "strict": ["adult", "gambling", "dating", "social", "gaming", "piracy"],
    "moderate": ["adult", "gambling", "dating", "piracy"],
    "light": ["adult", "gambling"],
    "off": [],
}


class DnsProfileAdapter(InMemoryAdapter):
    """DNS filtering profile: web rules become resolver settings."""

    def translate(self, rule: ResolvedRule) -> dict[str, Any]:
        config = rule.config_dict()
        if rule.category == RuleCategory.WEB_SAFESEARCH:
            return {"safe_search": config["enabled"], "youtube_restricted_mode": config["enabled"]}
        if rule.category == RuleCategory.WEB_FILTER_LEVEL:
            return {"blocklists": _DNS_BLOCKLISTS[config["level"]]}
        if rule.category == RuleCategory.WEB_CATEGORY_BLOCK:
            return {"blocked_categories": sorted(config["categories"])}
        if rule.category == RuleCategory.WEB_CUSTOM_BLOCKLIST:
            return {"denylist": sorted(config["domains"])}
        if rule.category == RuleCategory.WEB_CUSTOM_ALLOWLIST:
            return {"allowlist": sorted(config["domains"])}
        return super().translate(rule)


class ScreenTimeAdapter(InMemoryAdapter):
    """Device screen time: time rules become minute budgets and windows."""

    def translate(self, rule: ResolvedRule) -> dict[str, Any]:
        config = rule.config_dict()
        if rule.category == RuleCategory.TIME_DAILY_LIMIT:
            return {"daily_budget_minutes": config["daily_minutes"]}
        if rule.category == RuleCategory.TIME_DOWNTIME:
            return {"downtime": {"from": config["start"], "to": config["end"], "days": config["days"]}}
        if rule.category == RuleCategory.TIME_SCHEDULED_HOURS:
            return {"allowed_hours": config["schedule"]}
        return super().translate(rule)

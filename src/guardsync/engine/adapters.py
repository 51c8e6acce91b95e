"""Adapter contract shared by platform and source integrations.

An adapter is the only component that knows how a specific external
service models parental controls. The dispatchers hand it resolved rules
and only tally the outcomes it reports.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from guardsync.core.types import OutcomeStatus

if TYPE_CHECKING:
    from guardsync.engine.compiler import ResolvedRule
    from guardsync.rules.categories import RuleCategory


@dataclass(frozen=True)
class RuleOutcome:
    """Outcome of applying one rule.

    Attributes:
        category: Category of the input rule this outcome answers.
        status: applied, skipped or failed.
        detail: Optional structured detail (native settings written, etc.).
        error: Error message for failed outcomes.
    """

    category: RuleCategory
    status: OutcomeStatus
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def applied(cls, category: RuleCategory, **detail: Any) -> RuleOutcome:
        return cls(category, OutcomeStatus.APPLIED, dict(detail))

    @classmethod
    def skipped(cls, category: RuleCategory, reason: str | None = None) -> RuleOutcome:
        return cls(category, OutcomeStatus.SKIPPED, {"reason": reason} if reason else {})

    @classmethod
    def failed(cls, category: RuleCategory, error: str) -> RuleOutcome:
        return cls(category, OutcomeStatus.FAILED, {}, error)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"category": self.category.value, "status": self.status.value}
        if self.detail:
            data["detail"] = self.detail
        if self.error:
            data["error"] = self.error
        return data


class Adapter(ABC):
    """Interface every integration implements.

    Implementations must be idempotent: applying a rule that is already
    in place with identical config returns applied or skipped, never
    failed. Expected per-rule failures are reported as failed outcomes;
    raise only when the integration as a whole is unavailable.
    """

    @abstractmethod
    def apply(self, child_id: str, rules: Sequence[ResolvedRule]) -> list[RuleOutcome]:
        """Apply rules for a child.

        Args:
            child_id: Child the rules belong to.
            rules: Resolved rules, already filtered to supported categories.

        Returns:
            One outcome per input rule.

        Raises:
            AdapterUnavailable: If the integration cannot be reached at all.
        """


def correlate(
    rules: Sequence[ResolvedRule], outcomes: Sequence[RuleOutcome]
) -> list[RuleOutcome]:
    """Match adapter outcomes to input rules by category.

    Rules without an outcome are reported as failed; outcomes for
    categories that were not requested are dropped.

    Returns:
        One outcome per input rule, in input order.
    """
    by_category: dict[RuleCategory, RuleOutcome] = {}
    for outcome in outcomes:
        by_category.setdefault(outcome.category, outcome)
    return [
        by_category.get(rule.category)
        or RuleOutcome.failed(rule.category, "adapter reported no outcome")
        for rule in rules
    ]

"""Policy and rule management.

Every write names the policy version the caller last read and bumps it
on success. After each mutation the child's compiled rule set is
invalidated and change listeners are notified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import date
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from guardsync.core.errors import ConflictError, PolicyNotFound, RuleNotFound
from guardsync.core.types import PolicyStatus
from guardsync.rules.categories import parse_category
from guardsync.rules.configs import validate_config
from guardsync.rules.defaults import age_on, default_rules_for_age

if TYPE_CHECKING:
    from guardsync.engine.compiler import PolicyCompiler, ResolvedRuleSet
    from guardsync.server.database import Database
    from guardsync.server.models import Policy, Rule

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]

RuleSpec = tuple[str, bool, dict[str, Any] | None]


class PolicyService:
    """CRUD over policies and rules with optimistic versioning."""

    def __init__(self, db: Database, compiler: PolicyCompiler) -> None:
        self._db = db
        self._compiler = compiler
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback receiving the child id after each mutation."""
        self._listeners.append(listener)

    def _changed(self, child_id: str) -> None:
        self._compiler.invalidate(child_id)
        for listener in self._listeners:
            try:
                listener(child_id)
            except Exception:
                logger.exception("Policy change listener failed for child %s", child_id)

    # === Policies ===

    def create_policy(
        self,
        child_id: str,
        name: str,
        priority: int = 0,
        status: PolicyStatus | str = PolicyStatus.DRAFT,
    ) -> Policy:
        """Create a policy at version 1.

        Raises:
            ChildNotFound: If the child doesn't exist.
        """
        policy = self._db.create_policy(child_id, name, priority, PolicyStatus(status).value)
        logger.info("Policy %s created for child %s (%s)", policy.id, child_id, policy.status)
        self._changed(child_id)
        return policy

    def get_policy(self, policy_id: str, include_deleted: bool = False) -> Policy:
        policy = self._db.get_policy(policy_id, include_deleted=include_deleted)
        if policy is None:
            raise PolicyNotFound(f"Policy not found: {policy_id}")
        return policy

    def list_policies(self, child_id: str) -> list[Policy]:
        self._db.require_child(child_id)
        return self._db.list_policies(child_id)

    def update_policy(
        self,
        policy_id: str,
        expected_version: int,
        name: str | None = None,
        priority: int | None = None,
        status: PolicyStatus | str | None = None,
    ) -> Policy:
        """Update policy fields.

        Raises:
            PolicyNotFound: If the policy doesn't exist.
            ConflictError: If ``expected_version`` is stale.
        """
        policy = self._db.update_policy(
            policy_id,
            expected_version,
            name=name,
            priority=priority,
            status=PolicyStatus(status).value if status is not None else None,
        )
        logger.info("Policy %s updated to version %d", policy_id, policy.version)
        self._changed(policy.child_id)
        return policy

    def activate(self, policy_id: str, expected_version: int) -> Policy:
        return self.update_policy(policy_id, expected_version, status=PolicyStatus.ACTIVE)

    def pause(self, policy_id: str, expected_version: int) -> Policy:
        return self.update_policy(policy_id, expected_version, status=PolicyStatus.PAUSED)

    def delete_policy(self, policy_id: str, expected_version: int) -> Policy:
        """Soft-delete a policy; it stays readable by id for job audit."""
        policy = self._db.delete_policy(policy_id, expected_version)
        logger.info("Policy %s deleted", policy_id)
        self._changed(policy.child_id)
        return policy

    # === Rules ===

    def list_rules(self, policy_id: str) -> list[Rule]:
        self.get_policy(policy_id)
        return self._db.list_rules(policy_id)

    def get_rule(self, policy_id: str, category: str) -> Rule:
        self.get_policy(policy_id)
        rule = self._db.get_rule(policy_id, parse_category(category).value)
        if rule is None:
            raise RuleNotFound(f"No {category} rule in policy {policy_id}")
        return rule

    def create_rule(
        self,
        policy_id: str,
        expected_version: int,
        category: str,
        enabled: bool = True,
        config: dict[str, Any] | None = None,
    ) -> Rule:
        """Add a rule to a policy.

        Args:
            policy_id: Policy ID.
            expected_version: Version the caller last read.
            category: Rule category name.
            enabled: Whether the rule participates in resolution.
            config: Raw config, validated against the category's model.

        Returns:
            Created Rule with its normalized config.

        Raises:
            InvalidCategory: If the category is not in the catalog.
            InvalidRuleConfig: If the config doesn't match the category.
            PolicyNotFound: If the policy doesn't exist.
            ConflictError: If ``expected_version`` is stale or the policy
                already has a rule for this category.
        """
        parsed = parse_category(category)
        normalized = validate_config(parsed, config).model_dump(mode="json")
        policy = self.get_policy(policy_id)
        try:
            rule = self._db.create_rule(policy_id, expected_version, parsed.value, enabled, normalized)
        except IntegrityError as e:
            raise ConflictError(f"Policy {policy_id} already has a {parsed.value} rule") from e
        logger.info("Rule %s added to policy %s", parsed.value, policy_id)
        self._changed(policy.child_id)
        return rule

    def update_rule(
        self,
        policy_id: str,
        expected_version: int,
        category: str,
        enabled: bool | None = None,
        config: dict[str, Any] | None = None,
    ) -> Rule:
        """Change a rule's enabled flag and/or config.

        Raises:
            InvalidCategory: If the category is not in the catalog.
            InvalidRuleConfig: If the config doesn't match the category.
            RuleNotFound: If the policy has no rule for the category.
            ConflictError: If ``expected_version`` is stale.
        """
        parsed = parse_category(category)
        normalized = None
        if config is not None:
            normalized = validate_config(parsed, config).model_dump(mode="json")
        policy = self.get_policy(policy_id)
        rule = self._db.update_rule(
            policy_id, expected_version, parsed.value, enabled=enabled, config=normalized
        )
        logger.info("Rule %s updated in policy %s", parsed.value, policy_id)
        self._changed(policy.child_id)
        return rule

    def delete_rule(self, policy_id: str, expected_version: int, category: str) -> None:
        parsed = parse_category(category)
        policy = self.get_policy(policy_id)
        self._db.delete_rule(policy_id, expected_version, parsed.value)
        logger.info("Rule %s removed from policy %s", parsed.value, policy_id)
        self._changed(policy.child_id)

    def bulk_upsert(
        self,
        policy_id: str,
        expected_version: int,
        rules: Iterable[RuleSpec],
    ) -> list[Rule]:
        """Create or replace several rules under a single version bump.

        Every config is validated before anything is written.

        Returns:
            All rules of the policy after the upsert.
        """
        prepared = []
        for category, enabled, config in rules:
            parsed = parse_category(category)
            normalized = validate_config(parsed, config).model_dump(mode="json")
            prepared.append((parsed.value, enabled, normalized))
        policy = self.get_policy(policy_id)
        result = self._db.upsert_rules(policy_id, expected_version, prepared)
        logger.info("Upserted %d rules into policy %s", len(prepared), policy_id)
        self._changed(policy.child_id)
        return result

    def generate_defaults(
        self,
        policy_id: str,
        expected_version: int,
        age: int | None = None,
        today: date | None = None,
    ) -> list[Rule]:
        """Fill a policy with age-appropriate default rules.

        Args:
            policy_id: Policy ID.
            expected_version: Version the caller last read.
            age: Age to use; derived from the child's birth date when None.
            today: Reference date for the age computation.

        Raises:
            ValueError: If no age is given and the child has no birth date.
        """
        policy = self.get_policy(policy_id)
        if age is None:
            child = self._db.require_child(policy.child_id)
            if child.birth_date is None:
                raise ValueError(f"Child {child.id} has no birth date; pass an age")
            age = age_on(child.birth_date, today)
        defaults = default_rules_for_age(age)
        logger.info("Generating %d default rules (age %d) for policy %s", len(defaults), age, policy_id)
        return self.bulk_upsert(
            policy_id,
            expected_version,
            [(d.category.value, d.enabled, d.config) for d in defaults],
        )

    def resolved(self, child_id: str) -> ResolvedRuleSet:
        """The child's current resolved rule set.

        Raises:
            ChildNotFound: If the child doesn't exist.
            NoActivePolicy: If the child has no active policy.
        """
        self._db.require_child(child_id)
        return self._compiler.compile(child_id)

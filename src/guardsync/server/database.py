"""Server database using SQLAlchemy with SQLite.

This module provides:
- Family, child, policy and rule storage with optimistic versioning
- Compliance links and enforcement job/result tracking
- Source, sync job and per-category sync state storage
- Device registrations, compiled policy snapshots and device reports
- Webhooks and webhook delivery bookkeeping
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, selectinload

from guardsync.core.errors import (
    ChildNotFound,
    ConflictError,
    DeviceNotFound,
    FamilyNotFound,
    JobNotFound,
    LinkNotFound,
    PolicyNotFound,
    RuleNotFound,
    SourceNotFound,
    WebhookNotFound,
)
from guardsync.server.models import (
    Base,
    Child,
    CompiledPolicy,
    ComplianceLink,
    Device,
    DeviceReport,
    EnforcementJob,
    EnforcementResult,
    Family,
    Policy,
    Rule,
    Source,
    SourceRuleState,
    SourceSyncJob,
    SourceSyncResult,
    Webhook,
    WebhookDelivery,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

_UNSET: Any = object()


def hash_api_key(api_key: str) -> str:
    """Hash an API key using SHA-256.

    Args:
        api_key: Raw key string.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


class Database:
    """SQLAlchemy database for engine state.

    Uses SQLite with WAL mode so dispatcher worker threads can write
    results while API requests read.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # check_same_thread=False for access from worker threads
        self._engine: Engine = create_engine(
            f"sqlite:///{self._db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        with self._engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            conn.exec_driver_sql("PRAGMA foreign_keys=ON")

        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    @staticmethod
    def _detach(session: Session, objects: Iterable[Any]) -> None:
        for obj in objects:
            session.expunge(obj)

    # === Family operations ===

    def create_family(self, name: str) -> Family:
        """Create a family.

        Args:
            name: Display name.

        Returns:
            Created Family object.
        """
        with self._session() as session:
            family = Family(name=name)
            session.add(family)
            session.commit()
            session.refresh(family)
            session.expunge(family)
            return family

    def get_family(self, family_id: str) -> Family | None:
        with self._session() as session:
            family = session.get(Family, family_id)
            if family:
                session.expunge(family)
            return family

    def create_child(self, family_id: str, name: str, birth_date: date | None = None) -> Child:
        """Add a child to a family.

        Args:
            family_id: Owning family.
            name: Child's display name.
            birth_date: Optional birth date, used for age-based defaults.

        Returns:
            Created Child object.

        Raises:
            FamilyNotFound: If the family doesn't exist.
        """
        with self._session() as session:
            if session.get(Family, family_id) is None:
                raise FamilyNotFound(f"Family not found: {family_id}")
            child = Child(family_id=family_id, name=name, birth_date=birth_date)
            session.add(child)
            session.commit()
            session.refresh(child)
            session.expunge(child)
            return child

    def get_child(self, child_id: str) -> Child | None:
        with self._session() as session:
            child = session.get(Child, child_id)
            if child:
                session.expunge(child)
            return child

    def require_child(self, child_id: str) -> Child:
        """Get a child or raise.

        Raises:
            ChildNotFound: If the child doesn't exist.
        """
        child = self.get_child(child_id)
        if child is None:
            raise ChildNotFound(f"Child not found: {child_id}")
        return child

    def list_children(self, family_id: str) -> list[Child]:
        with self._session() as session:
            stmt = select(Child).where(Child.family_id == family_id).order_by(Child.created_at)
            children = list(session.execute(stmt).scalars().all())
            self._detach(session, children)
            return children

    def list_children_with_active_policy(self) -> list[str]:
        """List ids of children that have at least one active policy."""
        with self._session() as session:
            stmt = (
                select(Policy.child_id)
                .where(Policy.status == "active", Policy.deleted_at.is_(None))
                .distinct()
                .order_by(Policy.child_id)
            )
            return list(session.execute(stmt).scalars().all())

    # === Policy operations ===

    def create_policy(
        self,
        child_id: str,
        name: str,
        priority: int = 0,
        status: str = "draft",
    ) -> Policy:
        """Create a policy for a child.

        Args:
            child_id: Owning child.
            name: Policy name.
            priority: Numerically greater wins category conflicts.
            status: Initial status (draft, active, paused).

        Returns:
            Created Policy at version 1.

        Raises:
            ChildNotFound: If the child doesn't exist.
        """
        with self._session() as session:
            if session.get(Child, child_id) is None:
                raise ChildNotFound(f"Child not found: {child_id}")
            policy = Policy(child_id=child_id, name=name, priority=priority, status=status)
            session.add(policy)
            session.commit()
            session.refresh(policy)
            session.expunge(policy)
            return policy

    def get_policy(self, policy_id: str, include_deleted: bool = False) -> Policy | None:
        """Get a policy by ID.

        Args:
            policy_id: Policy ID.
            include_deleted: Also return soft-deleted policies.

        Returns:
            Policy if found, None otherwise.
        """
        with self._session() as session:
            policy = session.get(Policy, policy_id)
            if policy is None or (policy.deleted_at is not None and not include_deleted):
                return None
            session.expunge(policy)
            return policy

    def list_policies(self, child_id: str) -> list[Policy]:
        """List a child's policies (excluding deleted), highest priority first."""
        with self._session() as session:
            stmt = (
                select(Policy)
                .where(Policy.child_id == child_id, Policy.deleted_at.is_(None))
                .order_by(Policy.priority.desc(), Policy.created_at)
            )
            policies = list(session.execute(stmt).scalars().all())
            self._detach(session, policies)
            return policies

    def list_active_policies_with_rules(self, child_id: str) -> list[Policy]:
        """List a child's active policies with their rules loaded."""
        with self._session() as session:
            stmt = (
                select(Policy)
                .options(selectinload(Policy.rules))
                .where(
                    Policy.child_id == child_id,
                    Policy.status == "active",
                    Policy.deleted_at.is_(None),
                )
                .order_by(Policy.id)
            )
            policies = list(session.execute(stmt).scalars().all())
            self._detach(session, policies)
            return policies

    def _bump_policy_version(
        self,
        session: Session,
        policy_id: str,
        expected_version: int,
        **values: Any,
    ) -> None:
        """Atomically increment a policy's version if it still matches.

        Raises:
            PolicyNotFound: If the policy doesn't exist or was deleted.
            ConflictError: If the current version is not ``expected_version``.
        """
        stmt = (
            update(Policy)
            .where(
                Policy.id == policy_id,
                Policy.deleted_at.is_(None),
                Policy.version == expected_version,
            )
            .values(version=Policy.version + 1, updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            current = session.get(Policy, policy_id)
            if current is None or current.deleted_at is not None:
                raise PolicyNotFound(f"Policy not found: {policy_id}")
            raise ConflictError(
                f"Conflict detected: expected version {expected_version}, "
                f"but current version is {current.version}"
            )

    def _reload_policy(self, session: Session, policy_id: str) -> Policy:
        policy = session.get(Policy, policy_id)
        if policy is None:
            raise PolicyNotFound(f"Policy not found: {policy_id}")
        session.refresh(policy)
        session.expunge(policy)
        return policy

    def update_policy(
        self,
        policy_id: str,
        expected_version: int,
        name: str | None = None,
        priority: int | None = None,
        status: str | None = None,
    ) -> Policy:
        """Update policy fields with conflict detection.

        Args:
            policy_id: Policy ID.
            expected_version: Version the caller last read.
            name: New name, if changing.
            priority: New priority, if changing.
            status: New status, if changing.

        Returns:
            Updated Policy.

        Raises:
            PolicyNotFound: If the policy doesn't exist.
            ConflictError: If expected_version is stale.
        """
        values: dict[str, Any] = {}
        if name is not None:
            values["name"] = name
        if priority is not None:
            values["priority"] = priority
        if status is not None:
            values["status"] = status
        with self._session() as session:
            self._bump_policy_version(session, policy_id, expected_version, **values)
            session.commit()
            return self._reload_policy(session, policy_id)

    def delete_policy(self, policy_id: str, expected_version: int) -> Policy:
        """Soft-delete a policy.

        Policies stay in the table so jobs that reference them remain auditable.

        Raises:
            PolicyNotFound: If the policy doesn't exist.
            ConflictError: If expected_version is stale.
        """
        with self._session() as session:
            self._bump_policy_version(
                session, policy_id, expected_version, deleted_at=datetime.now(UTC)
            )
            session.commit()
            return self._reload_policy(session, policy_id)

    # === Rule operations ===

    def list_rules(self, policy_id: str) -> list[Rule]:
        with self._session() as session:
            stmt = select(Rule).where(Rule.policy_id == policy_id).order_by(Rule.category)
            rules = list(session.execute(stmt).scalars().all())
            self._detach(session, rules)
            return rules

    def get_rule(self, policy_id: str, category: str) -> Rule | None:
        with self._session() as session:
            stmt = select(Rule).where(Rule.policy_id == policy_id, Rule.category == category)
            rule = session.execute(stmt).scalar_one_or_none()
            if rule:
                session.expunge(rule)
            return rule

    def create_rule(
        self,
        policy_id: str,
        expected_version: int,
        category: str,
        enabled: bool,
        config: dict[str, Any],
    ) -> Rule:
        """Create a rule and bump the owning policy's version.

        Returns:
            Created Rule.

        Raises:
            PolicyNotFound: If the policy doesn't exist.
            ConflictError: If expected_version is stale.
            IntegrityError: If the policy already has a rule for the category.
        """
        with self._session() as session:
            self._bump_policy_version(session, policy_id, expected_version)
            now = datetime.now(UTC)
            rule = Rule(
                policy_id=policy_id,
                category=category,
                enabled=enabled,
                config=config,
                created_at=now,
                updated_at=now,
            )
            session.add(rule)
            session.commit()
            session.refresh(rule)
            session.expunge(rule)
            return rule

    def update_rule(
        self,
        policy_id: str,
        expected_version: int,
        category: str,
        enabled: bool | None = None,
        config: dict[str, Any] | None = None,
    ) -> Rule:
        """Update a rule and bump the owning policy's version.

        Raises:
            PolicyNotFound: If the policy doesn't exist.
            RuleNotFound: If the policy has no rule for the category.
            ConflictError: If expected_version is stale.
        """
        with self._session() as session:
            stmt = select(Rule).where(Rule.policy_id == policy_id, Rule.category == category)
            rule = session.execute(stmt).scalar_one_or_none()
            if rule is None:
                if session.get(Policy, policy_id) is None:
                    raise PolicyNotFound(f"Policy not found: {policy_id}")
                raise RuleNotFound(f"No {category} rule in policy {policy_id}")
            self._bump_policy_version(session, policy_id, expected_version)
            if enabled is not None:
                rule.enabled = enabled
            if config is not None:
                rule.config = config
            rule.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(rule)
            session.expunge(rule)
            return rule

    def delete_rule(self, policy_id: str, expected_version: int, category: str) -> None:
        """Delete a rule and bump the owning policy's version.

        Raises:
            RuleNotFound: If the policy has no rule for the category.
            ConflictError: If expected_version is stale.
        """
        with self._session() as session:
            stmt = select(Rule).where(Rule.policy_id == policy_id, Rule.category == category)
            rule = session.execute(stmt).scalar_one_or_none()
            if rule is None:
                raise RuleNotFound(f"No {category} rule in policy {policy_id}")
            self._bump_policy_version(session, policy_id, expected_version)
            session.delete(rule)
            session.commit()

    def upsert_rules(
        self,
        policy_id: str,
        expected_version: int,
        rules: Sequence[tuple[str, bool, dict[str, Any]]],
    ) -> list[Rule]:
        """Create or replace several rules under a single version bump.

        Args:
            policy_id: Policy ID.
            expected_version: Version the caller last read.
            rules: ``(category, enabled, config)`` triples.

        Returns:
            All rules of the policy after the upsert.
        """
        with self._session() as session:
            self._bump_policy_version(session, policy_id, expected_version)
            stmt = select(Rule).where(Rule.policy_id == policy_id)
            existing = {r.category: r for r in session.execute(stmt).scalars().all()}
            now = datetime.now(UTC)
            for category, enabled, config in rules:
                rule = existing.get(category)
                if rule is None:
                    rule = Rule(policy_id=policy_id, category=category, created_at=now)
                    session.add(rule)
                    existing[category] = rule
                rule.enabled = enabled
                rule.config = config
                rule.updated_at = now
            session.commit()
        return self.list_rules(policy_id)

    # === Compliance link operations ===

    def create_link(
        self,
        family_id: str,
        platform_id: str,
        status: str = "unverified",
        external_id: str | None = None,
    ) -> ComplianceLink:
        """Link a family to a platform.

        Raises:
            FamilyNotFound: If the family doesn't exist.
            IntegrityError: If the family is already linked to the platform.
        """
        with self._session() as session:
            if session.get(Family, family_id) is None:
                raise FamilyNotFound(f"Family not found: {family_id}")
            link = ComplianceLink(
                family_id=family_id,
                platform_id=platform_id,
                status=status,
                external_id=external_id,
                verified_at=datetime.now(UTC) if status == "verified" else None,
            )
            session.add(link)
            session.commit()
            session.refresh(link)
            session.expunge(link)
            return link

    def get_link(self, link_id: str) -> ComplianceLink | None:
        with self._session() as session:
            link = session.get(ComplianceLink, link_id)
            if link:
                session.expunge(link)
            return link

    def list_links(self, family_id: str, status: str | None = None) -> list[ComplianceLink]:
        with self._session() as session:
            stmt = select(ComplianceLink).where(ComplianceLink.family_id == family_id)
            if status is not None:
                stmt = stmt.where(ComplianceLink.status == status)
            links = list(session.execute(stmt.order_by(ComplianceLink.platform_id)).scalars())
            self._detach(session, links)
            return links

    def update_link_status(self, link_id: str, status: str) -> ComplianceLink:
        """Change a link's verification status.

        Raises:
            LinkNotFound: If the link doesn't exist.
        """
        with self._session() as session:
            link = session.get(ComplianceLink, link_id)
            if link is None:
                raise LinkNotFound(f"Compliance link not found: {link_id}")
            link.status = status
            if status == "verified":
                link.verified_at = datetime.now(UTC)
            session.commit()
            session.refresh(link)
            session.expunge(link)
            return link

    def record_link_enforcement(self, link_id: str, status: str) -> None:
        """Cache the latest enforcement outcome on a link."""
        with self._session() as session:
            link = session.get(ComplianceLink, link_id)
            if link is None:
                return
            link.last_enforcement_at = datetime.now(UTC)
            link.last_enforcement_status = status
            session.commit()

    # === Enforcement job operations ===

    def create_enforcement_job(
        self,
        child_id: str,
        policy_id: str | None,
        policy_version: int,
        trigger_type: str,
        targets: Sequence[tuple[str, str | None]],
    ) -> EnforcementJob:
        """Create a pending job with one pending result per target.

        Args:
            child_id: Child being enforced.
            policy_id: Highest-priority contributing policy.
            policy_version: Max version among contributing policies.
            trigger_type: manual, scheduled or policy_change.
            targets: ``(platform_id, compliance_link_id)`` pairs.

        Returns:
            Created EnforcementJob with results loaded.
        """
        with self._session() as session:
            job = EnforcementJob(
                child_id=child_id,
                policy_id=policy_id,
                policy_version=policy_version,
                trigger_type=trigger_type,
                status="pending",
            )
            for platform_id, link_id in targets:
                job.results.append(
                    EnforcementResult(platform_id=platform_id, compliance_link_id=link_id)
                )
            session.add(job)
            session.commit()
            job_id = job.id
        return self._load_enforcement_job(job_id)

    def _load_enforcement_job(self, job_id: str) -> EnforcementJob:
        job = self.get_enforcement_job(job_id)
        if job is None:
            raise JobNotFound(f"Enforcement job not found: {job_id}")
        return job

    def get_enforcement_job(self, job_id: str) -> EnforcementJob | None:
        """Get a job with its results."""
        with self._session() as session:
            stmt = (
                select(EnforcementJob)
                .options(selectinload(EnforcementJob.results))
                .where(EnforcementJob.id == job_id)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if job:
                session.expunge(job)
            return job

    def list_enforcement_jobs(self, child_id: str, limit: int = 50) -> list[EnforcementJob]:
        """List a child's jobs, newest first, with results loaded."""
        with self._session() as session:
            stmt = (
                select(EnforcementJob)
                .options(selectinload(EnforcementJob.results))
                .where(EnforcementJob.child_id == child_id)
                .order_by(EnforcementJob.created_at.desc())
                .limit(limit)
            )
            jobs = list(session.execute(stmt).scalars().all())
            self._detach(session, jobs)
            return jobs

    def get_enforcement_result(self, result_id: str) -> EnforcementResult | None:
        with self._session() as session:
            result = session.get(EnforcementResult, result_id)
            if result:
                session.expunge(result)
            return result

    def mark_enforcement_job_running(self, job_id: str) -> None:
        with self._session() as session:
            job = session.get(EnforcementJob, job_id)
            if job is None:
                raise JobNotFound(f"Enforcement job not found: {job_id}")
            job.status = "running"
            job.started_at = job.started_at or datetime.now(UTC)
            job.completed_at = None
            session.commit()

    def start_enforcement_result(self, result_id: str) -> None:
        """Mark a result as running and count the attempt."""
        with self._session() as session:
            result = session.get(EnforcementResult, result_id)
            if result is None:
                return
            result.status = "running"
            result.attempts += 1
            result.started_at = datetime.now(UTC)
            session.commit()

    def finish_enforcement_result(
        self,
        result_id: str,
        status: str,
        rules_applied: int,
        rules_skipped: int,
        rules_failed: int,
        details: list[dict[str, Any]],
        error_message: str | None,
    ) -> EnforcementResult:
        """Record the final outcome of one platform call."""
        with self._session() as session:
            result = session.get(EnforcementResult, result_id)
            if result is None:
                raise JobNotFound(f"Enforcement result not found: {result_id}")
            result.status = status
            result.rules_applied = rules_applied
            result.rules_skipped = rules_skipped
            result.rules_failed = rules_failed
            result.details = details
            result.error_message = error_message
            result.completed_at = datetime.now(UTC)
            session.commit()
            session.refresh(result)
            session.expunge(result)
            return result

    def reset_enforcement_results(self, job_id: str, result_ids: Sequence[str]) -> None:
        """Put selected results back to pending for a retry."""
        with self._session() as session:
            stmt = select(EnforcementResult).where(
                EnforcementResult.job_id == job_id, EnforcementResult.id.in_(result_ids)
            )
            for result in session.execute(stmt).scalars():
                result.status = "pending"
                result.completed_at = None
            session.commit()

    def finalize_enforcement_job(self, job_id: str, status: str) -> EnforcementJob:
        with self._session() as session:
            job = session.get(EnforcementJob, job_id)
            if job is None:
                raise JobNotFound(f"Enforcement job not found: {job_id}")
            job.status = status
            job.completed_at = datetime.now(UTC)
            session.commit()
        return self._load_enforcement_job(job_id)

    def set_enforcement_cancel(self, job_id: str, requested: bool = True) -> None:
        with self._session() as session:
            job = session.get(EnforcementJob, job_id)
            if job is None:
                raise JobNotFound(f"Enforcement job not found: {job_id}")
            job.cancel_requested = requested
            session.commit()

    # === Source operations ===

    def create_source(
        self,
        child_id: str,
        family_id: str,
        source_slug: str,
        display_name: str,
        api_tier: str,
        capabilities: dict[str, Any],
        status: str = "connected",
        auto_sync: bool = False,
        config: dict[str, Any] | None = None,
    ) -> Source:
        """Connect a source to a child.

        Raises:
            IntegrityError: If the child already has this source.
        """
        with self._session() as session:
            source = Source(
                child_id=child_id,
                family_id=family_id,
                source_slug=source_slug,
                display_name=display_name,
                api_tier=api_tier,
                capabilities=capabilities,
                status=status,
                auto_sync=auto_sync,
                config=config or {},
            )
            session.add(source)
            session.commit()
            session.refresh(source)
            session.expunge(source)
            return source

    def get_source(self, source_id: str) -> Source | None:
        with self._session() as session:
            source = session.get(Source, source_id)
            if source:
                session.expunge(source)
            return source

    def list_sources(self, child_id: str, auto_sync_only: bool = False) -> list[Source]:
        with self._session() as session:
            stmt = select(Source).where(Source.child_id == child_id)
            if auto_sync_only:
                stmt = stmt.where(
                    Source.auto_sync.is_(True), Source.status.in_(("connected", "syncing"))
                )
            sources = list(session.execute(stmt.order_by(Source.created_at)).scalars())
            self._detach(session, sources)
            return sources

    def update_source(
        self,
        source_id: str,
        status: str | None = None,
        auto_sync: bool | None = None,
        error_message: str | None = _UNSET,
    ) -> Source:
        """Update a source's status, auto-sync flag or error message.

        Raises:
            SourceNotFound: If the source doesn't exist.
        """
        with self._session() as session:
            source = session.get(Source, source_id)
            if source is None:
                raise SourceNotFound(f"Source not found: {source_id}")
            if status is not None:
                source.status = status
            if auto_sync is not None:
                source.auto_sync = auto_sync
            if error_message is not _UNSET:
                source.error_message = error_message
            source.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(source)
            session.expunge(source)
            return source

    def complete_source_sync(self, source_id: str, job_status: str, bump_version: bool) -> Source:
        """Record the end of a sync on its source.

        Returns:
            Updated Source, back in connected state.
        """
        with self._session() as session:
            source = session.get(Source, source_id)
            if source is None:
                raise SourceNotFound(f"Source not found: {source_id}")
            if source.status == "syncing":
                source.status = "connected"
            source.last_sync_at = datetime.now(UTC)
            source.last_sync_status = job_status
            if bump_version:
                source.sync_version += 1
            source.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(source)
            session.expunge(source)
            return source

    def get_rule_states(self, source_id: str) -> dict[str, SourceRuleState]:
        """Last successfully synced state per category."""
        with self._session() as session:
            stmt = select(SourceRuleState).where(SourceRuleState.source_id == source_id)
            states = list(session.execute(stmt).scalars().all())
            self._detach(session, states)
            return {s.category: s for s in states}

    def save_rule_state(
        self, source_id: str, category: str, config_hash: str, sync_version: int
    ) -> None:
        with self._session() as session:
            state = session.get(SourceRuleState, (source_id, category))
            if state is None:
                state = SourceRuleState(source_id=source_id, category=category)
                session.add(state)
            state.config_hash = config_hash
            state.sync_version = sync_version
            state.synced_at = datetime.now(UTC)
            session.commit()

    def clear_rule_states(self, source_id: str) -> None:
        with self._session() as session:
            stmt = select(SourceRuleState).where(SourceRuleState.source_id == source_id)
            for state in session.execute(stmt).scalars():
                session.delete(state)
            session.commit()

    # === Source sync job operations ===

    def create_sync_job(
        self,
        source_id: str,
        child_id: str,
        sync_mode: str,
        trigger_type: str,
        results: Sequence[tuple[str, str, str | None]],
    ) -> SourceSyncJob:
        """Create a sync job with its per-category results.

        Args:
            source_id: Source being synced.
            child_id: Child owning the source.
            sync_mode: full, incremental or single_rule.
            trigger_type: What caused the sync.
            results: ``(category, status, error_message)`` triples; categories
                decided at trigger time carry their final status already.
        """
        with self._session() as session:
            job = SourceSyncJob(
                source_id=source_id,
                child_id=child_id,
                sync_mode=sync_mode,
                trigger_type=trigger_type,
                status="pending",
            )
            for category, status, error_message in results:
                job.results.append(
                    SourceSyncResult(category=category, status=status, error_message=error_message)
                )
            session.add(job)
            session.commit()
            job_id = job.id
        return self._load_sync_job(job_id)

    def _load_sync_job(self, job_id: str) -> SourceSyncJob:
        job = self.get_sync_job(job_id)
        if job is None:
            raise JobNotFound(f"Sync job not found: {job_id}")
        return job

    def get_sync_job(self, job_id: str) -> SourceSyncJob | None:
        with self._session() as session:
            stmt = (
                select(SourceSyncJob)
                .options(selectinload(SourceSyncJob.results))
                .where(SourceSyncJob.id == job_id)
            )
            job = session.execute(stmt).scalar_one_or_none()
            if job:
                session.expunge(job)
            return job

    def list_sync_jobs(self, source_id: str, limit: int = 50) -> list[SourceSyncJob]:
        with self._session() as session:
            stmt = (
                select(SourceSyncJob)
                .options(selectinload(SourceSyncJob.results))
                .where(SourceSyncJob.source_id == source_id)
                .order_by(SourceSyncJob.created_at.desc())
                .limit(limit)
            )
            jobs = list(session.execute(stmt).scalars().all())
            self._detach(session, jobs)
            return jobs

    def mark_sync_job_running(self, job_id: str) -> None:
        with self._session() as session:
            job = session.get(SourceSyncJob, job_id)
            if job is None:
                raise JobNotFound(f"Sync job not found: {job_id}")
            job.status = "running"
            job.started_at = job.started_at or datetime.now(UTC)
            job.completed_at = None
            session.commit()

    def start_sync_result(self, result_id: str) -> None:
        with self._session() as session:
            result = session.get(SourceSyncResult, result_id)
            if result is None:
                return
            result.attempts += 1
            result.updated_at = datetime.now(UTC)
            session.commit()

    def finish_sync_result(
        self,
        result_id: str,
        status: str,
        source_value: dict[str, Any] | None = None,
        source_response: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> SourceSyncResult:
        with self._session() as session:
            result = session.get(SourceSyncResult, result_id)
            if result is None:
                raise JobNotFound(f"Sync result not found: {result_id}")
            result.status = status
            result.source_value = source_value
            result.source_response = source_response
            result.error_message = error_message
            result.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(result)
            session.expunge(result)
            return result

    def reset_sync_results(self, job_id: str, result_ids: Sequence[str]) -> None:
        with self._session() as session:
            stmt = select(SourceSyncResult).where(
                SourceSyncResult.job_id == job_id, SourceSyncResult.id.in_(result_ids)
            )
            for result in session.execute(stmt).scalars():
                result.status = "pending"
                result.error_message = None
            session.commit()

    def finalize_sync_job(self, job_id: str, status: str, counts: dict[str, int]) -> SourceSyncJob:
        """Store a sync job's terminal status and per-outcome counts."""
        with self._session() as session:
            job = session.get(SourceSyncJob, job_id)
            if job is None:
                raise JobNotFound(f"Sync job not found: {job_id}")
            job.status = status
            job.rules_pushed = counts.get("pushed", 0)
            job.rules_skipped = counts.get("skipped", 0)
            job.rules_failed = counts.get("failed", 0)
            job.rules_unsupported = counts.get("unsupported", 0)
            job.completed_at = datetime.now(UTC)
            session.commit()
        return self._load_sync_job(job_id)

    def set_sync_cancel(self, job_id: str, requested: bool = True) -> None:
        with self._session() as session:
            job = session.get(SourceSyncJob, job_id)
            if job is None:
                raise JobNotFound(f"Sync job not found: {job_id}")
            job.cancel_requested = requested
            session.commit()

    # === Device operations ===

    def create_device(
        self,
        child_id: str,
        family_id: str,
        platform_id: str,
        device_name: str,
        api_key_hash: str,
        device_model: str | None = None,
        os_version: str | None = None,
        app_version: str | None = None,
    ) -> Device:
        with self._session() as session:
            device = Device(
                child_id=child_id,
                family_id=family_id,
                platform_id=platform_id,
                device_name=device_name,
                device_model=device_model,
                os_version=os_version,
                app_version=app_version,
                api_key_hash=api_key_hash,
            )
            session.add(device)
            session.commit()
            session.refresh(device)
            session.expunge(device)
            return device

    def get_device(self, device_id: str) -> Device | None:
        with self._session() as session:
            device = session.get(Device, device_id)
            if device:
                session.expunge(device)
            return device

    def get_device_by_key_hash(self, api_key_hash: str) -> Device | None:
        with self._session() as session:
            stmt = select(Device).where(Device.api_key_hash == api_key_hash)
            device = session.execute(stmt).scalar_one_or_none()
            if device:
                session.expunge(device)
            return device

    def list_devices(self, child_id: str | None = None) -> list[Device]:
        """List devices, optionally for one child."""
        with self._session() as session:
            stmt = select(Device)
            if child_id is not None:
                stmt = stmt.where(Device.child_id == child_id)
            devices = list(session.execute(stmt.order_by(Device.created_at)).scalars())
            self._detach(session, devices)
            return devices

    def update_device(
        self,
        device_id: str,
        status: str | None = None,
        last_policy_version: int | None = None,
        seen: bool = False,
        acked: bool = False,
    ) -> Device:
        """Update a device's pull-sync state.

        Raises:
            DeviceNotFound: If the device doesn't exist.
        """
        with self._session() as session:
            device = session.get(Device, device_id)
            if device is None:
                raise DeviceNotFound(f"Device not found: {device_id}")
            now = datetime.now(UTC)
            if status is not None:
                device.status = status
            if last_policy_version is not None:
                device.last_policy_version = last_policy_version
            if seen:
                device.last_seen_at = now
            if acked:
                device.last_ack_at = now
            session.commit()
            session.refresh(device)
            session.expunge(device)
            return device

    def add_device_report(
        self, device_id: str, child_id: str, report_type: str, payload: dict[str, Any]
    ) -> DeviceReport:
        with self._session() as session:
            report = DeviceReport(
                device_id=device_id, child_id=child_id, report_type=report_type, payload=payload
            )
            session.add(report)
            session.commit()
            session.refresh(report)
            session.expunge(report)
            return report

    def list_device_reports(self, device_id: str, limit: int = 50) -> list[DeviceReport]:
        with self._session() as session:
            stmt = (
                select(DeviceReport)
                .where(DeviceReport.device_id == device_id)
                .order_by(DeviceReport.reported_at.desc())
                .limit(limit)
            )
            reports = list(session.execute(stmt).scalars().all())
            self._detach(session, reports)
            return reports

    # === Compiled policy operations ===

    def latest_compiled_policy(self, child_id: str) -> CompiledPolicy | None:
        with self._session() as session:
            stmt = (
                select(CompiledPolicy)
                .where(CompiledPolicy.child_id == child_id)
                .order_by(CompiledPolicy.version.desc())
                .limit(1)
            )
            snapshot = session.execute(stmt).scalar_one_or_none()
            if snapshot:
                session.expunge(snapshot)
            return snapshot

    def create_compiled_policy(
        self,
        child_id: str,
        policy_id: str | None,
        version: int,
        fingerprint: str,
        rules: list[dict[str, Any]],
    ) -> CompiledPolicy:
        """Store a new snapshot.

        Raises:
            IntegrityError: If the child already has a snapshot at this version.
        """
        with self._session() as session:
            snapshot = CompiledPolicy(
                child_id=child_id,
                policy_id=policy_id,
                version=version,
                fingerprint=fingerprint,
                rules=rules,
            )
            session.add(snapshot)
            session.commit()
            session.refresh(snapshot)
            session.expunge(snapshot)
            return snapshot

    # === Webhook operations ===

    def create_webhook(self, family_id: str, url: str, secret: str, events: list[str]) -> Webhook:
        """Subscribe a URL to events.

        Raises:
            FamilyNotFound: If the family doesn't exist.
        """
        with self._session() as session:
            if session.get(Family, family_id) is None:
                raise FamilyNotFound(f"Family not found: {family_id}")
            webhook = Webhook(family_id=family_id, url=url, secret=secret, events=events)
            session.add(webhook)
            session.commit()
            session.refresh(webhook)
            session.expunge(webhook)
            return webhook

    def get_webhook(self, webhook_id: str) -> Webhook | None:
        with self._session() as session:
            webhook = session.get(Webhook, webhook_id)
            if webhook:
                session.expunge(webhook)
            return webhook

    def list_webhooks(self, family_id: str) -> list[Webhook]:
        with self._session() as session:
            stmt = select(Webhook).where(Webhook.family_id == family_id).order_by(Webhook.created_at)
            webhooks = list(session.execute(stmt).scalars().all())
            self._detach(session, webhooks)
            return webhooks

    def list_subscribed_webhooks(self, family_id: str, event: str) -> list[Webhook]:
        """Active webhooks of a family subscribed to an event (or to ``*``)."""
        return [
            w
            for w in self.list_webhooks(family_id)
            if w.active and (event in w.events or "*" in w.events)
        ]

    def update_webhook(
        self,
        webhook_id: str,
        url: str | None = None,
        events: list[str] | None = None,
        active: bool | None = None,
    ) -> Webhook:
        with self._session() as session:
            webhook = session.get(Webhook, webhook_id)
            if webhook is None:
                raise WebhookNotFound(f"Webhook not found: {webhook_id}")
            if url is not None:
                webhook.url = url
            if events is not None:
                webhook.events = events
            if active is not None:
                webhook.active = active
            webhook.updated_at = datetime.now(UTC)
            session.commit()
            session.refresh(webhook)
            session.expunge(webhook)
            return webhook

    def delete_webhook(self, webhook_id: str) -> None:
        with self._session() as session:
            webhook = session.get(Webhook, webhook_id)
            if webhook is None:
                raise WebhookNotFound(f"Webhook not found: {webhook_id}")
            session.delete(webhook)
            session.commit()

    def create_deliveries(
        self, webhook_ids: Sequence[str], event: str, payload: str, due_at: datetime | None
    ) -> list[WebhookDelivery]:
        """Create one delivery per webhook with the same frozen payload.

        Deliveries without ``due_at`` are never picked up by ``list_due_deliveries``.
        """
        with self._session() as session:
            deliveries = [
                WebhookDelivery(webhook_id=wid, event=event, payload=payload, next_retry_at=due_at)
                for wid in webhook_ids
            ]
            session.add_all(deliveries)
            session.commit()
            for delivery in deliveries:
                session.refresh(delivery)
            self._detach(session, deliveries)
            return deliveries

    def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        with self._session() as session:
            delivery = session.get(WebhookDelivery, delivery_id)
            if delivery:
                session.expunge(delivery)
            return delivery

    def list_due_deliveries(
        self, now: datetime, max_attempts: int, limit: int = 100
    ) -> list[WebhookDelivery]:
        """Deliveries with ``next_retry_at <= now``, not yet successful, under the ceiling."""
        with self._session() as session:
            stmt = (
                select(WebhookDelivery)
                .where(
                    WebhookDelivery.next_retry_at.is_not(None),
                    WebhookDelivery.next_retry_at <= now,
                    WebhookDelivery.success.is_(False),
                    WebhookDelivery.attempts < max_attempts,
                )
                .order_by(WebhookDelivery.next_retry_at)
                .limit(limit)
            )
            deliveries = list(session.execute(stmt).scalars().all())
            self._detach(session, deliveries)
            return deliveries

    def record_delivery_attempt(
        self,
        delivery_id: str,
        success: bool,
        response_code: int | None,
        error: str | None,
        next_retry_at: datetime | None,
        failed_permanently: bool,
    ) -> WebhookDelivery:
        with self._session() as session:
            delivery = session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise WebhookNotFound(f"Webhook delivery not found: {delivery_id}")
            delivery.attempts += 1
            delivery.success = success
            delivery.response_code = response_code
            delivery.last_error = error
            delivery.next_retry_at = next_retry_at
            delivery.failed_permanently = failed_permanently
            delivery.last_attempt_at = datetime.now(UTC)
            session.commit()
            session.refresh(delivery)
            session.expunge(delivery)
            return delivery

    def list_deliveries(self, webhook_id: str, limit: int = 50) -> list[WebhookDelivery]:
        with self._session() as session:
            stmt = (
                select(WebhookDelivery)
                .where(WebhookDelivery.webhook_id == webhook_id)
                .order_by(WebhookDelivery.created_at.desc())
                .limit(limit)
            )
            deliveries = list(session.execute(stmt).scalars().all())
            self._detach(session, deliveries)
            return deliveries

    def list_failed_deliveries(self, family_id: str | None = None) -> list[WebhookDelivery]:
        """Permanently failed deliveries awaiting manual inspection."""
        with self._session() as session:
            stmt = select(WebhookDelivery).where(WebhookDelivery.failed_permanently.is_(True))
            if family_id is not None:
                stmt = stmt.join(Webhook).where(Webhook.family_id == family_id)
            stmt = stmt.order_by(WebhookDelivery.last_attempt_at.desc())
            deliveries = list(session.execute(stmt).scalars().all())
            self._detach(session, deliveries)
            return deliveries

"""Source sync dispatcher.

Pushes a child's resolved rules to one connected third-party source,
one adapter call per rule category, and aggregates the per-category
outcomes into a sync job.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from functools import partial
from typing import TYPE_CHECKING, Any

from guardsync.core.errors import (
    ConflictError,
    GuardSyncError,
    JobNotFound,
    JobNotRetryable,
    RuleNotResolved,
    SourceNotConnected,
    SourceNotFound,
)
from guardsync.core.types import (
    ApiTier,
    JobStatus,
    OutcomeStatus,
    SourceStatus,
    SyncMode,
    SyncOutcome,
    TriggerType,
)
from guardsync.engine.adapters import correlate
from guardsync.engine.capabilities import Capability
from guardsync.engine.jobs import (
    CANCELLED_REASON,
    JobTracker,
    aggregate_sync_status,
    count_outcomes,
)
from guardsync.engine.pool import DispatchTask
from guardsync.rules.categories import RuleCategory, parse_category

if TYPE_CHECKING:
    from guardsync.engine.adapters import Adapter, RuleOutcome
    from guardsync.engine.capabilities import CapabilityRegistry, GuidedStep
    from guardsync.engine.compiler import PolicyCompiler, ResolvedRule, ResolvedRuleSet
    from guardsync.engine.pool import DispatchPool
    from guardsync.engine.webhooks import WebhookService
    from guardsync.server.database import Database
    from guardsync.server.models import Source, SourceSyncJob, SourceSyncResult

logger = logging.getLogger(__name__)

_OUTCOME_MAP = {
    OutcomeStatus.APPLIED: SyncOutcome.PUSHED,
    OutcomeStatus.SKIPPED: SyncOutcome.SKIPPED,
    OutcomeStatus.FAILED: SyncOutcome.FAILED,
}

UNSUPPORTED_REASON = "not supported by source"
UNCHANGED_REASON = "unchanged since last sync"


def sync_summary(job: SourceSyncJob) -> dict[str, Any]:
    """Webhook payload describing a settled sync job."""
    return {
        "job_id": job.id,
        "source_id": job.source_id,
        "child_id": job.child_id,
        "sync_mode": job.sync_mode,
        "trigger_type": job.trigger_type,
        "status": job.status,
        "rules_pushed": job.rules_pushed,
        "rules_skipped": job.rules_skipped,
        "rules_failed": job.rules_failed,
        "rules_unsupported": job.rules_unsupported,
    }


def source_capabilities(source: Source) -> dict[RuleCategory, Capability]:
    """Capabilities stored on a source, keyed by category."""
    capabilities = {}
    for key, value in (source.capabilities or {}).items():
        try:
            category = RuleCategory(key)
        except ValueError:
            logger.warning("Source %s declares unknown category %s", source.id, key)
            continue
        capabilities[category] = Capability.from_dict(value)
    return capabilities


class SyncDispatcher:
    """Connects sources and runs sync jobs against them.

    At most one sync job runs per source. A policy change that arrives
    while an auto-sync source is busy is remembered, and one more
    incremental sync starts as soon as the running job settles.
    """

    def __init__(
        self,
        db: Database,
        compiler: PolicyCompiler,
        registry: CapabilityRegistry,
        pool: DispatchPool,
        webhooks: WebhookService | None = None,
        call_timeout: float | None = None,
    ) -> None:
        self._db = db
        self._compiler = compiler
        self._registry = registry
        self._pool = pool
        self._webhooks = webhooks
        self._call_timeout = call_timeout
        self._tracker = JobTracker()
        self._lock = threading.Lock()
        self._active: set[str] = set()
        self._resync: set[str] = set()

    # === Source connections ===

    def connect_source(
        self,
        child_id: str,
        slug: str,
        tier: ApiTier | str = ApiTier.MANAGED,
        auto_sync: bool = False,
        config: dict[str, Any] | None = None,
    ) -> Source:
        """Connect a source type to a child.

        The capability list is copied from the source registration for the
        chosen tier. A previously disconnected source of the same type on
        the same tier is reconnected.

        Raises:
            ChildNotFound: If the child doesn't exist.
            SourceTypeNotFound: If the slug isn't registered.
            ConflictError: If the source is already connected, or was
                connected on another tier.
        """
        tier = ApiTier(tier)
        child = self._db.require_child(child_id)
        registration = self._registry.source(slug)

        existing = next((s for s in self._db.list_sources(child_id) if s.source_slug == slug), None)
        if existing is not None:
            if existing.status != SourceStatus.DISCONNECTED.value:
                raise ConflictError(f"Source {slug} is already connected for child {child_id}")
            if existing.api_tier != tier.value:
                raise ConflictError(f"Source {slug} was connected on the {existing.api_tier} tier")
            source = self._db.update_source(
                existing.id,
                status=SourceStatus.CONNECTED.value,
                auto_sync=auto_sync,
                error_message=None,
            )
            logger.info("Source %s reconnected for child %s", slug, child_id)
            return source

        capabilities = registration.capabilities_for(tier)
        source = self._db.create_source(
            child_id=child_id,
            family_id=child.family_id,
            source_slug=slug,
            display_name=registration.display_name,
            api_tier=tier.value,
            capabilities={c.value: cap.to_dict() for c, cap in capabilities.items()},
            status=SourceStatus.CONNECTED.value,
            auto_sync=auto_sync,
            config=config,
        )
        logger.info("Source %s connected for child %s (%s tier)", slug, child_id, tier.value)
        return source

    def disconnect_source(self, source_id: str) -> Source:
        """Disconnect a source and forget its synced rule state."""
        self.get_source(source_id)
        source = self._db.update_source(source_id, status=SourceStatus.DISCONNECTED.value)
        self._db.clear_rule_states(source_id)
        logger.info("Source %s disconnected", source_id)
        return source

    def set_auto_sync(self, source_id: str, enabled: bool) -> Source:
        return self._db.update_source(source_id, auto_sync=enabled)

    def get_source(self, source_id: str) -> Source:
        source = self._db.get_source(source_id)
        if source is None:
            raise SourceNotFound(f"Source not found: {source_id}")
        return source

    def list_sources(self, child_id: str) -> list[Source]:
        self._db.require_child(child_id)
        return self._db.list_sources(child_id)

    def guided_steps(self, slug: str, category: RuleCategory | str) -> list[GuidedStep]:
        """Manual setup steps for one category of a source type."""
        registration = self._registry.source(slug)
        return list(registration.guided_steps.get(parse_category(category), ()))

    # === Sync jobs ===

    def get_sync_job(self, job_id: str) -> SourceSyncJob:
        job = self._db.get_sync_job(job_id)
        if job is None:
            raise JobNotFound(f"Sync job not found: {job_id}")
        return job

    def list_sync_jobs(self, source_id: str, limit: int = 50) -> list[SourceSyncJob]:
        self.get_source(source_id)
        return self._db.list_sync_jobs(source_id, limit)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a sync job settles; False on timeout."""
        return self._tracker.wait(job_id, timeout)

    def trigger_sync(
        self,
        source_id: str,
        mode: SyncMode | str = SyncMode.FULL,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        category: RuleCategory | str | None = None,
    ) -> SourceSyncJob:
        """Create a sync job for a source and start dispatching it.

        Categories the source cannot take are recorded unsupported and
        incremental syncs record unchanged categories as skipped; neither
        is sent to the adapter.

        Args:
            source_id: Source to sync.
            mode: full, incremental or single_rule.
            trigger_type: What caused the sync.
            category: The category to push in single_rule mode.

        Returns:
            The new sync job, as created.

        Raises:
            SourceNotFound: If the source doesn't exist.
            SourceNotConnected: If the source is not connected.
            ConflictError: If the source already has a sync in flight.
            InvalidCategory: If a single_rule category is outside the catalog.
            RuleNotResolved: If a single_rule category has no resolved rule.
            NoActivePolicy: If the child has nothing to sync.
        """
        mode = SyncMode(mode)
        trigger = TriggerType(trigger_type)
        self._require_connected(source_id)
        wanted = None
        if mode == SyncMode.SINGLE_RULE:
            if category is None:
                raise RuleNotResolved("single_rule sync needs a category")
            wanted = parse_category(category)

        self._claim(source_id)
        return self._run_sync(source_id, mode, trigger, wanted)

    def sync_auto_sources(self, child_id: str) -> list[SourceSyncJob]:
        """Incremental sync of every auto-sync source of a child.

        A source that is already syncing gets one follow-up sync queued
        instead of a new job.
        """
        jobs = []
        for source in self._db.list_sources(child_id, auto_sync_only=True):
            try:
                job = self._auto_sync(source.id)
            except GuardSyncError as e:
                logger.warning("Auto-sync of source %s skipped: %s", source.id, e)
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    def cancel(self, job_id: str) -> SourceSyncJob:
        """Cancel a sync job's categories that have not started yet."""
        job = self.get_sync_job(job_id)
        if JobStatus(job.status).is_terminal and not self._tracker.in_flight(job_id):
            return job
        self._db.set_sync_cancel(job_id)
        self._tracker.cancel(job_id)
        logger.info("Sync job %s cancellation requested", job_id)
        return self.get_sync_job(job_id)

    def retry(self, job_id: str) -> SourceSyncJob:
        """Re-dispatch only the failed categories of a settled sync job.

        Raises:
            JobNotFound: If the job doesn't exist.
            JobNotRetryable: If the job has not settled yet or is being retried.
            SourceNotConnected: If the source is no longer connected.
            ConflictError: If the source has another sync in flight.
        """
        job = self.get_sync_job(job_id)
        if not JobStatus(job.status).is_terminal:
            raise JobNotRetryable(f"Sync job {job_id} is still {job.status}")

        failed = [r for r in job.results if r.status == SyncOutcome.FAILED.value]
        if not failed:
            return job

        if not self._tracker.reserve(job_id):
            raise JobNotRetryable(f"Sync job {job_id} is already in flight")
        claimed = False
        try:
            self._claim(job.source_id)
            claimed = True
            source = self._require_connected(job.source_id)
            resolved = self._compiler.compile(job.child_id)
            self._db.reset_sync_results(job_id, [r.id for r in failed])
            self._db.set_sync_cancel(job_id, False)
            self._db.update_source(source.id, status=SourceStatus.SYNCING.value)
        except Exception:
            if claimed:
                self._release(job.source_id)
            self._tracker.release(job_id)
            raise
        logger.info("Retrying %d categories of sync job %s", len(failed), job_id)
        self._dispatch(job_id, source, failed, resolved)
        return self.get_sync_job(job_id)

    # === Dispatch ===

    def _claim(self, source_id: str, queue_if_busy: bool = False) -> bool:
        """Mark a source busy.

        Returns:
            False if the source was busy and a follow-up sync was queued.

        Raises:
            ConflictError: If the source is busy and nothing may be queued.
        """
        with self._lock:
            if source_id not in self._active:
                self._active.add(source_id)
                return True
            if not queue_if_busy:
                raise ConflictError(f"Source {source_id} is already syncing")
            self._resync.add(source_id)
        logger.info("Source %s is syncing; follow-up sync queued", source_id)
        return False

    def _release(self, source_id: str) -> None:
        """Mark a source idle and run any follow-up sync queued meanwhile."""
        with self._lock:
            self._active.discard(source_id)
            queued = source_id in self._resync
            self._resync.discard(source_id)
        if not queued:
            return
        try:
            self._auto_sync(source_id)
        except GuardSyncError as e:
            logger.warning("Follow-up sync of source %s skipped: %s", source_id, e)

    def _auto_sync(self, source_id: str) -> SourceSyncJob | None:
        """Incremental policy-change sync; None when queued behind a running one."""
        self._require_connected(source_id)
        if not self._claim(source_id, queue_if_busy=True):
            return None
        return self._run_sync(source_id, SyncMode.INCREMENTAL, TriggerType.POLICY_CHANGE, None)

    def _run_sync(
        self,
        source_id: str,
        mode: SyncMode,
        trigger: TriggerType,
        wanted: RuleCategory | None,
    ) -> SourceSyncJob:
        """Plan and dispatch a sync job for a source claimed by the caller."""
        try:
            source = self._require_connected(source_id)
            resolved = self._compiler.compile(source.child_id)
            if wanted is not None:
                rule = resolved.get(wanted)
                if rule is None:
                    raise RuleNotResolved(f"No resolved rule for {wanted.value}")
                rules = [rule]
            else:
                rules = resolved.ordered()

            capabilities = source_capabilities(source)
            states = self._db.get_rule_states(source_id) if mode == SyncMode.INCREMENTAL else {}
            plan: list[tuple[str, str, str | None]] = []
            for rule in rules:
                capability = capabilities.get(rule.category)
                state = states.get(rule.category.value)
                if capability is None or not capability.pushable:
                    plan.append((rule.category.value, SyncOutcome.UNSUPPORTED.value, UNSUPPORTED_REASON))
                elif state is not None and state.config_hash == rule.config_hash:
                    plan.append((rule.category.value, SyncOutcome.SKIPPED.value, UNCHANGED_REASON))
                else:
                    plan.append((rule.category.value, SyncOutcome.PENDING.value, None))

            job = self._db.create_sync_job(source_id, source.child_id, mode.value, trigger.value, plan)
            self._db.update_source(source_id, status=SourceStatus.SYNCING.value)
        except Exception:
            self._release(source_id)
            raise

        pending = [r for r in job.results if r.status == SyncOutcome.PENDING.value]
        logger.info(
            "Sync job %s created for source %s (%s, %d of %d categories to push)",
            job.id,
            source_id,
            mode.value,
            len(pending),
            len(plan),
        )
        self._dispatch(job.id, source, pending, resolved)
        return job

    def _require_connected(self, source_id: str) -> Source:
        source = self.get_source(source_id)
        if source.status not in (SourceStatus.CONNECTED.value, SourceStatus.SYNCING.value):
            raise SourceNotConnected(f"Source {source_id} is {source.status}")
        return source

    def _dispatch(
        self,
        job_id: str,
        source: Source,
        results: Sequence[SourceSyncResult],
        resolved: ResolvedRuleSet,
    ) -> None:
        adapter = self._registry.source(source.source_slug).adapter
        self._db.mark_sync_job_running(job_id)
        self._tracker.begin(
            job_id, len(results), partial(self._finalize, job_id, source.id, source.family_id)
        )

        for result in results:
            rule = resolved.get(RuleCategory(result.category))
            if rule is None:
                self._on_error(job_id, source, result, None, RuleNotResolved("rule no longer resolved"))
                continue

            task = DispatchTask(
                key=f"{job_id}/{result.category}",
                fn=partial(self._call, result.id, adapter, source.child_id, rule),
                on_complete=partial(self._on_complete, job_id, source, result, rule),
                on_error=partial(self._on_error, job_id, source, result, rule),
                on_cancelled=partial(self._on_cancelled, job_id, result),
                should_cancel=partial(self._tracker.is_cancelled, job_id),
                timeout=self._call_timeout,
            )
            if not self._pool.submit(task):
                self._on_error(job_id, source, result, rule, RuntimeError("dispatch pool not running"))

    def _call(
        self, result_id: str, adapter: Adapter, child_id: str, rule: ResolvedRule
    ) -> list[RuleOutcome]:
        self._db.start_sync_result(result_id)
        return adapter.apply(child_id, [rule])

    def _on_complete(
        self,
        job_id: str,
        source: Source,
        result: SourceSyncResult,
        rule: ResolvedRule,
        outcomes: list[RuleOutcome] | None,
    ) -> None:
        try:
            (outcome,) = correlate([rule], outcomes or [])
            status = _OUTCOME_MAP[outcome.status]
            self._db.finish_sync_result(
                result.id,
                status.value,
                source_value=rule.config_dict(),
                source_response=outcome.to_dict(),
                error_message=outcome.error,
            )
            if status != SyncOutcome.FAILED:
                self._db.save_rule_state(
                    source.id, rule.category.value, rule.config_hash, source.sync_version + 1
                )
        finally:
            self._tracker.task_done(job_id)

    def _on_error(
        self,
        job_id: str,
        source: Source,
        result: SourceSyncResult,
        rule: ResolvedRule | None,
        error: Exception,
    ) -> None:
        try:
            message = str(error) or type(error).__name__
            logger.warning("Sync of %s to source %s failed: %s", result.category, source.id, message)
            self._db.finish_sync_result(
                result.id,
                SyncOutcome.FAILED.value,
                source_value=rule.config_dict() if rule is not None else None,
                error_message=message,
            )
        finally:
            self._tracker.task_done(job_id)

    def _on_cancelled(self, job_id: str, result: SourceSyncResult) -> None:
        try:
            self._db.finish_sync_result(
                result.id, SyncOutcome.SKIPPED.value, error_message=CANCELLED_REASON
            )
        finally:
            self._tracker.task_done(job_id)

    def _finalize(self, job_id: str, source_id: str, family_id: str) -> None:
        try:
            job = self.get_sync_job(job_id)
            outcomes = [r.status for r in job.results]
            status = aggregate_sync_status(outcomes)
            job = self._db.finalize_sync_job(job_id, status.value, count_outcomes(outcomes))

            self._db.complete_source_sync(
                source_id, status.value, bump_version=status != JobStatus.FAILED
            )
            if status == JobStatus.FAILED:
                self._db.update_source(source_id, error_message=f"sync job {job_id} failed")
            else:
                self._db.update_source(source_id, error_message=None)
            logger.info(
                "Sync job %s %s (pushed=%d skipped=%d failed=%d unsupported=%d)",
                job_id,
                status.value,
                job.rules_pushed,
                job.rules_skipped,
                job.rules_failed,
                job.rules_unsupported,
            )

            if self._webhooks is not None:
                try:
                    self._webhooks.publish(family_id, f"source_sync.{status.value}", sync_summary(job))
                except Exception:
                    logger.exception("Failed to queue webhooks for sync job %s", job_id)
        finally:
            self._release(source_id)

"""Enforcement dispatcher.

Fans a child's resolved rule set out to platforms, one adapter call per
platform on the shared dispatch pool, and aggregates the per-platform
results into an enforcement job.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from functools import partial
from typing import TYPE_CHECKING, Any

from guardsync.core.errors import JobNotFound, JobNotRetryable, PlatformNotLinked
from guardsync.core.types import JobStatus, OutcomeStatus, ResultStatus, TriggerType
from guardsync.engine.adapters import RuleOutcome, correlate
from guardsync.engine.jobs import CANCELLED_REASON, JobTracker, aggregate_job_status, result_status
from guardsync.engine.pool import DispatchTask

if TYPE_CHECKING:
    from guardsync.engine.adapters import Adapter
    from guardsync.engine.capabilities import CapabilityRegistry, PlatformRegistration
    from guardsync.engine.compiler import PolicyCompiler, ResolvedRule, ResolvedRuleSet
    from guardsync.engine.pool import DispatchPool
    from guardsync.engine.webhooks import WebhookService
    from guardsync.server.database import Database
    from guardsync.server.models import ComplianceLink, EnforcementJob, EnforcementResult

logger = logging.getLogger(__name__)


def job_summary(job: EnforcementJob) -> dict[str, Any]:
    """Webhook payload describing a settled enforcement job."""
    return {
        "job_id": job.id,
        "child_id": job.child_id,
        "policy_id": job.policy_id,
        "trigger_type": job.trigger_type,
        "status": job.status,
        "results": [
            {
                "platform_id": r.platform_id,
                "status": r.status,
                "rules_applied": r.rules_applied,
                "rules_skipped": r.rules_skipped,
                "rules_failed": r.rules_failed,
                "error_message": r.error_message,
            }
            for r in job.results
        ],
    }


class EnforcementDispatcher:
    """Creates enforcement jobs and runs their platform calls."""

    def __init__(
        self,
        db: Database,
        compiler: PolicyCompiler,
        registry: CapabilityRegistry,
        pool: DispatchPool,
        webhooks: WebhookService | None = None,
        call_timeout: float | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            db: Database instance.
            compiler: Policy compiler resolving rule sets.
            registry: Platform capability registry.
            pool: Dispatch pool shared with the sync dispatcher.
            webhooks: Optional webhook service notified of settled jobs.
            call_timeout: Per platform call timeout; the pool default when None.
        """
        self._db = db
        self._compiler = compiler
        self._registry = registry
        self._pool = pool
        self._webhooks = webhooks
        self._call_timeout = call_timeout
        self._tracker = JobTracker()

    # === Queries ===

    def get_job(self, job_id: str) -> EnforcementJob:
        job = self._db.get_enforcement_job(job_id)
        if job is None:
            raise JobNotFound(f"Enforcement job not found: {job_id}")
        return job

    def list_jobs(self, child_id: str, limit: int = 50) -> list[EnforcementJob]:
        self._db.require_child(child_id)
        return self._db.list_enforcement_jobs(child_id, limit)

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a job settles; False on timeout."""
        return self._tracker.wait(job_id, timeout)

    # === Trigger, cancel, retry ===

    def trigger(
        self,
        child_id: str,
        platform_ids: Sequence[str] | None = None,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
    ) -> EnforcementJob:
        """Create an enforcement job and start dispatching it.

        Args:
            child_id: Child to enforce.
            platform_ids: Explicit targets; when None, every verified linked
                platform sharing at least one category with the resolved set.
            trigger_type: manual, scheduled or policy_change.

        Returns:
            The new job, as created (pending); results fill in asynchronously.

        Raises:
            ChildNotFound: If the child doesn't exist.
            NoActivePolicy: If the child has nothing to enforce.
            PlatformNotFound: If an explicit platform isn't registered.
            PlatformNotLinked: If an explicit platform has no verified link.
        """
        trigger = TriggerType(trigger_type)
        child = self._db.require_child(child_id)
        resolved = self._compiler.compile(child_id)
        targets = self._select_targets(child.family_id, resolved, platform_ids)

        job = self._db.create_enforcement_job(
            child_id=child_id,
            policy_id=resolved.primary_policy_id,
            policy_version=resolved.version_key,
            trigger_type=trigger.value,
            targets=[(reg.platform_id, link.id) for reg, link in targets],
        )
        logger.info(
            "Enforcement job %s created for child %s (%s, %d platforms)",
            job.id,
            child_id,
            trigger.value,
            len(targets),
        )
        self._dispatch(job.id, child_id, child.family_id, job.results, resolved)
        return job

    def cancel(self, job_id: str) -> EnforcementJob:
        """Cancel a job's calls that have not started yet.

        In-flight calls run to completion; settled jobs are left unchanged.
        """
        job = self.get_job(job_id)
        if JobStatus(job.status).is_terminal and not self._tracker.in_flight(job_id):
            return job
        self._db.set_enforcement_cancel(job_id)
        self._tracker.cancel(job_id)
        logger.info("Enforcement job %s cancellation requested", job_id)
        return self.get_job(job_id)

    def retry(self, job_id: str) -> EnforcementJob:
        """Re-dispatch only the platforms whose result has failed rules.

        Results are updated in place; successful results are not touched.

        Raises:
            JobNotFound: If the job doesn't exist.
            JobNotRetryable: If the job has not settled yet.
            NoActivePolicy: If the child no longer has an active policy.
        """
        job = self.get_job(job_id)
        if not JobStatus(job.status).is_terminal:
            raise JobNotRetryable(f"Job {job_id} is still {job.status}")

        failed = [r for r in job.results if r.rules_failed > 0]
        if not failed:
            logger.info("Enforcement job %s has no failed platforms to retry", job_id)
            return job

        if not self._tracker.reserve(job_id):
            raise JobNotRetryable(f"Job {job_id} is already in flight")
        try:
            child = self._db.require_child(job.child_id)
            resolved = self._compiler.compile(job.child_id)
            self._db.reset_enforcement_results(job_id, [r.id for r in failed])
            self._db.set_enforcement_cancel(job_id, False)
        except Exception:
            self._tracker.release(job_id)
            raise
        logger.info(
            "Retrying enforcement job %s on %s",
            job_id,
            ", ".join(r.platform_id for r in failed),
        )
        self._dispatch(job_id, job.child_id, child.family_id, failed, resolved)
        return self.get_job(job_id)

    # === Dispatch ===

    def _select_targets(
        self,
        family_id: str,
        resolved: ResolvedRuleSet,
        platform_ids: Sequence[str] | None,
    ) -> list[tuple[PlatformRegistration, ComplianceLink]]:
        links = {link.platform_id: link for link in self._db.list_links(family_id, "verified")}

        if platform_ids is not None:
            targets = []
            for platform_id in dict.fromkeys(platform_ids):
                registration = self._registry.platform(platform_id)
                link = links.get(platform_id)
                if link is None:
                    raise PlatformNotLinked(f"Platform {platform_id} has no verified link")
                targets.append((registration, link))
            return targets

        targets = []
        for platform_id, link in sorted(links.items()):
            registration = self._registry.platforms.get(platform_id)
            if registration is None:
                logger.warning("Verified link to unregistered platform %s ignored", platform_id)
                continue
            if resolved.filter(registration.supported()):
                targets.append((registration, link))
        return targets

    def _dispatch(
        self,
        job_id: str,
        child_id: str,
        family_id: str,
        results: Sequence[EnforcementResult],
        resolved: ResolvedRuleSet,
    ) -> None:
        self._db.mark_enforcement_job_running(job_id)
        self._tracker.begin(job_id, len(results), partial(self._finalize, job_id, family_id))

        for result in results:
            registration = self._registry.platforms.get(result.platform_id)
            if registration is None:
                self._on_error(job_id, result, [], LookupError("platform no longer registered"))
                continue
            rules = resolved.filter(registration.supported())
            if not rules:
                self._on_complete(job_id, result, rules, [])
                continue

            task = DispatchTask(
                key=f"{job_id}/{result.platform_id}",
                fn=partial(self._call, result.id, registration.adapter, child_id, rules),
                on_complete=partial(self._on_complete, job_id, result, rules),
                on_error=partial(self._on_error, job_id, result, rules),
                on_cancelled=partial(self._on_cancelled, job_id, result, rules),
                should_cancel=partial(self._tracker.is_cancelled, job_id),
                timeout=self._call_timeout,
            )
            if not self._pool.submit(task):
                self._on_error(job_id, result, rules, RuntimeError("dispatch pool not running"))

    def _call(
        self,
        result_id: str,
        adapter: Adapter,
        child_id: str,
        rules: list[ResolvedRule],
    ) -> list[RuleOutcome]:
        self._db.start_enforcement_result(result_id)
        return adapter.apply(child_id, rules)

    def _on_complete(
        self,
        job_id: str,
        result: EnforcementResult,
        rules: list[ResolvedRule],
        outcomes: list[RuleOutcome] | None,
    ) -> None:
        try:
            matched = correlate(rules, outcomes or [])
            applied = sum(1 for o in matched if o.status == OutcomeStatus.APPLIED)
            skipped = sum(1 for o in matched if o.status == OutcomeStatus.SKIPPED)
            failed = sum(1 for o in matched if o.status == OutcomeStatus.FAILED)
            errors = [f"{o.category.value}: {o.error}" for o in matched if o.error]
            status = result_status(applied, skipped, failed)
            self._db.finish_enforcement_result(
                result.id,
                status.value,
                applied,
                skipped,
                failed,
                [o.to_dict() for o in matched],
                "; ".join(errors) or None,
            )
            self._record_link(result, status)
        finally:
            self._tracker.task_done(job_id)

    def _on_error(
        self,
        job_id: str,
        result: EnforcementResult,
        rules: list[ResolvedRule],
        error: Exception,
    ) -> None:
        try:
            message = str(error) or type(error).__name__
            logger.warning("Platform %s failed in job %s: %s", result.platform_id, job_id, message)
            self._db.finish_enforcement_result(
                result.id,
                ResultStatus.FAILED.value,
                0,
                0,
                len(rules),
                [RuleOutcome.failed(r.category, message).to_dict() for r in rules],
                message,
            )
            self._record_link(result, ResultStatus.FAILED)
        finally:
            self._tracker.task_done(job_id)

    def _on_cancelled(self, job_id: str, result: EnforcementResult, rules: list[ResolvedRule]) -> None:
        try:
            self._db.finish_enforcement_result(
                result.id,
                ResultStatus.SKIPPED.value,
                0,
                len(rules),
                0,
                [RuleOutcome.skipped(r.category, CANCELLED_REASON).to_dict() for r in rules],
                CANCELLED_REASON,
            )
        finally:
            self._tracker.task_done(job_id)

    def _record_link(self, result: EnforcementResult, status: ResultStatus) -> None:
        if result.compliance_link_id:
            self._db.record_link_enforcement(result.compliance_link_id, status.value)

    def _finalize(self, job_id: str, family_id: str) -> None:
        """Aggregate stored results into the job's terminal status."""
        job = self.get_job(job_id)
        status = aggregate_job_status(job.results)
        job = self._db.finalize_enforcement_job(job_id, status.value)
        logger.info("Enforcement job %s %s", job_id, status.value)

        if self._webhooks is not None:
            try:
                self._webhooks.publish(family_id, f"enforcement.{status.value}", job_summary(job))
            except Exception:
                logger.exception("Failed to queue webhooks for enforcement job %s", job_id)

"""Tests for the enforcement dispatcher."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from guardsync.adapters.stub import InMemoryAdapter
from guardsync.core.errors import (
    JobNotFound,
    JobNotRetryable,
    NoActivePolicy,
    PlatformNotFound,
    PlatformNotLinked,
)
from guardsync.core.types import JobStatus, ResultStatus, TriggerType
from guardsync.engine.capabilities import CapabilityRegistry
from guardsync.engine.enforcement import EnforcementDispatcher
from guardsync.engine.engine import Engine
from guardsync.engine.pool import DispatchPool, DispatchTask
from guardsync.rules.categories import RuleCategory
from guardsync.server.database import Database
from guardsync.server.models import Child, EnforcementJob, Policy

C = RuleCategory

P1_RULES = {C.TIME_DAILY_LIMIT: {"daily_minutes": 120}}
P2_RULES = {
    C.TIME_DAILY_LIMIT: {"daily_minutes": 60},
    C.CONTENT_RATING: {"max_ratings": {"mpaa": "PG"}},
}


@pytest.fixture
def policies(child: Child, make_policy: Callable[..., Policy]) -> tuple[Policy, Policy]:
    """P1 (priority 1) and P2 (priority 5) active for the child."""
    return (
        make_policy(child.id, "P1", 1, P1_RULES),
        make_policy(child.id, "P2", 5, P2_RULES),
    )


def run(engine: Engine, child_id: str, **kwargs) -> EnforcementJob:
    """Trigger enforcement and wait for the job to settle."""
    job = engine.enforcement.trigger(child_id, **kwargs)
    assert engine.enforcement.wait(job.id, timeout=10)
    return engine.enforcement.get_job(job.id)


def by_platform(job: EnforcementJob) -> dict:
    return {r.platform_id: r for r in job.results}


@pytest.mark.usefixtures("verified_links")
class TestTrigger:
    """Tests for triggering enforcement."""

    def test_fans_out_to_linked_platforms(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        """Should apply each platform's supported subset of the resolved rules."""
        job = run(engine, child.id)

        assert job.status == JobStatus.COMPLETED.value
        assert job.policy_id == policies[1].id
        results = by_platform(job)
        assert results["platform_a"].rules_applied == 2
        assert results["platform_b"].rules_applied == 1
        assert all(r.rules_failed == 0 for r in job.results)

    def test_adapters_receive_winning_config(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        run(engine, child.id)
        assert adapters["platform_a"].settings(child.id)["time_daily_limit"] == {"daily_minutes": 60}
        assert adapters["platform_b"].calls == [(child.id, [C.CONTENT_RATING])]

    def test_returns_pending_job(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        job = engine.enforcement.trigger(child.id, trigger_type=TriggerType.SCHEDULED)
        assert job.trigger_type == "scheduled"
        assert {r.platform_id for r in job.results} == {"platform_a", "platform_b"}
        engine.enforcement.wait(job.id, timeout=10)

    def test_replay_is_idempotent(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        """Should skip rules already applied instead of failing on replay."""
        run(engine, child.id)
        job = run(engine, child.id)

        assert job.status == JobStatus.COMPLETED.value
        results = by_platform(job)
        assert results["platform_a"].rules_skipped == 2
        assert results["platform_a"].rules_applied == 0

    def test_explicit_platforms(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        job = run(engine, child.id, platform_ids=["platform_b"])
        assert [r.platform_id for r in job.results] == ["platform_b"]

    def test_unlinked_platform_raises(
        self, engine: Engine, db: Database, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        """Should refuse explicit platforms without a verified link."""
        link = db.list_links(child.family_id)[0]
        db.update_link_status(link.id, "unverified")
        with pytest.raises(PlatformNotLinked):
            engine.enforcement.trigger(child.id, platform_ids=[link.platform_id])

    def test_unknown_platform_raises(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        with pytest.raises(PlatformNotFound):
            engine.enforcement.trigger(child.id, platform_ids=["nope"])

    def test_no_active_policy(self, engine: Engine, child: Child) -> None:
        with pytest.raises(NoActivePolicy):
            engine.enforcement.trigger(child.id)

    def test_records_outcome_on_link(
        self, engine: Engine, db: Database, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        run(engine, child.id)
        for link in db.list_links(child.family_id):
            assert link.last_enforcement_status == ResultStatus.COMPLETED.value
            assert link.last_enforcement_at is not None

    def test_unverified_links_are_not_targeted(
        self, engine: Engine, db: Database, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        link = next(lk for lk in db.list_links(child.family_id) if lk.platform_id == "platform_b")
        db.update_link_status(link.id, "error")
        job = run(engine, child.id)
        assert [r.platform_id for r in job.results] == ["platform_a"]

    def test_list_jobs(self, engine: Engine, child: Child, policies: tuple[Policy, Policy]) -> None:
        first = run(engine, child.id)
        second = run(engine, child.id)
        assert [j.id for j in engine.enforcement.list_jobs(child.id)] == [second.id, first.id]

    def test_get_unknown_job(self, engine: Engine) -> None:
        with pytest.raises(JobNotFound):
            engine.enforcement.get_job("missing")


@pytest.mark.usefixtures("verified_links")
class TestFailures:
    """Tests for per-platform failure isolation."""

    def test_unavailable_platform_fails_alone(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should mark only the unreachable platform failed and the job partial."""
        adapters["platform_b"].available = False
        job = run(engine, child.id)

        results = by_platform(job)
        assert job.status == JobStatus.PARTIAL.value
        assert results["platform_a"].status == ResultStatus.COMPLETED.value
        assert results["platform_b"].status == ResultStatus.FAILED.value
        assert results["platform_b"].rules_failed == 1
        assert "unreachable" in results["platform_b"].error_message

    def test_every_platform_down_fails_job(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        adapters["platform_a"].available = False
        adapters["platform_b"].available = False
        assert run(engine, child.id).status == JobStatus.FAILED.value

    def test_rejected_rule_is_partial_result(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        adapters["platform_a"].fail_categories = {C.CONTENT_RATING}
        job = run(engine, child.id)

        result = by_platform(job)["platform_a"]
        assert result.status == ResultStatus.PARTIAL.value
        assert (result.rules_applied, result.rules_failed) == (1, 1)
        assert job.status == JobStatus.PARTIAL.value

    def test_timeout_fails_platform(
        self,
        db: Database,
        engine: Engine,
        registry: CapabilityRegistry,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should record a slow platform as failed with a timeout."""
        adapters["platform_b"].delay = 2.0
        dispatcher = EnforcementDispatcher(db, engine.compiler, registry, engine.pool, call_timeout=0.2)

        job = dispatcher.trigger(child.id)
        assert dispatcher.wait(job.id, timeout=10)
        results = by_platform(dispatcher.get_job(job.id))

        assert results["platform_a"].status == ResultStatus.COMPLETED.value
        assert results["platform_b"].status == ResultStatus.FAILED.value
        assert "timed out" in results["platform_b"].error_message


@pytest.mark.usefixtures("verified_links")
class TestRetry:
    """Tests for retrying failed platforms."""

    def test_retries_only_failed_platforms(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should re-invoke only failed platforms and leave successful results untouched."""
        adapters["platform_b"].available = False
        job = run(engine, child.id)
        before = by_platform(job)["platform_a"]
        calls_a = len(adapters["platform_a"].calls)

        adapters["platform_b"].available = True
        engine.enforcement.retry(job.id)
        assert engine.enforcement.wait(job.id, timeout=10)
        job = engine.enforcement.get_job(job.id)

        after = by_platform(job)
        assert job.status == JobStatus.COMPLETED.value
        assert len(adapters["platform_a"].calls) == calls_a
        assert after["platform_a"].completed_at == before.completed_at
        assert after["platform_a"].rules_applied == before.rules_applied
        assert after["platform_b"].status == ResultStatus.COMPLETED.value
        assert after["platform_b"].attempts == 2

    def test_nothing_failed_returns_job(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        job = run(engine, child.id)
        assert engine.enforcement.retry(job.id).status == JobStatus.COMPLETED.value

    def test_in_flight_job_is_not_retryable(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        adapters["platform_a"].delay = 0.5
        job = engine.enforcement.trigger(child.id)
        with pytest.raises(JobNotRetryable):
            engine.enforcement.retry(job.id)
        engine.enforcement.wait(job.id, timeout=10)

    def test_concurrent_retry_is_rejected(
        self,
        engine: Engine,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should refuse a retry while another retry of the same job is being dispatched."""
        adapters["platform_b"].available = False
        job = run(engine, child.id)
        adapters["platform_b"].available = True

        assert engine.enforcement._tracker.reserve(job.id)
        with pytest.raises(JobNotRetryable):
            engine.enforcement.retry(job.id)
        engine.enforcement._tracker.release(job.id)

        engine.enforcement.retry(job.id)
        assert engine.enforcement.wait(job.id, timeout=10)
        assert engine.enforcement.get_job(job.id).status == JobStatus.COMPLETED.value


@pytest.mark.usefixtures("verified_links")
class TestCancel:
    """Tests for cancelling queued platform calls."""

    def test_cancel_skips_queued_calls(
        self,
        db: Database,
        engine: Engine,
        registry: CapabilityRegistry,
        child: Child,
        policies: tuple[Policy, Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should record calls that never started as skipped."""
        pool = DispatchPool(max_workers=1, call_timeout=5.0)
        pool.start()
        release = threading.Event()
        pool.submit(
            DispatchTask(key="blocker", fn=release.wait, on_complete=lambda _: None, on_error=lambda _: None)
        )
        try:
            dispatcher = EnforcementDispatcher(db, engine.compiler, registry, pool)
            job = dispatcher.trigger(child.id)
            dispatcher.cancel(job.id)
            release.set()
            assert dispatcher.wait(job.id, timeout=10)
        finally:
            pool.stop()

        job = dispatcher.get_job(job.id)
        assert job.cancel_requested is True
        assert all(r.status == ResultStatus.SKIPPED.value for r in job.results)
        assert all(r.error_message == "cancelled" for r in job.results)
        assert adapters["platform_a"].calls == []

    def test_cancel_settled_job_is_noop(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        job = run(engine, child.id)
        assert engine.enforcement.cancel(job.id).cancel_requested is False


@pytest.mark.usefixtures("verified_links")
class TestWebhookEvents:
    """Tests for enforcement webhook events."""

    def test_settled_job_publishes_event(
        self, engine: Engine, child: Child, policies: tuple[Policy, Policy]
    ) -> None:
        webhook = engine.webhooks.create_webhook(
            child.family_id, "https://hooks.example/x", ["enforcement.completed"]
        )
        job = run(engine, child.id)

        (delivery,) = engine.webhooks.list_deliveries(webhook.id)
        assert delivery.event == "enforcement.completed"
        assert job.id in delivery.payload


class TestAutoEnforce:
    """Tests for enforcement on policy change."""

    def test_policy_change_triggers_job(
        self,
        engine: Engine,
        child: Child,
        make_policy: Callable[..., Policy],
        verified_links: None,
    ) -> None:
        engine.config.auto_enforce = True
        make_policy(child.id, "P", 1, P1_RULES)

        jobs = engine.enforcement.list_jobs(child.id)
        assert jobs
        assert jobs[0].trigger_type == TriggerType.POLICY_CHANGE.value
        for job in jobs:
            engine.enforcement.wait(job.id, timeout=10)

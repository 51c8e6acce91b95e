"""Tests for source connections and sync jobs."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from guardsync.adapters.stub import InMemoryAdapter
from guardsync.core.errors import (
    ConflictError,
    InvalidCategory,
    JobNotRetryable,
    RuleNotResolved,
    SourceNotConnected,
    SourceTypeNotFound,
)
from guardsync.core.types import JobStatus, SourceStatus, SyncMode, SyncOutcome
from guardsync.engine.engine import Engine
from guardsync.rules.categories import RuleCategory
from guardsync.server.models import Child, Policy, Source, SourceSyncJob

C = RuleCategory

RULES = {
    C.TIME_DAILY_LIMIT: {"daily_minutes": 90},
    C.CONTENT_RATING: {"max_ratings": {"esrb": "E"}},
    C.WEB_SAFESEARCH: {"enabled": True},
    C.AGE_GATE: {"min_age": 13},
}


@pytest.fixture
def policy(child: Child, make_policy: Callable[..., Policy]) -> Policy:
    return make_policy(child.id, "Base", 1, RULES)


@pytest.fixture
def source(engine: Engine, child: Child) -> Source:
    return engine.sync.connect_source(child.id, "tracker")


def run(engine: Engine, source_id: str, mode: SyncMode = SyncMode.FULL, **kwargs) -> SourceSyncJob:
    """Trigger a sync and wait for it to settle."""
    job = engine.sync.trigger_sync(source_id, mode, **kwargs)
    assert engine.sync.wait(job.id, timeout=10)
    return engine.sync.get_sync_job(job.id)


def outcomes(job: SourceSyncJob) -> dict[str, str]:
    return {r.category: r.status for r in job.results}


def settle(engine: Engine, source_id: str) -> list[SourceSyncJob]:
    """Wait for every sync job of a source, including follow-ups started meanwhile."""
    while True:
        jobs = engine.sync.list_sync_jobs(source_id)
        for job in jobs:
            assert engine.sync.wait(job.id, timeout=10)
        latest = engine.sync.list_sync_jobs(source_id)
        if len(latest) == len(jobs):
            return latest


class TestConnections:
    """Tests for connecting and disconnecting sources."""

    def test_connect_copies_tier_capabilities(self, engine: Engine, child: Child) -> None:
        source = engine.sync.connect_source(child.id, "tracker", tier="guided", auto_sync=True)

        assert source.status == SourceStatus.CONNECTED.value
        assert source.api_tier == "guided"
        assert source.auto_sync is True
        assert source.family_id == child.family_id
        assert set(source.capabilities) == {"time_daily_limit"}
        assert source.capabilities["time_daily_limit"]["support_level"] == "partial"

    def test_unknown_source_type(self, engine: Engine, child: Child) -> None:
        with pytest.raises(SourceTypeNotFound):
            engine.sync.connect_source(child.id, "nope")

    def test_connect_twice_conflicts(self, engine: Engine, child: Child, source: Source) -> None:
        with pytest.raises(ConflictError):
            engine.sync.connect_source(child.id, "tracker")

    def test_reconnect_after_disconnect(self, engine: Engine, child: Child, source: Source) -> None:
        """Should reuse the disconnected source on the same tier."""
        engine.sync.disconnect_source(source.id)
        again = engine.sync.connect_source(child.id, "tracker")
        assert again.id == source.id
        assert again.status == SourceStatus.CONNECTED.value

    def test_reconnect_on_other_tier_conflicts(
        self, engine: Engine, child: Child, source: Source
    ) -> None:
        engine.sync.disconnect_source(source.id)
        with pytest.raises(ConflictError):
            engine.sync.connect_source(child.id, "tracker", tier="guided")

    def test_set_auto_sync(self, engine: Engine, source: Source) -> None:
        assert engine.sync.set_auto_sync(source.id, True).auto_sync is True

    def test_guided_steps(self, engine: Engine) -> None:
        steps = engine.sync.guided_steps("tracker", "time_daily_limit")
        assert [s.step_number for s in steps] == [1, 2]
        assert steps[0].deep_link == "https://tracker.example"
        assert engine.sync.guided_steps("tracker", "content_rating") == []

    def test_guided_steps_unknown_category(self, engine: Engine) -> None:
        with pytest.raises(InvalidCategory):
            engine.sync.guided_steps("tracker", "bogus")


@pytest.mark.usefixtures("policy")
class TestSync:
    """Tests for sync jobs."""

    def test_full_sync_classifies_categories(self, engine: Engine, source: Source) -> None:
        """Should push supported categories and record the rest as unsupported."""
        job = run(engine, source.id)

        assert outcomes(job) == {
            "time_daily_limit": SyncOutcome.PUSHED.value,
            "content_rating": SyncOutcome.PUSHED.value,
            "web_safesearch": SyncOutcome.UNSUPPORTED.value,
            "age_gate": SyncOutcome.UNSUPPORTED.value,
        }
        assert job.status == JobStatus.COMPLETED.value
        assert (job.rules_pushed, job.rules_unsupported) == (2, 2)

    def test_unsupported_never_reach_adapter(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        run(engine, source.id)
        sent = {c for _, categories in adapters["tracker"].calls for c in categories}
        assert sent == {C.TIME_DAILY_LIMIT, C.CONTENT_RATING}

    def test_sync_updates_source(self, engine: Engine, source: Source) -> None:
        run(engine, source.id)
        updated = engine.sync.get_source(source.id)
        assert updated.status == SourceStatus.CONNECTED.value
        assert updated.sync_version == source.sync_version + 1
        assert updated.last_sync_status == JobStatus.COMPLETED.value
        assert updated.error_message is None

    def test_incremental_skips_unchanged(
        self,
        engine: Engine,
        source: Source,
        policy: Policy,
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should only push categories whose config changed since the last sync."""
        run(engine, source.id)
        engine.policies.update_rule(
            policy.id, policy.version, "time_daily_limit", config={"daily_minutes": 45}
        )
        calls_before = len(adapters["tracker"].calls)

        job = run(engine, source.id, SyncMode.INCREMENTAL)

        assert outcomes(job)["time_daily_limit"] == SyncOutcome.PUSHED.value
        assert outcomes(job)["content_rating"] == SyncOutcome.SKIPPED.value
        assert len(adapters["tracker"].calls) == calls_before + 1

    def test_single_rule(self, engine: Engine, source: Source) -> None:
        job = run(engine, source.id, SyncMode.SINGLE_RULE, category="content_rating")
        assert outcomes(job) == {"content_rating": SyncOutcome.PUSHED.value}

    def test_single_rule_needs_category(self, engine: Engine, source: Source) -> None:
        with pytest.raises(RuleNotResolved):
            engine.sync.trigger_sync(source.id, SyncMode.SINGLE_RULE)

    def test_single_rule_unresolved_category(self, engine: Engine, source: Source) -> None:
        with pytest.raises(RuleNotResolved):
            engine.sync.trigger_sync(source.id, SyncMode.SINGLE_RULE, category="dm_restriction")

    def test_disconnected_source_cannot_sync(self, engine: Engine, source: Source) -> None:
        engine.sync.disconnect_source(source.id)
        with pytest.raises(SourceNotConnected):
            engine.sync.trigger_sync(source.id)

    def test_failure_marks_source(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        """Should fail the job and record an error when every push fails."""
        adapters["tracker"].available = False
        job = run(engine, source.id)

        assert job.status == JobStatus.FAILED.value
        updated = engine.sync.get_source(source.id)
        assert updated.sync_version == source.sync_version
        assert job.id in updated.error_message

    def test_partial_failure(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        adapters["tracker"].fail_categories = {C.CONTENT_RATING}
        job = run(engine, source.id)
        assert job.status == JobStatus.PARTIAL.value
        assert outcomes(job)["content_rating"] == SyncOutcome.FAILED.value

    def test_retry_failed_categories(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        adapters["tracker"].fail_categories = {C.CONTENT_RATING}
        job = run(engine, source.id)
        adapters["tracker"].fail_categories = set()

        engine.sync.retry(job.id)
        assert engine.sync.wait(job.id, timeout=10)
        job = engine.sync.get_sync_job(job.id)

        assert job.status == JobStatus.COMPLETED.value
        assert outcomes(job)["content_rating"] == SyncOutcome.PUSHED.value

    def test_retry_running_job(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        adapters["tracker"].delay = 0.5
        job = engine.sync.trigger_sync(source.id)
        with pytest.raises(JobNotRetryable):
            engine.sync.retry(job.id)
        engine.sync.wait(job.id, timeout=10)

    def test_concurrent_retry_is_rejected(
        self, engine: Engine, source: Source, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        adapters["tracker"].fail_categories = {C.CONTENT_RATING}
        job = run(engine, source.id)
        adapters["tracker"].fail_categories = set()

        assert engine.sync._tracker.reserve(job.id)
        with pytest.raises(JobNotRetryable):
            engine.sync.retry(job.id)
        engine.sync._tracker.release(job.id)

        engine.sync.retry(job.id)
        assert engine.sync.wait(job.id, timeout=10)
        assert engine.sync.get_sync_job(job.id).status == JobStatus.COMPLETED.value

    def test_list_sync_jobs(self, engine: Engine, source: Source) -> None:
        job = run(engine, source.id)
        assert [j.id for j in engine.sync.list_sync_jobs(source.id)] == [job.id]


class TestAutoSync:
    """Tests for syncing auto-sync sources on policy change."""

    def test_policy_change_syncs_auto_sources(
        self, engine: Engine, child: Child, make_policy: Callable[..., Policy]
    ) -> None:
        source = engine.sync.connect_source(child.id, "tracker", auto_sync=True)
        make_policy(child.id, "Base", 1, RULES)
        jobs = settle(engine, source.id)

        assert jobs
        assert jobs[0].sync_mode == SyncMode.INCREMENTAL.value
        assert jobs[0].trigger_type == "policy_change"

    def test_change_during_sync_is_pushed_afterwards(
        self,
        engine: Engine,
        child: Child,
        make_policy: Callable[..., Policy],
        adapters: dict[str, InMemoryAdapter],
    ) -> None:
        """Should push the latest config once the running sync settles."""
        source = engine.sync.connect_source(child.id, "tracker", auto_sync=True)
        policy = make_policy(child.id, "Base", 1, RULES)
        before = len(settle(engine, source.id))
        adapters["tracker"].delay = 0.5

        engine.policies.update_rule(
            policy.id, policy.version, "time_daily_limit", config={"daily_minutes": 60}
        )
        version = engine.policies.get_policy(policy.id).version
        engine.policies.update_rule(
            policy.id, version, "time_daily_limit", config={"daily_minutes": 30}
        )
        jobs = settle(engine, source.id)

        assert len(jobs) == before + 2
        assert all(j.status == JobStatus.COMPLETED.value for j in jobs)
        assert adapters["tracker"].settings(child.id)["time_daily_limit"] == {"daily_minutes": 30}
        assert engine.sync.get_source(source.id).status == SourceStatus.CONNECTED.value

    def test_manual_trigger_while_syncing_conflicts(
        self, engine: Engine, source: Source, policy: Policy, adapters: dict[str, InMemoryAdapter]
    ) -> None:
        adapters["tracker"].delay = 0.5
        job = engine.sync.trigger_sync(source.id)
        with pytest.raises(ConflictError):
            engine.sync.trigger_sync(source.id)
        assert engine.sync.wait(job.id, timeout=10)
        assert run(engine, source.id).status == JobStatus.COMPLETED.value

    def test_manual_sources_are_left_alone(
        self, engine: Engine, child: Child, source: Source, make_policy: Callable[..., Policy]
    ) -> None:
        make_policy(child.id, "Base", 1, RULES)
        assert engine.sync.list_sync_jobs(source.id) == []

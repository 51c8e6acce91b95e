"""Tests for job aggregation and in-flight tracking."""

from __future__ import annotations

import threading
from dataclasses import dataclass

import pytest

from guardsync.core.types import JobStatus, ResultStatus
from guardsync.engine.jobs import (
    JobTracker,
    aggregate_job_status,
    aggregate_sync_status,
    count_outcomes,
    result_status,
)


@dataclass
class Counts:
    rules_applied: int = 0
    rules_skipped: int = 0
    rules_failed: int = 0


class TestResultStatus:
    """Tests for per-platform result status."""

    def test_no_failures_is_completed(self) -> None:
        assert result_status(3, 1, 0) == ResultStatus.COMPLETED

    def test_only_failures_is_failed(self) -> None:
        assert result_status(0, 0, 2) == ResultStatus.FAILED

    def test_mixed_is_partial(self) -> None:
        assert result_status(1, 0, 1) == ResultStatus.PARTIAL
        assert result_status(0, 1, 1) == ResultStatus.PARTIAL


class TestAggregateJobStatus:
    """Tests for enforcement job aggregation."""

    def test_one_failure_among_successes_is_partial(self) -> None:
        """Should mark a job partial when failed counts are [0, 2, 0]."""
        results = [Counts(2, 0, 0), Counts(1, 0, 2), Counts(1, 1, 0)]
        assert aggregate_job_status(results) == JobStatus.PARTIAL

    def test_all_zero_failures_is_completed(self) -> None:
        assert aggregate_job_status([Counts(2), Counts(0, 3)]) == JobStatus.COMPLETED

    def test_all_totally_failed_is_failed(self) -> None:
        assert aggregate_job_status([Counts(0, 0, 2), Counts(0, 0, 1)]) == JobStatus.FAILED

    def test_totally_failed_platform_with_success_is_partial(self) -> None:
        assert aggregate_job_status([Counts(0, 0, 2), Counts(1)]) == JobStatus.PARTIAL

    def test_no_results_is_completed(self) -> None:
        assert aggregate_job_status([]) == JobStatus.COMPLETED


class TestAggregateSyncStatus:
    """Tests for sync job aggregation."""

    def test_pushed_and_unsupported_is_completed(self) -> None:
        """Should not count unsupported categories as failures."""
        assert aggregate_sync_status(["pushed", "unsupported"]) == JobStatus.COMPLETED

    def test_failed_with_pushed_is_partial(self) -> None:
        assert aggregate_sync_status(["pushed", "failed"]) == JobStatus.PARTIAL

    def test_only_failed_and_unsupported_is_failed(self) -> None:
        assert aggregate_sync_status(["failed", "unsupported"]) == JobStatus.FAILED

    def test_count_outcomes(self) -> None:
        counts = count_outcomes(["pushed", "pushed", "skipped", "unsupported", "failed"])
        assert counts == {"pushed": 2, "skipped": 1, "failed": 1, "unsupported": 1}


class TestJobTracker:
    """Tests for JobTracker."""

    def test_on_done_runs_after_last_task(self) -> None:
        tracker = JobTracker()
        done: list[str] = []
        tracker.begin("job", 2, lambda: done.append("job"))

        tracker.task_done("job")
        assert done == []
        assert tracker.in_flight("job")

        tracker.task_done("job")
        assert done == ["job"]
        assert not tracker.in_flight("job")

    def test_zero_outstanding_finishes_immediately(self) -> None:
        tracker = JobTracker()
        done: list[str] = []
        tracker.begin("job", 0, lambda: done.append("job"))
        assert done == ["job"]
        assert tracker.wait("job", timeout=0)

    def test_wait_blocks_until_settled(self) -> None:
        """Should release waiters only after on_done has run."""
        tracker = JobTracker()
        finalized = threading.Event()
        tracker.begin("job", 1, finalized.set)

        assert tracker.wait("job", timeout=0.05) is False
        threading.Timer(0.05, tracker.task_done, args=("job",)).start()
        assert tracker.wait("job", timeout=5)
        assert finalized.is_set()

    def test_cancel_flags_in_flight_job(self) -> None:
        tracker = JobTracker()
        tracker.begin("job", 1, lambda: None)
        assert tracker.cancel("job") is True
        assert tracker.is_cancelled("job")
        assert tracker.cancel("other") is False

    def test_failing_on_done_still_settles(self) -> None:
        tracker = JobTracker()

        def boom() -> None:
            raise RuntimeError("finalizer failed")

        tracker.begin("job", 1, boom)
        tracker.task_done("job")
        assert tracker.wait("job", timeout=0)
        assert not tracker.in_flight("job")

    def test_reservation_blocks_second_claim(self) -> None:
        tracker = JobTracker()
        assert tracker.reserve("job") is True
        assert tracker.reserve("job") is False
        assert tracker.in_flight("job")

        tracker.release("job")
        assert not tracker.in_flight("job")
        assert tracker.reserve("job") is True

    def test_begin_takes_over_reservation(self) -> None:
        """Should run on_done for a reserved job once its calls report back."""
        tracker = JobTracker()
        done: list[str] = []
        tracker.reserve("job")
        tracker.begin("job", 1, lambda: done.append("job"))
        assert tracker.reserve("job") is False

        tracker.release("job")
        assert tracker.in_flight("job")

        tracker.task_done("job")
        assert done == ["job"]
        assert not tracker.in_flight("job")

    def test_begin_twice_raises(self) -> None:
        tracker = JobTracker()
        tracker.begin("job", 1, lambda: None)
        with pytest.raises(RuntimeError):
            tracker.begin("job", 1, lambda: None)

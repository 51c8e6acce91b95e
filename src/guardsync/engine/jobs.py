"""Job aggregation rules and in-flight job tracking.

Aggregate statuses are pure functions of a job's results and are
recomputed from stored results every time a job settles.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from guardsync.core.types import JobStatus, ResultStatus, SyncOutcome

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class RuleCounts(Protocol):
    rules_applied: int
    rules_skipped: int
    rules_failed: int


def result_status(applied: int, skipped: int, failed: int) -> ResultStatus:
    """Status of one platform result from its counts."""
    if failed == 0:
        return ResultStatus.COMPLETED
    if applied == 0 and skipped == 0:
        return ResultStatus.FAILED
    return ResultStatus.PARTIAL


def aggregate_job_status(results: Iterable[RuleCounts]) -> JobStatus:
    """Aggregate enforcement results into a job status.

    - completed: every result has zero failed rules
    - failed: every result failed entirely (nothing applied or skipped)
    - partial: anything else

    A job without results has nothing to fail and is completed.
    """
    results = list(results)
    if all(r.rules_failed == 0 for r in results):
        return JobStatus.COMPLETED
    if all(r.rules_applied == 0 and r.rules_skipped == 0 for r in results):
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def aggregate_sync_status(outcomes: Iterable[str]) -> JobStatus:
    """Aggregate per-category sync outcomes into a job status.

    Unsupported categories were never attempted and do not count either
    way; a sync where something failed and nothing was pushed or skipped
    is failed.
    """
    outcomes = [SyncOutcome(o) for o in outcomes]
    if SyncOutcome.FAILED not in outcomes:
        return JobStatus.COMPLETED
    if not any(o in (SyncOutcome.PUSHED, SyncOutcome.SKIPPED) for o in outcomes):
        return JobStatus.FAILED
    return JobStatus.PARTIAL


def count_outcomes(outcomes: Iterable[str]) -> dict[str, int]:
    counts = {o.value: 0 for o in SyncOutcome if o != SyncOutcome.PENDING}
    for outcome in outcomes:
        if outcome in counts:
            counts[outcome] += 1
    return counts


@dataclass
class _JobHandle:
    remaining: int
    on_done: Callable[[], None] | None
    done: threading.Event = field(default_factory=threading.Event)
    cancelled: bool = False
    reserved: bool = False


class JobTracker:
    """Tracks outstanding calls per in-flight job.

    ``on_done`` runs exactly once, after the last outstanding call of the
    job has reported back, and before ``wait`` returns for that job.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, _JobHandle] = {}

    def reserve(self, job_id: str) -> bool:
        """Claim a job for a dispatch that will ``begin`` shortly.

        The job counts as in flight from here on, so two retries of the
        same job cannot both dispatch it.

        Returns:
            False if the job is already in flight or reserved.
        """
        with self._lock:
            if job_id in self._handles:
                return False
            self._handles[job_id] = _JobHandle(remaining=0, on_done=None, reserved=True)
            return True

    def release(self, job_id: str) -> None:
        """Drop a reservation that will not be dispatched."""
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None or not handle.reserved:
                return
            del self._handles[job_id]
        handle.done.set()

    def begin(self, job_id: str, outstanding: int, on_done: Callable[[], None]) -> None:
        """Start tracking a job with ``outstanding`` pending calls.

        Takes over a reservation made with ``reserve`` if there is one.

        Raises:
            RuntimeError: If the job is already in flight without a reservation.
        """
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                handle = _JobHandle(remaining=outstanding, on_done=on_done)
                self._handles[job_id] = handle
            elif handle.reserved:
                handle.reserved = False
                handle.remaining = outstanding
                handle.on_done = on_done
            else:
                raise RuntimeError(f"Job {job_id} is already in flight")
        if outstanding == 0:
            self._finish(job_id, handle)

    def task_done(self, job_id: str) -> None:
        """Report one call of a job as final."""
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                logger.warning("task_done for untracked job %s", job_id)
                return
            handle.remaining -= 1
            finished = handle.remaining <= 0
        if finished:
            self._finish(job_id, handle)

    def _finish(self, job_id: str, handle: _JobHandle) -> None:
        try:
            if handle.on_done is not None:
                handle.on_done()
        except Exception:
            logger.exception("Error finalizing job %s", job_id)
        finally:
            with self._lock:
                self._handles.pop(job_id, None)
            handle.done.set()

    def cancel(self, job_id: str) -> bool:
        """Flag an in-flight job as cancelled.

        Returns:
            True if the job was in flight.
        """
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                return False
            handle.cancelled = True
            return True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(job_id)
            return handle is not None and handle.cancelled

    def in_flight(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._handles

    def wait(self, job_id: str, timeout: float | None = None) -> bool:
        """Block until a job settles.

        Returns:
            True if the job is settled (or was never in flight), False on timeout.
        """
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is None:
            return True
        return handle.done.wait(timeout)

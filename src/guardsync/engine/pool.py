"""Bounded worker pool for adapter calls.

This module provides:
- DispatchPool: fixed-size thread pool shared by every in-flight job
- DispatchTask: one queued adapter call with its callbacks
- CallTimeout: raised when a call exceeds its timeout
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
DEFAULT_CALL_TIMEOUT = 30.0  # seconds


class PoolState(Enum):
    """State of the dispatch pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class CallTimeout(Exception):
    """Raised when an adapter call does not return within its timeout."""


@dataclass
class DispatchTask:
    """A call to be executed by the pool.

    Attributes:
        key: Identifier used in logs (e.g. ``job_id/platform_id``).
        fn: The call itself.
        on_complete: Called with the call's return value.
        on_error: Called with the exception raised (including CallTimeout).
        on_cancelled: Called instead of running when ``should_cancel`` is true
            at the time a worker picks the task up.
        should_cancel: Checked just before the call starts.
        timeout: Per-call timeout in seconds; the pool default when None.
    """

    key: str
    fn: Callable[[], Any]
    on_complete: Callable[[Any], None]
    on_error: Callable[[Exception], None]
    on_cancelled: Callable[[], None] | None = None
    should_cancel: Callable[[], bool] | None = None
    timeout: float | None = None


def run_with_timeout(
    fn: Callable[[], Any],
    timeout: float,
    name: str = "call",
    on_exit: Callable[[], None] | None = None,
) -> Any:
    """Run ``fn`` and wait at most ``timeout`` seconds for it.

    A call that overruns is abandoned, not killed: it keeps running on its
    own daemon thread and its result is discarded.

    Args:
        fn: The call.
        timeout: Seconds to wait for it.
        name: Name of the thread running the call.
        on_exit: Called once the call's thread is done, even when the
            call was abandoned.

    Raises:
        CallTimeout: If the call did not finish in time.
    """
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = fn()
        except Exception as e:
            outcome["error"] = e
        finally:
            if on_exit is not None:
                on_exit()

    thread = threading.Thread(target=target, name=name, daemon=True)
    try:
        thread.start()
    except RuntimeError:
        if on_exit is not None:
            on_exit()
        raise
    thread.join(timeout)
    if thread.is_alive():
        raise CallTimeout(f"timed out after {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


class DispatchPool:
    """Fixed-size pool of worker threads for adapter calls.

    Workers take tasks from one shared queue and every call holds one of
    ``max_workers`` call slots until its thread exits, so the number of
    concurrent outbound calls never exceeds ``max_workers``, counting
    calls abandoned after a timeout, regardless of how many jobs are in
    flight.

    Usage:
        pool = DispatchPool(max_workers=8, call_timeout=30.0)
        pool.start()
        pool.submit(DispatchTask(key, fn, on_complete, on_error))
        pool.stop()
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        """Initialize the pool.

        Args:
            max_workers: Number of worker threads.
            call_timeout: Default per-call timeout in seconds.
        """
        self._max_workers = max_workers
        self._call_timeout = call_timeout

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._task_queue: queue.Queue[DispatchTask | None] = queue.Queue()
        self._workers: list[threading.Thread] = []
        self._active_tasks: dict[str, DispatchTask] = {}
        self._call_slots = threading.BoundedSemaphore(max_workers)

        # Statistics
        self._completed_count = 0
        self._error_count = 0
        self._timeout_count = 0
        self._cancelled_count = 0

    @property
    def state(self) -> PoolState:
        return self._pool_state

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def call_timeout(self) -> float:
        return self._call_timeout

    @property
    def active_count(self) -> int:
        """Get number of calls currently running."""
        with self._lock:
            return len(self._active_tasks)

    @property
    def queue_size(self) -> int:
        return self._task_queue.qsize()

    @property
    def completed_count(self) -> int:
        return self._completed_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def timeout_count(self) -> int:
        return self._timeout_count

    @property
    def cancelled_count(self) -> int:
        return self._cancelled_count

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                return

            self._pool_state = PoolState.RUNNING
            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"DispatchPool-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.info("Dispatch pool started with %d workers", self._max_workers)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the pool.

        Queued tasks that no worker picked up are dropped.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            logger.info("Dispatch pool stopping...")

            # Poison pills to stop workers
            for _ in self._workers:
                self._task_queue.put(None)

        for worker in self._workers:
            worker.join(timeout=timeout / len(self._workers))

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            self._task_queue = queue.Queue()
            logger.info("Dispatch pool stopped")

    def submit(self, task: DispatchTask) -> bool:
        """Queue a task.

        Returns:
            True if queued, False if the pool is not running.
        """
        if self._pool_state != PoolState.RUNNING:
            logger.warning("Cannot submit %s: dispatch pool not running", task.key)
            return False
        self._task_queue.put(task)
        logger.debug("Task submitted: %s", task.key)
        return True

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while self._pool_state == PoolState.RUNNING:
            try:
                task = self._task_queue.get(timeout=1.0)
                if task is None:
                    break
                self._process_task(task)
            except queue.Empty:
                continue
            except Exception:
                logger.exception("Unexpected error in dispatch worker loop")

    def _process_task(self, task: DispatchTask) -> None:
        """Run one task and route its result to the callbacks."""
        if task.should_cancel is not None and task.should_cancel():
            self._cancelled_count += 1
            logger.info("Task cancelled before start: %s", task.key)
            if task.on_cancelled is not None:
                self._safe_callback(task, task.on_cancelled)
            return

        if not self._acquire_call_slot():
            self._error_count += 1
            logger.warning("Task %s dropped: dispatch pool stopping", task.key)
            self._safe_callback(task, task.on_error, RuntimeError("dispatch pool stopping"))
            return

        with self._lock:
            self._active_tasks[task.key] = task
        timeout = task.timeout if task.timeout is not None else self._call_timeout
        try:
            value = run_with_timeout(
                task.fn,
                timeout,
                name=f"{threading.current_thread().name}-call",
                on_exit=self._call_slots.release,
            )
        except CallTimeout as e:
            self._timeout_count += 1
            logger.warning("Task %s %s", task.key, e)
            self._safe_callback(task, task.on_error, e)
        except Exception as e:
            self._error_count += 1
            logger.warning("Task %s failed: %s", task.key, e)
            self._safe_callback(task, task.on_error, e)
        else:
            self._completed_count += 1
            self._safe_callback(task, task.on_complete, value)
        finally:
            with self._lock:
                self._active_tasks.pop(task.key, None)

    def _acquire_call_slot(self) -> bool:
        """Wait for a free call slot; False once the pool is stopping."""
        while not self._call_slots.acquire(timeout=0.5):
            if self._pool_state != PoolState.RUNNING:
                return False
        return True

    @staticmethod
    def _safe_callback(task: DispatchTask, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Callback for %s raised", task.key)

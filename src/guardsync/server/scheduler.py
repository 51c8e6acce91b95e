"""Scheduler for background engine tasks.

This module provides:
- Periodic webhook delivery processing
- Optional daily enforcement of every child with an active policy
- Manual run functions for CLI/API usage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from guardsync.engine.engine import Engine
    from guardsync.server.models import EnforcementJob

logger = logging.getLogger(__name__)


class EngineScheduler:
    """Scheduler for the engine's recurring jobs.

    Runs:
    - Webhook delivery every ``webhook_interval`` seconds
    - Scheduled enforcement daily at ``enforcement_hour:enforcement_minute``
      when ``scheduled_enforcement`` is enabled
    """

    def __init__(self, engine: Engine) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine whose configuration and services are used.
        """
        self._engine = engine
        self._config = engine.config
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _deliver_job(self) -> None:
        """Job function for webhook delivery."""
        try:
            attempted = self._engine.webhooks.process_due()
            if attempted:
                logger.info("Webhook delivery run: %d deliveries attempted", attempted)
        except Exception:
            logger.exception("Error during scheduled webhook delivery")

    def _enforce_job(self) -> None:
        """Job function for scheduled enforcement."""
        logger.info("Starting scheduled enforcement")
        try:
            self._engine.enforce_all()
        except Exception:
            logger.exception("Error during scheduled enforcement")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._deliver_job,
            trigger=IntervalTrigger(seconds=self._config.webhook_interval),
            id="webhook_delivery",
            name="Webhook delivery",
            replace_existing=True,
        )

        if self._config.scheduled_enforcement:
            self._scheduler.add_job(
                self._enforce_job,
                trigger=CronTrigger(
                    hour=self._config.enforcement_hour, minute=self._config.enforcement_minute
                ),
                id="scheduled_enforcement",
                name="Daily enforcement",
                replace_existing=True,
            )

        self._scheduler.start()
        logger.info(
            "Engine scheduler started (webhooks every %gs, daily enforcement %s)",
            self._config.webhook_interval,
            f"at {self._config.enforcement_hour:02d}:{self._config.enforcement_minute:02d}"
            if self._config.scheduled_enforcement
            else "disabled",
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Engine scheduler stopped")

    def run_deliveries_now(self) -> int:
        """Process due webhook deliveries immediately (manual trigger).

        Returns:
            Number of deliveries attempted.
        """
        return self._engine.webhooks.process_due()

    def run_enforcement_now(self) -> list[EnforcementJob]:
        """Enforce every child with an active policy immediately."""
        return self._engine.enforce_all()

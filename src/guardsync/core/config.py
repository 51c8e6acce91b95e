"""Engine configuration.

All settings come from ``GUARDSYNC_*`` environment variables with
defaults suitable for a single-node deployment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

ENV_PREFIX = "GUARDSYNC_"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class EngineConfig:
    """Configuration for the engine and the HTTP server.

    Attributes:
        db_path: Path to the SQLite database file.
        log_path: Optional log file; logs always go to stdout.
        log_level: Name of the log level for the ``guardsync`` logger.
        api_token: Bearer token required by guardian endpoints, if set.
        dispatch_workers: Size of the worker pool shared by all jobs.
        dispatch_timeout: Per adapter call timeout in seconds.
        webhook_interval: Seconds between webhook delivery scans.
        webhook_timeout: HTTP timeout for one webhook POST in seconds.
        device_staleness_hours: Hours after which an unacknowledged
            snapshot marks a device as out of sync.
        auto_enforce: Trigger an enforcement job after each policy change.
        scheduled_enforcement: Enforce every child with an active policy daily.
        enforcement_hour: Hour of the daily enforcement run (0-23).
        enforcement_minute: Minute of the daily enforcement run (0-59).
    """

    db_path: Path = Path("guardsync.db")
    log_path: Path | None = None
    log_level: str = "INFO"
    api_token: str | None = None
    dispatch_workers: int = 8
    dispatch_timeout: float = 30.0
    webhook_interval: float = 30.0
    webhook_timeout: float = 10.0
    device_staleness_hours: float = 24.0
    auto_enforce: bool = False
    scheduled_enforcement: bool = False
    enforcement_hour: int = 3
    enforcement_minute: int = 0

    def __post_init__(self) -> None:
        """Normalize paths and validate numeric ranges."""
        self.db_path = Path(self.db_path)
        if self.log_path is not None:
            self.log_path = Path(self.log_path)
        self.log_level = self.log_level.upper()
        if self.dispatch_workers < 1:
            raise ValueError("dispatch_workers must be at least 1")
        if self.dispatch_timeout <= 0:
            raise ValueError("dispatch_timeout must be positive")
        if self.webhook_interval <= 0:
            raise ValueError("webhook_interval must be positive")
        if not 0 <= self.enforcement_hour <= 23:
            raise ValueError("enforcement_hour must be between 0 and 23")
        if not 0 <= self.enforcement_minute <= 59:
            raise ValueError("enforcement_minute must be between 0 and 59")

    @property
    def staleness_window(self) -> timedelta:
        return timedelta(hours=self.device_staleness_hours)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Build a configuration from environment variables.

        Returns:
            EngineConfig with every unset variable at its default.
        """
        log_path = _env("LOG_PATH")
        return cls(
            db_path=Path(_env("DB_PATH", "guardsync.db") or "guardsync.db"),
            log_path=Path(log_path) if log_path else None,
            log_level=_env("LOG_LEVEL", "INFO") or "INFO",
            api_token=_env("API_TOKEN") or None,
            dispatch_workers=int(_env("DISPATCH_WORKERS", "8") or 8),
            dispatch_timeout=float(_env("DISPATCH_TIMEOUT", "30") or 30),
            webhook_interval=float(_env("WEBHOOK_INTERVAL", "30") or 30),
            webhook_timeout=float(_env("WEBHOOK_TIMEOUT", "10") or 10),
            device_staleness_hours=float(_env("DEVICE_STALENESS_HOURS", "24") or 24),
            auto_enforce=_env_bool("AUTO_ENFORCE", False),
            scheduled_enforcement=_env_bool("SCHEDULED_ENFORCEMENT", False),
            enforcement_hour=int(_env("ENFORCEMENT_HOUR", "3") or 3),
            enforcement_minute=int(_env("ENFORCEMENT_MINUTE", "0") or 0),
        )

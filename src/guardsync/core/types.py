"""Shared types for guardsync.

This module defines the status and mode enums used by the engine,
the database layer and the HTTP API.
"""

from __future__ import annotations

from enum import Enum


class PolicyStatus(str, Enum):
    """Lifecycle status of a child policy."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class JobStatus(str, Enum):
    """Status of an enforcement or source sync job.

    A job is pending until dispatched, running while any result is
    outstanding, and then takes one of the three terminal values.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIAL)


class ResultStatus(str, Enum):
    """Status of one per-platform enforcement result."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, Enum):
    """What caused a job to be created."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    POLICY_CHANGE = "policy_change"
    WEBHOOK = "webhook"


class OutcomeStatus(str, Enum):
    """Per-rule outcome reported by an adapter."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncMode(str, Enum):
    """Which rules a source sync pushes."""

    FULL = "full"
    INCREMENTAL = "incremental"
    SINGLE_RULE = "single_rule"


class SyncOutcome(str, Enum):
    """Per-category outcome of a source sync."""

    PENDING = "pending"
    PUSHED = "pushed"
    SKIPPED = "skipped"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


class SupportLevel(str, Enum):
    """Fidelity at which an integration enforces a rule category."""

    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class ReadWrite(str, Enum):
    """Direction in which an integration exchanges a rule category."""

    PUSH_ONLY = "push_only"
    PULL_ONLY = "pull_only"
    BIDIRECTIONAL = "bidirectional"


class PlatformCategory(str, Enum):
    """Kind of first-party platform."""

    DNS = "dns"
    STREAMING = "streaming"
    GAMING = "gaming"
    DEVICE = "device"
    BROWSER = "browser"


class ApiTier(str, Enum):
    """Integration tier of a third-party source."""

    MANAGED = "managed"
    GUIDED = "guided"


class SourceStatus(str, Enum):
    """Connection status of a source."""

    PENDING = "pending"
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class ComplianceStatus(str, Enum):
    """Verification status of a family's link to a platform."""

    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    ERROR = "error"


class DeviceStatus(str, Enum):
    """Pull-sync state of a registered device."""

    REGISTERED = "registered"
    UP_TO_DATE = "up_to_date"
    STALE = "stale"
    REVOKED = "revoked"

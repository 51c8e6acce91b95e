"""Domain exceptions raised by the engine.

Structural failures (unknown child, no active policy, invalid category)
are raised synchronously to callers. Per-platform and per-rule failures
are never raised: they are recorded on job results instead.
"""

from __future__ import annotations


class GuardSyncError(Exception):
    """Base class for all guardsync domain errors."""


class NotFoundError(GuardSyncError):
    """Base class for lookups of unknown entities."""


class FamilyNotFound(NotFoundError):
    """Raised when a family does not exist."""


class ChildNotFound(NotFoundError):
    """Raised when a child does not exist."""


class PolicyNotFound(NotFoundError):
    """Raised when a policy does not exist or was deleted."""


class RuleNotFound(NotFoundError):
    """Raised when a policy has no rule for a category."""


class PlatformNotFound(NotFoundError):
    """Raised when a platform id is not in the registry."""


class SourceNotFound(NotFoundError):
    """Raised when a source does not exist."""


class SourceTypeNotFound(NotFoundError):
    """Raised when a source slug is not in the registry."""


class JobNotFound(NotFoundError):
    """Raised when an enforcement or sync job does not exist."""


class LinkNotFound(NotFoundError):
    """Raised when a compliance link does not exist."""


class DeviceNotFound(NotFoundError):
    """Raised when a device registration does not exist."""


class WebhookNotFound(NotFoundError):
    """Raised when a webhook does not exist."""


class NoActivePolicy(GuardSyncError):
    """Raised when a child has no active policy, so there is nothing to enforce."""


class InvalidCategory(GuardSyncError):
    """Raised for a rule category outside the catalog."""


class InvalidRuleConfig(GuardSyncError):
    """Raised when a rule config does not match its category's schema."""

    def __init__(self, category: str, message: str) -> None:
        super().__init__(f"Invalid config for {category}: {message}")
        self.category = category


class RuleNotResolved(GuardSyncError):
    """Raised when a single-rule sync names a category absent from the resolved set."""


class ConflictError(GuardSyncError):
    """Raised when a write targets a stale policy version."""


class JobNotRetryable(GuardSyncError):
    """Raised when retrying a job that is not terminal yet."""


class PlatformNotLinked(GuardSyncError):
    """Raised when enforcement targets a platform without a verified link."""


class SourceNotConnected(GuardSyncError):
    """Raised when syncing a source that is not in connected state."""


class DeviceRevoked(GuardSyncError):
    """Raised when a revoked device calls the pull-sync protocol."""


class InvalidDeviceKey(GuardSyncError):
    """Raised when a device API key does not match any registration."""


class AdapterUnavailable(GuardSyncError):
    """Raised by an adapter when its integration is entirely unreachable."""

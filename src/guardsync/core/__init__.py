"""Core module - Shared configuration, errors, and status types."""

from guardsync.core.config import EngineConfig
from guardsync.core.errors import (
    AdapterUnavailable,
    ChildNotFound,
    ConflictError,
    GuardSyncError,
    InvalidCategory,
    InvalidRuleConfig,
    NoActivePolicy,
    NotFoundError,
)
from guardsync.core.types import (
    ApiTier,
    ComplianceStatus,
    DeviceStatus,
    JobStatus,
    OutcomeStatus,
    PlatformCategory,
    PolicyStatus,
    ReadWrite,
    ResultStatus,
    SourceStatus,
    SupportLevel,
    SyncMode,
    SyncOutcome,
    TriggerType,
)

__all__ = [
    # Config
    "EngineConfig",
    # Errors
    "AdapterUnavailable",
    "ChildNotFound",
    "ConflictError",
    "GuardSyncError",
    "InvalidCategory",
    "InvalidRuleConfig",
    "NoActivePolicy",
    "NotFoundError",
    # Types
    "ApiTier",
    "ComplianceStatus",
    "DeviceStatus",
    "JobStatus",
    "OutcomeStatus",
    "PlatformCategory",
    "PolicyStatus",
    "ReadWrite",
    "ResultStatus",
    "SourceStatus",
    "SupportLevel",
    "SyncMode",
    "SyncOutcome",
    "TriggerType",
]

"""Policy enforcement and sync engine.

Architecture:
    PolicyService → PolicyCompiler → EnforcementDispatcher / SyncDispatcher → Adapters

Components:
- **PolicyService**: Policy and rule CRUD with optimistic versioning
- **PolicyCompiler**: Resolves active policies into one rule per category
- **CapabilityRegistry**: Static declaration of what each integration supports
- **EnforcementDispatcher**: Fans rules out to platforms as enforcement jobs
- **SyncDispatcher**: Pushes rules to third-party sources per category
- **DispatchPool**: Bounded worker pool shared by every in-flight job
- **DeviceService**: Versioned snapshots for devices that poll
- **WebhookService**: Signed event delivery with backoff

``guardsync.engine.engine.Engine`` wires all of them to the built-in registry.
"""

from guardsync.engine.adapters import Adapter, RuleOutcome, correlate
from guardsync.engine.capabilities import (
    Capability,
    CapabilityGroup,
    CapabilityRegistry,
    GuidedStep,
    PlatformRegistration,
    SourceRegistration,
    declare,
)
from guardsync.engine.compiler import PolicyCompiler, ResolvedRule, ResolvedRuleSet, resolve_rules
from guardsync.engine.devices import DeviceService, PollResult
from guardsync.engine.enforcement import EnforcementDispatcher
from guardsync.engine.jobs import JobTracker, aggregate_job_status, aggregate_sync_status
from guardsync.engine.policies import PolicyService
from guardsync.engine.pool import CallTimeout, DispatchPool, DispatchTask
from guardsync.engine.sync import SyncDispatcher
from guardsync.engine.webhooks import WebhookService, retry_delay, sign_payload

__all__ = [
    # Adapters and capabilities
    "Adapter",
    "Capability",
    "CapabilityGroup",
    "CapabilityRegistry",
    "GuidedStep",
    "PlatformRegistration",
    "RuleOutcome",
    "SourceRegistration",
    "correlate",
    "declare",
    # Compiler
    "PolicyCompiler",
    "ResolvedRule",
    "ResolvedRuleSet",
    "resolve_rules",
    # Dispatch
    "CallTimeout",
    "DispatchPool",
    "DispatchTask",
    "EnforcementDispatcher",
    "JobTracker",
    "SyncDispatcher",
    "aggregate_job_status",
    "aggregate_sync_status",
    # Services
    "DeviceService",
    "PolicyService",
    "PollResult",
    "WebhookService",
    "retry_delay",
    "sign_payload",
]

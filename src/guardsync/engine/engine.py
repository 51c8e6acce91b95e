"""Engine facade wiring storage, compiler, dispatchers and delivery."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from guardsync.adapters.registry import default_registry
from guardsync.core.config import EngineConfig
from guardsync.core.errors import GuardSyncError, NoActivePolicy
from guardsync.core.types import TriggerType
from guardsync.engine.compiler import PolicyCompiler
from guardsync.engine.devices import DeviceService
from guardsync.engine.enforcement import EnforcementDispatcher
from guardsync.engine.policies import PolicyService
from guardsync.engine.pool import DispatchPool
from guardsync.engine.sync import SyncDispatcher
from guardsync.engine.webhooks import WebhookService
from guardsync.server.database import Database

if TYPE_CHECKING:
    from guardsync.engine.capabilities import CapabilityRegistry
    from guardsync.server.models import EnforcementJob

logger = logging.getLogger(__name__)


class Engine:
    """All engine services sharing one database, compiler and worker pool.

    Usage:
        engine = Engine(EngineConfig.from_env())
        engine.start()
        job = engine.enforcement.trigger(child_id)
        engine.enforcement.wait(job.id)
        engine.stop()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        db: Database | None = None,
        registry: CapabilityRegistry | None = None,
        webhook_transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Engine configuration; defaults when None.
            db: Database to use instead of opening ``config.db_path``.
            registry: Capability registry; the built-in table when None.
            webhook_transport: Optional httpx transport for webhook POSTs.
        """
        self.config = config or EngineConfig()
        self.db = db or Database(self.config.db_path)
        self.registry = registry or default_registry()
        self.compiler = PolicyCompiler(self.db)
        self.pool = DispatchPool(self.config.dispatch_workers, self.config.dispatch_timeout)
        self.webhooks = WebhookService(
            self.db, timeout=self.config.webhook_timeout, transport=webhook_transport
        )
        self.enforcement = EnforcementDispatcher(
            self.db, self.compiler, self.registry, self.pool, self.webhooks
        )
        self.sync = SyncDispatcher(self.db, self.compiler, self.registry, self.pool, self.webhooks)
        self.devices = DeviceService(self.db, self.compiler)
        self.policies = PolicyService(self.db, self.compiler)
        self.policies.add_listener(self.on_policy_changed)

    def start(self) -> None:
        self.pool.start()

    def stop(self) -> None:
        self.pool.stop()
        self.webhooks.close()

    def on_policy_changed(self, child_id: str) -> None:
        """Push a policy change out to auto-enforced platforms and auto-sync sources."""
        if self.config.auto_enforce:
            try:
                self.enforcement.trigger(child_id, trigger_type=TriggerType.POLICY_CHANGE)
            except NoActivePolicy:
                logger.debug("Child %s has no active policy; nothing to enforce", child_id)
            except GuardSyncError as e:
                logger.warning("Auto-enforcement for child %s skipped: %s", child_id, e)
        self.sync.sync_auto_sources(child_id)

    def enforce_all(self, trigger_type: TriggerType = TriggerType.SCHEDULED) -> list[EnforcementJob]:
        """Trigger enforcement for every child with an active policy.

        Returns:
            The jobs created; children that fail to trigger are logged and skipped.
        """
        jobs = []
        for child_id in self.db.list_children_with_active_policy():
            try:
                jobs.append(self.enforcement.trigger(child_id, trigger_type=trigger_type))
            except GuardSyncError as e:
                logger.warning("Enforcement for child %s skipped: %s", child_id, e)
        logger.info("Triggered %d %s enforcement jobs", len(jobs), trigger_type.value)
        return jobs

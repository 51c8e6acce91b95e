"""Device pull-sync protocol.

Devices that cannot be pushed to poll for immutable, versioned policy
snapshots and acknowledge the version they applied. A snapshot is
materialized lazily, on poll, whenever the child's resolved rule set
no longer matches the latest one.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from guardsync.core.errors import DeviceNotFound, DeviceRevoked, InvalidDeviceKey, NoActivePolicy
from guardsync.core.types import DeviceStatus
from guardsync.server.database import hash_api_key

if TYPE_CHECKING:
    from guardsync.engine.compiler import PolicyCompiler
    from guardsync.server.database import Database
    from guardsync.server.models import CompiledPolicy, Device, DeviceReport

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "gsd_"
ACK_REPORT_TYPES = frozenset({"policy_ack", "enforcement_status"})
DEFAULT_STALENESS = timedelta(hours=24)


@dataclass(frozen=True)
class PollResult:
    """Answer to a device poll.

    ``snapshot`` is only set when the device is behind.
    """

    version: int
    up_to_date: bool
    snapshot: CompiledPolicy | None = None


class DeviceService:
    """Registers devices and serves them policy snapshots."""

    def __init__(self, db: Database, compiler: PolicyCompiler) -> None:
        self._db = db
        self._compiler = compiler

    def register(
        self,
        child_id: str,
        platform_id: str,
        device_name: str,
        device_model: str | None = None,
        os_version: str | None = None,
        app_version: str | None = None,
    ) -> tuple[Device, str]:
        """Register a device for a child.

        Returns:
            The device and its raw API key. Only the key's hash is stored,
            so this is the only time the key is available.

        Raises:
            ChildNotFound: If the child doesn't exist.
        """
        child = self._db.require_child(child_id)
        api_key = API_KEY_PREFIX + secrets.token_urlsafe(32)
        device = self._db.create_device(
            child_id=child_id,
            family_id=child.family_id,
            platform_id=platform_id,
            device_name=device_name,
            api_key_hash=hash_api_key(api_key),
            device_model=device_model,
            os_version=os_version,
            app_version=app_version,
        )
        logger.info("Device %s registered for child %s (%s)", device.id, child_id, platform_id)
        return device, api_key

    def authenticate(self, api_key: str) -> Device:
        """Resolve a device from its API key.

        Raises:
            InvalidDeviceKey: If no device has this key.
            DeviceRevoked: If the device was revoked.
        """
        device = self._db.get_device_by_key_hash(hash_api_key(api_key))
        if device is None:
            raise InvalidDeviceKey("Invalid device API key")
        if device.status == DeviceStatus.REVOKED.value:
            raise DeviceRevoked(f"Device {device.id} has been revoked")
        return device

    def get_device(self, device_id: str) -> Device:
        device = self._db.get_device(device_id)
        if device is None:
            raise DeviceNotFound(f"Device not found: {device_id}")
        return device

    def _active_device(self, device_id: str) -> Device:
        device = self.get_device(device_id)
        if device.status == DeviceStatus.REVOKED.value:
            raise DeviceRevoked(f"Device {device_id} has been revoked")
        return device

    def list_devices(self, child_id: str | None = None) -> list[Device]:
        if child_id is not None:
            self._db.require_child(child_id)
        return self._db.list_devices(child_id)

    def revoke(self, device_id: str) -> Device:
        self.get_device(device_id)
        device = self._db.update_device(device_id, status=DeviceStatus.REVOKED.value)
        logger.info("Device %s revoked", device_id)
        return device

    def current_snapshot(self, child_id: str) -> CompiledPolicy | None:
        """Latest snapshot for a child, materializing a new one if needed.

        Returns:
            The current snapshot, or None if the child never had one and
            has no active policy.
        """
        latest = self._db.latest_compiled_policy(child_id)
        try:
            resolved = self._compiler.compile(child_id)
        except NoActivePolicy:
            return latest

        if latest is not None and latest.fingerprint == resolved.fingerprint:
            return latest

        version = (latest.version if latest is not None else 0) + 1
        try:
            snapshot = self._db.create_compiled_policy(
                child_id=child_id,
                policy_id=resolved.primary_policy_id,
                version=version,
                fingerprint=resolved.fingerprint,
                rules=[r.to_dict() for r in resolved.ordered()],
            )
        except IntegrityError:
            # A concurrent poll created this version first
            return self._db.latest_compiled_policy(child_id)
        logger.info("Compiled policy v%d created for child %s", version, child_id)
        return snapshot

    def poll(self, device_id: str, last_seen_version: int = 0) -> PollResult:
        """Answer a device poll.

        Raises:
            DeviceNotFound: If the device doesn't exist.
            DeviceRevoked: If the device was revoked.
        """
        device = self._active_device(device_id)
        snapshot = self.current_snapshot(device.child_id)
        current = snapshot.version if snapshot is not None else 0

        if snapshot is not None and snapshot.version > last_seen_version:
            self._db.update_device(device_id, status=DeviceStatus.STALE.value, seen=True)
            return PollResult(version=current, up_to_date=False, snapshot=snapshot)

        self._db.update_device(device_id, status=DeviceStatus.UP_TO_DATE.value, seen=True)
        return PollResult(version=current, up_to_date=True)

    def report(self, device_id: str, report_type: str, payload: dict[str, Any]) -> DeviceReport:
        """Store a device report.

        Acknowledgement reports carrying a ``policy_version`` also record
        which snapshot the device applied.

        Raises:
            DeviceNotFound: If the device doesn't exist.
            DeviceRevoked: If the device was revoked.
        """
        device = self._active_device(device_id)
        report = self._db.add_device_report(device_id, device.child_id, report_type, payload)

        version = payload.get("policy_version")
        if report_type in ACK_REPORT_TYPES and isinstance(version, int):
            latest = self._db.latest_compiled_policy(device.child_id)
            behind = latest is not None and version < latest.version
            self._db.update_device(
                device_id,
                status=(DeviceStatus.STALE if behind else DeviceStatus.UP_TO_DATE).value,
                last_policy_version=version,
                seen=True,
                acked=True,
            )
            logger.debug("Device %s acknowledged policy v%d", device_id, version)
        else:
            self._db.update_device(device_id, seen=True)
        return report

    def list_reports(self, device_id: str, limit: int = 50) -> list[DeviceReport]:
        self.get_device(device_id)
        return self._db.list_device_reports(device_id, limit)

    def out_of_sync(
        self, window: timedelta = DEFAULT_STALENESS, now: datetime | None = None
    ) -> list[Device]:
        """Devices behind their child's latest snapshot for longer than ``window``.

        Devices that never acknowledged are measured from registration.
        """
        cutoff = (now or datetime.now(UTC)) - window
        latest_versions: dict[str, int] = {}
        stale = []
        for device in self._db.list_devices():
            if device.status == DeviceStatus.REVOKED.value:
                continue
            if device.child_id not in latest_versions:
                snapshot = self._db.latest_compiled_policy(device.child_id)
                latest_versions[device.child_id] = snapshot.version if snapshot else 0
            if device.last_policy_version >= latest_versions[device.child_id]:
                continue
            reference = device.last_ack_at or device.created_at
            if reference < cutoff:
                stale.append(device)
        return stale

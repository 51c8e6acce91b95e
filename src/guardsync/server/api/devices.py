"""Device API routes.

Guardian routes manage registrations. The ``/api/device`` routes are
called by devices themselves and authenticate with the device API key
instead of the guardian token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from guardsync.core.errors import GuardSyncError
from guardsync.engine.engine import Engine
from guardsync.server.api.deps import (
    get_current_device,
    get_engine,
    http_error,
    require_api_token,
)
from guardsync.server.models import Device
from guardsync.server.schemas import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceReportRequest,
    DeviceReportResponse,
    DeviceResponse,
    PollResponse,
    device_to_response,
    poll_to_response,
    report_to_response,
)

router = APIRouter(prefix="/api", tags=["devices"], dependencies=[Depends(require_api_token)])
device_router = APIRouter(prefix="/api/device", tags=["device"])


# === Guardian routes ===


@router.post(
    "/children/{child_id}/devices",
    response_model=DeviceRegisterResponse,
    status_code=status.HTTP_201_CREATED,
)
def register_device(
    child_id: str,
    request: DeviceRegisterRequest,
    engine: Engine = Depends(get_engine),
) -> DeviceRegisterResponse:
    """Register a device; the returned API key is not shown again."""
    try:
        device, api_key = engine.devices.register(
            child_id,
            request.platform_id,
            request.device_name,
            device_model=request.device_model,
            os_version=request.os_version,
            app_version=request.app_version,
        )
    except GuardSyncError as e:
        raise http_error(e) from e
    return DeviceRegisterResponse(api_key=api_key, device=device_to_response(device))


@router.get("/children/{child_id}/devices", response_model=list[DeviceResponse])
def list_devices(child_id: str, engine: Engine = Depends(get_engine)) -> list[DeviceResponse]:
    try:
        devices = engine.devices.list_devices(child_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [device_to_response(d) for d in devices]


@router.get("/devices/out-of-sync", response_model=list[DeviceResponse])
def list_out_of_sync(engine: Engine = Depends(get_engine)) -> list[DeviceResponse]:
    """List devices that have not applied their child's latest snapshot in time."""
    devices = engine.devices.out_of_sync(engine.config.staleness_window)
    return [device_to_response(d) for d in devices]


@router.get("/devices/{device_id}", response_model=DeviceResponse)
def get_device(device_id: str, engine: Engine = Depends(get_engine)) -> DeviceResponse:
    try:
        device = engine.devices.get_device(device_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return device_to_response(device)


@router.delete("/devices/{device_id}", response_model=DeviceResponse)
def revoke_device(device_id: str, engine: Engine = Depends(get_engine)) -> DeviceResponse:
    """Revoke a device; its API key stops working immediately."""
    try:
        device = engine.devices.revoke(device_id)
    except GuardSyncError as e:
        raise http_error(e) from e
    return device_to_response(device)


@router.get("/devices/{device_id}/reports", response_model=list[DeviceReportResponse])
def list_reports(
    device_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    engine: Engine = Depends(get_engine),
) -> list[DeviceReportResponse]:
    try:
        reports = engine.devices.list_reports(device_id, limit)
    except GuardSyncError as e:
        raise http_error(e) from e
    return [report_to_response(r) for r in reports]


# === Device routes ===


@device_router.get("/policy", response_model=PollResponse)
def poll_policy(
    since: int = Query(default=0, ge=0),
    device: Device = Depends(get_current_device),
    engine: Engine = Depends(get_engine),
) -> PollResponse:
    """Get the latest policy snapshot if it is newer than ``since``."""
    try:
        result = engine.devices.poll(device.id, since)
    except GuardSyncError as e:
        raise http_error(e) from e
    return poll_to_response(result)


@device_router.post(
    "/reports",
    response_model=DeviceReportResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_report(
    request: DeviceReportRequest,
    device: Device = Depends(get_current_device),
    engine: Engine = Depends(get_engine),
) -> DeviceReportResponse:
    """Submit a device report; ``policy_ack`` reports record the applied version."""
    try:
        report = engine.devices.report(device.id, request.report_type, request.payload)
    except GuardSyncError as e:
        raise http_error(e) from e
    return report_to_response(report)

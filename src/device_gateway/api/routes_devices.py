"""Device routes: list, online list, detail, health status, live info, delete."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from device_gateway.api.deps import get_dispatcher, get_monitor, get_registry
from device_gateway.api.errors import http_error
from device_gateway.commands.dispatcher import CommandDispatcher
from device_gateway.devices.registry import CLOSE_NORMAL, ConnectionRegistry
from device_gateway.errors import GatewayError
from device_gateway.health.monitor import HealthMonitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])


# ---------- Response models ----------


class DeviceListResponse(BaseModel):
    success: bool = True
    total: int
    devices: list[dict[str, Any]]


class OnlineDeviceListResponse(BaseModel):
    success: bool = True
    online: int
    devices: list[dict[str, Any]]


class DeviceResponse(BaseModel):
    success: bool = True
    device: dict[str, Any]


class DeleteResponse(BaseModel):
    success: bool = True
    message: str


# ---------- Helpers ----------


def _device_or_404(registry: ConnectionRegistry, device_id: str) -> dict[str, Any]:
    conn = registry.get_device(device_id)
    if conn is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found or disconnected",
        )
    return conn.snapshot().to_dict()


# ---------- Endpoints ----------


@router.get("", response_model=DeviceListResponse)
async def list_devices(registry: ConnectionRegistry = Depends(get_registry)):
    """List every registered device."""
    devices = [d.to_dict() for d in registry.list_devices()]
    return DeviceListResponse(total=len(devices), devices=devices)


@router.get("/online", response_model=OnlineDeviceListResponse)
async def list_online_devices(registry: ConnectionRegistry = Depends(get_registry)):
    devices = [d.to_dict() for d in registry.get_online_devices()]
    return OnlineDeviceListResponse(online=len(devices), devices=devices)


@router.get("/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: str, registry: ConnectionRegistry = Depends(get_registry)):
    return DeviceResponse(device=_device_or_404(registry, device_id))


@router.get("/{device_id}/status")
async def get_device_status(device_id: str, monitor: HealthMonitor = Depends(get_monitor)):
    """Point-in-time liveness classification, without waiting for the next sweep."""
    health = monitor.get_device_status(device_id)
    return {"device_id": device_id, **health.to_dict()}


@router.get("/{device_id}/info", response_model=DeviceResponse)
async def get_device_info(
    device_id: str,
    registry: ConnectionRegistry = Depends(get_registry),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Ask the device for fresh info and merge it over the registry metadata."""
    device = _device_or_404(registry, device_id)
    try:
        info = await dispatcher.send_command(device_id, "device_info")
    except GatewayError as exc:
        raise http_error(exc) from exc
    if isinstance(info, dict):
        device.update(info)
    return DeviceResponse(device=device)


@router.delete("/{device_id}", response_model=DeleteResponse)
async def delete_device(device_id: str, registry: ConnectionRegistry = Depends(get_registry)):
    """Remove a device and close its connection."""
    if not await registry.evict(device_id, CLOSE_NORMAL, "Removed by operator"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
    logger.info("Device %s removed by operator", device_id)
    return DeleteResponse(message=f"Device {device_id} removed")

"""System routes: health check and runtime stats."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from device_gateway import __version__
from device_gateway.api.deps import get_gateway
from device_gateway.gateway import Gateway

router = APIRouter(tags=["system"])


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    devices: int


class StatsResponse(BaseModel):
    success: bool = True
    connected_devices: int
    pending_commands: int
    connections: int
    uptime_seconds: float


def _uptime(request: Request) -> float:
    return round(time.time() - request.app.state.start_time, 1)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, gateway: Gateway = Depends(get_gateway)):
    return HealthResponse(
        status="ok",
        version=__version__,
        uptime_seconds=_uptime(request),
        devices=gateway.registry.get_device_count(),
    )


@router.get("/api/stats", response_model=StatsResponse)
async def stats(request: Request, gateway: Gateway = Depends(get_gateway)):
    return StatsResponse(
        connected_devices=gateway.registry.get_device_count(),
        pending_commands=gateway.dispatcher.get_pending_count(),
        connections=len(gateway.hub),
        uptime_seconds=_uptime(request),
    )

"""FastAPI dependency injection providers."""
from __future__ import annotations

from fastapi import Request

from device_gateway.commands.dispatcher import CommandDispatcher
from device_gateway.devices.registry import ConnectionRegistry
from device_gateway.gateway import Gateway
from device_gateway.health.monitor import HealthMonitor


async def get_gateway(request: Request) -> Gateway:
    """Return the Gateway stored on app state by ``create_app``.

    In tests, this dependency can be overridden via ``dependency_overrides``.
    """
    return request.app.state.gateway


async def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.gateway.registry


async def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.gateway.dispatcher


async def get_monitor(request: Request) -> HealthMonitor:
    return request.app.state.gateway.monitor

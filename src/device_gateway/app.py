"""FastAPI application factory for the Device Gateway."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from device_gateway import __version__
from device_gateway.api.routes_commands import router as commands_router
from device_gateway.api.routes_devices import router as devices_router
from device_gateway.api.routes_system import router as system_router
from device_gateway.api.ws import router as ws_router
from device_gateway.config import Settings
from device_gateway.gateway import Gateway


def create_app(settings: Settings | None = None, gateway: Gateway | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Gateway settings. Defaults are used when omitted.
        gateway: Pre-built gateway (tests inject one with short timers).
            Built from *settings* when omitted.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or Settings()
    gateway = gateway or Gateway.from_settings(settings)
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await gateway.start()
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(
        title=settings.server.name,
        version=__version__,
        lifespan=lifespan,
    )

    app.state.start_time = start_time
    app.state.settings = settings
    app.state.gateway = gateway

    app.include_router(system_router)
    app.include_router(devices_router)
    app.include_router(commands_router)
    app.include_router(ws_router)

    return app

"""Gateway container: owns the registry, dispatcher, health monitor and hub.

One ``Gateway`` is built at startup and injected into the HTTP and
WebSocket layers through ``app.state``. ``close()`` drains pending
commands and closes every device connection.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from device_gateway.api.ws import ConnectionHub
from device_gateway.commands.dispatcher import DEFAULT_TIMEOUT, CommandDispatcher
from device_gateway.config import Settings
from device_gateway.devices.registry import CLOSE_GOING_AWAY, ConnectionRegistry
from device_gateway.health.monitor import (
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_TIMEOUT as DEFAULT_HEALTH_TIMEOUT,
    HealthMonitor,
)
from device_gateway.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 30.0


class Gateway:
    """Wires the device connection core together.

    The dispatcher is registered as a removal listener on the registry, so
    every path that removes a device (disconnect, eviction, replacement,
    admin delete) fails the commands still pending against it.
    """

    def __init__(
        self,
        command_timeout: float = DEFAULT_TIMEOUT,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = ConnectionRegistry(clock=clock)
        self.dispatcher = CommandDispatcher(self.registry, default_timeout=command_timeout)
        self.monitor = HealthMonitor(
            self.registry,
            check_interval=check_interval,
            timeout=health_timeout,
            clock=clock,
        )
        self.hub = ConnectionHub()
        self.ping_interval = ping_interval
        self.registry.add_removal_listener(self.dispatcher.clear_device_commands)

    @classmethod
    def from_settings(cls, settings: Settings) -> Gateway:
        return cls(
            command_timeout=settings.commands.default_timeout,
            check_interval=settings.health.check_interval,
            health_timeout=settings.health.timeout,
            ping_interval=settings.websocket.ping_interval,
        )

    async def start(self) -> None:
        await self.monitor.start()

    async def close(self) -> None:
        """Stop the monitor, fail pending commands, close device connections."""
        await self.monitor.stop()

        drained = self.dispatcher.cancel_all()
        if drained:
            logger.info("Drained %d pending commands", drained)

        for device_id, _ in self.registry.handles():
            await self.registry.evict(device_id, CLOSE_GOING_AWAY, "Server shutting down")
        logger.info("Gateway closed")

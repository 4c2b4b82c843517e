"""Health monitor -- evicts devices whose liveness signal has gone stale.

Liveness is the absence of a signal rather than an event, so the monitor
runs a periodic sweep instead of reacting to messages. A device is judged
by the later of its last heartbeat and its last inbound message; once that
is older than ``timeout`` seconds the device is evicted: its connection is
closed with reason "Heartbeat timeout" and its registry entry removed, which
also fails any commands still pending against it.

With the defaults (30s sweep, 90s timeout) a device may miss two sweeps'
worth of heartbeats before it is evicted.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from device_gateway.devices.registry import CLOSE_GOING_AWAY, ConnectionRegistry
from device_gateway.models import DeviceHealth, HealthStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0
DEFAULT_TIMEOUT = 90.0
EVICTION_REASON = "Heartbeat timeout"


class HealthMonitor:
    """Periodic liveness sweep over the connection registry.

    Parameters
    ----------
    registry:
        The registry to enumerate and evict from.
    check_interval:
        Seconds between sweeps.
    timeout:
        Seconds of silence after which a device is considered dead.
        Must be greater than ``check_interval``.
    clock:
        Callable returning the current aware UTC datetime. Overridden in tests.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if timeout <= check_interval:
            raise ValueError(
                f"timeout ({timeout}s) must be greater than check_interval ({check_interval}s)"
            )
        self._registry = registry
        self._check_interval = check_interval
        self._timeout = timeout
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()

    @property
    def check_interval(self) -> float:
        return self._check_interval

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def is_running(self) -> bool:
        """Whether the sweep task is currently running."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep as a background asyncio task."""
        if self.is_running:
            return
        self._shutdown.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "Health monitor started (check_interval=%gs, timeout=%gs)",
            self._check_interval,
            self._timeout,
        )

    async def stop(self) -> None:
        """Stop the sweep. Safe to call when not running."""
        if self._task is None:
            return
        self._shutdown.set()
        try:
            await asyncio.wait_for(self._task, timeout=10)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            pass
        self._task = None
        logger.info("Health monitor stopped")

    async def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._check_interval)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.check_device_health()
            except Exception:
                logger.exception("Health sweep failed")

    async def check_device_health(self) -> list[str]:
        """Run one sweep. Returns the ids of evicted devices."""
        devices = self._registry.list_devices()
        evicted: list[str] = []

        for device in devices:
            # Earlier evictions await socket closes; the device may have
            # re-registered or sent a signal since the snapshot was taken.
            conn = self._registry.get_device(device.device_id)
            if conn is None:
                continue
            last_activity = conn.metadata.last_activity
            if last_activity is None:
                continue

            elapsed = (self._clock() - last_activity).total_seconds()
            if elapsed <= self._timeout:
                continue

            logger.warning(
                "Device %s timed out: last signal %.1fs ago (threshold %gs)",
                device.device_id,
                elapsed,
                self._timeout,
            )
            if await self._registry.evict(
                device.device_id, CLOSE_GOING_AWAY, EVICTION_REASON, handle=conn.handle
            ):
                evicted.append(device.device_id)

        if evicted:
            logger.info("Cleaned up %d dead connection(s)", len(evicted))
        if devices:
            logger.debug("Active devices: %d", len(devices) - len(evicted))
        return evicted

    def get_device_status(self, device_id: str) -> DeviceHealth:
        """Classify *device_id* now, using the same threshold as the sweep."""
        conn = self._registry.get_device(device_id)
        if conn is None:
            return DeviceHealth(status=HealthStatus.OFFLINE, reason="not_registered")

        last_activity = conn.metadata.last_activity
        if last_activity is None:
            return DeviceHealth(status=HealthStatus.UNKNOWN, reason="no_heartbeat_data")

        elapsed = (self._clock() - last_activity).total_seconds()
        if elapsed > self._timeout:
            return DeviceHealth(
                status=HealthStatus.OFFLINE,
                reason="timeout",
                last_heartbeat=last_activity,
                elapsed=elapsed,
            )
        return DeviceHealth(
            status=HealthStatus.ONLINE,
            last_heartbeat=last_activity,
            elapsed=elapsed,
        )

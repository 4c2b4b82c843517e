"""Connection registry: device id -> live connection handle and metadata.

The registry is the only owner of connection handles while a device is
registered. At most one entry exists per device id; registering a second
connection for the same id closes the first before replacing it.

Every removal of an entry (delete, eviction, replacement on re-register)
is reported synchronously to the removal listeners in the same step as the
table mutation, so pending-command cleanup always completes before the id
can be registered again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from device_gateway.models import (
    ConnectionHandle,
    DeviceConnection,
    DeviceMetadata,
    DeviceSnapshot,
    DeviceState,
    utcnow,
)

logger = logging.getLogger(__name__)

# Type alias for removal listeners
RemovalListener = Callable[[str], None]

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001


class ConnectionRegistry:
    """In-memory table of registered devices.

    Parameters
    ----------
    clock:
        Callable returning the current aware UTC datetime. Overridden in tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._devices: dict[str, DeviceConnection] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._removal_listeners: list[RemovalListener] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_removal_listener(self, callback: RemovalListener) -> None:
        """Call *callback(device_id)* whenever an entry leaves the table."""
        self._removal_listeners.append(callback)

    def remove_removal_listener(self, callback: RemovalListener) -> None:
        self._removal_listeners = [cb for cb in self._removal_listeners if cb is not callback]

    def _notify_removed(self, device_id: str) -> None:
        for callback in list(self._removal_listeners):
            try:
                callback(device_id)
            except Exception:
                logger.exception("Removal listener failed for device %s", device_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def register(
        self,
        device_id: str,
        handle: ConnectionHandle,
        initial_metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Bind *device_id* to *handle*, replacing any previous connection."""
        async with self._lock:
            existing = self._devices.get(device_id)
            if existing is not None and existing.handle is not handle:
                logger.info("Device %s already registered - closing old connection", device_id)
                await _close_quietly(existing.handle, CLOSE_NORMAL, "Replaced by new connection")

            now = self._clock()
            metadata = DeviceMetadata(connected_at=now, last_seen=now)
            if initial_metadata:
                metadata.merge(initial_metadata)
            metadata.status = DeviceState.ONLINE
            metadata.last_seen = now

            # Re-read: the old connection may have cleaned itself up while closing.
            previous = self._devices.pop(device_id, None)
            if previous is not None and previous.handle is not handle:
                self._notify_removed(device_id)

            self._devices[device_id] = DeviceConnection(
                device_id=device_id,
                handle=handle,
                metadata=metadata,
            )
            logger.info(
                "Device registered: %s (total devices: %d)", device_id, len(self._devices)
            )

    def update_metadata(self, device_id: str, partial: Mapping[str, Any]) -> None:
        """Merge *partial* into the device's metadata and refresh ``last_seen``.

        Unknown ids are ignored: inbound signals may race with eviction.
        """
        conn = self._devices.get(device_id)
        if conn is None:
            return
        conn.metadata.merge(partial)
        conn.metadata.last_seen = self._clock()

    def record_heartbeat(self, device_id: str) -> None:
        """Refresh both ``last_heartbeat`` and ``last_seen``. No-op for unknown ids."""
        self.update_metadata(device_id, {"last_heartbeat": self._clock()})

    def delete_device(self, device_id: str, handle: ConnectionHandle | None = None) -> bool:
        """Remove the entry for *device_id*. Does not close the handle.

        When *handle* is given, the entry is only removed if it is still
        bound to that handle.
        """
        conn = self._devices.get(device_id)
        if conn is None:
            return False
        if handle is not None and conn.handle is not handle:
            return False
        del self._devices[device_id]
        self._notify_removed(device_id)
        logger.info("Device removed: %s", device_id)
        return True

    async def evict(
        self,
        device_id: str,
        code: int = CLOSE_GOING_AWAY,
        reason: str = "",
        handle: ConnectionHandle | None = None,
    ) -> bool:
        """Remove *device_id* and close its connection.

        When *handle* is given, only an entry still bound to that handle is
        evicted. Returns False if nothing was evicted.
        """
        conn = self._devices.get(device_id)
        if conn is None:
            return False
        if handle is not None and conn.handle is not handle:
            return False
        self.delete_device(device_id, handle=conn.handle)
        await _close_quietly(conn.handle, code, reason)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_device(self, device_id: str) -> DeviceConnection | None:
        return self._devices.get(device_id)

    def is_online(self, device_id: str) -> bool:
        conn = self._devices.get(device_id)
        return conn is not None and conn.metadata.status is DeviceState.ONLINE

    def list_devices(self) -> list[DeviceSnapshot]:
        """Snapshot of every registered device, taken now."""
        return [conn.snapshot() for conn in self._devices.values()]

    def get_online_devices(self) -> list[DeviceSnapshot]:
        return [
            conn.snapshot()
            for conn in self._devices.values()
            if conn.metadata.status is DeviceState.ONLINE
        ]

    def get_device_count(self) -> int:
        return len(self._devices)

    def handles(self) -> list[tuple[str, ConnectionHandle]]:
        """Return (device_id, handle) pairs for shutdown."""
        return [(device_id, conn.handle) for device_id, conn in self._devices.items()]


async def _close_quietly(handle: ConnectionHandle, code: int, reason: str) -> None:
    """Best-effort close; failures are logged, never raised."""
    try:
        if handle.is_open:
            await handle.close(code, reason)
    except Exception as exc:
        logger.warning("Error closing connection: %s", exc)

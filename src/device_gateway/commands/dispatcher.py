"""Command dispatcher -- request/response semantics over a one-way channel.

Commands are written to a device as ``{id, action, payload}`` envelopes and
correlated with replies purely by id (``replyTo``), so any number of
commands may be outstanding against one device and replies may arrive in
any order. The pending table is the only source of truth.

Each pending command is resolved exactly once, by whichever of these fires
first:

  - a reply (success or failure) via ``handle_response``
  - its timeout timer
  - ``clear_device_commands`` after a disconnect or eviction
  - cancellation of the awaiting caller

Every path pops the entry from the table and resolves its future in one
synchronous step, so the losing paths see a lookup miss and do nothing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from device_gateway.devices.registry import ConnectionRegistry
from device_gateway.errors import (
    CommandFailed,
    CommandTimeout,
    DeviceDisconnected,
    DeviceNotFound,
    DeviceOffline,
    SendFailed,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class PendingCommand:
    """Server-side bookkeeping for one in-flight command."""

    command_id: str
    device_id: str
    action: str
    future: asyncio.Future[Any]
    sent_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


class CommandDispatcher:
    """Sends commands to registered devices and waits for correlated replies.

    Parameters
    ----------
    registry:
        Registry used to resolve a device id to its live connection.
    default_timeout:
        Seconds to wait for a reply when ``send_command`` is given no timeout.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        default_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingCommand] = {}
        self._counter = 0

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def _generate_command_id(self) -> str:
        self._counter += 1
        return f"cmd_{int(time.time() * 1000)}_{self._counter}"

    async def send_command(
        self,
        device_id: str,
        action: str,
        payload: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send *action* to *device_id* and return the reply's ``data``.

        Raises
        ------
        DeviceNotFound
            No registry entry for the device.
        DeviceOffline
            The device's connection is not open.
        SendFailed
            Writing the envelope to the connection raised.
        CommandTimeout
            No reply within *timeout* seconds.
        CommandFailed
            The device replied with a non-success status.
        DeviceDisconnected
            The device disconnected or was evicted while the command was pending.
        """
        conn = self._registry.get_device(device_id)
        if conn is None:
            raise DeviceNotFound(device_id)
        if not conn.handle.is_open:
            raise DeviceOffline(device_id)

        timeout = self._default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        command_id = self._generate_command_id()
        envelope = {"id": command_id, "action": action, "payload": payload or {}}

        pending = PendingCommand(
            command_id=command_id,
            device_id=device_id,
            action=action,
            future=loop.create_future(),
        )
        pending.timeout_handle = loop.call_later(timeout, self._expire, command_id, timeout)
        self._pending[command_id] = pending

        try:
            await conn.handle.send_json(envelope)
        except Exception as exc:
            if self._pending.pop(command_id, None) is not None:
                pending.cancel_timer()
            elif pending.future.done() and not pending.future.cancelled():
                # Resolved elsewhere while the write was in flight; SendFailed wins.
                pending.future.exception()
            raise SendFailed(
                f"Failed to send command {command_id} to {device_id}: {exc}",
                device_id,
                command_id,
            ) from exc

        logger.info("Command sent: %s -> %s (%s)", command_id, device_id, action)

        try:
            return await pending.future
        finally:
            # Only reached with the entry still present if the caller was cancelled.
            if self._pending.pop(command_id, None) is not None:
                pending.cancel_timer()
                logger.info("Command %s abandoned by caller", command_id)

    def handle_response(self, envelope: dict[str, Any]) -> None:
        """Resolve the pending command named by ``envelope["replyTo"]``.

        Replies without ``replyTo``, or for ids that already resolved, timed
        out or never existed, are logged and ignored.
        """
        reply_to = envelope.get("replyTo")
        if not reply_to:
            logger.warning("Received response without replyTo field")
            return

        pending = self._pending.pop(reply_to, None)
        if pending is None:
            logger.warning("Received response for unknown command: %s", reply_to)
            return

        pending.cancel_timer()
        duration_ms = (time.monotonic() - pending.sent_at) * 1000
        status = envelope.get("status")
        logger.info("Response received: %s (%.0fms) - %s", reply_to, duration_ms, status)

        if pending.future.done():
            return
        if status == "success":
            pending.future.set_result(envelope.get("data"))
        else:
            pending.future.set_exception(
                CommandFailed(
                    envelope.get("error") or "Command failed",
                    pending.device_id,
                    pending.command_id,
                )
            )

    def clear_device_commands(self, device_id: str) -> int:
        """Fail every pending command for *device_id* with ``DeviceDisconnected``."""
        matching = [cid for cid, p in self._pending.items() if p.device_id == device_id]
        for command_id in matching:
            pending = self._pending.pop(command_id)
            pending.cancel_timer()
            if not pending.future.done():
                pending.future.set_exception(DeviceDisconnected(device_id, command_id))
        if matching:
            logger.info("Cleared %d pending commands for %s", len(matching), device_id)
        return len(matching)

    def cancel_all(self) -> int:
        """Fail every pending command; used when the gateway shuts down."""
        device_ids = {p.device_id for p in self._pending.values()}
        return sum(self.clear_device_commands(device_id) for device_id in device_ids)

    def get_pending_count(self) -> int:
        return len(self._pending)

    def _expire(self, command_id: str, timeout: float) -> None:
        pending = self._pending.pop(command_id, None)
        if pending is None:
            return
        pending.timeout_handle = None
        logger.warning("Command %s to %s timed out after %gs", command_id, pending.device_id, timeout)
        if not pending.future.done():
            pending.future.set_exception(
                CommandTimeout(pending.device_id, command_id, timeout)
            )

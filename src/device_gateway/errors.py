"""Failure conditions surfaced by command dispatch.

The registry never raises these: a missing device is a normal state there.
Every error carries the target ``device_id`` so callers can report it.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base error for device gateway failures."""

    def __init__(self, message: str, device_id: str, command_id: str | None = None) -> None:
        super().__init__(message)
        self.device_id = device_id
        self.command_id = command_id


class DeviceNotFound(GatewayError):
    """Raised when no registry entry exists for the device."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} not found", device_id)


class DeviceOffline(GatewayError):
    """Raised when the device is registered but its connection is not open."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} is offline", device_id)


class SendFailed(GatewayError):
    """Raised when writing the command envelope to the transport fails."""


class CommandTimeout(GatewayError):
    """Raised when no reply arrives within the command's timeout."""

    def __init__(self, device_id: str, command_id: str, timeout: float) -> None:
        super().__init__(
            f"Command {command_id} timed out after {timeout:g}s", device_id, command_id
        )
        self.timeout = timeout


class CommandFailed(GatewayError):
    """Raised when the device replies with a non-success status."""


class DeviceDisconnected(GatewayError):
    """Raised for pending commands invalidated by a disconnect or eviction."""

    def __init__(self, device_id: str, command_id: str | None = None) -> None:
        super().__init__(f"Device {device_id} disconnected", device_id, command_id)

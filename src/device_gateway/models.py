"""Domain models for the Device Gateway.

A device is identified by the opaque id it reports when it registers. The
registry binds that id to a live connection handle plus typed metadata;
device-reported free-form fields live in a separate ``extra`` mapping so the
liveness timestamps keep their types.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DeviceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class HealthStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Transport seam
# ---------------------------------------------------------------------------

@runtime_checkable
class ConnectionHandle(Protocol):
    """The live transport bound to a registered device."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

# Keys handled by DeviceMetadata itself; everything else goes to ``extra``.
RESERVED_FIELDS = frozenset(
    {"device_id", "status", "connected_at", "last_seen", "last_heartbeat"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Accept a datetime or an ISO-8601 string; return an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class DeviceMetadata:
    """Typed liveness fields plus device-reported extras."""

    connected_at: datetime
    last_seen: datetime
    status: DeviceState = DeviceState.ONLINE
    last_heartbeat: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, partial: Mapping[str, Any]) -> None:
        """Merge *partial* field by field; last writer wins per key.

        ``connected_at`` is set once at registration and never merged.
        Unparseable timestamps and unknown status values are ignored.
        """
        for key, value in partial.items():
            if key == "status":
                try:
                    self.status = DeviceState(value)
                except ValueError:
                    continue
            elif key == "last_seen":
                ts = parse_timestamp(value)
                if ts is not None:
                    self.last_seen = ts
            elif key == "last_heartbeat":
                ts = parse_timestamp(value)
                if ts is not None:
                    self.last_heartbeat = ts
            elif key in RESERVED_FIELDS:
                continue
            else:
                self.extra[key] = value

    @property
    def last_activity(self) -> datetime | None:
        """The most recent of ``last_heartbeat`` and ``last_seen``."""
        candidates = [ts for ts in (self.last_heartbeat, self.last_seen) if ts is not None]
        return max(candidates) if candidates else None


# ---------------------------------------------------------------------------
# Registry entries
# ---------------------------------------------------------------------------

@dataclass
class DeviceConnection:
    """The live binding of a device id to its transport handle."""

    device_id: str
    handle: ConnectionHandle
    metadata: DeviceMetadata

    def snapshot(self) -> DeviceSnapshot:
        return DeviceSnapshot(
            device_id=self.device_id,
            status=self.metadata.status,
            connected_at=self.metadata.connected_at,
            last_seen=self.metadata.last_seen,
            last_heartbeat=self.metadata.last_heartbeat,
            extra=MappingProxyType(copy.deepcopy(self.metadata.extra)),
        )


@dataclass(frozen=True)
class DeviceSnapshot:
    """Point-in-time copy of a registry entry; later mutations do not leak in."""

    device_id: str
    status: DeviceState
    connected_at: datetime
    last_seen: datetime
    last_heartbeat: datetime | None = None
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def last_activity(self) -> datetime | None:
        candidates = [ts for ts in (self.last_heartbeat, self.last_seen) if ts is not None]
        return max(candidates) if candidates else None

    def to_dict(self) -> dict[str, Any]:
        data = copy.deepcopy(dict(self.extra))
        data.update({
            "device_id": self.device_id,
            "status": self.status.value,
            "connected_at": _isoformat(self.connected_at),
            "last_seen": _isoformat(self.last_seen),
            "last_heartbeat": _isoformat(self.last_heartbeat),
        })
        return data


# ---------------------------------------------------------------------------
# Health classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeviceHealth:
    """On-demand liveness classification for one device."""

    status: HealthStatus
    reason: str | None = None
    last_heartbeat: datetime | None = None
    elapsed: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.last_heartbeat is not None:
            data["last_heartbeat"] = self.last_heartbeat.isoformat()
        if self.elapsed is not None:
            data["elapsed"] = self.elapsed
        return data

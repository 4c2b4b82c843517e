"""WebSocket endpoint: device registration, heartbeats, replies, media relay.

Every accepted connection (devices and operator dashboards alike) joins the
gateway's connection hub so broadcast-class messages can be relayed to it.
A connection becomes a device once it sends ``register``.

  Device -> Gateway:
    register, heartbeat, pong, device_info, disconnect,
    call_state, mic_state, camera_state,
    mic_chunk, camera_frame, screen_frame, accessibility_status,
    command replies ({"replyTo": ...})

  Gateway -> Device:
    registered, heartbeat_ack, ping, disconnect_ack, error,
    command envelopes ({"id", "action", "payload"})
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from device_gateway.models import RESERVED_FIELDS

if TYPE_CHECKING:
    from device_gateway.gateway import Gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

# Relayed verbatim to every other connection.
MEDIA_TYPES = frozenset({"mic_chunk", "camera_frame", "screen_frame"})
# Device-pushed state merged into metadata under the message type.
STATE_TYPES = frozenset({"call_state", "mic_state", "camera_state"})


class WebSocketHandle:
    """Adapts a Starlette WebSocket to the registry's connection handle."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws

    @property
    def is_open(self) -> bool:
        return (
            self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict[str, Any]) -> None:
        await self.ws.send_json(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.ws.close(code=code, reason=reason)


class ConnectionHub:
    """Every open connection, for relaying broadcast-class messages."""

    def __init__(self) -> None:
        self._connections: set[WebSocketHandle] = set()

    def add(self, handle: WebSocketHandle) -> None:
        self._connections.add(handle)

    def discard(self, handle: WebSocketHandle) -> None:
        self._connections.discard(handle)

    def __len__(self) -> int:
        return len(self._connections)

    async def broadcast(self, message: dict[str, Any], exclude: Any = None) -> int:
        """Send *message* to every open connection except *exclude*.

        Receivers whose send fails are dropped from the hub. Returns the
        number of successful deliveries.
        """
        targets = [h for h in list(self._connections) if h is not exclude and h.is_open]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(h.send_json(message) for h in targets), return_exceptions=True
        )
        delivered = 0
        for handle, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.debug("Broadcast to connection failed: %s", result)
                self._connections.discard(handle)
            else:
                delivered += 1
        return delivered


async def safe_send(handle: WebSocketHandle, message: dict[str, Any]) -> bool:
    """Send without raising. Returns False if the connection is closed or the send fails."""
    try:
        if handle.is_open:
            await handle.send_json(message)
            return True
    except Exception as exc:
        logger.debug("safe_send failed: %s", exc)
    return False


async def _ping_loop(handle: WebSocketHandle, device_id: str, interval: float) -> None:
    """Send ``{"type": "ping"}`` every *interval* seconds until a send fails."""
    while True:
        await asyncio.sleep(interval)
        if not await safe_send(handle, {"type": "ping"}):
            logger.info("Ping failed for %s, stopping keepalive", device_id)
            return


class DeviceSession:
    """Per-connection message router."""

    def __init__(self, gateway: Gateway, handle: WebSocketHandle) -> None:
        self.gateway = gateway
        self.handle = handle
        self.device_id: str | None = None
        self._ping_task: asyncio.Task[None] | None = None

    async def on_text(self, raw: str) -> None:
        """Parse one inbound frame; malformed frames are logged and dropped."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.warning("Dropping malformed message from %s: %s", self.device_id or "unknown", exc)
            return
        if not isinstance(data, dict):
            logger.warning("Dropping non-object message from %s", self.device_id or "unknown")
            return
        await self.dispatch(data)

    async def dispatch(self, data: dict[str, Any]) -> None:
        # Some clients send 'action' where dashboards expect 'type'
        if data.get("action") and not data.get("type"):
            data["type"] = data["action"]
        if not data.get("deviceId") and self.device_id:
            data["deviceId"] = self.device_id

        msg_type = data.get("type")
        registry = self.gateway.registry

        if msg_type == "identify":
            return

        if msg_type == "register":
            await self._register(data)
            return

        # Any inbound frame from a registered device counts as a sign of life.
        if self.device_id:
            registry.update_metadata(self.device_id, {})

        if msg_type == "heartbeat":
            if self.device_id:
                registry.record_heartbeat(self.device_id)
                await safe_send(self.handle, {"type": "heartbeat_ack"})
            return

        if msg_type == "pong":
            return

        if msg_type == "device_info":
            if self.device_id:
                info = data.get("info") or {}
                if isinstance(info, dict):
                    registry.update_metadata(
                        self.device_id,
                        {k: v for k, v in info.items() if k not in RESERVED_FIELDS},
                    )
            return

        if msg_type in MEDIA_TYPES and self.device_id:
            await self.gateway.hub.broadcast(data, exclude=self.handle)
            return

        if msg_type == "disconnect" and self.device_id:
            logger.info("Device %s requesting clean disconnect", self.device_id)
            registry.delete_device(self.device_id, handle=self.handle)
            await safe_send(self.handle, {"type": "disconnect_ack"})
            return

        if data.get("replyTo"):
            self.gateway.dispatcher.handle_response(data)
            return

        if msg_type in STATE_TYPES and self.device_id:
            registry.update_metadata(self.device_id, {msg_type: data.get("state", data)})
            return

        if msg_type == "accessibility_status" and self.device_id:
            await self.gateway.hub.broadcast(data, exclude=self.handle)
            return

        logger.debug("Unknown message type from %s: %s", self.device_id or "unknown", msg_type)

    async def _register(self, data: dict[str, Any]) -> None:
        device_id = data.get("deviceId")
        if not device_id or not isinstance(device_id, str):
            await safe_send(self.handle, {"type": "error", "message": "Missing deviceId"})
            return

        if self.device_id and self.device_id != device_id:
            self.gateway.registry.delete_device(self.device_id, handle=self.handle)

        metadata = data.get("metadata")
        await self.gateway.registry.register(
            device_id, self.handle, metadata if isinstance(metadata, dict) else None
        )
        self.device_id = device_id

        await safe_send(self.handle, {
            "type": "registered",
            "deviceId": device_id,
            "message": "Successfully registered",
        })

        self._stop_ping()
        self._ping_task = asyncio.create_task(
            _ping_loop(self.handle, device_id, self.gateway.ping_interval)
        )

    def _stop_ping(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None

    def cleanup(self) -> None:
        """Release everything this connection holds; safe to call more than once."""
        self._stop_ping()
        self.gateway.hub.discard(self.handle)
        if self.device_id:
            if self.gateway.registry.delete_device(self.device_id, handle=self.handle):
                logger.info("Device %s removed from registry", self.device_id)


@router.websocket("/")
@router.websocket("/ws")
async def device_ws(ws: WebSocket) -> None:
    """WebSocket endpoint for devices and operator dashboards."""
    gateway: Gateway = ws.app.state.gateway
    await ws.accept()

    handle = WebSocketHandle(ws)
    session = DeviceSession(gateway, handle)
    gateway.hub.add(handle)
    client = f"{ws.client.host}:{ws.client.port}" if ws.client else "unknown"
    logger.info("New connection from %s", client)

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is None:
                continue
            try:
                await session.on_text(raw)
            except Exception:
                logger.exception("Error handling message from %s", session.device_id or client)
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.error("Connection error for %s: %s", session.device_id or client, exc)
    finally:
        logger.info("Client disconnected: %s", session.device_id or client)
        session.cleanup()

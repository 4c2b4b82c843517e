# tests/integration/conftest.py
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from device_gateway.app import create_app
from device_gateway.config import Settings
from device_gateway.gateway import Gateway


@pytest.fixture
def gateway(clock):
    """Gateway on a manual clock, with pings far enough apart to stay out of the way."""
    return Gateway(
        command_timeout=5,
        check_interval=30,
        health_timeout=90,
        ping_interval=3600,
        clock=clock,
    )


@pytest.fixture
def app(gateway):
    return create_app(Settings(), gateway=gateway)


@pytest.fixture
def client(app):
    """TestClient with the lifespan running, so HTTP and WS share one event loop."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def executor():
    """Runs blocking HTTP calls while the test thread plays the device."""
    with ThreadPoolExecutor(max_workers=2) as pool:
        yield pool


def register(ws, device_id, metadata=None):
    """Register *ws* as *device_id* and return the ``registered`` reply."""
    message = {"type": "register", "deviceId": device_id}
    if metadata is not None:
        message["metadata"] = metadata
    ws.send_json(message)
    reply = ws.receive_json()
    assert reply["type"] == "registered"
    return reply


def sync(ws):
    """Round-trip a heartbeat so every earlier frame from *ws* has been handled."""
    ws.send_json({"type": "heartbeat"})
    assert ws.receive_json() == {"type": "heartbeat_ack"}

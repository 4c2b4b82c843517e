"""Unit tests for the connection registry."""

from __future__ import annotations

import pytest

from device_gateway.devices.registry import ConnectionRegistry
from device_gateway.models import DeviceState
from tests.conftest import FakeClock, FakeHandle


@pytest.fixture
def registry(clock: FakeClock) -> ConnectionRegistry:
    return ConnectionRegistry(clock=clock)


class TestRegister:

    async def test_register_creates_online_entry(self, registry, clock) -> None:
        handle = FakeHandle()
        await registry.register("dev-1", handle, {"model": "Pixel 8"})

        conn = registry.get_device("dev-1")
        assert conn is not None
        assert conn.handle is handle
        assert conn.metadata.status is DeviceState.ONLINE
        assert conn.metadata.connected_at == clock.now
        assert conn.metadata.last_seen == clock.now
        assert conn.metadata.last_heartbeat is None
        assert conn.metadata.extra == {"model": "Pixel 8"}
        assert registry.get_device_count() == 1

    async def test_initial_metadata_cannot_override_status_or_timestamps(self, registry, clock) -> None:
        await registry.register(
            "dev-1",
            FakeHandle(),
            {"status": "offline", "last_seen": "2020-01-01T00:00:00Z", "connected_at": "2020-01-01T00:00:00Z"},
        )
        meta = registry.get_device("dev-1").metadata
        assert meta.status is DeviceState.ONLINE
        assert meta.last_seen == clock.now
        assert meta.connected_at == clock.now

    async def test_reregister_closes_previous_handle(self, registry) -> None:
        h1, h2 = FakeHandle(), FakeHandle()
        await registry.register("dev-1", h1)
        await registry.register("dev-1", h2)

        assert registry.get_device_count() == 1
        assert registry.get_device("dev-1").handle is h2
        assert h1.closed
        assert h1.close_code == 1000
        assert h1.close_reason == "Replaced by new connection"
        assert not h2.closed

    async def test_reregister_survives_close_failure(self, registry) -> None:
        h1, h2 = FakeHandle(fail_close=True), FakeHandle()
        await registry.register("dev-1", h1)
        await registry.register("dev-1", h2)
        assert registry.get_device("dev-1").handle is h2

    async def test_reregister_same_handle_does_not_close(self, registry) -> None:
        handle = FakeHandle()
        await registry.register("dev-1", handle)
        await registry.register("dev-1", handle)
        assert not handle.closed
        assert registry.get_device_count() == 1

    async def test_reregister_resets_connected_at(self, registry, clock) -> None:
        await registry.register("dev-1", FakeHandle())
        clock.advance(60)
        await registry.register("dev-1", FakeHandle())
        assert registry.get_device("dev-1").metadata.connected_at == clock.now


class TestUpdateMetadata:

    async def test_merge_keeps_unrelated_fields(self, registry, clock) -> None:
        await registry.register("dev-1", FakeHandle(), {"model": "Pixel 8", "battery": 50})
        clock.advance(5)
        registry.update_metadata("dev-1", {"battery": 42, "call_state": "idle"})

        meta = registry.get_device("dev-1").metadata
        assert meta.extra == {"model": "Pixel 8", "battery": 42, "call_state": "idle"}
        assert meta.last_seen == clock.now

    async def test_connected_at_is_set_once(self, registry, clock) -> None:
        await registry.register("dev-1", FakeHandle())
        registered_at = clock.now
        clock.advance(5)
        registry.update_metadata("dev-1", {"connected_at": clock.now})
        assert registry.get_device("dev-1").metadata.connected_at == registered_at

    def test_unknown_device_is_noop(self, registry) -> None:
        registry.update_metadata("ghost", {"battery": 1})
        assert registry.get_device("ghost") is None

    async def test_record_heartbeat(self, registry, clock) -> None:
        await registry.register("dev-1", FakeHandle())
        clock.advance(10)
        registry.record_heartbeat("dev-1")
        meta = registry.get_device("dev-1").metadata
        assert meta.last_heartbeat == clock.now
        assert meta.last_seen == clock.now


class TestQueries:

    def test_get_missing_device_returns_none(self, registry) -> None:
        assert registry.get_device("nope") is None
        assert registry.is_online("nope") is False

    async def test_list_devices_is_a_snapshot(self, registry) -> None:
        await registry.register("dev-1", FakeHandle(), {"battery": 80})
        snapshot = registry.list_devices()

        registry.update_metadata("dev-1", {"battery": 10})
        await registry.register("dev-2", FakeHandle())

        assert len(snapshot) == 1
        assert snapshot[0].device_id == "dev-1"
        assert snapshot[0].extra["battery"] == 80

    async def test_snapshot_to_dict(self, registry) -> None:
        await registry.register("dev-1", FakeHandle(), {"model": "X"})
        data = registry.list_devices()[0].to_dict()
        assert data["device_id"] == "dev-1"
        assert data["status"] == "online"
        assert data["model"] == "X"
        assert data["last_heartbeat"] is None
        assert isinstance(data["connected_at"], str)

    async def test_get_online_devices_filters_status(self, registry) -> None:
        await registry.register("dev-1", FakeHandle())
        await registry.register("dev-2", FakeHandle())
        registry.update_metadata("dev-2", {"status": "offline"})

        online = registry.get_online_devices()
        assert [d.device_id for d in online] == ["dev-1"]
        assert registry.is_online("dev-1")
        assert not registry.is_online("dev-2")


class TestDelete:

    async def test_delete_existing(self, registry) -> None:
        handle = FakeHandle()
        await registry.register("dev-1", handle)
        assert registry.delete_device("dev-1") is True
        assert registry.get_device("dev-1") is None
        assert registry.get_device_count() == 0
        assert not handle.closed

    def test_delete_missing(self, registry) -> None:
        assert registry.delete_device("dev-1") is False

    async def test_delete_with_stale_handle_keeps_new_registration(self, registry) -> None:
        old, new = FakeHandle(), FakeHandle()
        await registry.register("dev-1", old)
        await registry.register("dev-1", new)

        assert registry.delete_device("dev-1", handle=old) is False
        assert registry.get_device("dev-1").handle is new

    async def test_evict_closes_and_removes(self, registry) -> None:
        handle = FakeHandle()
        await registry.register("dev-1", handle)

        assert await registry.evict("dev-1", 1001, "Heartbeat timeout") is True
        assert registry.get_device("dev-1") is None
        assert handle.close_code == 1001
        assert handle.close_reason == "Heartbeat timeout"

    async def test_evict_with_stale_handle_keeps_new_registration(self, registry) -> None:
        old, new = FakeHandle(), FakeHandle()
        await registry.register("dev-1", old)
        await registry.register("dev-1", new)

        assert await registry.evict("dev-1", 1001, "Heartbeat timeout", handle=old) is False
        assert registry.get_device("dev-1").handle is new
        assert not new.closed

    async def test_evict_missing(self, registry) -> None:
        assert await registry.evict("dev-1") is False


class TestRemovalListeners:

    async def test_listener_called_on_delete(self, registry) -> None:
        removed: list[str] = []
        registry.add_removal_listener(removed.append)
        await registry.register("dev-1", FakeHandle())
        registry.delete_device("dev-1")
        registry.delete_device("dev-1")
        assert removed == ["dev-1"]

    async def test_listener_called_on_replacement(self, registry) -> None:
        removed: list[str] = []
        registry.add_removal_listener(removed.append)
        await registry.register("dev-1", FakeHandle())
        await registry.register("dev-1", FakeHandle())
        assert removed == ["dev-1"]

    async def test_listener_runs_before_new_entry_is_visible(self, registry) -> None:
        seen: list[object] = []

        def listener(device_id: str) -> None:
            seen.append(registry.get_device(device_id))

        registry.add_removal_listener(listener)
        await registry.register("dev-1", FakeHandle())
        await registry.register("dev-1", FakeHandle())
        assert seen == [None]

    async def test_failing_listener_does_not_block_removal(self, registry) -> None:
        def boom(device_id: str) -> None:
            raise RuntimeError("listener bug")

        registry.add_removal_listener(boom)
        await registry.register("dev-1", FakeHandle())
        assert registry.delete_device("dev-1") is True
        assert registry.get_device_count() == 0

    async def test_remove_listener(self, registry) -> None:
        removed: list[str] = []
        registry.add_removal_listener(removed.append)
        registry.remove_removal_listener(removed.append)
        await registry.register("dev-1", FakeHandle())
        registry.delete_device("dev-1")
        assert removed == []

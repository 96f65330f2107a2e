
import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from iot_dashboard.models import StatusPayload, TelemetryPayload
from iot_dashboard.presence import PresenceTracker

from conftest import FakeMongoRepo

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def telemetry(**fields) -> TelemetryPayload:
    return TelemetryPayload.model_validate(fields)


def status(**fields) -> StatusPayload:
    return StatusPayload.model_validate(fields)


class TestAutoProvision:

    @pytest.mark.asyncio
    async def test_unknown_device_created_and_announced(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        created = await tracker.on_telemetry("temp-01", telemetry(temperature=22.5), T0)

        assert created is True
        device = repo.devices["temp-01"]
        assert device["name"] == "temp-01"
        assert device["type"] == "custom"
        assert device["location"] == "unknown"
        assert device["isConnected"] is True
        assert device["status"] == "active"
        assert device["lastSeen"] == T0

        added = publisher.of("device:added")
        assert len(added) == 1
        assert added[0][1]["deviceId"] == "temp-01"
        assert added[0][2] is True  # auto-provisioned

    @pytest.mark.asyncio
    async def test_type_and_location_from_payload(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_telemetry("hum-01", telemetry(type="humidity", location="Kitchen"), T0)
        assert repo.devices["hum-01"]["type"] == "humidity"
        assert repo.devices["hum-01"]["location"] == "Kitchen"

    @pytest.mark.asyncio
    async def test_unknown_type_falls_back_to_custom(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_telemetry("x-01", telemetry(type="toaster"), T0)
        assert repo.devices["x-01"]["type"] == "custom"

    @pytest.mark.asyncio
    async def test_non_string_location_and_type_use_defaults(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        assert await tracker.on_telemetry("x-02", telemetry(location=42, type=["temperature"]), T0) is True
        assert repo.devices["x-02"]["location"] == "unknown"
        assert repo.devices["x-02"]["type"] == "custom"

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_announce_once(self, publisher):
        repo = FakeMongoRepo(delay=0.01)
        tracker = PresenceTracker(repo, publisher)
        results = await asyncio.gather(*[
            tracker.on_telemetry("new-01", telemetry(v=i), T0 + timedelta(seconds=i)) for i in range(10)
        ])
        assert results.count(True) == 1
        assert list(repo.devices) == ["new-01"]
        assert len(publisher.of("device:added")) == 1

    @pytest.mark.asyncio
    async def test_existing_device_not_announced(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_telemetry("temp-01", telemetry(), T0)
        publisher.events.clear()
        created = await tracker.on_telemetry("temp-01", telemetry(), T0 + timedelta(seconds=1))
        assert created is False
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_announces_minimal_record_when_reload_fails(self, repo, publisher):
        repo.fail_get = RuntimeError("read failed")
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_telemetry("temp-01", telemetry(), T0)
        added = publisher.of("device:added")
        assert added[0][1] == {"deviceId": "temp-01", "name": "temp-01"}


class TestOrdering:

    @pytest.mark.asyncio
    async def test_last_seen_is_latest_message(self, publisher):
        # overwrite mode: without per-device serialization a slow early write could land last
        repo = FakeMongoRepo(delay=0.005, lastseen_mode="overwrite")
        tracker = PresenceTracker(repo, publisher)
        stamps = [T0 + timedelta(milliseconds=i) for i in range(20)]
        await asyncio.gather(*[tracker.on_telemetry("dev-1", telemetry(), ts) for ts in stamps])

        assert repo.devices["dev-1"]["lastSeen"] == stamps[-1]
        assert [ts for _, ts in repo.applied] == stamps

    @pytest.mark.asyncio
    async def test_burst_longer_than_timeout_keeps_newest(self, publisher):
        # 20 writes of 0.05s queue for ~1s, well past the 0.3s per-call bound
        repo = FakeMongoRepo(delay=0.05, lastseen_mode="overwrite")
        tracker = PresenceTracker(repo, publisher, timeout=0.3)
        stamps = [T0 + timedelta(milliseconds=i) for i in range(20)]
        results = await asyncio.gather(*[tracker.on_telemetry("dev-1", telemetry(), ts) for ts in stamps])

        assert None not in results
        assert [ts for _, ts in repo.applied] == stamps
        assert repo.devices["dev-1"]["lastSeen"] == stamps[-1]

    @pytest.mark.asyncio
    async def test_different_devices_run_in_parallel(self, publisher):
        repo = FakeMongoRepo(delay=0.2)
        tracker = PresenceTracker(repo, publisher)
        started = time.monotonic()
        await asyncio.gather(*[tracker.on_telemetry(f"dev-{i}", telemetry(), T0) for i in range(4)])
        # four serialized writes would need 0.8s
        assert time.monotonic() - started < 0.7
        assert len(repo.devices) == 4

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await asyncio.gather(*[tracker.on_telemetry(f"dev-{i % 3}", telemetry(), T0) for i in range(9)])
        assert len(tracker._locks) == 0


class TestStatus:

    @pytest.mark.asyncio
    async def test_status_updates_existing_device(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_telemetry("temp-01", telemetry(), T0)
        later = T0 + timedelta(minutes=5)
        created = await tracker.on_status("temp-01", status(status="error", connected=False), later)

        device = repo.devices["temp-01"]
        assert created is False
        assert device["status"] == "error"
        assert device["isConnected"] is False
        assert device["lastSeen"] == later

    @pytest.mark.asyncio
    async def test_status_defaults_to_alive(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_status("temp-01", status(), T0)
        device = repo.devices["temp-01"]
        assert device["status"] == "active"
        assert device["isConnected"] is True

    @pytest.mark.asyncio
    async def test_extra_fields_are_merged(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_status("temp-01", status(firmware="2.1", battery=88, location="Attic"), T0)
        device = repo.devices["temp-01"]
        assert device["firmware"] == "2.1"
        assert device["battery"] == 88
        assert device["location"] == "Attic"
        assert "connected" not in device
        assert "timestamp" not in device

    @pytest.mark.asyncio
    async def test_operator_and_dotted_keys_are_not_merged(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        fields = {"$set": {"isConnected": False}, "a.b": 1, "battery": 80,
                  "metadata": {"fw": "2.0", "$where": "x", "x.y": 2}}
        created = await tracker.on_status("temp-01", status(**fields), T0)

        assert created is True
        device = repo.devices["temp-01"]
        assert device["battery"] == 80
        assert device["isConnected"] is True
        assert "$set" not in device
        assert "a.b" not in device
        assert device["metadata"] == {"fw": "2.0"}

    @pytest.mark.asyncio
    async def test_odd_status_values_are_coerced(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_status("temp-01", status(status=3, connected="no", location={"room": 1}), T0)
        device = repo.devices["temp-01"]
        assert device["status"] == "active"
        assert device["isConnected"] is True
        assert device["location"] == "unknown"

    @pytest.mark.asyncio
    async def test_unknown_status_is_replaced(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_status("temp-01", status(status="exploded"), T0)
        assert repo.devices["temp-01"]["status"] == "active"

    @pytest.mark.asyncio
    async def test_status_creating_device_is_announced(self, repo, publisher):
        tracker = PresenceTracker(repo, publisher)
        await tracker.on_status("fresh-01", status(status="inactive"), T0)
        assert len(publisher.of("device:added")) == 1
        assert repo.devices["fresh-01"]["status"] == "inactive"


class TestFailures:

    @pytest.mark.asyncio
    async def test_storage_error_is_swallowed(self, repo, publisher):
        repo.fail_upsert = RuntimeError("mongo down")
        tracker = PresenceTracker(repo, publisher)
        assert await tracker.on_telemetry("temp-01", telemetry(), T0) is None
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_hung_storage_times_out(self, publisher):
        repo = FakeMongoRepo(delay=0.5)
        tracker = PresenceTracker(repo, publisher, timeout=0.05)
        started = time.monotonic()
        assert await tracker.on_telemetry("temp-01", telemetry(), T0) is None
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_timed_out_write_still_ordered_before_next(self, publisher):
        repo = FakeMongoRepo(delay=0.2, lastseen_mode="overwrite")
        tracker = PresenceTracker(repo, publisher, timeout=0.05)
        first = await tracker.on_telemetry("temp-01", telemetry(), T0)
        assert first is None
        tracker._timeout = 2.0
        await tracker.on_telemetry("temp-01", telemetry(), T0 + timedelta(seconds=1))
        assert [ts for _, ts in repo.applied] == [T0, T0 + timedelta(seconds=1)]
        assert repo.devices["temp-01"]["lastSeen"] == T0 + timedelta(seconds=1)


import asyncio
import copy
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest


class FakeMongoRepo:
    """In-memory stand-in for MongoRepo with the same method surface.

    `lastseen_mode="max"` mirrors Mongo's $max; "overwrite" makes the last
    write win so tests can observe write order.
    """

    def __init__(self, delay: float = 0.0, lastseen_mode: str = "max") -> None:
        self.devices: Dict[str, Dict[str, Any]] = {}
        self.readings: List[Dict[str, Any]] = []
        self.applied: List[tuple] = []
        self.delay = delay
        self.lastseen_mode = lastseen_mode
        self.fail_upsert: Optional[Exception] = None
        self.fail_insert: Optional[Exception] = None
        self.fail_get: Optional[Exception] = None
        self.upsert_calls = 0
        self._lock = threading.Lock()

    def ensure_indexes(self) -> None:
        pass

    def upsert_presence(self, device_id, fields, seen_at, defaults) -> bool:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_upsert:
            raise self.fail_upsert
        with self._lock:
            self.upsert_calls += 1
            self.applied.append((device_id, seen_at))
            now = datetime.now(timezone.utc)
            doc = self.devices.get(device_id)
            created = doc is None
            if created:
                doc = {"deviceId": device_id, "createdAt": now, **copy.deepcopy(defaults)}
                self.devices[device_id] = doc
            doc.update(copy.deepcopy(fields))
            doc["updatedAt"] = now
            if self.lastseen_mode == "max" and doc.get("lastSeen") is not None:
                doc["lastSeen"] = max(doc["lastSeen"], seen_at)
            else:
                doc["lastSeen"] = seen_at
            return created

    def get_device(self, device_id):
        if self.fail_get:
            raise self.fail_get
        doc = self.devices.get(device_id)
        return copy.deepcopy(doc) if doc else None

    def list_devices(self):
        return sorted((copy.deepcopy(d) for d in self.devices.values()),
                      key=lambda d: d["createdAt"], reverse=True)

    def create_device(self, doc):
        with self._lock:
            if doc["deviceId"] in self.devices:
                return None
            now = datetime.now(timezone.utc)
            record = {"createdAt": now, "updatedAt": now, "lastSeen": now, **doc}
            self.devices[doc["deviceId"]] = record
            return copy.deepcopy(record)

    def update_device(self, device_id, fields):
        doc = self.devices.get(device_id)
        if doc is None:
            return None
        doc.update(fields)
        doc["updatedAt"] = datetime.now(timezone.utc)
        return copy.deepcopy(doc)

    def delete_device(self, device_id):
        return self.devices.pop(device_id, None)

    def count_devices(self, query=None):
        query = query or {}
        return sum(1 for d in self.devices.values() if all(d.get(k) == v for k, v in query.items()))

    def device_type_counts(self):
        counts: Dict[str, int] = {}
        for d in self.devices.values():
            counts[d["type"]] = counts.get(d["type"], 0) + 1
        return [{"type": t, "count": c} for t, c in sorted(counts.items(), key=lambda i: -i[1])]

    def insert_reading(self, doc):
        if self.delay:
            time.sleep(self.delay)
        if self.fail_insert:
            raise self.fail_insert
        with self._lock:
            self.readings.append(dict(doc))

    def query_readings(self, device_id, start=None, end=None, limit=100):
        rows = [r for r in self.readings if r["deviceId"] == device_id]
        if start:
            rows = [r for r in rows if r["timestamp"] >= start]
        if end:
            rows = [r for r in rows if r["timestamp"] <= end]
        return sorted(rows, key=lambda r: r["timestamp"], reverse=True)[:limit]

    def recent_readings(self, limit=10):
        return sorted(self.readings, key=lambda r: r["timestamp"], reverse=True)[:limit]

    def reading_metrics(self, window=timedelta(hours=1)):
        since = datetime.now(timezone.utc) - window
        rows = [r for r in self.readings if r["timestamp"] >= since]
        return {"totalReadings": len(rows), "activeDevicesCount": len({r["deviceId"] for r in rows})}

    def count_readings(self, device_id, start, end=None):
        return sum(1 for r in self.readings
                   if r["deviceId"] == device_id and r["timestamp"] >= start and (end is None or r["timestamp"] < end))

    def latest_reading(self, device_id):
        rows = self.query_readings(device_id, limit=1)
        return dict(rows[0]) if rows else None

    def hourly_series(self, since, device_id=None):
        buckets: Dict[tuple, List] = {}
        for r in self.readings:
            if r["timestamp"] < since or (device_id and r["deviceId"] != device_id):
                continue
            hour = r["timestamp"].replace(minute=0, second=0, microsecond=0)
            first = next(iter(r.get("data", {}).values()), None)
            try:
                value = None if isinstance(first, bool) else float(first)
            except (TypeError, ValueError):
                value = None
            buckets.setdefault((hour, r["deviceId"]), []).append(value)
        series = []
        for (hour, dev), values in sorted(buckets.items()):
            numbers = [v for v in values if v is not None]
            series.append({
                "hour": hour, "deviceId": dev, "count": len(values),
                "avgValue": sum(numbers) / len(numbers) if numbers else None,
                "maxValue": max(numbers) if numbers else None,
                "minValue": min(numbers) if numbers else None,
            })
        return series


class FakeCache:
    def __init__(self) -> None:
        self.latest: Dict[str, dict] = {}
        self.fail: Optional[Exception] = None

    def set_latest(self, device_id, doc):
        if self.fail:
            raise self.fail
        self.latest[device_id] = doc

    def get_latest(self, device_id):
        return self.latest.get(device_id)

    def delete_latest(self, device_id):
        self.latest.pop(device_id, None)


class RecordingPublisher:
    """Captures the events the pipeline and tracker hand to the live channel."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def names(self) -> List[str]:
        return [e[0] for e in self.events]

    def of(self, name: str) -> List[tuple]:
        return [e for e in self.events if e[0] == name]

    def device_data(self, device_id, topic, payload):
        self.events.append(("device:data", device_id, topic, payload))

    def dashboard_update(self, device_id, payload):
        self.events.append(("dashboard:update", device_id, payload))

    def device_added(self, device, auto_provisioned=False):
        self.events.append(("device:added", device, auto_provisioned))

    def device_updated(self, device):
        self.events.append(("device:updated", device))

    def device_deleted(self, device_id, name=None):
        self.events.append(("device:deleted", device_id, name))


class FakeWebSocket:
    def __init__(self, fail: bool = False, block: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail
        self.block = block
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        if self.block:
            await asyncio.Event().wait()
        self.sent.append(data)


async def drain(rounds: int = 10) -> None:
    """Let sender tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def repo() -> FakeMongoRepo:
    return FakeMongoRepo()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()

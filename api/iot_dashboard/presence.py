
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .concurrency import KeyedLocks, run_blocking, run_serialized
from .models import DeviceStatus, DeviceType, StatusPayload, TelemetryPayload

logger = logging.getLogger(__name__)

DEVICE_TYPES = {t.value for t in DeviceType}
DEVICE_STATUSES = {s.value for s in DeviceStatus}

# status-message keys that are interpreted, not merged verbatim into the device
RESERVED_STATUS_KEYS = {
    "deviceId", "status", "connected", "isConnected", "timestamp",
    "lastSeen", "createdAt", "updatedAt", "_id", "type", "location", "metadata",
}


def _coerce_type(value: Any) -> str:
    return value if isinstance(value, str) and value in DEVICE_TYPES else DeviceType.custom.value


def _coerce_status(device_id: str, value: Any) -> str:
    if value is None:
        return DeviceStatus.active.value
    if isinstance(value, str) and value in DEVICE_STATUSES:
        return value
    logger.warning("[presence] %s reported unknown status %r, using active", device_id, value)
    return DeviceStatus.active.value


def _coerce_location(value: Any) -> Optional[str]:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _storable_key(key: str) -> bool:
    # Mongo reads "$x" as an operator and "a.b" as a nested path
    return bool(key) and not key.startswith("$") and "." not in key


class PresenceTracker:
    """Keeps device connectivity in the registry in step with MQTT traffic.

    Writes for one device id go through a per-device lock, writes for
    different ids run in parallel. A device that does not exist yet is created
    by the same upsert and announced once as auto-provisioned.
    """

    def __init__(self, repo, publisher, timeout: Optional[float] = 5.0) -> None:
        self._repo = repo
        self._publisher = publisher
        self._timeout = timeout
        self._locks = KeyedLocks()

    def attach_publisher(self, publisher) -> None:
        self._publisher = publisher

    @staticmethod
    def _defaults(device_id: str, payload) -> Dict[str, Any]:
        return {
            "name": device_id,
            "type": _coerce_type(payload.type),
            "location": _coerce_location(payload.location) or "unknown",
            "status": DeviceStatus.active.value,
            "isConnected": True,
            "metadata": {},
        }

    async def on_telemetry(self, device_id: str, payload: TelemetryPayload, seen_at: datetime) -> Optional[bool]:
        fields = {"isConnected": True, "status": DeviceStatus.active.value}
        return await self._upsert(device_id, fields, seen_at, self._defaults(device_id, payload))

    async def on_status(self, device_id: str, payload: StatusPayload, seen_at: datetime) -> Optional[bool]:
        extra = {}
        for key, value in payload.model_dump(exclude_none=True).items():
            if key in RESERVED_STATUS_KEYS:
                continue
            if not _storable_key(key):
                logger.debug("[presence] %s sent unstorable status key %r, skipped", device_id, key)
                continue
            extra[key] = value
        if payload.type is not None:
            extra["type"] = _coerce_type(payload.type)
        location = _coerce_location(payload.location)
        if location:
            extra["location"] = location
        if isinstance(payload.metadata, dict):
            extra["metadata"] = {k: v for k, v in payload.metadata.items() if _storable_key(k)}
        fields = {
            **extra,
            "status": _coerce_status(device_id, payload.status),
            "isConnected": payload.connected if isinstance(payload.connected, bool) else True,
        }
        return await self._upsert(device_id, fields, seen_at, self._defaults(device_id, payload))

    async def _upsert(
        self,
        device_id: str,
        fields: Dict[str, Any],
        seen_at: datetime,
        defaults: Dict[str, Any],
    ) -> Optional[bool]:
        """Returns True if the device was created, False if updated, None if the write failed."""
        try:
            created = await run_serialized(
                self._locks, device_id,
                self._repo.upsert_presence, device_id, fields, seen_at, defaults,
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[presence] upsert for %s timed out after %ss", device_id, self._timeout)
            return None
        except Exception:
            logger.exception("[presence] upsert for %s failed", device_id)
            return None

        if created:
            logger.info("[presence] auto-provisioned device %s", device_id)
            await self._announce(device_id)
        else:
            logger.debug("[presence] updated %s", device_id)
        return created

    async def _announce(self, device_id: str) -> None:
        try:
            device = await run_blocking(self._repo.get_device, device_id, timeout=self._timeout)
        except Exception:
            logger.exception("[presence] could not load new device %s", device_id)
            device = None
        try:
            self._publisher.device_added(device or {"deviceId": device_id, "name": device_id}, auto_provisioned=True)
        except Exception:
            logger.exception("[presence] device:added broadcast for %s failed", device_id)

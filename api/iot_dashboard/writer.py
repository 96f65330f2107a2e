
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .concurrency import run_blocking
from .models import TelemetryPayload, TelemetryReading

logger = logging.getLogger(__name__)

# body keys that describe the message rather than a measurement
ENVELOPE_KEYS = {"deviceId", "timestamp", "unit", "metadata", "type", "location"}

# device clocks that were never set report 1970; such stamps are not trusted
EARLIEST_TIMESTAMP = datetime(2000, 1, 1, tzinfo=timezone.utc)


def _parse(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_timestamp(value: Any, earliest: Optional[datetime] = EARLIEST_TIMESTAMP) -> Optional[datetime]:
    """ISO-8601 string or epoch seconds/milliseconds to an aware datetime.

    None if unusable, including anything before `earliest`.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = _parse(value)
    except (ValueError, OverflowError, OSError):
        return None
    if parsed is None or (earliest is not None and parsed < earliest):
        return None
    return parsed


def build_reading(device_id: str, payload: TelemetryPayload, received_at: datetime) -> TelemetryReading:
    if payload.data is not None:
        data = payload.data
    else:
        data = {k: v for k, v in payload.model_dump().items() if k not in ENVELOPE_KEYS and k != "data"}
    return TelemetryReading(
        deviceId=device_id,
        timestamp=parse_timestamp(payload.timestamp) or received_at,
        data=data,
        unit=payload.unit if isinstance(payload.unit, str) else None,
        metadata=payload.metadata if isinstance(payload.metadata, dict) else None,
    )


class TelemetryWriter:
    """Best-effort persistence of readings: failures are logged and the reading is lost."""

    def __init__(self, repo, cache=None, timeout: Optional[float] = 5.0) -> None:
        self._repo = repo
        self._cache = cache
        self._timeout = timeout

    async def write(self, device_id: str, payload: TelemetryPayload, received_at: datetime) -> Optional[TelemetryReading]:
        try:
            reading = build_reading(device_id, payload, received_at)
        except Exception:
            logger.exception("[writer] could not build reading for %s", device_id)
            return None

        doc: Dict[str, Any] = reading.model_dump(exclude_none=True)
        try:
            await run_blocking(self._repo.insert_reading, doc, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("[writer] insert for %s timed out after %ss, reading dropped", device_id, self._timeout)
            return None
        except Exception:
            logger.exception("[writer] insert for %s failed, reading dropped", device_id)
            return None

        if self._cache is not None:
            try:
                await run_blocking(self._cache.set_latest, device_id, reading.model_dump(mode="json"), timeout=self._timeout)
            except Exception as ex:
                logger.warning("[writer] latest-reading cache update for %s failed: %s", device_id, ex)

        logger.debug("[writer] saved reading for %s", device_id)
        return reading


import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .classifier import Classified, classify
from .models import EventKind, StatusPayload, TelemetryPayload, UnrecognizedPayload
from .presence import PresenceTracker
from .writer import TelemetryWriter
from .ws_manager import NullPublisher

logger = logging.getLogger(__name__)


class TelemetryPipeline:
    """One inbound MQTT message in, state updates and live events out.

    Fan-out goes first and never waits on storage. Presence and persistence
    then run side by side; a failure in one does not stop the other.
    """

    def __init__(self, presence: PresenceTracker, writer: TelemetryWriter, publisher=None) -> None:
        self.presence = presence
        self.writer = writer
        self.publisher = publisher or NullPublisher()
        presence.attach_publisher(self.publisher)

    def attach_publisher(self, publisher) -> None:
        self.publisher = publisher
        self.presence.attach_publisher(publisher)

    async def handle(self, topic: str, payload: Dict[str, Any], received_at: Optional[datetime] = None) -> Optional[Classified]:
        received_at = received_at or datetime.now(timezone.utc)
        msg = classify(topic, payload)
        if msg is None:
            logger.warning("[pipeline] no device id in topic %s or payload, message dropped", topic)
            return None

        if msg.kind is not EventKind.other and isinstance(msg.payload, UnrecognizedPayload):
            logger.warning("[pipeline] malformed %s payload from %s, skipping state update", msg.kind.value, msg.device_id)

        # viewers see the message before storage answers
        self._fan_out(msg)
        await self._apply(msg, received_at)
        return msg

    async def _apply(self, msg: Classified, received_at: datetime) -> None:
        if isinstance(msg.payload, TelemetryPayload):
            results = await asyncio.gather(
                self.presence.on_telemetry(msg.device_id, msg.payload, received_at),
                self.writer.write(msg.device_id, msg.payload, received_at),
                return_exceptions=True,
            )
        elif isinstance(msg.payload, StatusPayload):
            results = await asyncio.gather(
                self.presence.on_status(msg.device_id, msg.payload, received_at),
                return_exceptions=True,
            )
        else:
            return
        for result in results:
            if isinstance(result, Exception):
                logger.error("[pipeline] %s handling for %s raised: %r", msg.kind.value, msg.device_id, result)

    def _fan_out(self, msg: Classified) -> None:
        try:
            self.publisher.device_data(msg.device_id, msg.topic, msg.raw)
        except Exception:
            logger.exception("[pipeline] device:data emit for %s failed", msg.device_id)
        try:
            self.publisher.dashboard_update(msg.device_id, msg.raw)
        except Exception:
            logger.exception("[pipeline] dashboard:update emit for %s failed", msg.device_id)

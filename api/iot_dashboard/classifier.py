"""
Topic/payload classification for inbound MQTT messages.

Topics follow `<namespace>/<deviceId>/<suffix>`:
    iot/{deviceId}/data          -> telemetry
    iot/{deviceId}/status        -> status
    iot/{deviceId}/command       -> other (re-broadcast only)
    devices/{deviceId}/telemetry -> telemetry

The device id comes from the second topic segment; when that is missing the
`deviceId` field of the body is used instead. Everything here is a pure
function of (topic, payload).
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .models import EventKind, StatusPayload, TelemetryPayload, UnrecognizedPayload

TELEMETRY_SUFFIXES = ("data", "telemetry")
STATUS_SUFFIXES = ("status",)

Payload = Union[TelemetryPayload, StatusPayload, UnrecognizedPayload]


@dataclass(frozen=True)
class Classified:
    topic: str
    device_id: str
    kind: EventKind
    payload: Payload
    raw: Dict[str, Any]


def resolve_device_id(topic: str, payload: Dict[str, Any]) -> Optional[str]:
    parts = topic.split("/")
    if len(parts) > 1 and parts[1]:
        return parts[1]
    candidate = payload.get("deviceId") if isinstance(payload, dict) else None
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    return None


def resolve_kind(topic: str) -> EventKind:
    suffix = topic.rsplit("/", 1)[-1]
    if suffix in TELEMETRY_SUFFIXES:
        return EventKind.telemetry
    if suffix in STATUS_SUFFIXES:
        return EventKind.status
    return EventKind.other


def decode_payload(kind: EventKind, payload: Dict[str, Any]) -> Payload:
    model = {
        EventKind.telemetry: TelemetryPayload,
        EventKind.status: StatusPayload,
    }.get(kind)
    if model is None:
        return UnrecognizedPayload(raw=payload)
    try:
        return model.model_validate(payload)
    except ValidationError:
        # wrong shape for its topic: keep it for fan-out, skip state changes
        return UnrecognizedPayload(raw=payload)


def classify(topic: str, payload: Dict[str, Any]) -> Optional[Classified]:
    device_id = resolve_device_id(topic, payload)
    if device_id is None:
        return None
    kind = resolve_kind(topic)
    return Classified(
        topic=topic,
        device_id=device_id,
        kind=kind,
        payload=decode_payload(kind, payload),
        raw=payload,
    )

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class DeviceType(str, Enum):
    temperature = "temperature"
    humidity = "humidity"
    pressure = "pressure"
    motion = "motion"
    light = "light"
    energy = "energy"
    custom = "custom"


class DeviceStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    offline = "offline"
    error = "error"


class EventKind(str, Enum):
    telemetry = "telemetry"
    status = "status"
    other = "other"


# --- inbound MQTT payloads

class InboundPayload(BaseModel):
    """Fields a device may put in a message body. Unknown keys are kept.

    Only `data` is shape-checked. The envelope fields are taken as sent and
    narrowed where they are used, so an odd `deviceId` or `timestamp` never
    costs the reading itself.
    """

    model_config = ConfigDict(extra="allow")

    deviceId: Any = None
    timestamp: Any = None
    data: Optional[Dict[str, Any]] = None
    unit: Any = None
    metadata: Any = None
    type: Any = None
    location: Any = None


class TelemetryPayload(InboundPayload):
    pass


class StatusPayload(InboundPayload):
    status: Any = None
    connected: Any = None


class UnrecognizedPayload(BaseModel):
    raw: Dict[str, Any] = Field(default_factory=dict)


# --- stored documents

class TelemetryReading(BaseModel):
    deviceId: str
    timestamp: datetime
    data: Dict[str, Any]
    unit: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# --- HTTP request bodies

class DeviceCreate(BaseModel):
    deviceId: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: DeviceType
    location: str = Field(min_length=1)
    metadata: Dict[str, str] = Field(default_factory=dict)


class DeviceUpdate(BaseModel):
    # deviceId is immutable, so it is not accepted here
    name: Optional[str] = None
    type: Optional[DeviceType] = None
    location: Optional[str] = None
    status: Optional[DeviceStatus] = None
    metadata: Optional[Dict[str, str]] = None


class CommandIn(BaseModel):
    command: str
    payload: Optional[Any] = None

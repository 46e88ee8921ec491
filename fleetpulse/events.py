"""
Typed event payloads exchanged over the realtime channel.

Every frame on the wire is a JSON envelope ``{"event": <name>, "data": <payload>}``.
Inbound (client -> broker) envelopes are validated into a discriminated union
so handlers receive already-typed structures; outbound (broker -> client)
payloads have one model per event name and are decoded the same way on the
client side.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from fleetpulse.models import Role

# Client -> broker
JOIN_ROLE = "join:role"
JOIN_BUS = "join:bus"
SUBSCRIBE_BUS = "subscribe:bus"
LOCATION_UPDATE = "location:update"
SOS_TRIGGER = "sos:trigger"
TRIP_UPDATE = "trip:update"
ATTENDANCE_SCAN = "attendance:scan"
PING = "ping"

# Broker -> client
SOS_ALERT = "sos:alert"
SOS_RESOLVED = "sos:resolved"
SOS_CANCELLED = "sos:cancelled"
TRIP_UPDATED = "trip:updated"
ATTENDANCE_RECORDED = "attendance:recorded"
ATTENDANCE_RESULT = "attendance:result"
JOINED = "joined"
ERROR = "error"
PONG = "pong"


class EventValidationError(ValueError):
    """Raised when a frame does not match any known event shape."""

    def __init__(self, message: str, event: Optional[str] = None):
        super().__init__(message)
        self.event = event


class WireModel(BaseModel):
    """Base for payloads serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Inbound payloads
# =============================================================================

class LocationReportPayload(WireModel):
    bus_id: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    speed: float = Field(default=0.0, ge=0)
    heading: float = 0.0
    timestamp: Optional[datetime] = None


class SOSTriggerPayload(WireModel):
    user_id: str = Field(min_length=1)
    bus_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=500)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class TripUpdatePayload(WireModel):
    bus_id: str = Field(min_length=1)
    driver_id: str = Field(min_length=1)
    action: Literal["start", "stop"]


class AttendanceScanPayload(WireModel):
    user_id: str = Field(min_length=1)
    bus_id: str = Field(min_length=1)
    qr_data: Optional[str] = None


class JoinRoleEvent(BaseModel):
    event: Literal["join:role"]
    data: Role


class JoinBusEvent(BaseModel):
    event: Literal["join:bus"]
    data: str = Field(min_length=1)


class SubscribeBusEvent(BaseModel):
    event: Literal["subscribe:bus"]
    data: str = Field(min_length=1)


class LocationUpdateEvent(BaseModel):
    event: Literal["location:update"]
    data: LocationReportPayload


class SOSTriggerEvent(BaseModel):
    event: Literal["sos:trigger"]
    data: SOSTriggerPayload


class TripUpdateEvent(BaseModel):
    event: Literal["trip:update"]
    data: TripUpdatePayload


class AttendanceScanEvent(BaseModel):
    event: Literal["attendance:scan"]
    data: AttendanceScanPayload


class PingEvent(BaseModel):
    event: Literal["ping"]
    data: Optional[Any] = None


ClientEvent = Annotated[
    Union[
        JoinRoleEvent,
        JoinBusEvent,
        SubscribeBusEvent,
        LocationUpdateEvent,
        SOSTriggerEvent,
        TripUpdateEvent,
        AttendanceScanEvent,
        PingEvent,
    ],
    Field(discriminator="event"),
]

_client_event_adapter: TypeAdapter = TypeAdapter(ClientEvent)


def parse_client_event(raw: Union[str, bytes, Dict[str, Any]]):
    """Validate an inbound frame into its typed event model."""
    try:
        frame = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except json.JSONDecodeError as e:
        raise EventValidationError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict):
        raise EventValidationError("Frame must be a JSON object")

    name = frame.get("event")
    try:
        return _client_event_adapter.validate_python(frame)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(part) for part in first.get("loc", ()))
        raise EventValidationError(
            f"Invalid '{name}' event: {first.get('msg', 'validation failed')} ({where})",
            event=name if isinstance(name, str) else None,
        ) from e


# =============================================================================
# Outbound payloads
# =============================================================================

class LocationUpdatePayload(WireModel):
    bus_id: str
    latitude: float
    longitude: float
    speed: float


class SOSAlertPayload(WireModel):
    id: str
    user_id: str
    bus_id: Optional[str] = None
    message: str
    timestamp: datetime
    resolved: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class SOSResolvedPayload(WireModel):
    id: str
    bus_id: Optional[str] = None
    resolved_at: datetime


class SOSCancelledPayload(WireModel):
    id: str
    bus_id: Optional[str] = None
    cancelled_at: datetime


class TripUpdatedPayload(WireModel):
    bus_id: str
    driver_id: str
    action: Literal["start", "stop"]
    timestamp: datetime


class AttendanceRecordedPayload(WireModel):
    user_id: str
    bus_id: str
    scanned_at: datetime
    record_id: Optional[str] = None
    session_id: Optional[str] = None


class AttendanceResultPayload(WireModel):
    success: bool
    outcome: str
    reason: Optional[str] = None
    record_id: Optional[str] = None
    bus_id: Optional[str] = None
    session_id: Optional[str] = None


class JoinedPayload(WireModel):
    topic: str


class ErrorPayload(WireModel):
    code: str
    message: str
    event: Optional[str] = None


SERVER_PAYLOAD_MODELS: Dict[str, Type[WireModel]] = {
    LOCATION_UPDATE: LocationUpdatePayload,
    SOS_ALERT: SOSAlertPayload,
    SOS_RESOLVED: SOSResolvedPayload,
    SOS_CANCELLED: SOSCancelledPayload,
    TRIP_UPDATED: TripUpdatedPayload,
    ATTENDANCE_RECORDED: AttendanceRecordedPayload,
    ATTENDANCE_RESULT: AttendanceResultPayload,
    JOINED: JoinedPayload,
    ERROR: ErrorPayload,
}


def build_message(event: str, payload: Union[WireModel, Dict[str, Any], None] = None) -> Dict[str, Any]:
    """Build the wire envelope for an outbound event."""
    if isinstance(payload, WireModel):
        data: Any = payload.to_wire()
    else:
        data = payload
    return {"event": event, "data": data}


def build_error_message(code: str, message: str, event: Optional[str] = None) -> Dict[str, Any]:
    return build_message(ERROR, ErrorPayload(code=code, message=message, event=event))


def decode_server_message(raw: Union[str, bytes, Dict[str, Any]]) -> Tuple[str, Any]:
    """
    Decode a broker frame on the client side.

    Returns:
        Tuple of (event name, payload). Payloads of known events are returned
        as their typed model; unknown events keep their raw data.
    """
    try:
        frame = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except json.JSONDecodeError as e:
        raise EventValidationError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise EventValidationError("Frame must be an object with an 'event' name")

    name = frame["event"]
    data = frame.get("data")
    model = SERVER_PAYLOAD_MODELS.get(name)
    if model is None:
        return name, data
    try:
        return name, model.model_validate(data)
    except ValidationError as e:
        raise EventValidationError(f"Invalid '{name}' payload: {e.errors()[0]['msg']}", event=name) from e

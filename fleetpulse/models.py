"""
Domain models for the FleetPulse realtime core.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(value: Optional[datetime] = None) -> int:
    return int((value or utc_now()).timestamp() * 1000)


class Role(str, Enum):
    STUDENT = "STUDENT"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class VehicleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"


class AttendanceStatus(str, Enum):
    CHECKED_IN = "checked-in"
    CHECKED_OUT = "checked-out"
    DUPLICATE = "duplicate"
    EXPIRED = "expired"


class AlertStatus(str, Enum):
    TRIGGERED = "triggered"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationReport(BaseModel):
    """A single position sample. Superseded, never merged."""
    model_config = ConfigDict(frozen=True)

    bus_id: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    speed: float = Field(default=0.0, ge=0)
    heading: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)


class Vehicle(BaseModel):
    id: str
    number: str
    route_name: str
    capacity: int = Field(ge=1)
    status: VehicleStatus = VehicleStatus.ACTIVE
    current_occupancy: int = Field(default=0, ge=0)
    location: Optional[LocationReport] = None
    on_trip: bool = False


class TripState(BaseModel):
    bus_id: str
    on_trip: bool
    driver_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)


class AttendanceToken(BaseModel):
    """Payload embedded in the attendance QR code (epoch milliseconds)."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    bus_id: str = Field(alias="busId", min_length=1)
    timestamp: int = Field(gt=0)
    expires_at: int = Field(alias="expiresAt", gt=0)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    def to_qr_data(self) -> str:
        return json.dumps(self.model_dump(by_alias=True))


class AttendanceRecord(BaseModel):
    id: str
    user_id: str
    bus_id: str
    timestamp: datetime
    status: AttendanceStatus = AttendanceStatus.CHECKED_IN
    session_id: str


class EmergencyAlert(BaseModel):
    id: str
    user_id: str
    bus_id: Optional[str] = None
    message: str
    resolved: bool = False
    status: AlertStatus = AlertStatus.TRIGGERED
    created_at: datetime = Field(default_factory=utc_now)
    location: Optional[GeoPoint] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.resolved or self.status == AlertStatus.CANCELLED

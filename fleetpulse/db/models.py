"""
SQLAlchemy models for the FleetPulse database.

These models define the durable schema for:
- Attendance check-ins (append-only)
- Emergency alerts
"""

from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class AttendanceRecordModel(Base):
    """Result of a valid scan (append-only)."""
    __tablename__ = "attendance_records"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    bus_id = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="checked-in")
    session_id = Column(String, nullable=False)

    __table_args__ = (
        # One checked-in row per (user, vehicle, session)
        UniqueConstraint("user_id", "bus_id", "session_id", "status", name="uq_attendance_user_bus_session_status"),
        Index("ix_attendance_session_status", "session_id", "status"),
    )

    def __repr__(self):
        return f"<AttendanceRecordModel(id='{self.id}', user_id='{self.user_id}', bus_id='{self.bus_id}')>"


class EmergencyAlertModel(Base):
    __tablename__ = "sos_alerts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    bus_id = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="triggered")
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<EmergencyAlertModel(id='{self.id}', status='{self.status}', resolved={self.resolved})>"

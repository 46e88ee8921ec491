"""
Database package for FleetPulse.

Provides SQLAlchemy models, engine handling and SQL-backed stores.
"""

from .database import (
    create_tables,
    drop_tables,
    init_engine,
    is_database_available,
)
from .models import Base, AttendanceRecordModel, EmergencyAlertModel
from .crud import SqlAlertStore, SqlAttendanceStore, session_scope

__all__ = [
    "init_engine",
    "create_tables",
    "drop_tables",
    "is_database_available",
    "Base",
    "AttendanceRecordModel",
    "EmergencyAlertModel",
    "SqlAttendanceStore",
    "SqlAlertStore",
    "session_scope",
]

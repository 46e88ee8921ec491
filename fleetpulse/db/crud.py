"""
SQL-backed attendance and alert stores.

Implements the same contract as the in-memory stores in
``fleetpulse.services.storage``:
- Attendance inserts rely on the (user, vehicle, session, status) unique
  constraint; a violation surfaces as DuplicateAttendanceError
- Alert transitions are single conditional UPDATEs (compare-and-set)
- Connection failures surface as StorageUnavailableError

Calls are synchronous and block the event loop for their duration, so every
connection waits on a slow query; keep the database close to the broker.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from fleetpulse.models import AlertStatus, AttendanceRecord, AttendanceStatus, EmergencyAlert, GeoPoint
from fleetpulse.services.storage import (
    ACKNOWLEDGEABLE_STATUSES,
    CANCELLABLE_STATUSES,
    RESOLVABLE_STATUSES,
    AlertNotFoundError,
    DuplicateAttendanceError,
    StorageUnavailableError,
)

from .models import AttendanceRecordModel, EmergencyAlertModel

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(session_factory) -> Iterator[Session]:
    """Transactional scope; connection-level failures become StorageUnavailableError."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as e:
        session.rollback()
        logger.error(f"Database unavailable: {e}")
        raise StorageUnavailableError(str(e)) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# =============================================================================
# Attendance
# =============================================================================

def _record_from_row(row: AttendanceRecordModel) -> AttendanceRecord:
    return AttendanceRecord(
        id=row.id,
        user_id=row.user_id,
        bus_id=row.bus_id,
        timestamp=_aware(row.timestamp),
        status=AttendanceStatus(row.status),
        session_id=row.session_id,
    )


class SqlAttendanceStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def has_checked_in(self, user_id: str, bus_id: str, session_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            stmt = select(AttendanceRecordModel.id).where(
                AttendanceRecordModel.user_id == user_id,
                AttendanceRecordModel.bus_id == bus_id,
                AttendanceRecordModel.session_id == session_id,
                AttendanceRecordModel.status == AttendanceStatus.CHECKED_IN.value,
            )
            return db.execute(stmt.limit(1)).first() is not None

    def add(self, record: AttendanceRecord) -> AttendanceRecord:
        try:
            with session_scope(self.session_factory) as db:
                db.add(AttendanceRecordModel(
                    id=record.id,
                    user_id=record.user_id,
                    bus_id=record.bus_id,
                    timestamp=record.timestamp,
                    status=record.status.value,
                    session_id=record.session_id,
                ))
        except IntegrityError as e:
            raise DuplicateAttendanceError(
                f"{record.user_id} already checked in on {record.bus_id} for {record.session_id}"
            ) from e
        logger.debug(f"Stored attendance record {record.id}")
        return record.model_copy()

    def list_for_user(self, user_id: str) -> List[AttendanceRecord]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(AttendanceRecordModel)
                .where(AttendanceRecordModel.user_id == user_id)
                .order_by(AttendanceRecordModel.timestamp)
            ).scalars().all()
            return [_record_from_row(r) for r in rows]

    def count_checked_in(self, session_id: str) -> int:
        with session_scope(self.session_factory) as db:
            stmt = select(func.count(AttendanceRecordModel.id)).where(
                AttendanceRecordModel.session_id == session_id,
                AttendanceRecordModel.status == AttendanceStatus.CHECKED_IN.value,
            )
            return int(db.execute(stmt).scalar_one())


# =============================================================================
# Emergency alerts
# =============================================================================

def _alert_from_row(row: EmergencyAlertModel) -> EmergencyAlert:
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = GeoPoint(latitude=row.latitude, longitude=row.longitude)
    return EmergencyAlert(
        id=row.id,
        user_id=row.user_id,
        bus_id=row.bus_id,
        message=row.message,
        resolved=bool(row.resolved),
        status=AlertStatus(row.status),
        created_at=_aware(row.created_at),
        location=location,
        acknowledged_at=_aware(row.acknowledged_at),
        resolved_at=_aware(row.resolved_at),
    )


class SqlAlertStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, alert: EmergencyAlert) -> EmergencyAlert:
        with session_scope(self.session_factory) as db:
            db.add(EmergencyAlertModel(
                id=alert.id,
                user_id=alert.user_id,
                bus_id=alert.bus_id,
                message=alert.message,
                resolved=alert.resolved,
                status=alert.status.value,
                latitude=alert.location.latitude if alert.location else None,
                longitude=alert.location.longitude if alert.location else None,
                created_at=alert.created_at,
                acknowledged_at=alert.acknowledged_at,
                resolved_at=alert.resolved_at,
            ))
        logger.info(f"Stored SOS alert {alert.id}")
        return alert.model_copy(deep=True)

    def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        with session_scope(self.session_factory) as db:
            row = db.get(EmergencyAlertModel, alert_id)
            return _alert_from_row(row) if row is not None else None

    def _transition(self, alert_id: str, allowed: set, changes: dict) -> Tuple[EmergencyAlert, bool]:
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(EmergencyAlertModel)
                .where(
                    EmergencyAlertModel.id == alert_id,
                    EmergencyAlertModel.resolved.is_(False),
                    EmergencyAlertModel.status.in_([s.value for s in allowed]),
                )
                .values(**changes)
            )
            changed = result.rowcount == 1
            row = db.get(EmergencyAlertModel, alert_id)
            if row is None:
                raise AlertNotFoundError(alert_id)
            return _alert_from_row(row), changed

    def resolve(self, alert_id: str, resolved_at: datetime) -> Tuple[EmergencyAlert, bool]:
        return self._transition(
            alert_id,
            RESOLVABLE_STATUSES,
            {"resolved": True, "status": AlertStatus.RESOLVED.value, "resolved_at": resolved_at},
        )

    def acknowledge(self, alert_id: str, acknowledged_at: datetime) -> Tuple[EmergencyAlert, bool]:
        return self._transition(
            alert_id,
            ACKNOWLEDGEABLE_STATUSES,
            {"status": AlertStatus.ACKNOWLEDGED.value, "acknowledged_at": acknowledged_at},
        )

    def cancel(self, alert_id: str) -> Tuple[EmergencyAlert, bool]:
        return self._transition(alert_id, CANCELLABLE_STATUSES, {"status": AlertStatus.CANCELLED.value})

    def list_active(self) -> List[EmergencyAlert]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(EmergencyAlertModel)
                .where(
                    EmergencyAlertModel.resolved.is_(False),
                    EmergencyAlertModel.status != AlertStatus.CANCELLED.value,
                )
                .order_by(desc(EmergencyAlertModel.created_at))
            ).scalars().all()
            return [_alert_from_row(r) for r in rows]

    def list_for_user(self, user_id: str) -> List[EmergencyAlert]:
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(EmergencyAlertModel)
                .where(EmergencyAlertModel.user_id == user_id)
                .order_by(desc(EmergencyAlertModel.created_at))
            ).scalars().all()
            return [_alert_from_row(r) for r in rows]

"""
Storage abstraction for attendance records, emergency alerts and live
vehicle state, with thread-safe in-memory implementations.

The attendance and alert stores are the only state that needs mutual
exclusion across writers: attendance inserts enforce one ``checked-in``
record per (user, vehicle, session) and alert transitions are
compare-and-set. Live vehicle state is eventually consistent.
"""

from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol, Tuple

from fleetpulse.models import (
    AlertStatus,
    AttendanceRecord,
    AttendanceStatus,
    EmergencyAlert,
    LocationReport,
    TripState,
)

RESOLVABLE_STATUSES = {AlertStatus.TRIGGERED, AlertStatus.ACKNOWLEDGED}
ACKNOWLEDGEABLE_STATUSES = {AlertStatus.TRIGGERED}
CANCELLABLE_STATUSES = {AlertStatus.TRIGGERED, AlertStatus.ACKNOWLEDGED}


class StorageUnavailableError(RuntimeError):
    """The persistence layer could not be reached."""


class DuplicateAttendanceError(Exception):
    """A checked-in record already exists for the (user, vehicle, session) key."""


class AlertNotFoundError(KeyError):
    pass


class AttendanceStore(Protocol):
    def has_checked_in(self, user_id: str, bus_id: str, session_id: str) -> bool: ...

    def add(self, record: AttendanceRecord) -> AttendanceRecord: ...

    def list_for_user(self, user_id: str) -> List[AttendanceRecord]: ...

    def count_checked_in(self, session_id: str) -> int: ...


class AlertStore(Protocol):
    def create(self, alert: EmergencyAlert) -> EmergencyAlert: ...

    def get(self, alert_id: str) -> Optional[EmergencyAlert]: ...

    def resolve(self, alert_id: str, resolved_at: datetime) -> Tuple[EmergencyAlert, bool]: ...

    def acknowledge(self, alert_id: str, acknowledged_at: datetime) -> Tuple[EmergencyAlert, bool]: ...

    def cancel(self, alert_id: str) -> Tuple[EmergencyAlert, bool]: ...

    def list_active(self) -> List[EmergencyAlert]: ...

    def list_for_user(self, user_id: str) -> List[EmergencyAlert]: ...


class InMemoryAttendanceStore:
    """Append-only attendance log guarded by a re-entrant lock."""

    def __init__(self) -> None:
        self._records: List[AttendanceRecord] = []
        self._lock = RLock()

    def has_checked_in(self, user_id: str, bus_id: str, session_id: str) -> bool:
        with self._lock:
            return any(
                r.user_id == user_id
                and r.bus_id == bus_id
                and r.session_id == session_id
                and r.status == AttendanceStatus.CHECKED_IN
                for r in self._records
            )

    def add(self, record: AttendanceRecord) -> AttendanceRecord:
        with self._lock:
            if record.status == AttendanceStatus.CHECKED_IN and self.has_checked_in(
                record.user_id, record.bus_id, record.session_id
            ):
                raise DuplicateAttendanceError(
                    f"{record.user_id} already checked in on {record.bus_id} for {record.session_id}"
                )
            self._records.append(record)
            return record.model_copy()

    def list_for_user(self, user_id: str) -> List[AttendanceRecord]:
        with self._lock:
            return [r.model_copy() for r in self._records if r.user_id == user_id]

    def count_checked_in(self, session_id: str) -> int:
        with self._lock:
            return sum(
                1 for r in self._records
                if r.session_id == session_id and r.status == AttendanceStatus.CHECKED_IN
            )


class InMemoryAlertStore:
    """Alert store with atomic create and compare-and-set transitions."""

    def __init__(self) -> None:
        self._alerts: Dict[str, EmergencyAlert] = {}
        self._lock = RLock()

    def create(self, alert: EmergencyAlert) -> EmergencyAlert:
        with self._lock:
            if alert.id in self._alerts:
                raise ValueError(f"Alert {alert.id} already exists")
            self._alerts[alert.id] = alert.model_copy(deep=True)
            return alert.model_copy(deep=True)

    def get(self, alert_id: str) -> Optional[EmergencyAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    def _transition(
        self,
        alert_id: str,
        allowed: set,
        changes: dict,
    ) -> Tuple[EmergencyAlert, bool]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)
            if alert.resolved or alert.status not in allowed:
                return alert.model_copy(deep=True), False
            updated = alert.model_copy(update=changes, deep=True)
            self._alerts[alert_id] = updated
            return updated.model_copy(deep=True), True

    def resolve(self, alert_id: str, resolved_at: datetime) -> Tuple[EmergencyAlert, bool]:
        return self._transition(
            alert_id,
            RESOLVABLE_STATUSES,
            {"resolved": True, "status": AlertStatus.RESOLVED, "resolved_at": resolved_at},
        )

    def acknowledge(self, alert_id: str, acknowledged_at: datetime) -> Tuple[EmergencyAlert, bool]:
        return self._transition(
            alert_id,
            ACKNOWLEDGEABLE_STATUSES,
            {"status": AlertStatus.ACKNOWLEDGED, "acknowledged_at": acknowledged_at},
        )

    def cancel(self, alert_id: str) -> Tuple[EmergencyAlert, bool]:
        return self._transition(alert_id, CANCELLABLE_STATUSES, {"status": AlertStatus.CANCELLED})

    def list_active(self) -> List[EmergencyAlert]:
        with self._lock:
            active = [a for a in self._alerts.values() if not a.is_terminal]
            active.sort(key=lambda a: a.created_at, reverse=True)
            return [a.model_copy(deep=True) for a in active]

    def list_for_user(self, user_id: str) -> List[EmergencyAlert]:
        with self._lock:
            alerts = [a for a in self._alerts.values() if a.user_id == user_id]
            alerts.sort(key=lambda a: a.created_at, reverse=True)
            return [a.model_copy(deep=True) for a in alerts]


class VehicleStateStore:
    """Last-known location and trip state per vehicle."""

    def __init__(self) -> None:
        self._locations: Dict[str, LocationReport] = {}
        self._trips: Dict[str, TripState] = {}
        self._lock = RLock()

    def upsert_location(self, report: LocationReport, reject_stale: bool = True) -> bool:
        """
        Store a report as the vehicle's last location.

        Returns:
            False if the report is older than the stored one and was dropped
        """
        with self._lock:
            current = self._locations.get(report.bus_id)
            if reject_stale and current is not None and report.timestamp < current.timestamp:
                return False
            self._locations[report.bus_id] = report
            return True

    def get_location(self, bus_id: str) -> Optional[LocationReport]:
        with self._lock:
            return self._locations.get(bus_id)

    def all_locations(self) -> Dict[str, LocationReport]:
        with self._lock:
            return dict(self._locations)

    def set_trip(self, state: TripState) -> None:
        with self._lock:
            self._trips[state.bus_id] = state

    def get_trip(self, bus_id: str) -> Optional[TripState]:
        with self._lock:
            return self._trips.get(bus_id)

    def stats(self) -> dict:
        with self._lock:
            return {
                "tracked_vehicles": len(self._locations),
                "vehicles_on_trip": sum(1 for t in self._trips.values() if t.on_trip),
            }

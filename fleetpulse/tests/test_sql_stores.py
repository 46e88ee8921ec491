"""
Tests for the SQLAlchemy-backed stores (in-memory SQLite).
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from fleetpulse.db import SqlAlertStore, SqlAttendanceStore, create_tables, database, drop_tables
from fleetpulse.models import AlertStatus, AttendanceRecord, EmergencyAlert, GeoPoint
from fleetpulse.services.attendance import AttendanceVerificationEngine, ScanOutcome, mint_token
from fleetpulse.services.storage import AlertNotFoundError, DuplicateAttendanceError, StorageUnavailableError
from fleetpulse.tests.conftest import FIXED_NOW


@pytest.fixture
def session_factory():
    engine = database.init_engine("sqlite:///:memory:")
    assert engine is not None
    create_tables()
    yield database.SessionLocal
    drop_tables()
    engine.dispose()


@pytest.fixture
def sql_attendance(session_factory):
    return SqlAttendanceStore(session_factory)


@pytest.fixture
def sql_alerts(session_factory):
    return SqlAlertStore(session_factory)


def _record(record_id="att-1", user_id="u1", bus_id="BUS-001", session_id="session-2025-03-10"):
    return AttendanceRecord(
        id=record_id,
        user_id=user_id,
        bus_id=bus_id,
        timestamp=FIXED_NOW,
        session_id=session_id,
    )


def _alert(alert_id="sos-1", user_id="u1", minutes=0):
    return EmergencyAlert(
        id=alert_id,
        user_id=user_id,
        bus_id="BUS-001",
        message="Emergency alert triggered",
        created_at=FIXED_NOW + timedelta(minutes=minutes),
        location=GeoPoint(latitude=13.0418, longitude=80.2341),
    )


# ============================================================
# TESTS - ATTENDANCE
# ============================================================

class TestSqlAttendanceStore:

    def test_add_and_query(self, sql_attendance):
        sql_attendance.add(_record())

        assert sql_attendance.has_checked_in("u1", "BUS-001", "session-2025-03-10")
        assert not sql_attendance.has_checked_in("u1", "BUS-002", "session-2025-03-10")
        records = sql_attendance.list_for_user("u1")
        assert [r.id for r in records] == ["att-1"]
        assert records[0].timestamp == FIXED_NOW
        assert sql_attendance.count_checked_in("session-2025-03-10") == 1

    def test_unique_constraint_raises_duplicate(self, sql_attendance):
        sql_attendance.add(_record("att-1"))

        with pytest.raises(DuplicateAttendanceError):
            sql_attendance.add(_record("att-2"))
        assert sql_attendance.count_checked_in("session-2025-03-10") == 1

    @pytest.mark.asyncio
    async def test_engine_on_sql_store(self, sql_attendance):
        engine = AttendanceVerificationEngine(sql_attendance, clock=lambda: FIXED_NOW)
        qr = mint_token("BUS-001", FIXED_NOW).to_qr_data()

        first = await engine.verify_scan("u1", qr)
        second = await engine.verify_scan("u1", qr)

        assert first.outcome == ScanOutcome.VALID
        assert second.outcome == ScanOutcome.DUPLICATE

    def test_operational_error_maps_to_unavailable(self):
        session = Mock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
        store = SqlAttendanceStore(lambda: session)

        with pytest.raises(StorageUnavailableError):
            store.has_checked_in("u1", "BUS-001", "session-2025-03-10")
        session.rollback.assert_called_once()
        session.close.assert_called_once()


# ============================================================
# TESTS - ALERTS
# ============================================================

class TestSqlAlertStore:

    def test_create_and_get(self, sql_alerts):
        sql_alerts.create(_alert())

        alert = sql_alerts.get("sos-1")

        assert alert.status == AlertStatus.TRIGGERED
        assert alert.location == GeoPoint(latitude=13.0418, longitude=80.2341)
        assert alert.created_at == FIXED_NOW
        assert sql_alerts.get("missing") is None

    def test_resolve_is_compare_and_set(self, sql_alerts):
        sql_alerts.create(_alert())
        resolved_at = FIXED_NOW + timedelta(minutes=3)

        alert, changed = sql_alerts.resolve("sos-1", resolved_at)
        again, changed_again = sql_alerts.resolve("sos-1", resolved_at + timedelta(minutes=1))

        assert changed is True
        assert changed_again is False
        assert alert.resolved is True
        assert again.resolved_at == resolved_at

    def test_transition_unknown_alert(self, sql_alerts):
        with pytest.raises(AlertNotFoundError):
            sql_alerts.acknowledge("missing", FIXED_NOW)

    def test_cancel_removes_from_active(self, sql_alerts):
        sql_alerts.create(_alert("sos-1"))
        sql_alerts.create(_alert("sos-2", minutes=5))

        _, changed = sql_alerts.cancel("sos-1")

        assert changed is True
        assert [a.id for a in sql_alerts.list_active()] == ["sos-2"]
        _, changed = sql_alerts.resolve("sos-1", FIXED_NOW)
        assert changed is False

    def test_history_newest_first(self, sql_alerts):
        sql_alerts.create(_alert("sos-1"))
        sql_alerts.create(_alert("sos-2", minutes=5))
        sql_alerts.create(_alert("sos-3", user_id="u2"))

        assert [a.id for a in sql_alerts.list_for_user("u1")] == ["sos-2", "sos-1"]

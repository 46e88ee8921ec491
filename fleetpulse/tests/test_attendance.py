"""
Tests for QR attendance verification.

Covers the ordered rules Malformed -> Expired -> Duplicate -> Valid, the
guarantee that malformed / expired scans never reach the store and the
single check-in per (user, vehicle, session) under concurrent scans.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from fleetpulse.events import ATTENDANCE_RECORDED
from fleetpulse.models import AttendanceStatus, AttendanceToken, Role, epoch_ms
from fleetpulse.services.attendance import (
    DUPLICATE_SCAN_MESSAGE,
    EXPIRED_QR_MESSAGE,
    INVALID_QR_MESSAGE,
    AttendanceUnavailableError,
    AttendanceVerificationEngine,
    ScanOutcome,
    announce_check_in,
    mint_token,
    parse_token,
    session_id_for,
)
from fleetpulse.services.storage import DuplicateAttendanceError, StorageUnavailableError
from fleetpulse.tests.conftest import FIXED_NOW
from fleetpulse.websocket import role_topic, vehicle_topic

T = epoch_ms(FIXED_NOW)


def _at(offset_ms: int) -> datetime:
    return FIXED_NOW + timedelta(milliseconds=offset_ms)


def _token(bus_id: str = "BUS-001") -> str:
    return json.dumps({"busId": bus_id, "timestamp": T, "expiresAt": T + 300000})


@pytest.fixture
def engine(attendance_store, clock):
    return AttendanceVerificationEngine(attendance_store, clock=clock)


# ============================================================
# TESTS - TOKENS
# ============================================================

class TestTokens:

    def test_mint_token_window(self):
        token = mint_token("BUS-001", FIXED_NOW)

        assert token.timestamp == T
        assert token.expires_at == T + 300000

    def test_qr_data_round_trips(self):
        token = mint_token("BUS-001", FIXED_NOW)

        assert json.loads(token.to_qr_data()) == {"busId": "BUS-001", "timestamp": T, "expiresAt": T + 300000}
        assert parse_token(token.to_qr_data()) == token

    @pytest.mark.parametrize("raw", [
        None,
        "",
        "not json",
        "42",
        '["BUS-001"]',
        '{"timestamp": 1, "expiresAt": 2}',
        '{"busId": "BUS-001", "expiresAt": 2}',
        '{"busId": "BUS-001", "timestamp": 1}',
        '{"busId": "", "timestamp": 1, "expiresAt": 2}',
        '{"busId": "BUS-001", "timestamp": "soon", "expiresAt": 2}',
    ])
    def test_parse_token_rejects_malformed(self, raw):
        assert parse_token(raw) is None

    def test_parse_token_accepts_mapping(self):
        token = parse_token({"busId": "B1", "timestamp": 1, "expiresAt": 2})

        assert isinstance(token, AttendanceToken)
        assert token.bus_id == "B1"

    def test_session_id_uses_utc_day(self):
        late_evening_west = datetime(2025, 3, 10, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

        assert session_id_for(FIXED_NOW) == "session-2025-03-10"
        assert session_id_for(late_evening_west) == "session-2025-03-11"


# ============================================================
# TESTS - VERIFICATION RULES
# ============================================================

class TestVerifyScan:

    @pytest.mark.asyncio
    async def test_valid_scan_records_check_in(self, engine, attendance_store):
        result = await engine.verify_scan("u1", _token(), now=_at(100000))

        assert result.outcome == ScanOutcome.VALID
        assert result.success
        assert result.record.status == AttendanceStatus.CHECKED_IN
        assert result.record.bus_id == "BUS-001"
        assert result.record.user_id == "u1"
        assert result.record.session_id == "session-2025-03-10"
        assert attendance_store.list_for_user("u1") == [result.record]

    @pytest.mark.asyncio
    async def test_expired_scan_rejected(self, engine, attendance_store):
        result = await engine.verify_scan("u1", _token(), now=_at(400000))

        assert result.outcome == ScanOutcome.EXPIRED
        assert result.reason == EXPIRED_QR_MESSAGE
        assert attendance_store.list_for_user("u1") == []

    @pytest.mark.asyncio
    async def test_scan_at_expiry_instant_still_valid(self, engine):
        result = await engine.verify_scan("u1", _token(), now=_at(300000))

        assert result.outcome == ScanOutcome.VALID

    @pytest.mark.asyncio
    async def test_second_scan_same_session_is_duplicate(self, engine, attendance_store):
        first = await engine.verify_scan("u1", _token(), now=_at(1000))
        second = await engine.verify_scan("u1", _token(), now=_at(2000))

        assert first.outcome == ScanOutcome.VALID
        assert second.outcome == ScanOutcome.DUPLICATE
        assert second.reason == DUPLICATE_SCAN_MESSAGE
        assert len(attendance_store.list_for_user("u1")) == 1

    @pytest.mark.asyncio
    async def test_other_user_or_vehicle_not_duplicate(self, engine):
        await engine.verify_scan("u1", _token("BUS-001"), now=_at(1000))

        assert (await engine.verify_scan("u2", _token("BUS-001"), now=_at(1000))).success
        assert (await engine.verify_scan("u1", _token("BUS-002"), now=_at(1000))).success

    @pytest.mark.asyncio
    async def test_new_day_is_new_session(self, engine):
        await engine.verify_scan("u1", _token(), now=_at(1000))
        tomorrow = FIXED_NOW + timedelta(days=1)
        fresh = mint_token("BUS-001", tomorrow).to_qr_data()

        result = await engine.verify_scan("u1", fresh, now=tomorrow)

        assert result.outcome == ScanOutcome.VALID
        assert result.record.session_id == "session-2025-03-11"

    @pytest.mark.asyncio
    async def test_expired_wins_over_duplicate(self, engine):
        await engine.verify_scan("u1", _token(), now=_at(1000))

        result = await engine.verify_scan("u1", _token(), now=_at(300001))

        assert result.outcome == ScanOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_bus_mismatch_is_malformed(self, engine):
        result = await engine.verify_scan("u1", _token("BUS-001"), now=_at(1000), expected_bus_id="BUS-002")

        assert result.outcome == ScanOutcome.MALFORMED
        assert result.reason == INVALID_QR_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        '{"timestamp": 1, "expiresAt": 2}',
        '{"busId": "BUS-001", "expiresAt": 2}',
        '{"busId": "BUS-001", "timestamp": 1}',
        "garbage",
    ])
    async def test_malformed_never_touches_store(self, raw, clock):
        store = Mock()

        result = await AttendanceVerificationEngine(store, clock=clock).verify_scan("u1", raw)

        assert result.outcome == ScanOutcome.MALFORMED
        assert result.reason == INVALID_QR_MESSAGE
        assert store.method_calls == []

    @pytest.mark.asyncio
    async def test_expired_never_touches_store(self, clock):
        store = Mock()

        result = await AttendanceVerificationEngine(store, clock=clock).verify_scan("u1", _token(), now=_at(500000))

        assert result.outcome == ScanOutcome.EXPIRED
        assert store.method_calls == []

    @pytest.mark.asyncio
    async def test_store_constraint_violation_maps_to_duplicate(self, clock):
        store = Mock()
        store.has_checked_in.return_value = False
        store.add.side_effect = DuplicateAttendanceError("taken")

        result = await AttendanceVerificationEngine(store, clock=clock).verify_scan("u1", _token(), now=_at(1000))

        assert result.outcome == ScanOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_store_unavailable_raises_retryable_error(self, clock):
        store = Mock()
        store.has_checked_in.side_effect = StorageUnavailableError("connection refused")

        with pytest.raises(AttendanceUnavailableError):
            await AttendanceVerificationEngine(store, clock=clock).verify_scan("u1", _token(), now=_at(1000))

    @pytest.mark.asyncio
    async def test_concurrent_scans_record_once(self, engine, attendance_store):
        results = await asyncio.gather(*(
            engine.verify_scan("u1", _token(), now=_at(1000)) for _ in range(10)
        ))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(ScanOutcome.VALID) == 1
        assert outcomes.count(ScanOutcome.DUPLICATE) == 9
        assert len(attendance_store.list_for_user("u1")) == 1
        assert len(engine._locks) == 0


# ============================================================
# TESTS - QUERIES AND ANNOUNCEMENTS
# ============================================================

class TestQueries:

    @pytest.mark.asyncio
    async def test_today_count(self, engine):
        await engine.verify_scan("u1", _token(), now=_at(1000))
        await engine.verify_scan("u2", _token(), now=_at(1000))
        await engine.verify_scan("u2", _token(), now=_at(2000))

        assert engine.today_count(_at(5000)) == 2
        assert engine.today_count(FIXED_NOW + timedelta(days=1)) == 0

    def test_seconds_until_expiry(self, engine):
        token = engine.mint_token("BUS-001")

        assert engine.seconds_until_expiry(token) == 300
        assert engine.seconds_until_expiry(token, _at(400000)) == 0

    def test_result_payload(self):
        result = asyncio.run(
            AttendanceVerificationEngine(Mock()).verify_scan("u1", "garbage")
        )

        assert result.to_payload().to_wire() == {
            "success": False,
            "outcome": "malformed",
            "reason": INVALID_QR_MESSAGE,
            "recordId": None,
            "busId": None,
            "sessionId": None,
        }

    @pytest.mark.asyncio
    async def test_announce_check_in_targets_admins_and_driver(self, engine):
        publisher = AsyncMock()
        result = await engine.verify_scan("u1", _token(), now=_at(1000))

        await announce_check_in(publisher, result.record)

        topics, message = publisher.publish_to_topics.await_args.args
        assert topics == {role_topic(Role.ADMIN), vehicle_topic("BUS-001")}
        assert message["event"] == ATTENDANCE_RECORDED
        assert message["data"]["userId"] == "u1"
        assert message["data"]["recordId"] == result.record.id

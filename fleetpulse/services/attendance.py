"""
QR-code attendance verification.

A vehicle's display shows a short-lived token ``{busId, timestamp, expiresAt}``;
a passenger scans it and the engine decides the outcome of the attempt:

    Presented -> Malformed | Expired | Duplicate | Valid

Rules are evaluated in that order. The malformed and expiry checks are
stateless and never touch the store; the duplicate check and the insert are
serialized per (user, vehicle, session) so two near-simultaneous scans cannot
both check in.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Hashable, List, Optional, Union

from pydantic import ValidationError

from fleetpulse.events import (
    ATTENDANCE_RECORDED,
    AttendanceRecordedPayload,
    AttendanceResultPayload,
    build_message,
)
from fleetpulse.models import (
    AttendanceRecord,
    AttendanceStatus,
    AttendanceToken,
    Role,
    epoch_ms,
    utc_now,
)
from fleetpulse.services.storage import (
    AttendanceStore,
    DuplicateAttendanceError,
    StorageUnavailableError,
)
from fleetpulse.websocket import EventPublisher, role_topic, vehicle_topic

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_MS = 300_000

INVALID_QR_MESSAGE = "Invalid QR code"
EXPIRED_QR_MESSAGE = "QR code has expired. Please request a fresh code."
DUPLICATE_SCAN_MESSAGE = "Attendance already marked for this session."
ATTENDANCE_UNAVAILABLE_MESSAGE = "Failed to mark attendance. Please try again."


class ScanOutcome(str, Enum):
    VALID = "valid"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    DUPLICATE = "duplicate"


class AttendanceUnavailableError(RuntimeError):
    """The attendance store could not be reached; the user may retry."""


@dataclass(frozen=True)
class ScanResult:
    outcome: ScanOutcome
    record: Optional[AttendanceRecord] = None
    reason: Optional[str] = None
    token: Optional[AttendanceToken] = None

    @property
    def success(self) -> bool:
        return self.outcome == ScanOutcome.VALID

    def to_payload(self) -> AttendanceResultPayload:
        return AttendanceResultPayload(
            success=self.success,
            outcome=self.outcome.value,
            reason=self.reason,
            record_id=self.record.id if self.record else None,
            bus_id=self.token.bus_id if self.token else None,
            session_id=self.record.session_id if self.record else None,
        )


def session_id_for(moment: datetime) -> str:
    """One attendance session per UTC calendar day."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return f"session-{moment.astimezone(timezone.utc).date().isoformat()}"


def parse_token(raw: Union[str, bytes, Dict[str, Any], None]) -> Optional[AttendanceToken]:
    """Parse scanned QR data; returns None for anything that is not a token."""
    if raw is None:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return AttendanceToken.model_validate(data)
    except ValidationError:
        return None


def mint_token(bus_id: str, now: Optional[datetime] = None, ttl_ms: int = DEFAULT_TOKEN_TTL_MS) -> AttendanceToken:
    issued = epoch_ms(now)
    return AttendanceToken(bus_id=bus_id, timestamp=issued, expires_at=issued + ttl_ms)


class _KeyedLocks:
    """asyncio locks created on demand per key and dropped when idle."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class AttendanceVerificationEngine:
    """Validates scanned tokens and records check-ins."""

    def __init__(
        self,
        store: AttendanceStore,
        token_ttl_ms: int = DEFAULT_TOKEN_TTL_MS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.token_ttl_ms = token_ttl_ms
        self.clock = clock
        self._locks = _KeyedLocks()

    def mint_token(self, bus_id: str, now: Optional[datetime] = None) -> AttendanceToken:
        return mint_token(bus_id, now or self.clock(), self.token_ttl_ms)

    async def verify_scan(
        self,
        user_id: str,
        qr_data: Union[str, bytes, Dict[str, Any], None],
        now: Optional[datetime] = None,
        expected_bus_id: Optional[str] = None,
    ) -> ScanResult:
        """
        Run one scan attempt through the verification rules.

        Args:
            user_id: Already-authenticated id of the scanning passenger
            qr_data: Raw QR payload (JSON text or decoded mapping)
            now: Evaluation time, defaults to the engine clock
            expected_bus_id: Vehicle the scanner claims to be on, if known

        Returns:
            Tagged ScanResult; rejections are results, not exceptions

        Raises:
            AttendanceUnavailableError: if the store cannot be reached
        """
        now = now or self.clock()

        token = parse_token(qr_data)
        if token is None or (expected_bus_id is not None and token.bus_id != expected_bus_id):
            return ScanResult(ScanOutcome.MALFORMED, reason=INVALID_QR_MESSAGE, token=token)

        if token.is_expired(epoch_ms(now)):
            return ScanResult(ScanOutcome.EXPIRED, reason=EXPIRED_QR_MESSAGE, token=token)

        session_id = session_id_for(now)
        async with self._locks.hold((user_id, token.bus_id, session_id)):
            try:
                if self.store.has_checked_in(user_id, token.bus_id, session_id):
                    return ScanResult(ScanOutcome.DUPLICATE, reason=DUPLICATE_SCAN_MESSAGE, token=token)

                record = self.store.add(
                    AttendanceRecord(
                        id=f"att-{uuid.uuid4().hex[:12]}",
                        user_id=user_id,
                        bus_id=token.bus_id,
                        timestamp=now,
                        status=AttendanceStatus.CHECKED_IN,
                        session_id=session_id,
                    )
                )
            except DuplicateAttendanceError:
                # Another writer (e.g. another worker) committed first
                return ScanResult(ScanOutcome.DUPLICATE, reason=DUPLICATE_SCAN_MESSAGE, token=token)
            except StorageUnavailableError as e:
                logger.error(f"Attendance store unavailable for {user_id} on {token.bus_id}: {e}")
                raise AttendanceUnavailableError(ATTENDANCE_UNAVAILABLE_MESSAGE) from e

        logger.info(f"Attendance recorded: user={user_id} bus={token.bus_id} session={session_id}")
        return ScanResult(ScanOutcome.VALID, record=record, token=token)

    def records_for_user(self, user_id: str) -> List[AttendanceRecord]:
        return self.store.list_for_user(user_id)

    def today_count(self, now: Optional[datetime] = None) -> int:
        return self.store.count_checked_in(session_id_for(now or self.clock()))

    def seconds_until_expiry(self, token: AttendanceToken, now: Optional[datetime] = None) -> int:
        remaining_ms = token.expires_at - epoch_ms(now or self.clock())
        return max(0, int(timedelta(milliseconds=remaining_ms).total_seconds()))


async def announce_check_in(publisher: EventPublisher, record: AttendanceRecord) -> int:
    """Tell admins and the vehicle's driver that a passenger checked in."""
    payload = AttendanceRecordedPayload(
        user_id=record.user_id,
        bus_id=record.bus_id,
        scanned_at=record.timestamp,
        record_id=record.id,
        session_id=record.session_id,
    )
    return await publisher.publish_to_topics(
        {role_topic(Role.ADMIN), vehicle_topic(record.bus_id)},
        build_message(ATTENDANCE_RECORDED, payload),
    )

"""
Attendance API.

QR token issuance for vehicle displays, scan verification and the
attendance log.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fleetpulse.dependencies import FleetServices, get_services
from fleetpulse.events import WireModel
from fleetpulse.models import AttendanceRecord
from fleetpulse.services.attendance import (
    AttendanceUnavailableError,
    ScanOutcome,
    announce_check_in,
    session_id_for,
)
from fleetpulse.services.storage import StorageUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/attendance", tags=["attendance"])

_REJECTION_STATUS = {
    ScanOutcome.MALFORMED: status.HTTP_400_BAD_REQUEST,
    ScanOutcome.EXPIRED: status.HTTP_400_BAD_REQUEST,
    ScanOutcome.DUPLICATE: status.HTTP_409_CONFLICT,
}


class ScanRequest(WireModel):
    user_id: str = Field(min_length=1)
    qr_data: Union[str, Dict[str, Any]]
    bus_id: Optional[str] = None


class TokenResponse(WireModel):
    bus_id: str
    timestamp: int
    expires_at: int
    expires_in: int
    qr_data: str


class TodayResponse(BaseModel):
    session_id: str
    count: int


@router.get("/token/{bus_id}", response_model=TokenResponse)
async def issue_token(bus_id: str, services: FleetServices = Depends(get_services)) -> TokenResponse:
    token = services.attendance.mint_token(bus_id)
    return TokenResponse(
        bus_id=token.bus_id,
        timestamp=token.timestamp,
        expires_at=token.expires_at,
        expires_in=services.attendance.seconds_until_expiry(token),
        qr_data=token.to_qr_data(),
    )


@router.post("/scan")
async def scan(payload: ScanRequest, services: FleetServices = Depends(get_services)) -> dict:
    """
    Verify a scanned QR code and record the check-in.

    Rejections (invalid, expired, duplicate) come back as 400 / 409 with the
    tagged result as detail; 503 means the attempt can be retried.
    """
    try:
        result = await services.attendance.verify_scan(
            payload.user_id,
            payload.qr_data,
            expected_bus_id=payload.bus_id,
        )
    except AttendanceUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    body = result.to_payload().to_wire()
    if not result.success:
        logger.info(f"Scan by {payload.user_id} rejected: {result.outcome.value}")
        raise HTTPException(status_code=_REJECTION_STATUS[result.outcome], detail=body)

    await announce_check_in(services.publisher, result.record)
    return body


@router.get("/records/{user_id}", response_model=List[AttendanceRecord])
async def records_for_user(user_id: str, services: FleetServices = Depends(get_services)) -> List[AttendanceRecord]:
    try:
        return services.attendance.records_for_user(user_id)
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/today", response_model=TodayResponse)
async def today(services: FleetServices = Depends(get_services)) -> TodayResponse:
    now = services.attendance.clock()
    try:
        count = services.attendance.today_count(now)
    except StorageUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return TodayResponse(session_id=session_id_for(now), count=count)

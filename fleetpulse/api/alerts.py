"""
SOS alerts API.

Trigger, acknowledge, resolve and cancel emergency alerts. Every state
change is also pushed to the realtime channel by the dispatcher.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field

from fleetpulse.dependencies import FleetServices, get_services
from fleetpulse.events import WireModel
from fleetpulse.models import EmergencyAlert, GeoPoint
from fleetpulse.services.emergency import AlertDispatchError
from fleetpulse.services.storage import AlertNotFoundError, StorageUnavailableError

router = APIRouter(prefix="/api/sos", tags=["sos"])


class TriggerRequest(WireModel):
    user_id: str = Field(min_length=1)
    bus_id: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=500)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class CancelRequest(WireModel):
    user_id: Optional[str] = None


def _not_found(alert_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Alert {alert_id} not found")


def _unavailable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.post("", response_model=EmergencyAlert, status_code=status.HTTP_201_CREATED)
async def trigger(payload: TriggerRequest, services: FleetServices = Depends(get_services)) -> EmergencyAlert:
    location = None
    if payload.latitude is not None and payload.longitude is not None:
        location = GeoPoint(latitude=payload.latitude, longitude=payload.longitude)
    try:
        return await services.alerts.trigger_alert(
            payload.user_id,
            bus_id=payload.bus_id,
            message=payload.message,
            location=location,
        )
    except AlertDispatchError as exc:
        raise _unavailable(exc) from exc


@router.get("/active", response_model=List[EmergencyAlert])
async def active(services: FleetServices = Depends(get_services)) -> List[EmergencyAlert]:
    try:
        return services.alerts.active_alerts()
    except StorageUnavailableError as exc:
        raise _unavailable(exc) from exc


@router.get("/history/{user_id}", response_model=List[EmergencyAlert])
async def history(user_id: str, services: FleetServices = Depends(get_services)) -> List[EmergencyAlert]:
    try:
        return services.alerts.history(user_id)
    except StorageUnavailableError as exc:
        raise _unavailable(exc) from exc


@router.post("/{alert_id}/acknowledge", response_model=EmergencyAlert)
async def acknowledge(alert_id: str, services: FleetServices = Depends(get_services)) -> EmergencyAlert:
    try:
        return await services.alerts.acknowledge_alert(alert_id)
    except AlertNotFoundError as exc:
        raise _not_found(alert_id) from exc
    except AlertDispatchError as exc:
        raise _unavailable(exc) from exc


@router.post("/{alert_id}/resolve", response_model=EmergencyAlert)
async def resolve(alert_id: str, services: FleetServices = Depends(get_services)) -> EmergencyAlert:
    try:
        return await services.alerts.resolve_alert(alert_id)
    except AlertNotFoundError as exc:
        raise _not_found(alert_id) from exc
    except AlertDispatchError as exc:
        raise _unavailable(exc) from exc


@router.post("/{alert_id}/cancel", response_model=EmergencyAlert)
async def cancel(
    alert_id: str,
    payload: Optional[CancelRequest] = None,
    services: FleetServices = Depends(get_services),
) -> EmergencyAlert:
    try:
        return await services.alerts.cancel_alert(alert_id, user_id=payload.user_id if payload else None)
    except AlertNotFoundError as exc:
        raise _not_found(alert_id) from exc
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except AlertDispatchError as exc:
        raise _unavailable(exc) from exc

"""
Vehicles API.

Fleet configuration (registry) merged with each vehicle's live state: last
reported location and whether a trip is in progress.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fleetpulse.dependencies import FleetServices, get_services
from fleetpulse.models import LocationReport, Vehicle, VehicleStatus

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])


class VehicleCreate(BaseModel):
    id: Optional[str] = Field(default=None, max_length=64)
    number: str = Field(min_length=1, max_length=32)
    route_name: str = Field(default="", max_length=120)
    capacity: int = Field(ge=1, le=200)
    status: VehicleStatus = VehicleStatus.ACTIVE
    current_occupancy: int = Field(default=0, ge=0)


class StatusUpdate(BaseModel):
    status: VehicleStatus


class OccupancyUpdate(BaseModel):
    current_occupancy: int = Field(ge=0)


class FleetSummary(BaseModel):
    total: int
    active: int
    maintenance: int
    inactive: int
    on_trip: int
    total_capacity: int
    total_occupancy: int


class VehicleListResponse(BaseModel):
    vehicles: List[Vehicle]
    summary: FleetSummary


def _to_vehicle(raw: dict, services: FleetServices) -> Vehicle:
    vehicle_id = str(raw.get("id", ""))
    trip = services.state.get_trip(vehicle_id)
    location: Optional[LocationReport] = services.state.get_location(vehicle_id)
    return Vehicle(
        id=vehicle_id,
        number=str(raw.get("number", "") or ""),
        route_name=str(raw.get("route_name", "") or ""),
        capacity=int(raw.get("capacity") or 1),
        status=VehicleStatus(raw.get("status", VehicleStatus.ACTIVE.value)),
        current_occupancy=int(raw.get("current_occupancy") or 0),
        location=location,
        on_trip=bool(trip and trip.on_trip),
    )


def _build_summary(vehicles: List[Vehicle]) -> FleetSummary:
    return FleetSummary(
        total=len(vehicles),
        active=sum(1 for v in vehicles if v.status == VehicleStatus.ACTIVE),
        maintenance=sum(1 for v in vehicles if v.status == VehicleStatus.MAINTENANCE),
        inactive=sum(1 for v in vehicles if v.status == VehicleStatus.INACTIVE),
        on_trip=sum(1 for v in vehicles if v.on_trip),
        total_capacity=sum(v.capacity for v in vehicles),
        total_occupancy=sum(v.current_occupancy for v in vehicles),
    )


@router.get("", response_model=VehicleListResponse)
async def list_vehicles(services: FleetServices = Depends(get_services)) -> VehicleListResponse:
    vehicles = [_to_vehicle(v, services) for v in services.registry.list_vehicles()]
    return VehicleListResponse(vehicles=vehicles, summary=_build_summary(vehicles))


@router.get("/{vehicle_id}", response_model=Vehicle)
async def get_vehicle(vehicle_id: str, services: FleetServices = Depends(get_services)) -> Vehicle:
    vehicle = services.registry.get_vehicle(vehicle_id)
    if not vehicle:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return _to_vehicle(vehicle, services)


@router.get("/{vehicle_id}/location", response_model=LocationReport)
async def get_vehicle_location(vehicle_id: str, services: FleetServices = Depends(get_services)) -> LocationReport:
    location = services.state.get_location(vehicle_id)
    if location is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No location reported yet")
    return location


@router.post("", response_model=Vehicle, status_code=status.HTTP_201_CREATED)
async def create_vehicle(payload: VehicleCreate, services: FleetServices = Depends(get_services)) -> Vehicle:
    try:
        created = services.registry.create_vehicle(payload.model_dump(mode="json"))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _to_vehicle(created, services)


@router.put("/{vehicle_id}/status", response_model=Vehicle)
async def update_status(
    vehicle_id: str,
    payload: StatusUpdate,
    services: FleetServices = Depends(get_services),
) -> Vehicle:
    try:
        updated = services.registry.update_status(vehicle_id, payload.status)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found") from exc
    return _to_vehicle(updated, services)


@router.put("/{vehicle_id}/occupancy", response_model=Vehicle)
async def update_occupancy(
    vehicle_id: str,
    payload: OccupancyUpdate,
    services: FleetServices = Depends(get_services),
) -> Vehicle:
    try:
        updated = services.registry.set_occupancy(vehicle_id, payload.current_occupancy)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _to_vehicle(updated, services)


@router.delete("/{vehicle_id}")
async def delete_vehicle(vehicle_id: str, services: FleetServices = Depends(get_services)) -> dict:
    if not services.registry.delete_vehicle(vehicle_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vehicle not found")
    return {"success": True, "vehicle_id": vehicle_id}

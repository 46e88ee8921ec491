"""
Service wiring for the broker process.

Builds one FleetServices container per application (stored on
``app.state.services``) and exposes it to routers through FastAPI
dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fastapi import Request, WebSocket

from fleetpulse.config import config
from fleetpulse.models import GeoPoint
from fleetpulse.relay import RedisEventRelay
from fleetpulse.services.attendance import AttendanceVerificationEngine
from fleetpulse.services.emergency import EmergencyAlertDispatcher, vehicle_location_provider
from fleetpulse.services.fleet_registry import FleetRegistry
from fleetpulse.services.location_processor import LocationUpdateProcessor
from fleetpulse.services.storage import (
    AlertStore,
    AttendanceStore,
    InMemoryAlertStore,
    InMemoryAttendanceStore,
    VehicleStateStore,
)
from fleetpulse.services.trips import TripTracker
from fleetpulse.websocket import ConnectionManager, EventPublisher

logger = logging.getLogger(__name__)


@dataclass
class FleetServices:
    manager: ConnectionManager
    publisher: EventPublisher
    state: VehicleStateStore
    registry: FleetRegistry
    locations: LocationUpdateProcessor
    attendance: AttendanceVerificationEngine
    alerts: EmergencyAlertDispatcher
    trips: TripTracker
    relay: Optional[RedisEventRelay] = None
    persistence: str = field(default="memory")


def _open_stores(use_database: bool, database_url: Optional[str]) -> tuple[AttendanceStore, AlertStore, str]:
    if use_database:
        from fleetpulse.db import SqlAlertStore, SqlAttendanceStore, create_tables, database

        if database.init_engine(database_url) is not None:
            create_tables()
            return SqlAttendanceStore(database.SessionLocal), SqlAlertStore(database.SessionLocal), "database"
        logger.warning("Falling back to in-memory attendance and alert stores")
    return InMemoryAttendanceStore(), InMemoryAlertStore(), "memory"


def build_services(
    use_database: Optional[bool] = None,
    database_url: Optional[str] = None,
    relay_enabled: Optional[bool] = None,
    fleet_storage_path: Optional[Path] = None,
    attendance_store: Optional[AttendanceStore] = None,
    alert_store: Optional[AlertStore] = None,
) -> FleetServices:
    """
    Assemble the broker's services.

    Explicit stores take precedence over the database flag (tests inject
    their own).
    """
    use_database = config.USE_DATABASE if use_database is None else use_database
    relay_enabled = config.RELAY_ENABLED if relay_enabled is None else relay_enabled

    if attendance_store is not None and alert_store is not None:
        persistence = "custom"
    else:
        default_attendance, default_alerts, persistence = _open_stores(use_database, database_url)
        attendance_store = attendance_store or default_attendance
        alert_store = alert_store or default_alerts

    manager = ConnectionManager(send_timeout=config.WS_SEND_TIMEOUT)
    relay = RedisEventRelay(manager) if relay_enabled else None
    publisher: EventPublisher = relay or manager
    state = VehicleStateStore()

    storage_path = fleet_storage_path or (Path(config.FLEET_STORAGE_PATH) if config.FLEET_STORAGE_PATH else None)

    return FleetServices(
        manager=manager,
        publisher=publisher,
        state=state,
        registry=FleetRegistry(storage_path),
        locations=LocationUpdateProcessor(state, publisher),
        attendance=AttendanceVerificationEngine(attendance_store, token_ttl_ms=config.ATTENDANCE_TOKEN_TTL_MS),
        alerts=EmergencyAlertDispatcher(
            alert_store,
            publisher,
            location_provider=vehicle_location_provider(state),
            geolocation_timeout=config.GEOLOCATION_TIMEOUT,
            fallback_location=GeoPoint(latitude=config.FALLBACK_LATITUDE, longitude=config.FALLBACK_LONGITUDE),
        ),
        trips=TripTracker(state, publisher),
        relay=relay,
        persistence=persistence,
    )


def get_services(request: Request) -> FleetServices:
    return request.app.state.services


def get_ws_services(websocket: WebSocket) -> FleetServices:
    return websocket.app.state.services

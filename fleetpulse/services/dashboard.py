"""
Dashboard state projection.

Folds the realtime event stream (plus a REST snapshot on startup) into the
in-memory view each role's dashboard renders. The set of views is closed:
StudentDashboard, DriverDashboard and AdminDashboard, built through
dashboard_for_role(). Each view only reacts to the events it needs; other
events are ignored.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import httpx

from fleetpulse.channel import ConnectionStatus, EventChannelClient
from fleetpulse.config import config
from fleetpulse.events import (
    ATTENDANCE_RECORDED,
    ATTENDANCE_RESULT,
    LOCATION_UPDATE,
    SOS_ALERT,
    SOS_CANCELLED,
    SOS_RESOLVED,
    TRIP_UPDATED,
    AttendanceRecordedPayload,
    AttendanceResultPayload,
    LocationUpdatePayload,
    SOSAlertPayload,
    SOSCancelledPayload,
    SOSResolvedPayload,
    TripUpdatedPayload,
)
from fleetpulse.models import (
    AlertStatus,
    AttendanceToken,
    EmergencyAlert,
    GeoPoint,
    LocationReport,
    Role,
    Vehicle,
    epoch_ms,
    utc_now,
)
from fleetpulse.services.attendance import mint_token

logger = logging.getLogger(__name__)

ATTENDANCE_FEED_SIZE = 50


class DashboardState:
    """Common part of every dashboard view: vehicles, live positions, connection flag."""

    role: Role
    handled_events: frozenset = frozenset()

    def __init__(self, user_id: Optional[str] = None, bus_id: Optional[str] = None):
        self.user_id = user_id
        self.bus_id = bus_id
        self.connected = False
        self.vehicles: Dict[str, Vehicle] = {}
        self.locations: Dict[str, LocationReport] = {}
        self._handlers: Dict[str, Callable[[Any], None]] = {}

    def apply(self, event: str, payload: Any) -> bool:
        """
        Fold one event into the view.

        Returns:
            False if this view does not handle the event
        """
        handler = self._handlers.get(event)
        if handler is None or event not in self.handled_events:
            return False
        handler(payload)
        return True

    def set_status(self, status: ConnectionStatus) -> None:
        self.connected = status == ConnectionStatus.CONNECTED

    def join(self, channel: EventChannelClient) -> None:
        channel.join_role(self.role)

    def bind(self, channel: EventChannelClient) -> List[Callable[[], None]]:
        """
        Subscribe the view to a channel.

        Topic joins are sent again on every (re)connect since the broker
        forgets memberships when a connection drops.

        Returns:
            Unsubscribe callables
        """
        unsubscribers = [
            channel.subscribe(event, lambda payload, event=event: self.apply(event, payload))
            for event in sorted(self.handled_events)
        ]

        def on_status(status: ConnectionStatus) -> None:
            self.set_status(status)
            if status == ConnectionStatus.CONNECTED:
                self.join(channel)

        unsubscribers.append(channel.on_status(on_status))
        self.set_status(channel.status)
        if channel.status == ConnectionStatus.CONNECTED:
            self.join(channel)
        return unsubscribers

    def load_snapshot(self, vehicles: List[Vehicle], alerts: Optional[List[EmergencyAlert]] = None) -> None:
        for vehicle in vehicles:
            self.vehicles[vehicle.id] = vehicle
            if vehicle.location is not None:
                self._store_location(vehicle.location)

    def vehicle_view(self, bus_id: str) -> Optional[Vehicle]:
        """Registry data for a vehicle merged with its latest live position."""
        vehicle = self.vehicles.get(bus_id)
        if vehicle is None:
            return None
        location = self.locations.get(bus_id)
        if location is not None:
            return vehicle.model_copy(update={"location": location})
        return vehicle

    def _store_location(self, report: LocationReport) -> None:
        current = self.locations.get(report.bus_id)
        if current is not None and report.timestamp < current.timestamp:
            return
        self.locations[report.bus_id] = report

    def _on_location(self, payload: LocationUpdatePayload) -> None:
        self._store_location(LocationReport(
            bus_id=payload.bus_id,
            latitude=payload.latitude,
            longitude=payload.longitude,
            speed=payload.speed,
            timestamp=utc_now(),
        ))


class StudentDashboard(DashboardState):
    role = Role.STUDENT
    handled_events = frozenset({LOCATION_UPDATE, TRIP_UPDATED, ATTENDANCE_RESULT})

    def __init__(self, user_id: Optional[str] = None, bus_id: Optional[str] = None):
        super().__init__(user_id, bus_id)
        self.bus_on_trip = False
        self.last_scan: Optional[AttendanceResultPayload] = None
        self._handlers = {
            LOCATION_UPDATE: self._on_location,
            TRIP_UPDATED: self._on_trip,
            ATTENDANCE_RESULT: self._on_scan_result,
        }

    def join(self, channel: EventChannelClient) -> None:
        channel.join_role(self.role)
        if self.bus_id:
            channel.subscribe_bus(self.bus_id)

    @property
    def bus_location(self) -> Optional[LocationReport]:
        return self.locations.get(self.bus_id) if self.bus_id else None

    def _on_trip(self, payload: TripUpdatedPayload) -> None:
        if payload.bus_id == self.bus_id:
            self.bus_on_trip = payload.action == "start"

    def _on_scan_result(self, payload: AttendanceResultPayload) -> None:
        self.last_scan = payload


class DriverDashboard(DashboardState):
    role = Role.DRIVER
    handled_events = frozenset({LOCATION_UPDATE, TRIP_UPDATED, SOS_ALERT, SOS_RESOLVED, ATTENDANCE_RECORDED})

    def __init__(self, user_id: Optional[str] = None, bus_id: Optional[str] = None, token_ttl_ms: Optional[int] = None):
        super().__init__(user_id, bus_id)
        self.on_trip = False
        self.token_ttl_ms = token_ttl_ms or config.ATTENDANCE_TOKEN_TTL_MS
        self.current_token: Optional[AttendanceToken] = None
        self.vehicle_alerts: Dict[str, SOSAlertPayload] = {}
        self.boarded: List[str] = []
        self._handlers = {
            LOCATION_UPDATE: self._on_location,
            TRIP_UPDATED: self._on_trip,
            SOS_ALERT: self._on_alert,
            SOS_RESOLVED: self._on_resolved,
            ATTENDANCE_RECORDED: self._on_attendance,
        }

    def join(self, channel: EventChannelClient) -> None:
        channel.join_role(self.role)
        if self.bus_id:
            channel.join_bus(self.bus_id)

    def refresh_token(self, now: Optional[datetime] = None) -> AttendanceToken:
        """Return the QR token to display, minting a fresh one once the current one expired."""
        if not self.bus_id:
            raise ValueError("DriverDashboard needs a bus_id to mint attendance tokens")
        now = now or utc_now()
        if self.current_token is None or self.current_token.is_expired(epoch_ms(now)):
            self.current_token = mint_token(self.bus_id, now, self.token_ttl_ms)
            logger.debug(f"Minted attendance token for {self.bus_id}, expires at {self.current_token.expires_at}")
        return self.current_token

    def _on_trip(self, payload: TripUpdatedPayload) -> None:
        if payload.bus_id == self.bus_id:
            self.on_trip = payload.action == "start"

    def _on_alert(self, payload: SOSAlertPayload) -> None:
        if payload.bus_id == self.bus_id:
            self.vehicle_alerts[payload.id] = payload

    def _on_resolved(self, payload: SOSResolvedPayload) -> None:
        self.vehicle_alerts.pop(payload.id, None)

    def _on_attendance(self, payload: AttendanceRecordedPayload) -> None:
        if payload.bus_id == self.bus_id and payload.user_id not in self.boarded:
            self.boarded.append(payload.user_id)


class AdminDashboard(DashboardState):
    role = Role.ADMIN
    handled_events = frozenset({
        LOCATION_UPDATE,
        TRIP_UPDATED,
        SOS_ALERT,
        SOS_RESOLVED,
        SOS_CANCELLED,
        ATTENDANCE_RECORDED,
    })

    def __init__(self, user_id: Optional[str] = None, bus_id: Optional[str] = None):
        super().__init__(user_id, bus_id)
        self.alerts: Dict[str, EmergencyAlert] = {}
        self.trips: Dict[str, bool] = {}
        self.attendance_feed: Deque[AttendanceRecordedPayload] = deque(maxlen=ATTENDANCE_FEED_SIZE)
        self._handlers = {
            LOCATION_UPDATE: self._on_location,
            TRIP_UPDATED: self._on_trip,
            SOS_ALERT: self._on_alert,
            SOS_RESOLVED: self._on_resolved,
            SOS_CANCELLED: self._on_cancelled,
            ATTENDANCE_RECORDED: self._on_attendance,
        }

    @property
    def active_alerts(self) -> List[EmergencyAlert]:
        active = [a for a in self.alerts.values() if not a.is_terminal]
        active.sort(key=lambda a: a.created_at, reverse=True)
        return active

    @property
    def active_alert_count(self) -> int:
        return len(self.active_alerts)

    @property
    def vehicles_on_trip(self) -> int:
        return sum(1 for on_trip in self.trips.values() if on_trip)

    def load_snapshot(self, vehicles: List[Vehicle], alerts: Optional[List[EmergencyAlert]] = None) -> None:
        super().load_snapshot(vehicles, alerts)
        for vehicle in vehicles:
            self.trips[vehicle.id] = vehicle.on_trip
        for alert in alerts or []:
            self.alerts[alert.id] = alert

    def _on_trip(self, payload: TripUpdatedPayload) -> None:
        self.trips[payload.bus_id] = payload.action == "start"

    def _on_alert(self, payload: SOSAlertPayload) -> None:
        location = None
        if payload.latitude is not None and payload.longitude is not None:
            location = GeoPoint(latitude=payload.latitude, longitude=payload.longitude)
        existing = self.alerts.get(payload.id)
        if existing is not None and existing.is_terminal:
            return
        self.alerts[payload.id] = EmergencyAlert(
            id=payload.id,
            user_id=payload.user_id,
            bus_id=payload.bus_id,
            message=payload.message,
            resolved=payload.resolved,
            created_at=payload.timestamp,
            location=location,
        )

    def _on_resolved(self, payload: SOSResolvedPayload) -> None:
        alert = self.alerts.get(payload.id)
        if alert is None:
            return
        self.alerts[payload.id] = alert.model_copy(update={
            "resolved": True,
            "status": AlertStatus.RESOLVED,
            "resolved_at": payload.resolved_at,
        })

    def _on_cancelled(self, payload: SOSCancelledPayload) -> None:
        alert = self.alerts.get(payload.id)
        if alert is None:
            return
        self.alerts[payload.id] = alert.model_copy(update={"status": AlertStatus.CANCELLED})

    def _on_attendance(self, payload: AttendanceRecordedPayload) -> None:
        self.attendance_feed.appendleft(payload)


_DASHBOARDS = {
    Role.STUDENT: StudentDashboard,
    Role.DRIVER: DriverDashboard,
    Role.ADMIN: AdminDashboard,
}

Dashboard = Union[StudentDashboard, DriverDashboard, AdminDashboard]


def dashboard_for_role(role: Union[Role, str], user_id: Optional[str] = None, bus_id: Optional[str] = None) -> Dashboard:
    """Build the dashboard view for a role."""
    return _DASHBOARDS[Role(role)](user_id=user_id, bus_id=bus_id)


class SnapshotClient:
    """Fetches the initial dashboard state from the REST API."""

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = (base_url or config.API_URL).rstrip("/")
        self._client = client
        self.timeout = timeout

    async def _get(self, path: str) -> Any:
        if self._client is not None:
            resp = await self._client.get(f"{self.base_url}{path}", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"{self.base_url}{path}", timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()

    async def fetch_vehicles(self) -> List[Vehicle]:
        data = await self._get("/api/vehicles")
        return [Vehicle.model_validate(v) for v in data.get("vehicles", [])]

    async def fetch_active_alerts(self) -> List[EmergencyAlert]:
        return [EmergencyAlert.model_validate(a) for a in await self._get("/api/sos/active")]

    async def load(self, dashboard: DashboardState) -> DashboardState:
        """Seed a dashboard with the current fleet (and active alerts for admins)."""
        vehicles = await self.fetch_vehicles()
        alerts = await self.fetch_active_alerts() if isinstance(dashboard, AdminDashboard) else None
        dashboard.load_snapshot(vehicles, alerts)
        logger.info(f"Loaded snapshot for {dashboard.role.value} dashboard: {len(vehicles)} vehicles")
        return dashboard

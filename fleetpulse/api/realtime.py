"""
Broker side of the realtime event channel.

One WebSocket endpoint (``/ws``) carries every event. Each inbound frame is
validated into its typed event and dispatched to the matching service;
replies meant only for the sender (join acknowledgements, scan results,
errors) go back on the same connection.
"""

import logging
from typing import Awaitable, Callable, Dict, Type

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from fleetpulse.dependencies import FleetServices, get_ws_services
from fleetpulse.events import (
    ATTENDANCE_RECORDED,
    ATTENDANCE_RESULT,
    JOINED,
    PONG,
    AttendanceRecordedPayload,
    AttendanceScanEvent,
    EventValidationError,
    JoinBusEvent,
    JoinedPayload,
    JoinRoleEvent,
    LocationUpdateEvent,
    PingEvent,
    SOSTriggerEvent,
    SubscribeBusEvent,
    TripUpdateEvent,
    build_error_message,
    build_message,
    parse_client_event,
)
from fleetpulse.models import GeoPoint, Role, utc_now
from fleetpulse.services.attendance import AttendanceUnavailableError, announce_check_in
from fleetpulse.services.emergency import AlertDispatchError
from fleetpulse.services.location_processor import LocationUpdateProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


class RealtimeHandler:
    """Dispatches validated client events for one broker process."""

    def __init__(self, services: FleetServices):
        self.services = services
        self._dispatch: Dict[Type[BaseModel], Callable[[str, BaseModel], Awaitable[None]]] = {
            JoinRoleEvent: self._join_role,
            JoinBusEvent: self._join_bus,
            SubscribeBusEvent: self._subscribe_bus,
            LocationUpdateEvent: self._location_update,
            SOSTriggerEvent: self._sos_trigger,
            TripUpdateEvent: self._trip_update,
            AttendanceScanEvent: self._attendance_scan,
            PingEvent: self._ping,
        }

    @property
    def manager(self):
        return self.services.manager

    async def handle_message(self, connection_id: str, raw: str) -> None:
        try:
            event = parse_client_event(raw)
        except EventValidationError as e:
            logger.warning(f"Rejected frame from {connection_id}: {e}")
            await self.manager.send_to(connection_id, build_error_message("invalid_event", str(e), e.event))
            return

        await self._dispatch[type(event)](connection_id, event)

    async def _ack(self, connection_id: str, topic: str) -> None:
        await self.manager.send_to(connection_id, build_message(JOINED, JoinedPayload(topic=topic)))

    async def _join_role(self, connection_id: str, event: JoinRoleEvent) -> None:
        await self._ack(connection_id, await self.manager.join_role(connection_id, event.data))

    async def _join_bus(self, connection_id: str, event: JoinBusEvent) -> None:
        await self._ack(connection_id, await self.manager.join_vehicle(connection_id, event.data))

    async def _subscribe_bus(self, connection_id: str, event: SubscribeBusEvent) -> None:
        await self._ack(connection_id, await self.manager.subscribe_vehicle(connection_id, event.data))

    async def _location_update(self, connection_id: str, event: LocationUpdateEvent) -> None:
        report = LocationUpdateProcessor.report_from_payload(event.data)
        await self.services.locations.report_location(report)

    async def _sos_trigger(self, connection_id: str, event: SOSTriggerEvent) -> None:
        data = event.data
        location = None
        if data.latitude is not None and data.longitude is not None:
            location = GeoPoint(latitude=data.latitude, longitude=data.longitude)
        try:
            await self.services.alerts.trigger_alert(
                data.user_id,
                bus_id=data.bus_id,
                message=data.message,
                location=location,
            )
        except AlertDispatchError as e:
            await self.manager.send_to(connection_id, build_error_message("sos_failed", str(e), event.event))

    async def _trip_update(self, connection_id: str, event: TripUpdateEvent) -> None:
        await self.services.trips.update_trip(event.data)

    async def _attendance_scan(self, connection_id: str, event: AttendanceScanEvent) -> None:
        data = event.data
        if data.qr_data is None:
            # Scan already verified elsewhere; only let the admins know
            payload = AttendanceRecordedPayload(user_id=data.user_id, bus_id=data.bus_id, scanned_at=utc_now())
            await self.services.publisher.publish_to_role(Role.ADMIN, build_message(ATTENDANCE_RECORDED, payload))
            return

        try:
            result = await self.services.attendance.verify_scan(
                data.user_id,
                data.qr_data,
                expected_bus_id=data.bus_id,
            )
        except AttendanceUnavailableError as e:
            await self.manager.send_to(connection_id, build_error_message("attendance_failed", str(e), event.event))
            return

        await self.manager.send_to(connection_id, build_message(ATTENDANCE_RESULT, result.to_payload()))
        if result.success:
            await announce_check_in(self.services.publisher, result.record)

    async def _ping(self, connection_id: str, event: PingEvent) -> None:
        await self.manager.send_to(connection_id, build_message(PONG, event.data))


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket, services: FleetServices = Depends(get_ws_services)):
    connection_id = await services.manager.connect(websocket)
    if connection_id is None:
        return

    handler = RealtimeHandler(services)
    try:
        while True:
            raw = await websocket.receive_text()
            await handler.handle_message(connection_id, raw)
    except WebSocketDisconnect:
        await services.manager.disconnect(connection_id, close=False)
    except Exception as e:
        logger.error(f"Realtime connection {connection_id} error: {e}")
        await services.manager.disconnect(connection_id)

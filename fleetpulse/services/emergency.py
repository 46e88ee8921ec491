"""
Emergency (SOS) alert dispatch.

Triggering an alert is availability-over-precision: the location fix is
best-effort and bounded by a short timeout, after which a fallback position
is used and the alert still goes out. Persisting the alert is not optional;
if the store is unreachable the caller gets a retryable error and nothing is
published.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from fleetpulse.events import (
    SOS_ALERT,
    SOS_CANCELLED,
    SOS_RESOLVED,
    SOSAlertPayload,
    SOSCancelledPayload,
    SOSResolvedPayload,
    build_message,
)
from fleetpulse.models import EmergencyAlert, GeoPoint, Role, utc_now
from fleetpulse.services.storage import AlertStore, StorageUnavailableError, VehicleStateStore
from fleetpulse.websocket import EventPublisher, role_topic, topics_for_vehicle

logger = logging.getLogger(__name__)

DEFAULT_ALERT_MESSAGE = "Emergency alert triggered"
SOS_FAILED_MESSAGE = "Failed to send SOS alert. Please try again."
SOS_UPDATE_FAILED_MESSAGE = "Failed to update SOS alert. Please try again."
DEFAULT_FALLBACK_LOCATION = GeoPoint(latitude=13.0418, longitude=80.2341)

# (user_id, bus_id) -> position fix, or None when no fix is available
LocationProvider = Callable[[str, Optional[str]], Awaitable[Optional[GeoPoint]]]


class AlertDispatchError(RuntimeError):
    """An alert could not be persisted; the user should retry explicitly."""


def vehicle_location_provider(state: VehicleStateStore) -> LocationProvider:
    """Use the vehicle's last reported position as the alert location."""

    async def provide(user_id: str, bus_id: Optional[str]) -> Optional[GeoPoint]:
        if not bus_id:
            return None
        report = state.get_location(bus_id)
        if report is None:
            return None
        return GeoPoint(latitude=report.latitude, longitude=report.longitude)

    return provide


def alert_payload(alert: EmergencyAlert) -> SOSAlertPayload:
    return SOSAlertPayload(
        id=alert.id,
        user_id=alert.user_id,
        bus_id=alert.bus_id,
        message=alert.message,
        timestamp=alert.created_at,
        resolved=alert.resolved,
        latitude=alert.location.latitude if alert.location else None,
        longitude=alert.location.longitude if alert.location else None,
    )


class EmergencyAlertDispatcher:
    """Creates, fans out and resolves SOS alerts."""

    def __init__(
        self,
        store: AlertStore,
        publisher: EventPublisher,
        location_provider: Optional[LocationProvider] = None,
        geolocation_timeout: float = 5.0,
        fallback_location: GeoPoint = DEFAULT_FALLBACK_LOCATION,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.publisher = publisher
        self.location_provider = location_provider
        self.geolocation_timeout = geolocation_timeout
        self.fallback_location = fallback_location
        self.clock = clock

    async def _locate(self, user_id: str, bus_id: Optional[str]) -> GeoPoint:
        if self.location_provider is None:
            return self.fallback_location
        try:
            point = await asyncio.wait_for(
                self.location_provider(user_id, bus_id),
                timeout=self.geolocation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Location fix timed out for SOS by {user_id}, using fallback")
            return self.fallback_location
        except Exception as e:
            logger.warning(f"Location fix failed for SOS by {user_id}: {e}, using fallback")
            return self.fallback_location
        return point or self.fallback_location

    @staticmethod
    def _alert_topics(bus_id: Optional[str]) -> set:
        topics = {role_topic(Role.ADMIN)}
        if bus_id:
            topics |= topics_for_vehicle(bus_id)
        return topics

    async def trigger_alert(
        self,
        user_id: str,
        bus_id: Optional[str] = None,
        message: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> EmergencyAlert:
        """
        Create an unresolved alert and fan it out to the vehicle and all admins.

        Raises:
            AlertDispatchError: if the alert could not be persisted
        """
        point = location or await self._locate(user_id, bus_id)
        alert = EmergencyAlert(
            id=f"sos-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            bus_id=bus_id,
            message=(message or "").strip() or DEFAULT_ALERT_MESSAGE,
            created_at=self.clock(),
            location=point,
        )
        try:
            saved = self.store.create(alert)
        except StorageUnavailableError as e:
            logger.error(f"Failed to persist SOS alert from {user_id}: {e}")
            raise AlertDispatchError(SOS_FAILED_MESSAGE) from e

        delivered = await self.publisher.publish_to_topics(
            self._alert_topics(bus_id),
            build_message(SOS_ALERT, alert_payload(saved)),
        )
        logger.warning(f"SOS alert {saved.id} from {user_id} on {bus_id or '-'} sent to {delivered} connections")
        return saved

    async def resolve_alert(self, alert_id: str) -> EmergencyAlert:
        """
        Mark an alert resolved. Resolving twice is a no-op with no second
        notification.

        Raises:
            AlertNotFoundError: if the alert does not exist
            AlertDispatchError: if the store could not be reached
        """
        try:
            alert, changed = self.store.resolve(alert_id, self.clock())
        except StorageUnavailableError as e:
            logger.error(f"Failed to resolve SOS alert {alert_id}: {e}")
            raise AlertDispatchError(SOS_UPDATE_FAILED_MESSAGE) from e

        if changed:
            payload = SOSResolvedPayload(id=alert.id, bus_id=alert.bus_id, resolved_at=alert.resolved_at)
            await self.publisher.publish_to_topics(
                self._alert_topics(alert.bus_id), build_message(SOS_RESOLVED, payload)
            )
            logger.info(f"SOS alert {alert_id} resolved")
        return alert

    async def acknowledge_alert(self, alert_id: str) -> EmergencyAlert:
        try:
            alert, changed = self.store.acknowledge(alert_id, self.clock())
        except StorageUnavailableError as e:
            raise AlertDispatchError(SOS_UPDATE_FAILED_MESSAGE) from e
        if changed:
            logger.info(f"SOS alert {alert_id} acknowledged")
        return alert

    async def cancel_alert(self, alert_id: str, user_id: Optional[str] = None) -> EmergencyAlert:
        """
        Cancel an alert on behalf of the user who raised it.

        Raises:
            PermissionError: if user_id is given and did not raise the alert
        """
        try:
            if user_id is not None:
                existing = self.store.get(alert_id)
                if existing is not None and existing.user_id != user_id:
                    raise PermissionError(f"Alert {alert_id} was not raised by {user_id}")
            alert, changed = self.store.cancel(alert_id)
        except StorageUnavailableError as e:
            raise AlertDispatchError(SOS_UPDATE_FAILED_MESSAGE) from e

        if changed:
            payload = SOSCancelledPayload(id=alert.id, bus_id=alert.bus_id, cancelled_at=self.clock())
            await self.publisher.publish_to_topics(
                self._alert_topics(alert.bus_id), build_message(SOS_CANCELLED, payload)
            )
        return alert

    def active_alerts(self) -> List[EmergencyAlert]:
        return self.store.list_active()

    def history(self, user_id: str) -> List[EmergencyAlert]:
        return self.store.list_for_user(user_id)

"""
Location update processing.

Takes raw position reports from a vehicle's device, keeps the vehicle's
last-known position and republishes a normalized update to everyone
interested in that vehicle.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fleetpulse.events import LOCATION_UPDATE, LocationReportPayload, LocationUpdatePayload, build_message
from fleetpulse.models import LocationReport, utc_now
from fleetpulse.services.storage import VehicleStateStore
from fleetpulse.websocket import EventPublisher

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utc_now()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LocationUpdateProcessor:
    """Last-write-wins location state with a monotonic timestamp guard."""

    def __init__(self, state: VehicleStateStore, publisher: EventPublisher, reject_stale: bool = True):
        self.state = state
        self.publisher = publisher
        self.reject_stale = reject_stale

    @staticmethod
    def report_from_payload(payload: LocationReportPayload) -> LocationReport:
        return LocationReport(
            bus_id=payload.bus_id,
            latitude=payload.latitude,
            longitude=payload.longitude,
            speed=payload.speed,
            heading=payload.heading,
            timestamp=_as_utc(payload.timestamp),
        )

    async def report_location(self, report: LocationReport) -> bool:
        """
        Record a position sample and fan it out to the vehicle's topic.

        Args:
            report: Already validated position sample

        Returns:
            True if the report became the vehicle's current location, False if
            it was older than the stored one and was discarded
        """
        report = report.model_copy(update={"timestamp": _as_utc(report.timestamp)})
        if not self.state.upsert_location(report, reject_stale=self.reject_stale):
            logger.debug(f"Dropped stale location for {report.bus_id} at {report.timestamp.isoformat()}")
            return False

        payload = LocationUpdatePayload(
            bus_id=report.bus_id,
            latitude=report.latitude,
            longitude=report.longitude,
            speed=report.speed,
        )
        delivered = await self.publisher.publish_to_vehicle(report.bus_id, build_message(LOCATION_UPDATE, payload))
        logger.debug(f"Location for {report.bus_id} delivered to {delivered} connections")
        return True

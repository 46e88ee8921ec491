"""
Trip start / stop announcements from drivers.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from fleetpulse.events import TRIP_UPDATED, TripUpdatePayload, TripUpdatedPayload, build_message
from fleetpulse.models import TripState, utc_now
from fleetpulse.services.storage import VehicleStateStore
from fleetpulse.websocket import EventPublisher

logger = logging.getLogger(__name__)


class TripTracker:
    def __init__(self, state: VehicleStateStore, publisher: EventPublisher, clock: Callable[[], datetime] = utc_now):
        self.state = state
        self.publisher = publisher
        self.clock = clock

    async def update_trip(self, update: TripUpdatePayload) -> TripState:
        now = self.clock()
        trip = TripState(
            bus_id=update.bus_id,
            on_trip=update.action == "start",
            driver_id=update.driver_id,
            updated_at=now,
        )
        self.state.set_trip(trip)

        payload = TripUpdatedPayload(
            bus_id=update.bus_id,
            driver_id=update.driver_id,
            action=update.action,
            timestamp=now,
        )
        await self.publisher.publish_to_vehicle(update.bus_id, build_message(TRIP_UPDATED, payload))
        logger.info(f"Trip {update.action} on {update.bus_id} by driver {update.driver_id}")
        return trip

"""
Tests for SOS alert dispatch.
"""

import asyncio
from unittest.mock import Mock

import pytest

from fleetpulse.events import SOS_ALERT, SOS_CANCELLED, SOS_RESOLVED
from fleetpulse.models import AlertStatus, GeoPoint, LocationReport, Role
from fleetpulse.services.emergency import (
    DEFAULT_ALERT_MESSAGE,
    DEFAULT_FALLBACK_LOCATION,
    SOS_FAILED_MESSAGE,
    AlertDispatchError,
    EmergencyAlertDispatcher,
    vehicle_location_provider,
)
from fleetpulse.services.storage import AlertNotFoundError, StorageUnavailableError
from fleetpulse.tests.conftest import FIXED_NOW


@pytest.fixture
def dispatcher(alert_store, publisher, clock):
    return EmergencyAlertDispatcher(alert_store, publisher, clock=clock)


def _published_events(publisher):
    return [c.args[1]["event"] for c in publisher.publish_to_topics.await_args_list]


# ============================================================
# TESTS - TRIGGER
# ============================================================

class TestTriggerAlert:

    @pytest.mark.asyncio
    async def test_trigger_creates_unresolved_alert(self, dispatcher, alert_store):
        alert = await dispatcher.trigger_alert("u1", bus_id="B1")

        assert alert.id.startswith("sos-")
        assert alert.resolved is False
        assert alert.status == AlertStatus.TRIGGERED
        assert alert.message == DEFAULT_ALERT_MESSAGE
        assert alert.created_at == FIXED_NOW
        assert alert.location == DEFAULT_FALLBACK_LOCATION
        assert alert_store.get(alert.id) == alert

    @pytest.mark.asyncio
    async def test_trigger_publishes_once_to_vehicle_and_admins(self, dispatcher, publisher):
        alert = await dispatcher.trigger_alert("u1", bus_id="B1", message="Medical emergency on bus")

        publisher.publish_to_topics.assert_awaited_once()
        topics, message = publisher.publish_to_topics.await_args.args
        assert topics == {"bus:B1", "watch:B1", "role:ADMIN"}
        assert message["event"] == SOS_ALERT
        assert message["data"]["id"] == alert.id
        assert message["data"]["message"] == "Medical emergency on bus"
        assert message["data"]["resolved"] is False

    @pytest.mark.asyncio
    async def test_trigger_without_vehicle_goes_to_admins(self, dispatcher, publisher):
        await dispatcher.trigger_alert("u1")

        topics, _ = publisher.publish_to_topics.await_args.args
        assert topics == {"role:ADMIN"}

    @pytest.mark.asyncio
    async def test_blank_message_uses_default(self, dispatcher):
        alert = await dispatcher.trigger_alert("u1", message="   ")

        assert alert.message == DEFAULT_ALERT_MESSAGE

    @pytest.mark.asyncio
    async def test_explicit_location_wins(self, alert_store, publisher, clock):
        provider = Mock()
        dispatcher = EmergencyAlertDispatcher(alert_store, publisher, location_provider=provider, clock=clock)
        here = GeoPoint(latitude=12.9, longitude=80.1)

        alert = await dispatcher.trigger_alert("u1", location=here)

        assert alert.location == here
        provider.assert_not_called()

    @pytest.mark.asyncio
    async def test_geolocation_timeout_falls_back(self, alert_store, publisher, clock):
        async def never_answers(user_id, bus_id):
            await asyncio.sleep(10)

        dispatcher = EmergencyAlertDispatcher(
            alert_store, publisher, location_provider=never_answers, geolocation_timeout=0.05, clock=clock,
        )

        alert = await asyncio.wait_for(dispatcher.trigger_alert("u1", bus_id="B1"), timeout=1.0)

        assert alert.status == AlertStatus.TRIGGERED
        assert alert.location == DEFAULT_FALLBACK_LOCATION
        publisher.publish_to_topics.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_geolocation_error_falls_back(self, alert_store, publisher, clock):
        async def broken(user_id, bus_id):
            raise RuntimeError("permission denied")

        fallback = GeoPoint(latitude=1.0, longitude=2.0)
        dispatcher = EmergencyAlertDispatcher(
            alert_store, publisher, location_provider=broken, fallback_location=fallback, clock=clock,
        )

        alert = await dispatcher.trigger_alert("u1")

        assert alert.location == fallback

    @pytest.mark.asyncio
    async def test_vehicle_location_provider(self, alert_store, publisher, vehicle_state, clock):
        vehicle_state.upsert_location(LocationReport(bus_id="B1", latitude=13.05, longitude=80.25, timestamp=FIXED_NOW))
        dispatcher = EmergencyAlertDispatcher(
            alert_store, publisher, location_provider=vehicle_location_provider(vehicle_state), clock=clock,
        )

        on_bus = await dispatcher.trigger_alert("u1", bus_id="B1")
        unknown_bus = await dispatcher.trigger_alert("u2", bus_id="B9")

        assert on_bus.location == GeoPoint(latitude=13.05, longitude=80.25)
        assert unknown_bus.location == DEFAULT_FALLBACK_LOCATION

    @pytest.mark.asyncio
    async def test_store_unavailable_raises_and_publishes_nothing(self, publisher, clock):
        store = Mock()
        store.create.side_effect = StorageUnavailableError("down")
        dispatcher = EmergencyAlertDispatcher(store, publisher, clock=clock)

        with pytest.raises(AlertDispatchError, match=SOS_FAILED_MESSAGE):
            await dispatcher.trigger_alert("u1", bus_id="B1")

        publisher.publish_to_topics.assert_not_awaited()


# ============================================================
# TESTS - LIFECYCLE
# ============================================================

class TestAlertLifecycle:

    @pytest.mark.asyncio
    async def test_resolve_twice_notifies_once(self, dispatcher, publisher):
        alert = await dispatcher.trigger_alert("u1", bus_id="B1")

        first = await dispatcher.resolve_alert(alert.id)
        second = await dispatcher.resolve_alert(alert.id)

        assert first.resolved is True and second.resolved is True
        assert first.status == AlertStatus.RESOLVED
        assert first.resolved_at == FIXED_NOW
        assert _published_events(publisher) == [SOS_ALERT, SOS_RESOLVED]

    @pytest.mark.asyncio
    async def test_concurrent_resolves_notify_once(self, dispatcher, publisher):
        alert = await dispatcher.trigger_alert("u1", bus_id="B1")

        await asyncio.gather(*(dispatcher.resolve_alert(alert.id) for _ in range(5)))

        assert _published_events(publisher).count(SOS_RESOLVED) == 1

    @pytest.mark.asyncio
    async def test_resolve_unknown_alert(self, dispatcher):
        with pytest.raises(AlertNotFoundError):
            await dispatcher.resolve_alert("sos-missing")

    @pytest.mark.asyncio
    async def test_acknowledge_then_resolve(self, dispatcher):
        alert = await dispatcher.trigger_alert("u1")

        acknowledged = await dispatcher.acknowledge_alert(alert.id)
        resolved = await dispatcher.resolve_alert(alert.id)

        assert acknowledged.status == AlertStatus.ACKNOWLEDGED
        assert acknowledged.acknowledged_at == FIXED_NOW
        assert resolved.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_cancel_by_owner(self, dispatcher, publisher):
        alert = await dispatcher.trigger_alert("u1", bus_id="B1")

        cancelled = await dispatcher.cancel_alert(alert.id, user_id="u1")

        assert cancelled.status == AlertStatus.CANCELLED
        assert dispatcher.active_alerts() == []
        assert _published_events(publisher) == [SOS_ALERT, SOS_CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_by_other_user_forbidden(self, dispatcher):
        alert = await dispatcher.trigger_alert("u1")

        with pytest.raises(PermissionError):
            await dispatcher.cancel_alert(alert.id, user_id="u2")

    @pytest.mark.asyncio
    async def test_resolved_alert_cannot_be_cancelled(self, dispatcher, publisher):
        alert = await dispatcher.trigger_alert("u1")
        await dispatcher.resolve_alert(alert.id)

        result = await dispatcher.cancel_alert(alert.id)

        assert result.status == AlertStatus.RESOLVED
        assert SOS_CANCELLED not in _published_events(publisher)

    @pytest.mark.asyncio
    async def test_active_and_history(self, dispatcher, clock):
        first = await dispatcher.trigger_alert("u1")
        clock.now = clock.now.replace(minute=45)
        second = await dispatcher.trigger_alert("u1")
        await dispatcher.trigger_alert("u2")
        await dispatcher.resolve_alert(first.id)

        assert [a.id for a in dispatcher.history("u1")] == [second.id, first.id]
        assert first.id not in [a.id for a in dispatcher.active_alerts()]
        assert len(dispatcher.active_alerts()) == 2

    @pytest.mark.asyncio
    async def test_fan_out_reaches_each_connection_once(self, alert_store, manager, websocket_factory, clock):
        dispatcher = EmergencyAlertDispatcher(alert_store, manager, clock=clock)
        admin_driver = websocket_factory()
        await manager.connect(admin_driver, "c1")
        await manager.join_role("c1", Role.ADMIN)
        await manager.join_vehicle("c1", "B1")

        await dispatcher.trigger_alert("u1", bus_id="B1")

        admin_driver.send_text.assert_called_once()

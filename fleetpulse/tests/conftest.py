"""
Pytest configuration and shared fixtures for FleetPulse tests.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from fleetpulse.services.storage import InMemoryAlertStore, InMemoryAttendanceStore, VehicleStateStore
from fleetpulse.websocket import ConnectionManager


# ============================================================
# FIXTURES FOR CLOCKS
# ============================================================

FIXED_NOW = datetime(2025, 3, 10, 8, 30, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================
# FIXTURES FOR CONNECTIONS
# ============================================================

def make_websocket() -> AsyncMock:
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


@pytest.fixture
def mock_websocket() -> AsyncMock:
    return make_websocket()


@pytest.fixture
def websocket_factory():
    return make_websocket


@pytest.fixture
def manager() -> ConnectionManager:
    return ConnectionManager(send_timeout=0.5)


@pytest.fixture
def publisher() -> AsyncMock:
    """EventPublisher double that records publishes."""
    pub = AsyncMock()
    pub.publish_to_topics = AsyncMock(return_value=1)
    pub.publish_to_vehicle = AsyncMock(return_value=1)
    pub.publish_to_role = AsyncMock(return_value=1)
    return pub


# ============================================================
# FIXTURES FOR STORES
# ============================================================

@pytest.fixture
def attendance_store() -> InMemoryAttendanceStore:
    return InMemoryAttendanceStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def vehicle_state() -> VehicleStateStore:
    return VehicleStateStore()

"""
Tests for the Redis Pub/Sub event relay.

Redis is replaced with an AsyncMock so no server is needed.
"""

import json
from unittest.mock import AsyncMock

import pytest

from fleetpulse.models import Role
from fleetpulse.relay import RedisEventRelay


@pytest.fixture
def fake_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    return redis


@pytest.fixture
def relay(manager, fake_redis) -> RedisEventRelay:
    return RedisEventRelay(manager, redis=fake_redis, channel="test_events")


class TestRelayPublish:

    @pytest.mark.asyncio
    async def test_publish_delivers_locally_and_relays(self, relay, manager, fake_redis, mock_websocket):
        await manager.connect(mock_websocket, "admin")
        await manager.join_role("admin", Role.ADMIN)
        message = {"event": "sos:alert", "data": {"id": "sos-1"}}

        delivered = await relay.publish_to_vehicle("B1", message)

        assert delivered == 1
        mock_websocket.send_text.assert_called_once_with(json.dumps(message))
        channel, raw = fake_redis.publish.await_args.args
        envelope = json.loads(raw)
        assert channel == "test_events"
        assert envelope["origin"] == relay.origin
        assert envelope["topics"] == ["bus:B1", "role:ADMIN", "watch:B1"]
        assert envelope["message"] == message

    @pytest.mark.asyncio
    async def test_publish_to_role(self, relay, fake_redis):
        await relay.publish_to_role("STUDENT", {"event": "pong", "data": None})

        envelope = json.loads(fake_redis.publish.await_args.args[1])
        assert envelope["topics"] == ["role:STUDENT"]

    @pytest.mark.asyncio
    async def test_redis_failure_still_delivers_locally(self, relay, manager, fake_redis, mock_websocket):
        fake_redis.publish.side_effect = ConnectionError("redis down")
        await manager.connect(mock_websocket, "admin")
        await manager.join_role("admin", Role.ADMIN)

        delivered = await relay.publish_to_role(Role.ADMIN, {"event": "pong", "data": None})

        assert delivered == 1


class TestRelayReceive:

    @pytest.mark.asyncio
    async def test_remote_event_forwarded_to_local_connections(self, relay, manager, mock_websocket):
        await manager.connect(mock_websocket, "watcher")
        await manager.subscribe_vehicle("watcher", "B1")
        raw = json.dumps({
            "origin": "other-worker",
            "topics": ["watch:B1"],
            "message": {"event": "location:update", "data": {"busId": "B1"}},
        })

        delivered = await relay.handle_message(raw)

        assert delivered == 1
        mock_websocket.send_text.assert_called_once()

    @pytest.mark.asyncio
    async def test_own_events_are_skipped(self, relay, manager, mock_websocket):
        await manager.connect(mock_websocket, "admin")
        await manager.join_role("admin", Role.ADMIN)
        raw = json.dumps({"origin": relay.origin, "topics": ["role:ADMIN"], "message": {"event": "pong"}})

        assert await relay.handle_message(raw) == 0
        mock_websocket.send_text.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"origin": "other-worker", "topics": ["role:ADMIN"]}),
    ])
    async def test_bad_envelopes_are_ignored(self, relay, raw):
        assert await relay.handle_message(raw) == 0


class TestRelayLifecycle:

    @pytest.mark.asyncio
    async def test_start_without_redis_returns_false(self, relay, fake_redis):
        fake_redis.ping.side_effect = ConnectionError("refused")

        assert await relay.start() is False
        assert relay.running is False

    @pytest.mark.asyncio
    async def test_stop_closes_client(self, relay, fake_redis):
        await relay.stop()

        fake_redis.aclose.assert_awaited_once()

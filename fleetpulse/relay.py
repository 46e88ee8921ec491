"""
Redis Pub/Sub relay for multi-worker deployments.

Each broker process keeps its own ConnectionManager. When the relay is
enabled, services publish through it instead: the event is delivered to
local connections right away and also published on a Redis channel, where
the other workers pick it up and deliver it to their own connections.

Usage:
    relay = RedisEventRelay(manager)
    await relay.start()
    ...
    await relay.stop()
"""

import asyncio
import json
import logging
import uuid
from typing import Iterable, Optional, Union

from redis.asyncio import Redis

from fleetpulse.config import config
from fleetpulse.models import Role
from fleetpulse.websocket import ConnectionManager, role_topic, topics_for_vehicle

logger = logging.getLogger(__name__)


class RedisEventRelay:
    """EventPublisher that mirrors every publish to the other broker workers."""

    def __init__(
        self,
        manager: ConnectionManager,
        redis: Optional[Redis] = None,
        channel: Optional[str] = None,
    ):
        self.manager = manager
        self.channel = channel or config.RELAY_CHANNEL
        self.origin = uuid.uuid4().hex
        self._redis = redis
        self._task: Optional[asyncio.Task] = None

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(config.REDIS_URL, decode_responses=True)
        return self._redis

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def publish_to_topics(self, topics: Iterable[str], message: dict) -> int:
        topics = sorted(set(topics))
        delivered = await self.manager.publish_to_topics(topics, message)
        envelope = json.dumps({"origin": self.origin, "topics": topics, "message": message})
        try:
            await self.redis.publish(self.channel, envelope)
        except Exception as e:
            # Local delivery already happened; remote workers miss this event
            logger.error(f"Failed to relay event '{message.get('event')}' to {self.channel}: {e}")
        return delivered

    async def publish_to_vehicle(self, bus_id: str, message: dict) -> int:
        return await self.publish_to_topics(topics_for_vehicle(bus_id), message)

    async def publish_to_role(self, role: Union[Role, str], message: dict) -> int:
        return await self.publish_to_topics([role_topic(role)], message)

    async def handle_message(self, raw: str) -> int:
        """Deliver a relayed event to this worker's connections."""
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode relayed event: {e}")
            return 0

        if envelope.get("origin") == self.origin:
            return 0
        topics = envelope.get("topics") or []
        message = envelope.get("message")
        if not isinstance(message, dict):
            logger.warning("Relayed event without a message body, ignoring")
            return 0
        return await self.manager.publish_to_topics(topics, message)

    async def listen(self) -> None:
        """
        Forward relayed events to local connections.

        Runs until cancelled and should be started as a background task.
        """
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Event relay listening on {self.channel}")
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    delivered = await self.handle_message(message["data"])
                    logger.debug(f"Relayed event delivered to {delivered} local connections")
                except Exception as e:
                    logger.error(f"Error processing relayed event: {e}")
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()

    async def start(self) -> bool:
        """
        Start the listener as a background task.

        Returns:
            True if the listener is running, False if Redis is not reachable
        """
        if self.running:
            logger.debug("Event relay already running")
            return True

        try:
            await self.redis.ping()
        except Exception as e:
            logger.warning(f"Redis not available, event relay disabled: {e}")
            return False

        self._task = asyncio.create_task(self.listen(), name="event_relay")
        return True

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Event relay stopped")
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

"""
WebSocket connection registry and topic router.

Tracks every live connection on the broker, the topics each connection has
joined (a role, a vehicle it operates, or a vehicle it watches) and fans
published events out to the interested connections.
"""

import asyncio
import json
import logging
import uuid
from typing import Dict, Iterable, Optional, Protocol, Set, Union

from fastapi import WebSocket

from fleetpulse.models import Role

logger = logging.getLogger(__name__)


def role_topic(role: Union[Role, str]) -> str:
    return f"role:{Role(role).value}"


def vehicle_topic(bus_id: str) -> str:
    """Topic joined by the connection operating the vehicle."""
    return f"bus:{bus_id}"


def subscriber_topic(bus_id: str) -> str:
    """Topic joined by connections watching the vehicle (own prefix so it can never equal a vehicle_topic)."""
    return f"watch:{bus_id}"


def topics_for_vehicle(bus_id: str) -> Set[str]:
    """Topics that receive events published for a vehicle (admins see everything)."""
    return {vehicle_topic(bus_id), subscriber_topic(bus_id), role_topic(Role.ADMIN)}


class EventPublisher(Protocol):
    """Fan-out surface used by the services (local manager or cross-worker relay)."""

    async def publish_to_topics(self, topics: Iterable[str], message: dict) -> int: ...

    async def publish_to_vehicle(self, bus_id: str, message: dict) -> int: ...

    async def publish_to_role(self, role: Union[Role, str], message: dict) -> int: ...


class ConnectionManager:
    """
    Manages WebSocket connections and their topic memberships.

    A connection may hold several memberships at once (e.g. joined as
    STUDENT and subscribed to a vehicle); a single publish delivers at most
    one copy to each connection.
    """

    def __init__(self, send_timeout: float = 2.0):
        # connection_id -> websocket
        self.active_connections: Dict[str, WebSocket] = {}
        # topic -> set of connection ids
        self.topics: Dict[str, Set[str]] = {}
        # connection_id -> set of topics
        self.memberships: Dict[str, Set[str]] = {}
        self.send_timeout = send_timeout
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, connection_id: Optional[str] = None) -> Optional[str]:
        """
        Accept and register a new WebSocket connection.

        Returns:
            The connection id, or None if the handshake failed
        """
        connection_id = connection_id or uuid.uuid4().hex
        try:
            await websocket.accept()
        except Exception as e:
            logger.error(f"Failed to accept WebSocket connection {connection_id}: {e}")
            return None

        async with self._lock:
            self.active_connections[connection_id] = websocket
            self.memberships[connection_id] = set()

        logger.info(f"Client connected: {connection_id}. Total connections: {len(self.active_connections)}")
        return connection_id

    async def disconnect(self, connection_id: str, close: bool = True) -> None:
        """Unregister a connection and tear down all of its subscriptions."""
        async with self._lock:
            websocket = self.active_connections.pop(connection_id, None)
            for topic in self.memberships.pop(connection_id, set()):
                members = self.topics.get(topic)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    del self.topics[topic]

        if websocket is None:
            return
        logger.info(f"Client disconnected: {connection_id}")
        if close:
            try:
                await websocket.close()
            except Exception:
                pass  # Connection might already be closed

    async def join(self, connection_id: str, topic: str) -> str:
        async with self._lock:
            if connection_id not in self.active_connections:
                raise KeyError(f"Unknown connection {connection_id}")
            self.topics.setdefault(topic, set()).add(connection_id)
            self.memberships[connection_id].add(topic)
        logger.debug(f"Connection {connection_id} joined {topic}")
        return topic

    async def leave(self, connection_id: str, topic: str) -> None:
        async with self._lock:
            members = self.topics.get(topic)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.topics[topic]
            self.memberships.get(connection_id, set()).discard(topic)

    async def join_role(self, connection_id: str, role: Union[Role, str]) -> str:
        return await self.join(connection_id, role_topic(role))

    async def join_vehicle(self, connection_id: str, bus_id: str) -> str:
        return await self.join(connection_id, vehicle_topic(bus_id))

    async def subscribe_vehicle(self, connection_id: str, bus_id: str) -> str:
        return await self.join(connection_id, subscriber_topic(bus_id))

    async def recipients(self, topics: Iterable[str]) -> Set[str]:
        async with self._lock:
            found: Set[str] = set()
            for topic in topics:
                found |= self.topics.get(topic, set())
            return found

    async def recipients_for_vehicle(self, bus_id: str) -> Set[str]:
        return await self.recipients(topics_for_vehicle(bus_id))

    async def publish_to_topics(self, topics: Iterable[str], message: dict) -> int:
        """
        Send a message once to every connection in any of the topics.

        Returns:
            Number of connections that received the message
        """
        connection_ids = await self.recipients(topics)
        return await self._deliver(connection_ids, message)

    async def publish_to_vehicle(self, bus_id: str, message: dict) -> int:
        return await self.publish_to_topics(topics_for_vehicle(bus_id), message)

    async def publish_to_role(self, role: Union[Role, str], message: dict) -> int:
        return await self.publish_to_topics([role_topic(role)], message)

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Send a message to a single connection."""
        return await self._deliver({connection_id}, message) == 1

    async def _send_one(self, connection_id: str, websocket: WebSocket, text: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send_text(text), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection_id}: {e}")
            return False

    async def _deliver(self, connection_ids: Set[str], message: dict) -> int:
        if not connection_ids:
            return 0

        async with self._lock:
            targets = [
                (cid, self.active_connections[cid])
                for cid in connection_ids
                if cid in self.active_connections
            ]

        text = json.dumps(message)
        # Sends run concurrently so one stalled client cannot hold up the rest
        results = await asyncio.gather(*(self._send_one(cid, ws, text) for cid, ws in targets))

        dead = [cid for (cid, _), ok in zip(targets, results) if not ok]
        for cid in dead:
            await self.disconnect(cid)

        return sum(1 for ok in results if ok)

    def get_connection_count(self, topic: Optional[str] = None) -> int:
        if topic:
            return len(self.topics.get(topic, set()))
        return len(self.active_connections)

    def get_stats(self) -> dict:
        drivers = {
            cid
            for topic, members in self.topics.items()
            if topic.startswith("bus:")
            for cid in members
        }
        return {
            "connections": len(self.active_connections),
            "drivers": len(drivers),
            "students": self.get_connection_count(role_topic(Role.STUDENT)),
            "admins": self.get_connection_count(role_topic(Role.ADMIN)),
        }

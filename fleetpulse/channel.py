"""
Client side of the realtime event channel.

A reconnecting WebSocket client that speaks the broker's JSON envelope
``{"event": <name>, "data": <payload>}``.

- Incoming frames are decoded into typed payloads and handed to the handlers
  subscribed to that event name.
- Outgoing events go through a single queue per client so they reach the
  broker in the order they were published. Publishing is fire-and-forget:
  while the channel is not connected the event is dropped.
- Lost connections are retried with exponential backoff; once the attempt
  limit is exhausted the channel stays DISCONNECTED until opened again.

Usage:
    channel = EventChannelClient.from_config()
    channel.on_status(lambda status: print(status))
    channel.subscribe("location:update", handle_location)
    await channel.open()
    channel.join_role("ADMIN")
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import websockets

from fleetpulse.config import config
from fleetpulse.events import (
    ATTENDANCE_SCAN,
    JOIN_BUS,
    JOIN_ROLE,
    LOCATION_UPDATE,
    PING,
    SOS_TRIGGER,
    SUBSCRIBE_BUS,
    TRIP_UPDATE,
    AttendanceScanPayload,
    EventValidationError,
    LocationReportPayload,
    SOSTriggerPayload,
    TripUpdatePayload,
    WireModel,
    build_message,
    decode_server_message,
)
from fleetpulse.models import Role

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
StatusListener = Callable[["ConnectionStatus"], Any]


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff: initial_delay, doubled per attempt, capped at max_delay."""
    max_attempts: int = 10
    initial_delay: float = 1.0
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.initial_delay * self.multiplier ** max(0, attempt - 1))

    @classmethod
    def from_config(cls) -> "ReconnectPolicy":
        return cls(
            max_attempts=config.RECONNECT_ATTEMPTS,
            initial_delay=config.RECONNECT_DELAY,
            max_delay=config.RECONNECT_DELAY_MAX,
        )


class EventChannelClient:
    """Reconnecting event channel with typed subscriptions and ordered publishes."""

    def __init__(
        self,
        url: str,
        policy: Optional[ReconnectPolicy] = None,
        connect: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self._connect = connect or websockets.connect
        self._sleep = sleep
        self._handlers: Dict[str, List[Handler]] = {}
        self._status_listeners: List[StatusListener] = []
        self._outbox: Optional[asyncio.Queue] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing = False
        self.status = ConnectionStatus.DISCONNECTED
        self.attempts = 0

    @classmethod
    def from_config(cls) -> "EventChannelClient":
        return cls(config.WS_URL, ReconnectPolicy.from_config())

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """
        Register a handler for an incoming event.

        Handlers may be plain functions or coroutines and receive the decoded
        payload (a typed model for known events).

        Returns:
            A callable that removes the handler again
        """
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        logger.info(f"Event channel {self.url}: {status.value}")
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Status listener failed: {e}")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Start connecting in the background (no-op if already running)."""
        if self._runner is not None and not self._runner.done():
            return
        self._closing = False
        self.attempts = 0
        self._set_status(ConnectionStatus.CONNECTING)
        self._runner = asyncio.create_task(self._run(), name="event_channel")

    async def close(self) -> None:
        """Close the connection and cancel any pending reconnect."""
        self._closing = True
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._outbox = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait until the reconnect loop has given up or been closed."""
        if self._runner is not None:
            try:
                await self._runner
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        failures = 0
        while not self._closing:
            self.attempts += 1
            try:
                async with self._connect(self.url) as ws:
                    failures = 0
                    self._outbox = asyncio.Queue()
                    self._set_status(ConnectionStatus.CONNECTED)
                    await self._pump(ws)
                logger.warning(f"Event channel {self.url} closed by peer")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Event channel {self.url} connection error: {e}")
            finally:
                # Events queued for a dead connection are dropped, not replayed
                self._outbox = None

            if self._closing:
                break
            failures += 1
            if failures > self.policy.max_attempts:
                logger.error(f"Event channel {self.url} gave up after {self.policy.max_attempts} reconnect attempts")
                self._set_status(ConnectionStatus.DISCONNECTED)
                return

            self._set_status(ConnectionStatus.RECONNECTING)
            delay = self.policy.delay_for(failures)
            logger.info(f"Reconnecting to {self.url} in {delay:.1f}s (attempt {failures}/{self.policy.max_attempts})")
            await self._sleep(delay)

    async def _pump(self, ws) -> None:
        reader = asyncio.create_task(self._read_loop(ws))
        writer = asyncio.create_task(self._write_loop(ws, self._outbox))
        try:
            done, pending = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, writer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                raise task.exception()

    async def _read_loop(self, ws) -> None:
        async for raw in ws:
            await self._dispatch(raw)

    async def _write_loop(self, ws, outbox: asyncio.Queue) -> None:
        while True:
            text = await outbox.get()
            await ws.send(text)

    async def _dispatch(self, raw: Union[str, bytes]) -> None:
        try:
            event, payload = decode_server_message(raw)
        except EventValidationError as e:
            logger.warning(f"Discarding malformed frame from {self.url}: {e}")
            return

        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}")

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, event: str, payload: Union[WireModel, Dict[str, Any], str, None] = None) -> bool:
        """
        Queue an event for the broker.

        Returns:
            False if the channel is not connected and the event was dropped
        """
        outbox = self._outbox
        if outbox is None or self.status != ConnectionStatus.CONNECTED:
            logger.debug(f"Dropping '{event}': channel is {self.status.value}")
            return False
        outbox.put_nowait(json.dumps(build_message(event, payload)))
        return True

    def join_role(self, role: Union[Role, str]) -> bool:
        return self.publish(JOIN_ROLE, Role(role).value)

    def join_bus(self, bus_id: str) -> bool:
        return self.publish(JOIN_BUS, bus_id)

    def subscribe_bus(self, bus_id: str) -> bool:
        return self.publish(SUBSCRIBE_BUS, bus_id)

    def send_location(
        self,
        bus_id: str,
        latitude: float,
        longitude: float,
        speed: float = 0.0,
        heading: float = 0.0,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        return self.publish(LOCATION_UPDATE, LocationReportPayload(
            bus_id=bus_id,
            latitude=latitude,
            longitude=longitude,
            speed=speed,
            heading=heading,
            timestamp=timestamp,
        ))

    def trigger_sos(
        self,
        user_id: str,
        bus_id: Optional[str] = None,
        message: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> bool:
        return self.publish(SOS_TRIGGER, SOSTriggerPayload(
            user_id=user_id,
            bus_id=bus_id,
            message=message,
            latitude=latitude,
            longitude=longitude,
        ))

    def update_trip(self, bus_id: str, driver_id: str, action: str) -> bool:
        return self.publish(TRIP_UPDATE, TripUpdatePayload(bus_id=bus_id, driver_id=driver_id, action=action))

    def scan_attendance(self, user_id: str, bus_id: str, qr_data: Optional[str] = None) -> bool:
        return self.publish(ATTENDANCE_SCAN, AttendanceScanPayload(user_id=user_id, bus_id=bus_id, qr_data=qr_data))

    def ping(self) -> bool:
        return self.publish(PING)

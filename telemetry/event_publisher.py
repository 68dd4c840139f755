"""Fan-out of tracking events to WebSocket dashboard clients.

Listeners on the orchestrator are synchronous, so events are queued with
publish_nowait() and delivered by a background task. Each client may narrow
its stream to one driver and a set of event types.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientSubscription:
    """Filter applied to one client's event stream.

    Empty filters match everything.
    """

    driver_id: str | None = None
    event_types: frozenset[str] = frozenset()

    def matches(self, message: dict[str, Any]) -> bool:
        if self.driver_id is not None and message.get("driverId") != self.driver_id:
            return False
        return not self.event_types or message.get("type") in self.event_types


class ConnectionManager:
    """Tracks connected dashboard clients and their subscriptions."""

    def __init__(self, max_connections: int = 10):
        """Initialize connection manager.

        Args:
            max_connections: Maximum number of concurrent WebSocket clients
        """
        self.subscriptions: dict[WebSocket, ClientSubscription] = {}
        self.max_connections = max_connections
        self.total_accepted = 0
        self._lock = asyncio.Lock()

    @property
    def active_connections(self) -> set[WebSocket]:
        return set(self.subscriptions)

    async def connect(self, websocket: WebSocket, subscription: ClientSubscription | None = None) -> bool:
        """Accept a client unless the connection limit is reached.

        Args:
            websocket: Incoming WebSocket
            subscription: Event filter for this client

        Returns:
            True if the client was accepted
        """
        async with self._lock:
            if len(self.subscriptions) >= self.max_connections:
                logger.warning(f"Rejecting dashboard client: limit of {self.max_connections} reached")
                return False

            self.subscriptions[websocket] = subscription or ClientSubscription()
            try:
                await websocket.accept()
            except Exception as e:
                self.subscriptions.pop(websocket, None)
                logger.error(f"WebSocket accept failed: {e}")
                return False

            self.total_accepted += 1
            logger.info(f"Dashboard client connected ({len(self.subscriptions)}/{self.max_connections})")
            return True

    def disconnect(self, websocket: WebSocket) -> None:
        if self.subscriptions.pop(websocket, None) is not None:
            logger.info(f"Dashboard client disconnected ({len(self.subscriptions)} remaining)")

    async def broadcast_event(self, message: dict[str, Any]) -> int:
        """Send a message to every client whose subscription matches it.

        Clients that fail to receive are dropped.

        Args:
            message: Event in WebSocket message format

        Returns:
            Number of clients the message was delivered to
        """
        recipients = [ws for ws, sub in self.subscriptions.items() if sub.matches(message)]
        if not recipients:
            return 0

        try:
            payload = json.dumps(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize {message.get('type', 'unknown')} event: {e}")
            return 0

        delivered = 0
        for websocket in recipients:
            try:
                await websocket.send_text(payload)
                delivered += 1
            except WebSocketDisconnect:
                self.disconnect(websocket)
            except Exception as e:
                logger.warning(f"Dropping dashboard client after send failure: {e}")
                self.disconnect(websocket)

        return delivered


class EventPublisher:
    """Bounded event queue drained by a background broadcast task."""

    def __init__(self, max_connections: int = 10, queue_size: int = 100):
        """Initialize event publisher.

        Args:
            max_connections: Maximum number of concurrent WebSocket clients
            queue_size: Pending events kept before the oldest is discarded
        """
        self.connection_manager = ConnectionManager(max_connections)
        self.event_queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.publisher_task: asyncio.Task | None = None
        self.events_published = 0
        self.events_dropped = 0

    @property
    def is_running(self) -> bool:
        return self.publisher_task is not None and not self.publisher_task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.warning("EventPublisher is already running")
            return
        self.publisher_task = asyncio.create_task(self._drain_queue())
        logger.info("EventPublisher started")

    async def stop(self) -> None:
        if self.publisher_task is None:
            return
        self.publisher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self.publisher_task
        self.publisher_task = None
        logger.info(f"EventPublisher stopped - published {self.events_published}, dropped {self.events_dropped}")

    def publish_nowait(self, message: dict[str, Any]) -> bool:
        """Queue an event; when the queue is full the oldest pending event is discarded.

        Safe to call from synchronous orchestrator listeners.

        Args:
            message: Event in WebSocket message format

        Returns:
            True if the event was queued
        """
        if self.event_queue.full():
            try:
                discarded = self.event_queue.get_nowait()
                self.event_queue.task_done()
            except asyncio.QueueEmpty:
                discarded = None
            self.events_dropped += 1
            logger.warning(
                f"Event queue full, discarded {discarded.get('type', 'unknown') if discarded else 'nothing'} "
                f"(total discarded: {self.events_dropped})"
            )

        try:
            self.event_queue.put_nowait(message)
        except asyncio.QueueFull:
            self.events_dropped += 1
            return False
        return True

    async def connect_client(self, websocket: WebSocket, subscription: ClientSubscription | None = None) -> bool:
        return await self.connection_manager.connect(websocket, subscription)

    def disconnect_client(self, websocket: WebSocket) -> None:
        self.connection_manager.disconnect(websocket)

    def get_queue_stats(self) -> dict[str, Any]:
        """Queue and connection counters for the health endpoint."""
        return {
            "queue_size": self.event_queue.qsize(),
            "queue_maxsize": self.event_queue.maxsize,
            "events_published": self.events_published,
            "events_dropped": self.events_dropped,
            "active_connections": len(self.connection_manager.subscriptions),
            "max_connections": self.connection_manager.max_connections,
        }

    async def _drain_queue(self) -> None:
        while True:
            message = await self.event_queue.get()
            try:
                delivered = await self.connection_manager.broadcast_event(message)
                self.events_published += 1
                logger.debug(f"Event {message.get('eventId', 'unknown')} delivered to {delivered} client(s)")
            except Exception as e:
                logger.error(f"Event broadcast failed: {e}")
            finally:
                self.event_queue.task_done()

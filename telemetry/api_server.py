"""FastAPI server exposing live tracking state.

Provides read-only status endpoints and a WebSocket stream of tracking
events for dashboards and the app UI.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from telemetry.api_models import HealthResponse, TrackingStatusResponse, ZoneModel
from telemetry.event_publisher import ClientSubscription, EventPublisher
from telemetry.orchestrator import TrackingOrchestrator
from telemetry.tracking_events import TrackingEvent

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: TrackingOrchestrator,
    publisher: EventPublisher | None = None,
    background: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Tracking events emitted by ``orchestrator`` are queued on ``publisher``
    and broadcast to WebSocket clients.

    Args:
        orchestrator: Running tracking orchestrator
        publisher: Event publisher (created from server settings when None)
        background: Coroutine function run for the lifetime of the app, e.g. a trace replay

    Returns:
        Configured FastAPI application
    """
    server_settings = orchestrator.config.server
    if publisher is None:
        publisher = EventPublisher(server_settings.websocket_max_connections, server_settings.event_queue_size)

    def forward_event(event: TrackingEvent) -> None:
        publisher.publish_nowait(event.to_websocket_format())

    orchestrator.add_event_listener(forward_event)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """FastAPI lifespan context manager for startup/shutdown."""
        logger.info("Telemetry API starting up...")
        await publisher.start()
        background_task = asyncio.create_task(background()) if background is not None else None
        try:
            yield
        finally:
            logger.info("Telemetry API shutting down...")
            if background_task is not None:
                background_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await background_task
            try:
                await publisher.stop()
            except Exception as e:
                logger.error(f"Error stopping event publisher: {e}")

    app = FastAPI(
        title="Driver Telemetry API",
        description="Live driver tracking, hazard zones and speeding violations",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.publisher = publisher

    @app.get("/health", response_model=HealthResponse)
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "tracking": orchestrator.is_tracking,
            "publisher": publisher.get_queue_stats(),
        }

    @app.get("/status", response_model=TrackingStatusResponse)
    async def status() -> dict[str, Any]:
        return orchestrator.get_status()

    @app.get("/zones", response_model=list[ZoneModel])
    async def zones() -> list[dict[str, Any]]:
        return [zone.to_api_format() for zone in orchestrator.geofence.zones]

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket, driverId: str | None = None, types: str | None = None
    ) -> None:
        """Stream tracking events.

        Args:
            websocket: WebSocket connection
            driverId: Only forward events for this driver
            types: Comma-separated event types to forward, e.g. "violation_recorded,zone_entered"
        """
        event_types = frozenset(t.strip() for t in types.split(",") if t.strip()) if types else frozenset()
        subscription = ClientSubscription(driver_id=driverId, event_types=event_types)

        if not await publisher.connect_client(websocket, subscription):
            await websocket.close(code=1013, reason="Too many connections")
            return

        try:
            # Client messages are ignored; reading detects the disconnect
            while True:
                await websocket.receive_text()

        except WebSocketDisconnect:
            logger.debug("Dashboard client closed the stream")

        except Exception as e:
            logger.error(f"WebSocket error: {e}")

        finally:
            publisher.disconnect_client(websocket)

    return app

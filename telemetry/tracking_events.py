"""Tracking lifecycle events for the event-driven tracker.

Events are emitted by TrackingOrchestrator to registered listeners (the
WebSocket publisher, app UI bindings, tests) after each processed fix or
shift change.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from telemetry.tracking_models import Coordinate, ShiftHistoryEntry, ShiftMetricsSnapshot, Violation, Zone


@dataclass(frozen=True)
class TrackingEvent(ABC):
    """Base class for all tracking events."""

    driver_id: str
    timestamp_ms: int

    @abstractmethod
    def to_websocket_format(self) -> dict[str, Any]:
        """Convert event to WebSocket message format."""
        pass


@dataclass(frozen=True)
class PositionUpdated(TrackingEvent):
    """Event: a fix was processed. Emitted on every fix."""

    location: Coordinate
    speed_kmh: int
    zone_id: str | None
    metrics: ShiftMetricsSnapshot | None

    def to_websocket_format(self) -> dict[str, Any]:
        return {
            "type": "position_updated",
            "eventId": f"position_{self.driver_id}_{self.timestamp_ms}",
            "timestamp": self.timestamp_ms,
            "driverId": self.driver_id,
            "location": self.location.to_document(),
            "speedKmh": self.speed_kmh,
            "zoneId": self.zone_id,
            "metrics": {
                "topSpeed": self.metrics.top_speed_kmh,
                "avgSpeed": self.metrics.avg_speed_kmh,
                "totalDistance": round(self.metrics.total_distance_km, 3),
                "durationMinutes": self.metrics.duration_minutes,
            }
            if self.metrics
            else None,
        }


@dataclass(frozen=True)
class ZoneEntered(TrackingEvent):
    """Event: the driver entered a zone."""

    zone: Zone
    spoken: bool

    def to_websocket_format(self) -> dict[str, Any]:
        return {
            "type": "zone_entered",
            "eventId": f"enter_{self.zone.zone_id}_{self.timestamp_ms}",
            "timestamp": self.timestamp_ms,
            "driverId": self.driver_id,
            "zone": self.zone.to_api_format(),
            "spoken": self.spoken,
        }


@dataclass(frozen=True)
class ZoneExited(TrackingEvent):
    """Event: the driver left a zone."""

    zone_id: str
    zone: Zone | None
    spoken: bool

    def to_websocket_format(self) -> dict[str, Any]:
        return {
            "type": "zone_exited",
            "eventId": f"exit_{self.zone_id}_{self.timestamp_ms}",
            "timestamp": self.timestamp_ms,
            "driverId": self.driver_id,
            "zoneId": self.zone_id,
            "zone": self.zone.to_api_format() if self.zone else None,
            "spoken": self.spoken,
        }


@dataclass(frozen=True)
class ViolationRecorded(TrackingEvent):
    """Event: a confirmed violation was emitted.

    ``persisted`` is False when the remote write failed; the record is not
    retried.
    """

    violation: Violation
    persisted: bool

    def to_websocket_format(self) -> dict[str, Any]:
        return {
            "type": "violation_recorded",
            "eventId": f"violation_{self.driver_id}_{self.timestamp_ms}",
            "timestamp": self.timestamp_ms,
            "driverId": self.driver_id,
            "violation": self.violation.to_document(),
            "persisted": self.persisted,
        }


@dataclass(frozen=True)
class ShiftEnded(TrackingEvent):
    """Event: the shift ended. ``entry`` is None when nothing was recorded."""

    entry: ShiftHistoryEntry | None
    cancelled: bool

    def to_websocket_format(self) -> dict[str, Any]:
        return {
            "type": "shift_ended",
            "eventId": f"shift_{self.driver_id}_{self.timestamp_ms}",
            "timestamp": self.timestamp_ms,
            "driverId": self.driver_id,
            "cancelled": self.cancelled,
            "summary": self.entry.to_document() if self.entry else None,
        }


# Event type union for type safety
TrackingEventType = PositionUpdated | ZoneEntered | ZoneExited | ViolationRecorded | ShiftEnded

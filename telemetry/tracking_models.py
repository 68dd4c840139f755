"""Data models for driving telemetry.

This module defines the core data structures flowing through the tracker:
raw position fixes from the device, geofenced zones with their resolved
speed limits, the detector's overspeed session, the append-only violation
records written to the driver document, and the shift metrics snapshot
mirrored to local storage for crash recovery.

Speeds are integers in km/h, distances floats in kilometers unless the
field name says meters, and all timestamps are epoch milliseconds.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


def current_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives.

    Python's built-in round() uses banker's rounding (round(40.5) == 40);
    dashboard figures are expected to round 40.5 up to 41.
    """
    return int(math.floor(value + 0.5))


class DriverStatus(str, Enum):
    """Closed set of driver statuses stored on the driver document."""

    OFFLINE = "Offline"
    AVAILABLE = "Available"
    DELIVERING = "Delivering"

    @classmethod
    def from_raw(cls, value: Any) -> DriverStatus:
        """Parse a status string from the driver document.

        Args:
            value: Raw status value (any case), may be missing

        Returns:
            Matching DriverStatus, or OFFLINE for missing/unknown values
        """
        if isinstance(value, DriverStatus):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for status in cls:
                if status.value.lower() == normalized:
                    return status
        if value is not None:
            logger.warning(f"Unknown driver status {value!r}, treating as Offline")
        return cls.OFFLINE


class ZoneCategory(str, Enum):
    """Hazard/slowdown zone categories configured by branch admins."""

    CROSSWALK = "Crosswalk"
    SCHOOL = "School"
    CHURCH = "Church"
    CURVE = "Curve"
    SLOWDOWN = "Slowdown"
    DEFAULT = "Default"

    @classmethod
    def from_raw(cls, value: Any) -> ZoneCategory:
        """Map an admin-entered category label to a ZoneCategory.

        Args:
            value: Raw category label

        Returns:
            Matching category, or DEFAULT for unrecognized labels
        """
        if isinstance(value, ZoneCategory):
            return value
        if not isinstance(value, str):
            return cls.DEFAULT
        return _CATEGORY_ALIASES.get(value.strip().lower(), cls.DEFAULT)


_CATEGORY_ALIASES = {
    "crosswalk": ZoneCategory.CROSSWALK,
    "school": ZoneCategory.SCHOOL,
    "church": ZoneCategory.CHURCH,
    "curve": ZoneCategory.CURVE,
    "curve/slippery": ZoneCategory.CURVE,
    "slippery": ZoneCategory.CURVE,
    "slippery road": ZoneCategory.CURVE,
    "slowdown": ZoneCategory.SLOWDOWN,
    "default": ZoneCategory.DEFAULT,
}


class SpeedLimitSource(str, Enum):
    """Which tier of the fallback chain supplied a zone's speed limit."""

    ADMIN = "admin"
    CATEGORY = "category"
    GLOBAL = "global"


class ViolationKind(str, Enum):
    """Message values of entries in the driver's violations list."""

    SPEEDING = "Speeding violation"
    SHIFT_COMPLETED = "Shift completed"


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 latitude/longitude pair in degrees."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude must be between -90 and 90, got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude must be between -180 and 180, got {self.longitude}")

    def to_document(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_document(cls, data: Any) -> Coordinate | None:
        """Parse ``{"latitude", "longitude"}`` or ``{"lat", "lng"}`` mappings.

        Returns:
            Coordinate, or None when the mapping is missing or malformed
        """
        if not isinstance(data, dict):
            return None
        lat = data.get("latitude", data.get("lat"))
        lng = data.get("longitude", data.get("lng"))
        if isinstance(lat, bool) or isinstance(lng, bool):
            return None
        if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
            return None
        try:
            return cls(float(lat), float(lng))
        except ValueError:
            return None


@dataclass(frozen=True)
class PositionFix:
    """A single position fix produced by the device location service.

    Attributes:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        timestamp_ms: Fix time in epoch milliseconds
        speed_mps: Device-reported speed over ground in m/s, if any
        heading_degrees: Device-reported heading, if any
        accuracy_m: Horizontal accuracy radius in meters, if any
    """

    latitude: float
    longitude: float
    timestamp_ms: int
    speed_mps: float | None = None
    heading_degrees: float | None = None
    accuracy_m: float | None = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude must be between -90 and 90, got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude must be between -180 and 180, got {self.longitude}")
        if self.timestamp_ms < 0:
            raise ValueError(f"Timestamp cannot be negative, got {self.timestamp_ms}")

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    @classmethod
    def from_location_payload(cls, payload: dict[str, Any], fallback_timestamp_ms: int | None = None) -> PositionFix:
        """Create a fix from the device location payload.

        The payload shape is ``{"coords": {"latitude", "longitude", "speed",
        "heading", "accuracy"}, "timestamp": ms}``. Negative speed/heading
        values are how devices report "unknown" and are dropped.

        Args:
            payload: Raw location payload
            fallback_timestamp_ms: Used when the payload carries no timestamp

        Returns:
            PositionFix instance

        Raises:
            ValueError: If the payload has no usable coordinates
        """
        coords = payload.get("coords") or {}
        if "latitude" not in coords or "longitude" not in coords:
            raise ValueError("Location payload has no coordinates")

        timestamp = payload.get("timestamp") or fallback_timestamp_ms or current_millis()

        def _optional(name: str) -> float | None:
            value = coords.get(name)
            if value is None or not isinstance(value, (int, float)) or value < 0:
                return None
            return float(value)

        return cls(
            latitude=float(coords["latitude"]),
            longitude=float(coords["longitude"]),
            timestamp_ms=int(timestamp),
            speed_mps=_optional("speed"),
            heading_degrees=_optional("heading"),
            accuracy_m=_optional("accuracy"),
        )


@dataclass(frozen=True)
class ResolvedSpeedLimit:
    """Speed limit tagged with the fallback tier that supplied it."""

    value_kmh: int
    source: SpeedLimitSource


@dataclass(frozen=True)
class Zone:
    """Circular geofenced zone with an effective speed limit.

    ``zone_id`` is stable across reloads so "same zone" comparisons work.
    """

    zone_id: str
    category: ZoneCategory
    center_lat: float
    center_lng: float
    radius_m: float
    speed_limit: ResolvedSpeedLimit

    @property
    def speed_limit_kmh(self) -> int:
        return self.speed_limit.value_kmh

    @property
    def center(self) -> Coordinate:
        return Coordinate(self.center_lat, self.center_lng)

    def to_api_format(self) -> dict[str, Any]:
        return {
            "id": self.zone_id,
            "category": self.category.value,
            "location": {"lat": self.center_lat, "lng": self.center_lng},
            "radius": self.radius_m,
            "speedLimit": self.speed_limit.value_kmh,
            "speedLimitSource": self.speed_limit.source.value,
        }


@dataclass
class OverspeedSession:
    """Working state of a potential violation, owned by ViolationDetector."""

    zone_key: str
    zone: Zone | None
    limit_kmh: int
    grace_started_at_ms: int
    last_location: Coordinate
    speed_readings: list[int] = field(default_factory=list)
    distance_km: float = 0.0
    confirmed: bool = False

    @property
    def top_speed_kmh(self) -> int:
        return max(self.speed_readings, default=0)

    @property
    def avg_speed_kmh(self) -> int:
        if not self.speed_readings:
            return 0
        return round_half_up(sum(self.speed_readings) / len(self.speed_readings))


@dataclass(frozen=True)
class Violation:
    """Confirmed speeding violation, appended to the driver document."""

    issued_at_ms: int
    driver_location: Coordinate | None
    top_speed_kmh: int
    avg_speed_kmh: int
    distance_km: float
    duration_minutes: int
    zone_id: str | None
    zone_category: ZoneCategory | None
    zone_speed_limit: int | None
    global_default_limit: int
    speed_limit_kmh: int
    message: ViolationKind = ViolationKind.SPEEDING
    confirmed: bool = True

    def to_document(self) -> dict[str, Any]:
        """Convert to the driver document ``violations`` entry format."""
        return {
            "message": self.message.value,
            "confirmed": self.confirmed,
            "issuedAt": self.issued_at_ms,
            "driverLocation": self.driver_location.to_document() if self.driver_location else None,
            "topSpeed": self.top_speed_kmh,
            "avgSpeed": self.avg_speed_kmh,
            "distance": round(self.distance_km, 2),
            "time": self.duration_minutes,
            "zoneId": self.zone_id,
            "zoneCategory": self.zone_category.value if self.zone_category else None,
            "zoneLimit": self.zone_speed_limit,
            "defaultLimit": self.global_default_limit,
            "speedLimit": self.speed_limit_kmh,
        }


@dataclass(frozen=True)
class ShiftMetricsSnapshot:
    """Running shift metrics, mirrored to local storage after each update."""

    top_speed_kmh: int
    total_distance_km: float
    avg_speed_kmh: int
    shift_started_at_ms: int | None
    speed_readings: tuple[int, ...]
    last_known_location: Coordinate | None
    duration_minutes: int = 0

    @property
    def has_recorded_data(self) -> bool:
        """Whether the shift produced anything worth writing to history."""
        return self.duration_minutes > 0 or self.total_distance_km > 0.01 or self.top_speed_kmh > 0

    def to_storage(self, saved_at_ms: int) -> dict[str, Any]:
        """Convert to the local storage JSON shape."""
        return {
            "topSpeed": self.top_speed_kmh,
            "totalDistance": self.total_distance_km,
            "avgSpeed": self.avg_speed_kmh,
            "shiftStartTime": self.shift_started_at_ms,
            "speedReadings": list(self.speed_readings),
            "lastLocationCoords": self.last_known_location.to_document() if self.last_known_location else None,
            "timestamp": saved_at_ms,
        }

    @classmethod
    def from_storage(cls, data: dict[str, Any]) -> ShiftMetricsSnapshot:
        """Rebuild a snapshot from the local storage JSON shape.

        Raises:
            ValueError: If the stored data is not a mapping
        """
        if not isinstance(data, dict):
            raise ValueError(f"Stored shift metrics must be a mapping, got {type(data).__name__}")

        readings = tuple(int(r) for r in data.get("speedReadings") or [] if isinstance(r, (int, float)))
        started = data.get("shiftStartTime")

        return cls(
            top_speed_kmh=int(data.get("topSpeed") or 0),
            total_distance_km=float(data.get("totalDistance") or 0.0),
            avg_speed_kmh=int(data.get("avgSpeed") or 0),
            shift_started_at_ms=int(started) if isinstance(started, (int, float)) else None,
            speed_readings=readings,
            last_known_location=Coordinate.from_document(data.get("lastLocationCoords")),
        )


@dataclass(frozen=True)
class ShiftHistoryEntry:
    """End-of-shift summary, appended to the same list as violations."""

    issued_at_ms: int
    avg_speed_kmh: int
    top_speed_kmh: int
    distance_km: float
    duration_minutes: int
    driver_location: Coordinate | None

    @classmethod
    def from_snapshot(
        cls, snapshot: ShiftMetricsSnapshot, issued_at_ms: int, driver_location: Coordinate | None
    ) -> ShiftHistoryEntry:
        return cls(
            issued_at_ms=issued_at_ms,
            avg_speed_kmh=snapshot.avg_speed_kmh,
            top_speed_kmh=snapshot.top_speed_kmh,
            distance_km=round(snapshot.total_distance_km, 2),
            duration_minutes=snapshot.duration_minutes,
            driver_location=driver_location,
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "message": ViolationKind.SHIFT_COMPLETED.value,
            "issuedAt": self.issued_at_ms,
            "avgSpeed": self.avg_speed_kmh,
            "topSpeed": self.top_speed_kmh,
            "distance": self.distance_km,
            "time": self.duration_minutes,
            "driverLocation": self.driver_location.to_document() if self.driver_location else None,
        }

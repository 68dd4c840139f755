"""API models for the tracking status endpoints.

Minimal Pydantic models mirroring the dictionaries produced by
TrackingOrchestrator.get_status() and Zone.to_api_format().
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class LocationModel(BaseModel):
    """Geographic coordinate."""

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class ZoneCenterModel(BaseModel):
    """Zone center in the admin document shape."""

    lat: float
    lng: float


class ZoneModel(BaseModel):
    """Hazard zone with its resolved speed limit."""

    id: str = Field(..., description="Zone identifier")
    category: str = Field(..., description="Crosswalk, School, Church, Curve, Slowdown or Default")
    location: ZoneCenterModel
    radius: float = Field(..., gt=0, description="Radius in meters")
    speedLimit: int = Field(..., description="Effective speed limit in km/h")
    speedLimitSource: str = Field(..., description="admin, category or global")


class MetricsModel(BaseModel):
    """Running shift metrics."""

    active: bool
    topSpeed: int = Field(0, ge=0)
    avgSpeed: int = Field(0, ge=0)
    totalDistance: float = Field(0.0, ge=0.0, description="Distance in kilometers")
    durationMinutes: int = Field(0, ge=0)


class TrackingStatusResponse(BaseModel):
    """Live tracking state for dashboards."""

    driverId: str | None = None
    status: str = Field(..., description="Offline, Available or Delivering")
    branchId: str | None = None
    tracking: bool
    route: str | None = None
    appState: str
    speedKmh: int = Field(0, ge=0)
    location: LocationModel | None = None
    activeZone: ZoneModel | None = None
    showZoneWarning: bool = False
    zonesLoaded: int = Field(0, ge=0)
    metrics: MetricsModel
    statistics: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Service health summary."""

    status: str
    tracking: bool
    publisher: dict[str, float | int]

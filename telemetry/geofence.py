"""Geofenced slowdown zones and speed-limit resolution.

Zones are circles (center + radius) configured per branch. A coordinate is
matched against zones in load order and the first containing zone wins;
there is no closest-zone arbitration. When no zone matches, the global
default limit applies.
"""

from __future__ import annotations

import logging
import math
from typing import Any

import numpy as np

from telemetry.config import GeofenceSettings
from telemetry.geo import haversine_m_vectorized
from telemetry.interfaces import DocumentStore, branch_document_key
from telemetry.tracking_models import (
    Coordinate,
    ResolvedSpeedLimit,
    SpeedLimitSource,
    Zone,
    ZoneCategory,
)

logger = logging.getLogger(__name__)


class ZoneDataError(Exception):
    """Raised when a raw zone entry cannot be turned into a Zone."""

    pass


def resolve_speed_limit(
    raw_limit: Any, category: ZoneCategory, settings: GeofenceSettings
) -> ResolvedSpeedLimit:
    """Resolve a zone's effective limit through the fallback chain.

    Priority: a positive admin-set limit, then the category default, then
    the global default. Missing, zero, negative or non-numeric admin values
    fall through.

    Args:
        raw_limit: Admin-entered limit from the branch document
        category: Zone category
        settings: Geofence settings holding the default tables

    Returns:
        Limit tagged with the tier that supplied it
    """
    admin_limit = _positive_number(raw_limit)
    if admin_limit is not None:
        return ResolvedSpeedLimit(int(admin_limit), SpeedLimitSource.ADMIN)

    category_limit = settings.category_speed_limits.get(category.value)
    if category_limit is not None and category_limit > 0:
        return ResolvedSpeedLimit(int(category_limit), SpeedLimitSource.CATEGORY)

    return ResolvedSpeedLimit(settings.global_speed_limit_kmh, SpeedLimitSource.GLOBAL)


def parse_zone(raw: Any, index: int, settings: GeofenceSettings) -> Zone:
    """Build a Zone from a raw branch document entry.

    Args:
        raw: Entry shaped ``{id, category, location: {lat, lng}, radius, speedLimit}``
        index: Position in the branch list, used as id when none is stored
        settings: Geofence settings

    Returns:
        Parsed zone

    Raises:
        ZoneDataError: If the entry is not a mapping or has no valid center
    """
    if not isinstance(raw, dict):
        raise ZoneDataError(f"Zone entry {index} is not a mapping")

    center = Coordinate.from_document(raw.get("location"))
    if center is None:
        center = Coordinate.from_document({"lat": raw.get("centerLat"), "lng": raw.get("centerLng")})
    if center is None:
        raise ZoneDataError(f"Zone entry {index} has no valid center")

    category = ZoneCategory.from_raw(raw.get("category"))
    radius = _positive_number(raw.get("radius")) or settings.default_radius_m
    zone_id = raw.get("id")

    return Zone(
        zone_id=str(zone_id) if zone_id is not None else str(index),
        category=category,
        center_lat=center.latitude,
        center_lng=center.longitude,
        radius_m=float(radius),
        speed_limit=resolve_speed_limit(raw.get("speedLimit"), category, settings),
    )


def _positive_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


class GeofenceIndex:
    """Holds the current branch's zones and resolves coordinates to zones."""

    def __init__(self, settings: GeofenceSettings | None = None, document_store: DocumentStore | None = None):
        """Initialize an empty index.

        Args:
            settings: Geofence settings
            document_store: Store used by load() to read branch documents
        """
        self.settings = settings or GeofenceSettings()
        self.document_store = document_store
        self.branch_id: str | None = None
        self._zones: list[Zone] = []
        self._lats = np.empty(0, dtype=np.float64)
        self._lngs = np.empty(0, dtype=np.float64)
        self._radii = np.empty(0, dtype=np.float64)

    @property
    def zones(self) -> list[Zone]:
        return list(self._zones)

    def __len__(self) -> int:
        return len(self._zones)

    async def load(self, branch_id: str) -> list[Zone]:
        """Load zones for a branch, replacing the current set.

        Any read failure or malformed document degrades to an empty index so
        only the global default limit applies.

        Args:
            branch_id: Branch document id

        Returns:
            Zones in load order
        """
        self.branch_id = branch_id

        if self.document_store is None:
            logger.warning("GeofenceIndex has no document store, zones not loaded")
            return self.replace([])

        try:
            document = await self.document_store.read_once(branch_document_key(branch_id))
        except Exception as e:
            logger.error(f"Failed to load zones for branch {branch_id}: {e}")
            return self.replace([])

        if document is None:
            logger.info(f"Branch {branch_id} not found, no zones loaded")
            return self.replace([])

        raw_zones = document.get("zones", document.get("slowdowns"))
        if not isinstance(raw_zones, list):
            logger.info(f"Branch {branch_id} has no zones")
            return self.replace([])

        zones = []
        for index, raw in enumerate(raw_zones):
            try:
                zones.append(parse_zone(raw, index, self.settings))
            except ZoneDataError as e:
                logger.warning(f"Skipping zone in branch {branch_id}: {e}")

        logger.info(f"Loaded {len(zones)}/{len(raw_zones)} zones for branch {branch_id}")
        return self.replace(zones)

    def replace(self, zones: list[Zone]) -> list[Zone]:
        """Install a zone list directly (load order is preserved)."""
        self._zones = list(zones)
        self._lats = np.array([z.center_lat for z in self._zones], dtype=np.float64)
        self._lngs = np.array([z.center_lng for z in self._zones], dtype=np.float64)
        self._radii = np.array([z.radius_m for z in self._zones], dtype=np.float64)
        return self.zones

    def clear(self) -> None:
        self.branch_id = None
        self.replace([])

    def resolve(self, coord: Coordinate) -> Zone | None:
        """Return the first zone (in load order) containing ``coord``.

        Args:
            coord: Coordinate to test

        Returns:
            Containing zone, or None when outside every zone
        """
        if not self._zones:
            return None

        distances = haversine_m_vectorized(coord.latitude, coord.longitude, self._lats, self._lngs)
        inside = distances <= self._radii
        if not inside.any():
            return None
        return self._zones[int(np.argmax(inside))]

    def limit_for(self, zone: Zone | None) -> int:
        """Applicable limit for a resolved zone (global default outside zones)."""
        if zone is None:
            return self.settings.global_speed_limit_kmh
        return zone.speed_limit_kmh

    def get_zone(self, zone_id: str) -> Zone | None:
        for zone in self._zones:
            if zone.zone_id == zone_id:
                return zone
        return None

"""Spoken zone enter/exit announcements.

Edge-triggered: an announcement fires only when the resolved zone changes.
A busy window after each announcement keeps speech from overlapping; a
transition that arrives while busy still updates the active-zone state but
is not spoken and is never queued.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from telemetry.config import AnnouncerSettings
from telemetry.geofence import GeofenceIndex
from telemetry.interfaces import NotificationSink
from telemetry.tracking_models import Coordinate, DriverStatus, Zone, current_millis

logger = logging.getLogger(__name__)


class TransitionKind(str, Enum):
    ENTERED = "entered"
    EXITED = "exited"


@dataclass(frozen=True)
class ZoneTransition:
    """A change of the active zone."""

    kind: TransitionKind
    zone_id: str
    zone: Zone | None
    message: str
    spoken: bool


def entering_message(zone: Zone) -> str:
    return (
        f"Slow down ahead. You are entering a {zone.category.value} zone, "
        f"limit {zone.speed_limit_kmh} kilometers per hour."
    )


def leaving_message(zone: Zone | None) -> str:
    category = zone.category.value if zone else "hazard"
    return f"You have left the {category} zone."


class ZoneAnnouncer:
    """Tracks the active zone and announces transitions."""

    def __init__(
        self,
        geofence: GeofenceIndex,
        notifier: NotificationSink | None = None,
        settings: AnnouncerSettings | None = None,
        clock: Callable[[], int] = current_millis,
    ):
        self.geofence = geofence
        self.notifier = notifier
        self.settings = settings or AnnouncerSettings()
        self.clock = clock

        self.current_zone_id: str | None = None
        self.active_zone: Zone | None = None
        self._busy_until_ms = 0

    @property
    def show_warning(self) -> bool:
        return self.active_zone is not None

    @property
    def is_busy(self) -> bool:
        return self.clock() < self._busy_until_ms

    def reset(self) -> None:
        self.current_zone_id = None
        self.active_zone = None
        self._busy_until_ms = 0

    async def on_fix(
        self, coord: Coordinate, status: DriverStatus, alerts_enabled: bool = True
    ) -> ZoneTransition | None:
        """Resolve the zone for ``coord`` and announce a transition if any.

        Args:
            coord: Current coordinate
            status: Driver status; announcements only happen while delivering
            alerts_enabled: False updates the active zone silently

        Returns:
            The transition that occurred, or None in steady state
        """
        if status is not DriverStatus.DELIVERING:
            if self.current_zone_id is not None:
                self._set_active(None)
            return None

        zone = self.geofence.resolve(coord)
        new_zone_id = zone.zone_id if zone else None
        previous_zone_id = self.current_zone_id
        previous_zone = self.active_zone

        if new_zone_id == previous_zone_id:
            return None

        self._set_active(zone)

        if not alerts_enabled:
            return None

        if zone is not None:
            message = entering_message(zone)
            logger.info(f"Entering {zone.category.value} zone {zone.zone_id}")
            spoken = await self._announce(message, self.settings.enter_busy_seconds)
            return ZoneTransition(TransitionKind.ENTERED, zone.zone_id, zone, message, spoken)

        exited = self.geofence.get_zone(previous_zone_id) or previous_zone
        message = leaving_message(exited)
        logger.info(f"Exiting zone {previous_zone_id}")
        spoken = await self._announce(message, self.settings.exit_busy_seconds)
        return ZoneTransition(TransitionKind.EXITED, str(previous_zone_id), exited, message, spoken)

    def _set_active(self, zone: Zone | None) -> None:
        self.current_zone_id = zone.zone_id if zone else None
        self.active_zone = zone

    async def _announce(self, message: str, busy_seconds: float) -> bool:
        if self.is_busy:
            logger.info(f"Speech busy, skipping announcement: {message}")
            return False
        if self.notifier is None:
            return False

        self._busy_until_ms = self.clock() + int(busy_seconds * 1000)
        try:
            await self.notifier.speak(message)
            return True
        except Exception as e:
            logger.error(f"Zone announcement failed: {e}")
            self._busy_until_ms = 0
            return False

"""Overspeed violation detection state machine.

A tick that exceeds the applicable limit while delivering opens an
overspeed session (GraceTracking). The session is confirmed once the grace
period has elapsed on a tick that is still overspeeding; the violation is
then emitted (subject to the same-zone cooldown) and the detector returns
to Idle. Any tick that is not delivering, is below the minimum speed, or is
at/under the limit resets the session silently, so grace time never carries
over a dip.
"""

from __future__ import annotations

import logging
from enum import Enum

from telemetry.config import MetricsSettings, ViolationSettings
from telemetry.geo import haversine_km
from telemetry.geofence import GeofenceIndex
from telemetry.tracking_models import (
    Coordinate,
    DriverStatus,
    OverspeedSession,
    Violation,
    Zone,
    round_half_up,
)

logger = logging.getLogger(__name__)

# Zone key used for overspeeding outside every zone
GLOBAL_ZONE_KEY = "__global__"


class DetectorState(str, Enum):
    IDLE = "idle"
    GRACE_TRACKING = "grace_tracking"


class ViolationDetector:
    """Decides when sustained overspeeding becomes a recorded violation.

    At most one OverspeedSession is live at a time.
    """

    def __init__(
        self,
        geofence: GeofenceIndex,
        settings: ViolationSettings | None = None,
        metrics_settings: MetricsSettings | None = None,
    ):
        """Initialize violation detector.

        Args:
            geofence: Zone index used to resolve the applicable limit
            settings: Grace period, cooldown and minimum speed
            metrics_settings: Plausible per-tick distance band for session distance
        """
        self.geofence = geofence
        self.settings = settings or ViolationSettings()
        self.metrics_settings = metrics_settings or MetricsSettings()

        self.session: OverspeedSession | None = None
        self.last_violation_write_ms: int | None = None
        self.last_zone_key: str | None = None

        # Statistics
        self.sessions_started = 0
        self.violations_emitted = 0
        self.violations_suppressed = 0

    @property
    def state(self) -> DetectorState:
        return DetectorState.IDLE if self.session is None else DetectorState.GRACE_TRACKING

    def reset(self) -> None:
        """Drop any in-progress session without recording it."""
        if self.session is not None:
            logger.debug(f"Overspeed session in zone {self.session.zone_key} discarded")
        self.session = None

    def update(self, status: DriverStatus, coord: Coordinate, speed_kmh: int, now_ms: int) -> Violation | None:
        """Advance the state machine by one tick.

        Args:
            status: Current driver status
            coord: Current coordinate
            speed_kmh: Estimated speed for this tick
            now_ms: Tick time in epoch milliseconds

        Returns:
            A Violation to record, or None
        """
        if status is not DriverStatus.DELIVERING or speed_kmh < self.settings.min_speed_kmh:
            self._reset_session("not delivering or below minimum speed")
            return None

        zone = self.geofence.resolve(coord)
        limit = self.geofence.limit_for(zone)

        if speed_kmh <= limit:
            self._reset_session(f"speed {speed_kmh} km/h within limit {limit} km/h")
            return None

        if self.session is None:
            self.session = self._open_session(zone, limit, coord, speed_kmh, now_ms)
        else:
            self._extend_session(self.session, coord, speed_kmh)

        if now_ms - self.session.grace_started_at_ms < self.settings.grace_period_ms:
            return None

        session = self.session
        session.confirmed = True
        self.session = None
        logger.info(
            f"Overspeed CONFIRMED in zone {session.zone_key} after "
            f"{(now_ms - session.grace_started_at_ms) / 1000:.1f}s (limit {session.limit_kmh} km/h)"
        )

        if self._in_cooldown(session.zone_key, now_ms):
            self.violations_suppressed += 1
            logger.info(f"Violation in zone {session.zone_key} suppressed by cooldown")
            return None

        self.last_violation_write_ms = now_ms
        self.last_zone_key = session.zone_key
        self.violations_emitted += 1
        return self._build_violation(session, now_ms)

    def _open_session(
        self, zone: Zone | None, limit: int, coord: Coordinate, speed_kmh: int, now_ms: int
    ) -> OverspeedSession:
        self.sessions_started += 1
        logger.info(f"Started tracking overspeed at {speed_kmh} km/h (limit {limit} km/h)")
        return OverspeedSession(
            zone_key=zone.zone_id if zone else GLOBAL_ZONE_KEY,
            zone=zone,
            limit_kmh=limit,
            grace_started_at_ms=now_ms,
            last_location=coord,
            speed_readings=[speed_kmh],
        )

    def _extend_session(self, session: OverspeedSession, coord: Coordinate, speed_kmh: int) -> None:
        session.speed_readings.append(speed_kmh)

        step_km = haversine_km(
            session.last_location.latitude, session.last_location.longitude, coord.latitude, coord.longitude
        )
        if self.metrics_settings.min_step_km < step_km < self.metrics_settings.max_step_km:
            session.distance_km += step_km
        session.last_location = coord

    def _reset_session(self, reason: str) -> None:
        if self.session is not None:
            logger.info(f"Overspeed session in zone {self.session.zone_key} ended before confirmation: {reason}")
            self.session = None

    def _in_cooldown(self, zone_key: str, now_ms: int) -> bool:
        if self.last_violation_write_ms is None:
            return False
        return now_ms - self.last_violation_write_ms < self.settings.cooldown_ms and zone_key == self.last_zone_key

    def _build_violation(self, session: OverspeedSession, now_ms: int) -> Violation:
        zone = session.zone
        return Violation(
            issued_at_ms=now_ms,
            driver_location=session.last_location,
            top_speed_kmh=session.top_speed_kmh,
            avg_speed_kmh=session.avg_speed_kmh,
            distance_km=session.distance_km,
            duration_minutes=round_half_up((now_ms - session.grace_started_at_ms) / 60000),
            zone_id=zone.zone_id if zone else None,
            zone_category=zone.category if zone else None,
            zone_speed_limit=zone.speed_limit_kmh if zone else None,
            global_default_limit=self.geofence.settings.global_speed_limit_kmh,
            speed_limit_kmh=session.limit_kmh,
        )

    def get_statistics(self) -> dict[str, int]:
        return {
            "sessions_started": self.sessions_started,
            "violations_emitted": self.violations_emitted,
            "violations_suppressed": self.violations_suppressed,
        }

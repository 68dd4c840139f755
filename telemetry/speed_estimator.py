"""Speed-over-ground estimation from noisy position fixes.

Device-reported speed is preferred when present; otherwise speed is derived
from the great-circle displacement since the previous fix. Implausible
values are discarded and near-zero values snap to zero so a parked vehicle
does not register GPS dither as movement.
"""

from __future__ import annotations

import logging
import math

from telemetry.config import SpeedSettings
from telemetry.geo import haversine_m
from telemetry.tracking_models import PositionFix, round_half_up

logger = logging.getLogger(__name__)

MPS_TO_KMH = 3.6


class SpeedEstimator:
    """Converts position fixes into integer km/h speed estimates.

    Holds the previous fix as per-session memory; call reset() whenever
    tracking (re)starts.
    """

    def __init__(self, settings: SpeedSettings | None = None):
        """Initialize speed estimator.

        Args:
            settings: Speed settings (correction factor, plausibility bounds)
        """
        self.settings = settings or SpeedSettings()
        self.previous_fix: PositionFix | None = None
        self.rejected_readings = 0

    def reset(self) -> None:
        """Forget the previous fix."""
        self.previous_fix = None

    def seed(self, fix: PositionFix) -> None:
        """Remember a fix without estimating, e.g. the initial position."""
        self.previous_fix = fix

    def estimate(self, fix: PositionFix) -> int:
        """Estimate speed for a new fix and remember it for the next call.

        Args:
            fix: Newest position fix

        Returns:
            Speed in km/h (integer, >= 0)
        """
        speed = self.estimate_between(self.previous_fix, fix)
        self.previous_fix = fix
        return speed

    def estimate_between(self, previous: PositionFix | None, fix: PositionFix) -> int:
        """Estimate speed for ``fix`` given an optional previous fix.

        Args:
            previous: Previous fix, or None at the start of a session
            fix: Current fix

        Returns:
            Speed in km/h (integer, >= 0)
        """
        device_kmh = self._device_speed_kmh(fix)
        derived_kmh = self._derived_speed_kmh(previous, fix)

        kmh = 0
        if device_kmh is not None and device_kmh < self.settings.max_plausible_kmh:
            kmh = round_half_up(device_kmh * self.settings.correction_factor)
        elif derived_kmh is not None and derived_kmh < self.settings.max_plausible_kmh:
            kmh = round_half_up(derived_kmh)
        elif device_kmh is not None or derived_kmh is not None:
            self.rejected_readings += 1
            logger.warning(
                f"Discarding implausible speed (device={device_kmh}, derived={derived_kmh}) "
                f"at ({fix.latitude:.6f}, {fix.longitude:.6f})"
            )

        if kmh < self.settings.stationary_snap_kmh:
            return 0
        return kmh

    def _device_speed_kmh(self, fix: PositionFix) -> float | None:
        speed = fix.speed_mps
        if speed is None or not math.isfinite(speed) or speed <= 0:
            return None
        return speed * MPS_TO_KMH

    def _derived_speed_kmh(self, previous: PositionFix | None, fix: PositionFix) -> float | None:
        if previous is None:
            return None

        distance_m = haversine_m(previous.latitude, previous.longitude, fix.latitude, fix.longitude)
        elapsed_s = max(self.settings.min_elapsed_seconds, (fix.timestamp_ms - previous.timestamp_ms) / 1000.0)

        if distance_m <= 0:
            return None
        return (distance_m / elapsed_s) * MPS_TO_KMH

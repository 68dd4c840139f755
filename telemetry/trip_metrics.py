"""Running shift metrics (distance, top speed, average speed).

Metrics accumulate only between start() and stop(). Distance is summed over
consecutive fixes whose displacement falls inside a plausible band, so GPS
dither and GPS teleports never reach the total. The average is taken over
moving readings only. The full state is mirrored to local storage so a
crash or OS kill mid-shift can be recovered with restore().
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from telemetry.config import MetricsSettings
from telemetry.geo import haversine_km
from telemetry.shift_storage import ShiftStorage
from telemetry.tracking_models import Coordinate, ShiftMetricsSnapshot, current_millis, round_half_up

logger = logging.getLogger(__name__)


class TripMetricsAccumulator:
    """Accumulates per-shift driving metrics with crash recovery."""

    def __init__(
        self,
        storage: ShiftStorage | None = None,
        settings: MetricsSettings | None = None,
        clock: Callable[[], int] = current_millis,
    ):
        """Initialize an inactive accumulator.

        Args:
            storage: Local shift storage for snapshots (None disables persistence)
            settings: Distance band and persistence settings
            clock: Millisecond clock used for shift start and duration
        """
        self.storage = storage
        self.settings = settings or MetricsSettings()
        self.clock = clock

        self.active = False
        self.driver_id: str | None = None
        self.shift_started_at_ms: int | None = None
        self.last_location: Coordinate | None = None
        self.speed_readings: list[int] = []
        self.top_speed_kmh = 0
        self.avg_speed_kmh = 0
        self.total_distance_km = 0.0

        # Statistics
        self.discarded_jumps = 0
        self.discarded_noise = 0

    async def start(self, location: Coordinate | None, driver_id: str | None = None) -> ShiftMetricsSnapshot:
        """Begin a new shift, clearing running totals.

        Args:
            location: Initial location used as the first distance anchor
            driver_id: Driver the shift belongs to (recorded for recovery)

        Returns:
            Initial snapshot
        """
        self.reset()
        self.active = True
        self.driver_id = driver_id
        self.shift_started_at_ms = self.clock()
        self.last_location = location

        logger.info(f"Shift metrics started for driver {driver_id} at {location}")

        if self.storage is not None:
            await self.storage.save_state(True, driver_id)
        await self.persist()
        return self.snapshot()

    def on_fix(self, speed_kmh: int, location: Coordinate) -> bool:
        """Fold one fix into the running totals.

        Args:
            speed_kmh: Estimated speed for the fix
            location: Fix coordinate

        Returns:
            True if the shift is active and state was updated
        """
        if not self.active or self.shift_started_at_ms is None:
            return False

        if speed_kmh > self.top_speed_kmh:
            logger.debug(f"New top speed: {speed_kmh} km/h (previous {self.top_speed_kmh} km/h)")
            self.top_speed_kmh = speed_kmh

        if speed_kmh > 0:
            self.speed_readings.append(speed_kmh)
            self.avg_speed_kmh = self._average()

        if self.last_location is not None:
            step_km = haversine_km(
                self.last_location.latitude, self.last_location.longitude, location.latitude, location.longitude
            )
            if self.settings.min_step_km < step_km < self.settings.max_step_km:
                self.total_distance_km += step_km
            elif step_km >= self.settings.max_step_km:
                self.discarded_jumps += 1
                logger.warning(f"Suspicious position jump of {step_km:.3f} km, skipping")
            else:
                self.discarded_noise += 1

        # Anchor moves even when the step is discarded
        self.last_location = location
        return True

    def snapshot(self) -> ShiftMetricsSnapshot:
        """Current metrics as an immutable value (does not mutate state)."""
        duration = 0
        if self.shift_started_at_ms is not None:
            duration = max(0, round_half_up((self.clock() - self.shift_started_at_ms) / 60000))

        return ShiftMetricsSnapshot(
            top_speed_kmh=self.top_speed_kmh,
            total_distance_km=self.total_distance_km,
            avg_speed_kmh=self.avg_speed_kmh,
            shift_started_at_ms=self.shift_started_at_ms,
            speed_readings=tuple(self.speed_readings),
            last_known_location=self.last_location,
            duration_minutes=duration,
        )

    async def stop(self) -> ShiftMetricsSnapshot:
        """End the shift and clear persisted state.

        Returns:
            Final snapshot taken before clearing
        """
        final = self.snapshot()
        logger.info(
            f"Shift metrics stopped - duration {final.duration_minutes} min, "
            f"distance {final.total_distance_km:.2f} km, top {final.top_speed_kmh} km/h, "
            f"avg {final.avg_speed_kmh} km/h, readings {len(final.speed_readings)}"
        )
        self.reset()

        if self.storage is not None:
            await self.storage.clear_metrics()
            await self.storage.clear_state()
        return final

    def reset(self) -> None:
        """Clear in-memory metrics without touching storage."""
        self.active = False
        self.driver_id = None
        self.shift_started_at_ms = None
        self.last_location = None
        self.speed_readings = []
        self.top_speed_kmh = 0
        self.avg_speed_kmh = 0
        self.total_distance_km = 0.0

    async def persist(self) -> bool:
        """Mirror the current snapshot to local storage.

        Returns:
            True if a snapshot was written
        """
        if self.storage is None or not self.active:
            return False
        return await self.storage.save_metrics(self.snapshot(), self.clock())

    async def restore(self, driver_id: str) -> bool:
        """Reload an in-progress shift persisted before a restart.

        State is reloaded verbatim only when the stored shift is still
        marked active for ``driver_id``.

        Args:
            driver_id: Currently signed-in driver

        Returns:
            True if a shift was restored
        """
        if self.storage is None:
            return False

        state = await self.storage.load_state()
        if not state or not state.get("isActive") or state.get("uid") != driver_id:
            return False

        snapshot = await self.storage.load_metrics()
        if snapshot is None or snapshot.shift_started_at_ms is None:
            logger.warning(f"Shift marked active for driver {driver_id} but no metrics were stored")
            return False

        self.active = True
        self.driver_id = driver_id
        self.shift_started_at_ms = snapshot.shift_started_at_ms
        self.last_location = snapshot.last_known_location
        self.speed_readings = list(snapshot.speed_readings)
        self.top_speed_kmh = snapshot.top_speed_kmh
        self.avg_speed_kmh = snapshot.avg_speed_kmh
        self.total_distance_km = snapshot.total_distance_km

        logger.info(
            f"Restored shift metrics for driver {driver_id}: {self.total_distance_km:.2f} km, "
            f"{len(self.speed_readings)} readings"
        )
        return True

    def _average(self) -> int:
        if not self.speed_readings:
            return 0
        return round_half_up(sum(self.speed_readings) / len(self.speed_readings))

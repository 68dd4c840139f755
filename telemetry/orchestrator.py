"""Tracking orchestrator - top-level controller of the telemetry pipeline.

Owns the position-stream subscription and the driver document subscription,
and runs every fix through the pipeline in data-dependency order:

    SpeedEstimator -> ViolationDetector + ZoneAnnouncer -> TripMetricsAccumulator
    -> throttled write-back (remote location, local last location, snapshot)

All state lives on this instance and is mutated from a single asyncio event
loop, one fix at a time. Collaborator failures are logged and absorbed; no
exception escapes the tick loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from telemetry.config import Settings
from telemetry.geofence import GeofenceIndex
from telemetry.interfaces import (
    DocumentStore,
    KeyValueStore,
    LocationPermissionError,
    NotificationSink,
    PositionSource,
    WatchOptions,
    driver_document_key,
)
from telemetry.shift_storage import ShiftStorage
from telemetry.speed_estimator import SpeedEstimator
from telemetry.tracking_events import (
    PositionUpdated,
    ShiftEnded,
    TrackingEvent,
    ViolationRecorded,
    ZoneEntered,
    ZoneExited,
)
from telemetry.tracking_models import (
    Coordinate,
    DriverStatus,
    PositionFix,
    ShiftHistoryEntry,
    Violation,
    current_millis,
)
from telemetry.trip_metrics import TripMetricsAccumulator
from telemetry.violation_alerts import ViolationAlertMonitor
from telemetry.violation_detector import ViolationDetector
from telemetry.zone_announcer import TransitionKind, ZoneAnnouncer

logger = logging.getLogger(__name__)

# Driver document field incremented on every status write from this device
STATUS_VERSION_FIELD = "statusVersion"


class AppState(str, Enum):
    """Application lifecycle state reported by the host app."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


class TrackingOrchestrator:
    """Wires position fixes through the telemetry components."""

    def __init__(
        self,
        config: Settings,
        position_source: PositionSource,
        document_store: DocumentStore,
        local_store: KeyValueStore,
        notifier: NotificationSink | None = None,
        clock: Callable[[], int] = current_millis,
    ) -> None:
        """Initialize the orchestrator and its components.

        Args:
            config: Application configuration
            position_source: Device location service
            document_store: Remote document store (driver and branch documents)
            local_store: Durable local key-value store
            notifier: Speech / notification output
            clock: Millisecond clock
        """
        self.config = config
        self.position_source = position_source
        self.document_store = document_store
        self.notifier = notifier
        self.clock = clock

        self.shift_storage = ShiftStorage(local_store)
        self.geofence = GeofenceIndex(config.geofence, document_store)
        self.speed_estimator = SpeedEstimator(config.speed)
        self.violation_detector = ViolationDetector(self.geofence, config.violation, config.metrics)
        self.zone_announcer = ZoneAnnouncer(self.geofence, notifier, config.announcer, clock)
        self.trip_metrics = TripMetricsAccumulator(self.shift_storage, config.metrics, clock)
        self.violation_alerts = ViolationAlertMonitor(notifier, config.violation, clock)

        # Driver state (from auth and the driver document)
        self.driver_id: str | None = None
        self.driver_status = DriverStatus.OFFLINE
        self.status_version = 0
        self.branch_id: str | None = None
        self._violations_list_ensured = False

        # Host app state
        self.route: str | None = None
        self.tracking_allowed = True
        self.app_state = AppState.ACTIVE

        # Live state, updated on every fix
        self.current_speed_kmh = 0
        self.current_location: Coordinate | None = None
        self.last_remote_write_ms: int | None = None

        self._position_task: asyncio.Task | None = None
        self._document_task: asyncio.Task | None = None
        self._persist_task: asyncio.Task | None = None
        self._starting = False
        self.position_stream_failed = False

        self.event_listeners: list[Callable[[TrackingEvent], None]] = []

        # Statistics
        self.fixes_processed = 0
        self.remote_write_failures = 0
        self.violations_recorded = 0

        logger.info(
            f"TrackingOrchestrator initialized: grace={config.violation.grace_period_ms}ms, "
            f"cooldown={config.violation.cooldown_ms}ms, "
            f"write_interval={config.tracking.remote_write_interval_seconds}s"
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_event_listener(self, listener: Callable[[TrackingEvent], None]) -> None:
        """Add event listener for tracking events.

        Args:
            listener: Function called with each TrackingEvent
        """
        self.event_listeners.append(listener)
        logger.info(
            f"Added event listener: {listener.__name__ if hasattr(listener, '__name__') else type(listener).__name__}"
        )

    def _broadcast_event(self, event: TrackingEvent) -> None:
        for listener in self.event_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    # ------------------------------------------------------------------
    # State properties
    # ------------------------------------------------------------------

    @property
    def is_tracking(self) -> bool:
        return self._position_task is not None and not self._position_task.done()

    @property
    def alerts_enabled(self) -> bool:
        return self.tracking_allowed

    @property
    def tracking_permitted(self) -> bool:
        """Driver signed in, on a tracking screen, and foreground (or background allowed)."""
        if self.driver_id is None or not self.tracking_allowed:
            return False
        return self.app_state is AppState.ACTIVE or self.config.tracking.track_in_background

    # ------------------------------------------------------------------
    # Auth and driver document
    # ------------------------------------------------------------------

    async def sign_in(self, driver_id: str) -> None:
        """Attach to a signed-in driver.

        Restores an in-progress shift persisted before a restart and
        subscribes to the driver document; tracking starts from the first
        document snapshot.

        Args:
            driver_id: Authenticated driver id
        """
        if self.driver_id == driver_id:
            return
        if self.driver_id is not None:
            await self.sign_out()

        logger.info(f"Driver signed in: {driver_id}")
        self.driver_id = driver_id

        if await self.trip_metrics.restore(driver_id):
            logger.info(f"Resumed in-progress shift for driver {driver_id}")

        self._document_task = asyncio.create_task(self._document_loop(driver_id))

    async def sign_out(self) -> None:
        """Detach from the current driver and tear down all tracking."""
        logger.info(f"Driver signed out: {self.driver_id}")
        self.stop_tracking()

        if self._document_task is not None:
            self._document_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._document_task
            self._document_task = None

        await self.flush_metrics()

        self.driver_id = None
        self.driver_status = DriverStatus.OFFLINE
        self.status_version = 0
        self.position_stream_failed = False
        self.branch_id = None
        self._violations_list_ensured = False
        self.geofence.clear()
        self.zone_announcer.reset()
        self.violation_alerts.clear()
        self.trip_metrics.reset()

    async def _document_loop(self, driver_id: str) -> None:
        key = driver_document_key(driver_id)
        try:
            async for document in self.document_store.subscribe(key):
                await self.on_driver_document(document)

        except asyncio.CancelledError:
            logger.debug(f"Driver document subscription for {driver_id} cancelled")
            raise

        except Exception as e:
            logger.error(f"Driver document subscription failed for {driver_id}: {e}")

    async def on_driver_document(self, document: dict[str, Any]) -> None:
        """React to a driver document snapshot.

        Args:
            document: Current driver document fields
        """
        if self.driver_id is None:
            return

        try:
            version = document.get(STATUS_VERSION_FIELD)
            version = version if isinstance(version, int) else 0
            if version < self.status_version:
                # Written before our latest status change; its status is stale
                logger.debug(
                    f"Ignoring stale status {document.get('status')} (version {version} < {self.status_version})"
                )
            else:
                self.status_version = version
                previous_status = self.driver_status
                self.driver_status = DriverStatus.from_raw(document.get("status"))
                if previous_status != self.driver_status:
                    logger.info(f"Driver status: {previous_status.value} -> {self.driver_status.value}")
                    if self.driver_status is not DriverStatus.DELIVERING:
                        self.violation_detector.reset()

            if "violations" not in document and not self._violations_list_ensured:
                self._violations_list_ensured = True
                await self._safe_update({"violations": []}, "initialize violations list")

            violations = document.get("violations")
            self.violation_alerts.enabled = self.alerts_enabled
            await self.violation_alerts.on_violations_list(violations if isinstance(violations, list) else [])

            branch_id = document.get("branchId") or None
            if branch_id != self.branch_id:
                self.branch_id = branch_id
                if branch_id:
                    await self.geofence.load(branch_id)
                else:
                    logger.info("Driver has no branch, clearing zones")
                    self.geofence.clear()

            # A failed stream is retried on route or app-state changes only
            if self.tracking_permitted and not self.is_tracking and not self.position_stream_failed:
                await self.start_tracking()

        except Exception as e:
            logger.error(f"Driver document handler error: {e}")

    # ------------------------------------------------------------------
    # Host app signals
    # ------------------------------------------------------------------

    async def set_route(self, route: str) -> None:
        """Report the current screen; tracking is disabled on blocked routes.

        Args:
            route: Current screen path, e.g. "/Login" or "/Home"
        """
        self.route = route
        self.position_stream_failed = False
        self.tracking_allowed = route not in self.config.tracking.blocked_routes
        self.violation_alerts.enabled = self.alerts_enabled
        logger.info(f"Route changed to {route}: tracking allowed={self.tracking_allowed}")

        if not self.tracking_allowed and self.is_tracking:
            logger.info("Stopping location watch due to route")
            self.stop_tracking()
        elif self.tracking_permitted and not self.is_tracking:
            await self.start_tracking()

    async def on_app_state_change(self, state: AppState) -> None:
        """React to the app moving between foreground and background.

        Args:
            state: New application state
        """
        previous = self.app_state
        self.app_state = state
        self.position_stream_failed = False
        logger.info(f"App state: {previous.value} -> {state.value}")

        if state is not AppState.ACTIVE:
            await self.flush_metrics()
            if not self.config.tracking.track_in_background and self.is_tracking:
                self.stop_tracking()
        elif self.tracking_permitted and not self.is_tracking:
            await self.start_tracking()

    # ------------------------------------------------------------------
    # Position stream
    # ------------------------------------------------------------------

    async def start_tracking(self) -> bool:
        """Subscribe to the position stream if tracking is permitted.

        Returns:
            True if tracking is running after the call
        """
        if not self.tracking_permitted:
            logger.info("Tracking not permitted, skipping")
            return False
        if self.is_tracking or self._starting:
            logger.debug("Location watch already active")
            return self.is_tracking

        self._starting = True
        try:
            return await self._start_position_stream()
        finally:
            self._starting = False

    async def _start_position_stream(self) -> bool:
        logger.info(f"Starting location watch for driver {self.driver_id}")

        try:
            granted = await self.position_source.request_permission()
        except LocationPermissionError as e:
            logger.warning(f"Location unavailable: {e}")
            granted = False
        except Exception as e:
            logger.error(f"Location permission request failed: {e}")
            granted = False

        if not granted:
            logger.warning("Location permission denied")
            await self._notify_alert(
                "Location Permission Required", "Please enable location permissions to use this app."
            )
            return False

        try:
            initial = await self.position_source.get_current_fix()
        except Exception as e:
            logger.error(f"Failed to get initial position: {e}")
            initial = None

        if initial is None:
            logger.warning("No initial position received")
            return False

        self.speed_estimator.reset()
        initial_speed = self.speed_estimator.estimate(initial)
        self.current_speed_kmh = initial_speed
        self.current_location = initial.coordinate
        await self._write_location(initial.coordinate, initial_speed, force=True)

        options = WatchOptions(
            min_interval_ms=self.config.tracking.min_interval_ms,
            min_distance_m=self.config.tracking.min_distance_m,
        )
        self._position_task = asyncio.create_task(self._position_loop(options))
        logger.info(
            f"Location watch started at ({initial.latitude:.6f}, {initial.longitude:.6f}), "
            f"interval={options.min_interval_ms}ms, distance={options.min_distance_m}m"
        )
        return True

    def stop_tracking(self) -> None:
        """Unsubscribe from the position stream immediately.

        Also drops any in-progress overspeed session so nothing stale fires
        after teardown.
        """
        if self._position_task is not None:
            logger.info("Stopping location watch")
            self._position_task.cancel()
            self._position_task = None

        self.violation_detector.reset()
        self.speed_estimator.reset()

    async def _position_loop(self, options: WatchOptions) -> None:
        try:
            async for fix in self.position_source.watch(options):
                await self.handle_fix(fix)

        except asyncio.CancelledError:
            logger.debug("Position loop cancelled")
            raise

        except Exception as e:
            logger.error(f"Position stream failed: {e}")
            self.position_stream_failed = True
            await self._notify_alert("Location Error", "Failed to start location tracking. Please try again.")

    async def handle_fix(self, fix: PositionFix) -> int:
        """Process a single position fix through the pipeline.

        Args:
            fix: Position fix from the device

        Returns:
            Estimated speed in km/h for the fix
        """
        speed_kmh = 0
        try:
            speed_kmh = self.speed_estimator.estimate(fix)
            coord = fix.coordinate
            driver_id = self.driver_id or ""

            # Live state always reflects the newest fix
            self.current_speed_kmh = speed_kmh
            self.current_location = coord
            self.fixes_processed += 1

            violation = self.violation_detector.update(self.driver_status, coord, speed_kmh, fix.timestamp_ms)
            if violation is not None:
                await self._record_violation(violation)

            transition = await self.zone_announcer.on_fix(coord, self.driver_status, self.alerts_enabled)
            if transition is not None:
                if transition.kind is TransitionKind.ENTERED and transition.zone is not None:
                    self._broadcast_event(ZoneEntered(driver_id, fix.timestamp_ms, transition.zone, transition.spoken))
                elif transition.kind is TransitionKind.EXITED:
                    self._broadcast_event(
                        ZoneExited(driver_id, fix.timestamp_ms, transition.zone_id, transition.zone, transition.spoken)
                    )

            metrics = None
            if self.trip_metrics.on_fix(speed_kmh, coord):
                metrics = self.trip_metrics.snapshot()
                self._schedule_persist()

            await self._write_location(coord, speed_kmh)

            zone = self.zone_announcer.active_zone
            self._broadcast_event(
                PositionUpdated(driver_id, fix.timestamp_ms, coord, speed_kmh, zone.zone_id if zone else None, metrics)
            )

        except Exception as e:
            logger.error(f"Position fix handling error: {e}")

        return speed_kmh

    async def _record_violation(self, violation: Violation) -> None:
        persisted = False
        self.violations_recorded += 1

        if self.driver_id is not None:
            try:
                await self.document_store.append(
                    driver_document_key(self.driver_id), "violations", violation.to_document()
                )
                persisted = True
                logger.info(
                    f"Violation saved: top {violation.top_speed_kmh} km/h, avg {violation.avg_speed_kmh} km/h, "
                    f"limit {violation.speed_limit_kmh} km/h, zone {violation.zone_id}"
                )
            except Exception as e:
                self.remote_write_failures += 1
                logger.error(f"Failed to save violation (not retried): {e}")

        await self.violation_alerts.notify_violation(violation)
        self._broadcast_event(ViolationRecorded(self.driver_id or "", violation.issued_at_ms, violation, persisted))

    async def _write_location(self, coord: Coordinate, speed_kmh: int, force: bool = False) -> bool:
        """Write the live location back, at most once per write interval."""
        now = self.clock()
        interval_ms = self.config.tracking.remote_write_interval_seconds * 1000
        if not force and self.last_remote_write_ms is not None and now - self.last_remote_write_ms < interval_ms:
            return False

        self.last_remote_write_ms = now
        await self._safe_update(
            {
                "location": {"latitude": coord.latitude, "longitude": coord.longitude, "speedKmh": speed_kmh},
                "lastLocationAt": now,
            },
            "update location",
        )
        await self.shift_storage.save_last_location(coord)
        return True

    # ------------------------------------------------------------------
    # Metrics persistence
    # ------------------------------------------------------------------

    def _schedule_persist(self) -> None:
        if self._persist_task is not None and not self._persist_task.done():
            return
        self._persist_task = asyncio.create_task(self._persist_after_delay())

    async def _persist_after_delay(self) -> None:
        try:
            await asyncio.sleep(self.config.metrics.persist_debounce_seconds)
            await self.trip_metrics.persist()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to persist shift metrics: {e}")

    async def flush_metrics(self) -> bool:
        """Persist the metrics snapshot now, replacing any pending debounce."""
        if self._persist_task is not None:
            self._persist_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._persist_task
            self._persist_task = None
        return await self.trip_metrics.persist()

    # ------------------------------------------------------------------
    # Shift lifecycle
    # ------------------------------------------------------------------

    async def start_shift(self) -> None:
        """Driver goes on shift: fresh metrics, status Available."""
        logger.info("Starting shift - resetting metrics")
        self.trip_metrics.reset()
        await self.shift_storage.clear_metrics()
        await self.shift_storage.clear_state()
        await self._set_status(DriverStatus.AVAILABLE)

    async def start_delivering(self) -> bool:
        """Begin metrics accumulation and set status Delivering.

        Returns:
            False if no location is known yet
        """
        if self.current_location is None:
            logger.warning("Cannot start delivering without a location")
            await self._notify_alert("Location Required", "Waiting for GPS location. Please try again in a moment.")
            return False

        await self.trip_metrics.start(self.current_location, self.driver_id)
        await self._set_status(DriverStatus.DELIVERING)
        return True

    async def end_shift(self) -> ShiftHistoryEntry | None:
        """End the shift, appending a history entry if anything was recorded.

        Returns:
            The appended entry, or None when the shift had no data or saving failed
        """
        if self.driver_id is None:
            return None

        snapshot = self.trip_metrics.snapshot()
        now = self.clock()
        logger.info(
            f"Ending shift - duration {snapshot.duration_minutes} min, distance "
            f"{snapshot.total_distance_km:.2f} km, top {snapshot.top_speed_kmh} km/h, avg {snapshot.avg_speed_kmh} km/h"
        )

        if not snapshot.has_recorded_data:
            logger.info("No driving data recorded, ending shift without history")
            await self._set_status(DriverStatus.OFFLINE)
            await self._finish_shift()
            self._broadcast_event(ShiftEnded(self.driver_id, now, None, cancelled=False))
            return None

        entry = ShiftHistoryEntry.from_snapshot(snapshot, now, self.current_location)
        try:
            await self.document_store.append(driver_document_key(self.driver_id), "violations", entry.to_document())
        except Exception as e:
            logger.error(f"Failed to save shift history: {e}")
            await self._notify_alert("Error", "Failed to save shift data. Please try again.")
            return None

        await self._set_status(DriverStatus.OFFLINE)
        await self._finish_shift()
        self._broadcast_event(ShiftEnded(self.driver_id, now, entry, cancelled=False))
        return entry

    async def cancel_shift(self) -> None:
        """Discard the shift without writing history."""
        logger.info("Cancelling shift")
        await self._set_status(DriverStatus.OFFLINE)
        await self._finish_shift()
        self._broadcast_event(ShiftEnded(self.driver_id or "", self.clock(), None, cancelled=True))

    async def _finish_shift(self) -> None:
        if self._persist_task is not None:
            self._persist_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._persist_task
            self._persist_task = None
        await self.trip_metrics.stop()
        self.violation_detector.reset()

    async def _set_status(self, status: DriverStatus) -> None:
        # Local state first; snapshots carrying an older version are ignored
        self.driver_status = status
        self.status_version += 1
        await self._safe_update(
            {"status": status.value, STATUS_VERSION_FIELD: self.status_version}, f"set status {status.value}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _safe_update(self, fields: dict[str, Any], action: str) -> bool:
        if self.driver_id is None:
            return False
        try:
            await self.document_store.update(driver_document_key(self.driver_id), fields)
            return True
        except Exception as e:
            self.remote_write_failures += 1
            logger.error(f"Failed to {action}: {e}")
            return False

    async def _notify_alert(self, title: str, body: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.alert(title, body)
        except Exception as e:
            logger.error(f"Failed to show alert '{title}': {e}")

    async def close(self) -> None:
        """Shut down all subscriptions and flush local state."""
        await self.sign_out()
        logger.info(
            f"TrackingOrchestrator closed - fixes {self.fixes_processed}, "
            f"violations {self.violations_recorded}, write failures {self.remote_write_failures}"
        )

    def get_status(self) -> dict[str, Any]:
        """Current live state for UI/API consumers."""
        zone = self.zone_announcer.active_zone
        snapshot = self.trip_metrics.snapshot()
        return {
            "driverId": self.driver_id,
            "status": self.driver_status.value,
            "branchId": self.branch_id,
            "tracking": self.is_tracking,
            "route": self.route,
            "appState": self.app_state.value,
            "speedKmh": self.current_speed_kmh,
            "location": self.current_location.to_document() if self.current_location else None,
            "activeZone": zone.to_api_format() if zone else None,
            "showZoneWarning": self.zone_announcer.show_warning,
            "zonesLoaded": len(self.geofence),
            "metrics": {
                "active": self.trip_metrics.active,
                "topSpeed": snapshot.top_speed_kmh,
                "avgSpeed": snapshot.avg_speed_kmh,
                "totalDistance": round(snapshot.total_distance_km, 3),
                "durationMinutes": snapshot.duration_minutes,
            },
            "statistics": {
                "fixesProcessed": self.fixes_processed,
                "violationsRecorded": self.violations_recorded,
                "remoteWriteFailures": self.remote_write_failures,
                **{k: v for k, v in self.violation_detector.get_statistics().items()},
            },
        }

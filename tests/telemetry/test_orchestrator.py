"""Integration tests for TrackingOrchestrator.

These tests wire the orchestrator to the local backends and drive it the
way the app does: sign in, navigate, start a shift and let fixes flow.
"""

import asyncio
import json
from collections.abc import AsyncIterator, Callable

import pytest

from telemetry.config import MetricsSettings, Settings, TrackingSettings
from telemetry.interfaces import LocationPermissionError, PositionSourceError, WatchOptions
from telemetry.local_backends import (
    InMemoryDocumentStore,
    InMemoryKeyValueStore,
    LoggingNotificationSink,
    ReplayPositionSource,
)
from telemetry.orchestrator import AppState, TrackingOrchestrator
from telemetry.shift_storage import LAST_LOCATION_KEY, SHIFT_METRICS_KEY, ShiftStorage
from telemetry.tracking_events import PositionUpdated, ShiftEnded, TrackingEvent, ViolationRecorded, ZoneEntered
from telemetry.tracking_models import DriverStatus, PositionFix
from telemetry.trip_metrics import TripMetricsAccumulator

T0 = 1_700_000_000_000
DRIVER = "driver-1"
DRIVER_KEY = "users/driver-1"
SCHOOL_ZONE = {"id": "school", "category": "School", "location": {"lat": 14.0, "lng": 121.0}, "radius": 20}

# Device speed reported as 35 km/h after the 1.12 correction
SPEED_35_MPS = 35 / (3.6 * 1.12)


@pytest.fixture
def config() -> Settings:
    return Settings(metrics=MetricsSettings(persist_debounce_seconds=0))


@pytest.fixture
def seeded_store(document_store: InMemoryDocumentStore) -> InMemoryDocumentStore:
    document_store.set_document("branches/b1", {"zones": [SCHOOL_ZONE]})
    document_store.set_document("branches/b2", {"zones": []})
    document_store.set_document(DRIVER_KEY, {"status": "Available", "branchId": "b1"})
    return document_store


@pytest.fixture
def make_orchestrator(
    config: Settings,
    seeded_store: InMemoryDocumentStore,
    local_store: InMemoryKeyValueStore,
    notifier: LoggingNotificationSink,
) -> Callable[..., TrackingOrchestrator]:
    def _make(
        source: ReplayPositionSource,
        clock: Callable[[], int] | None = None,
        settings: Settings | None = None,
    ) -> TrackingOrchestrator:
        return TrackingOrchestrator(
            settings or config,
            source,
            seeded_store,
            local_store,
            notifier,
            clock=clock or source.now_ms,
        )

    return _make


async def settle() -> None:
    """Let the document subscription drain pending snapshots."""
    await asyncio.sleep(0.05)


def speeding(document: dict) -> list[dict]:
    return [v for v in document.get("violations", []) if v.get("message") == "Speeding violation"]


class TestEndToEnd:
    """Full pipeline from position stream to driver document."""

    @pytest.mark.asyncio
    async def test_school_zone_overspeed_records_one_violation(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test 35 km/h in a 20 km/h School zone, fixes every 3 s for 12 s, gives exactly one violation."""
        fixes = [make_fix(T0 + i * 3000, 0.0, SPEED_35_MPS) for i in range(5)]
        source = ReplayPositionSource(fixes)
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        await orchestrator.set_route("/Home")
        assert await wait_until(lambda: orchestrator.is_tracking and len(orchestrator.geofence) == 1)

        await orchestrator.start_shift()
        assert await orchestrator.start_delivering() is True
        await settle()
        assert orchestrator.driver_status is DriverStatus.DELIVERING

        source.resume()
        assert await wait_until(source.finished.is_set)
        await settle()

        document = await seeded_store.read_once(DRIVER_KEY)
        violations = speeding(document)
        assert len(violations) == 1
        assert violations[0]["zoneCategory"] == "School"
        assert violations[0]["zoneLimit"] == 20
        assert violations[0]["speedLimit"] == 20
        assert violations[0]["topSpeed"] == 35
        assert violations[0]["issuedAt"] >= T0 + 10_000

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_violation_announced_and_alerted(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        notifier: LoggingNotificationSink,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test zone entry is spoken and the violation alert fires once."""
        fixes = [make_fix(T0 + i * 3000, 0.0, SPEED_35_MPS) for i in range(5)]
        source = ReplayPositionSource(fixes)
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking and len(orchestrator.geofence) == 1)
        await orchestrator.start_shift()
        await orchestrator.start_delivering()
        await settle()

        source.resume()
        assert await wait_until(source.finished.is_set)
        await settle()

        assert notifier.spoken[0].startswith("Slow down ahead. You are entering a School zone")
        assert notifier.spoken.count("You have a violation") == 1
        assert notifier.notifications.count(
            ("Notice of Violation", "Open your Driving Stats to review your violation.")
        ) == 1

        await orchestrator.close()


class TestTrackingLifecycle:
    """Test when the position stream is subscribed."""

    @pytest.mark.asyncio
    async def test_permission_denied_alerts(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        notifier: LoggingNotificationSink,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that denied permission shows an alert and does not track."""
        source = ReplayPositionSource([make_fix(T0)], permission_granted=False)
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: bool(notifier.alerts))

        assert orchestrator.is_tracking is False
        assert notifier.alerts[0] == (
            "Location Permission Required",
            "Please enable location permissions to use this app.",
        )

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_location_services_disabled(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        notifier: LoggingNotificationSink,
        make_fix: Callable[..., PositionFix],
    ) -> None:
        """Test that a permission error from the device is treated as a denial."""

        class DisabledSource(ReplayPositionSource):
            async def request_permission(self) -> bool:
                raise LocationPermissionError("location services off")

        orchestrator = make_orchestrator(DisabledSource([make_fix(T0)]))
        orchestrator.driver_id = DRIVER

        assert await orchestrator.start_tracking() is False
        assert notifier.alerts[0][0] == "Location Permission Required"

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_stream_failure_alerts_driver(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        notifier: LoggingNotificationSink,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that a failing position stream alerts once and retries only on navigation."""

        class LostSignalSource(ReplayPositionSource):
            async def watch(self, options: WatchOptions) -> AsyncIterator[PositionFix]:
                for fix in self.fixes:
                    yield fix
                raise PositionSourceError("GPS signal lost")

        orchestrator = make_orchestrator(LostSignalSource([make_fix(T0)]))

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: bool(notifier.alerts))
        await settle()

        assert notifier.alerts == [("Location Error", "Failed to start location tracking. Please try again.")]
        assert orchestrator.is_tracking is False
        assert orchestrator.fixes_processed == 1

        await orchestrator.set_route("/Home")
        assert await wait_until(lambda: len(notifier.alerts) == 2)
        assert notifier.alerts[1][0] == "Location Error"

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_blocked_route_stops_tracking(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that navigating to the login screen stops tracking and back resumes it."""
        source = ReplayPositionSource([make_fix(T0)])
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking)

        await orchestrator.set_route("/Login")
        assert orchestrator.is_tracking is False
        assert orchestrator.alerts_enabled is False

        await orchestrator.set_route("/Home")
        assert orchestrator.is_tracking is True

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_background_without_background_tracking(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that backgrounding stops tracking when background tracking is off."""
        settings = Settings(
            metrics=MetricsSettings(persist_debounce_seconds=0),
            tracking=TrackingSettings(track_in_background=False),
        )
        source = ReplayPositionSource([make_fix(T0)])
        source.pause()
        orchestrator = make_orchestrator(source, settings=settings)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking)

        await orchestrator.on_app_state_change(AppState.BACKGROUND)
        assert orchestrator.is_tracking is False

        await orchestrator.on_app_state_change(AppState.ACTIVE)
        assert orchestrator.is_tracking is True

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_background_flushes_snapshot(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        local_store: InMemoryKeyValueStore,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that backgrounding writes the metrics snapshot and keeps tracking by default."""
        source = ReplayPositionSource([make_fix(T0)])
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking)
        await orchestrator.start_delivering()
        orchestrator.trip_metrics.on_fix(30, orchestrator.current_location)

        await orchestrator.on_app_state_change(AppState.BACKGROUND)

        assert json.loads(local_store.values[SHIFT_METRICS_KEY])["topSpeed"] == 30
        assert orchestrator.is_tracking is True

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_sign_out_tears_down(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that sign-out stops tracking and clears driver state."""
        source = ReplayPositionSource([make_fix(T0)])
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking and orchestrator.branch_id == "b1")

        await orchestrator.sign_out()

        assert orchestrator.is_tracking is False
        assert orchestrator.driver_id is None
        assert len(orchestrator.geofence) == 0
        assert orchestrator.driver_status is DriverStatus.OFFLINE


class TestDriverDocument:
    """Test reactions to driver document snapshots."""

    @pytest.mark.asyncio
    async def test_violations_list_created(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        wait_until: Callable,
    ) -> None:
        """Test that a missing violations list is initialized."""
        orchestrator = make_orchestrator(ReplayPositionSource([]))

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: "violations" in seeded_store.documents[DRIVER_KEY])

        assert seeded_store.documents[DRIVER_KEY]["violations"] == []

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_branch_change_reloads_zones(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        wait_until: Callable,
    ) -> None:
        """Test that a new branch assignment reloads the zone index."""
        orchestrator = make_orchestrator(ReplayPositionSource([]))

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: len(orchestrator.geofence) == 1)

        await seeded_store.update(DRIVER_KEY, {"branchId": "b2"})
        assert await wait_until(lambda: orchestrator.branch_id == "b2")

        assert len(orchestrator.geofence) == 0

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_status_from_document(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        wait_until: Callable,
    ) -> None:
        """Test that status changes on the document are applied."""
        orchestrator = make_orchestrator(ReplayPositionSource([]))

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.driver_status is DriverStatus.AVAILABLE)

        await seeded_store.update(DRIVER_KEY, {"status": "Delivering"})
        assert await wait_until(lambda: orchestrator.driver_status is DriverStatus.DELIVERING)

        await orchestrator.close()


class TestStatusOrdering:
    """Test that queued driver document snapshots never roll back a newer local status."""

    async def ready(self, orchestrator: TrackingOrchestrator, wait_until: Callable) -> None:
        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.branch_id == "b1")
        await settle()

    def record_statuses(self, orchestrator: TrackingOrchestrator) -> list[DriverStatus]:
        """Capture the driver status after each snapshot the orchestrator handles."""
        seen: list[DriverStatus] = []
        handler = orchestrator.on_driver_document

        async def recording(document: dict) -> None:
            await handler(document)
            seen.append(orchestrator.driver_status)

        orchestrator.on_driver_document = recording
        return seen

    @pytest.mark.asyncio
    async def test_end_shift_not_reverted_by_location_snapshots(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that Delivering snapshots queued by location writes do not undo end_shift."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(clock(), 0.0, 5.0))
        await orchestrator.start_shift()
        await orchestrator.start_delivering()
        for i in range(1, 4):
            clock.advance(2500)
            await orchestrator.handle_fix(make_fix(clock(), i * 10.0, 5.0))

        seen = self.record_statuses(orchestrator)
        await orchestrator.end_shift()
        await settle()

        assert seen
        assert all(status is not DriverStatus.DELIVERING for status in seen)
        assert orchestrator.driver_status is DriverStatus.OFFLINE
        assert seeded_store.documents[DRIVER_KEY]["status"] == "Offline"

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_start_delivering_keeps_overspeed_session(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that an Available snapshot written before start_delivering does not reset grace."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(T0 - 1000, 100.0))
        await orchestrator.start_shift()
        await orchestrator.start_delivering()
        seen = self.record_statuses(orchestrator)
        await orchestrator.handle_fix(make_fix(T0, 0.0, SPEED_35_MPS))
        await settle()

        assert seen
        assert all(status is DriverStatus.DELIVERING for status in seen)
        assert orchestrator.violation_detector.session is not None

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_external_status_change_still_applies(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that a status edited by another client after our writes is applied."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(clock(), 0.0))
        await orchestrator.start_delivering()
        await settle()
        assert seeded_store.documents[DRIVER_KEY]["statusVersion"] == orchestrator.status_version

        await seeded_store.update(DRIVER_KEY, {"status": "Offline"})
        assert await wait_until(lambda: orchestrator.driver_status is DriverStatus.OFFLINE)

        await orchestrator.close()


class TestFixHandling:
    """Test per-fix processing with fixes fed directly."""

    async def ready(self, orchestrator: TrackingOrchestrator, wait_until: Callable) -> None:
        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.branch_id == "b1")
        await settle()

    @pytest.mark.asyncio
    async def test_location_write_back_throttled(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        local_store: InMemoryKeyValueStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test remote location writes at most once per 2 s while live state updates every fix."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(clock(), 0.0, 5.0))
        first_write = seeded_store.documents[DRIVER_KEY]["lastLocationAt"]

        clock.advance(1000)
        await orchestrator.handle_fix(make_fix(clock(), 10.0, 5.0))
        assert seeded_store.documents[DRIVER_KEY]["lastLocationAt"] == first_write
        assert orchestrator.current_location == make_fix(0, 10.0).coordinate

        clock.advance(1500)
        await orchestrator.handle_fix(make_fix(clock(), 20.0, 5.0))
        location = seeded_store.documents[DRIVER_KEY]["location"]
        assert seeded_store.documents[DRIVER_KEY]["lastLocationAt"] == first_write + 2500
        assert location["latitude"] == make_fix(0, 20.0).latitude
        assert location["speedKmh"] == 20
        assert LAST_LOCATION_KEY in local_store.values

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_violation_write_failure_is_swallowed(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that a failed violation write is logged, not retried, and tracking continues."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        events: list[TrackingEvent] = []
        orchestrator.add_event_listener(events.append)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(T0, 0.0, SPEED_35_MPS))
        await orchestrator.start_delivering()
        seeded_store.fail_writes = True

        for i in range(5):
            await orchestrator.handle_fix(make_fix(T0 + i * 3000, 0.0, SPEED_35_MPS))

        recorded = [e for e in events if isinstance(e, ViolationRecorded)]
        assert len(recorded) == 1
        assert recorded[0].persisted is False
        assert orchestrator.remote_write_failures >= 1

        seeded_store.fail_writes = False
        assert await orchestrator.handle_fix(make_fix(T0 + 15_000, 0.0, SPEED_35_MPS)) == 35
        assert speeding(seeded_store.documents[DRIVER_KEY]) == []

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_events_broadcast(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that listeners receive position, zone and violation events."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        events: list[TrackingEvent] = []
        orchestrator.add_event_listener(events.append)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(T0 - 1000, 100.0))
        await orchestrator.start_delivering()
        for i in range(5):
            await orchestrator.handle_fix(make_fix(T0 + i * 3000, 0.0, SPEED_35_MPS))

        assert any(isinstance(e, ZoneEntered) and e.zone.zone_id == "school" for e in events)
        assert any(isinstance(e, ViolationRecorded) and e.persisted for e in events)
        positions = [e for e in events if isinstance(e, PositionUpdated)]
        assert len(positions) == 6
        assert positions[-1].zone_id == "school"
        assert positions[-1].metrics is not None

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_pipeline(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that a raising listener is isolated."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)

        def broken(event: TrackingEvent) -> None:
            raise RuntimeError("listener failure")

        orchestrator.add_event_listener(broken)
        await self.ready(orchestrator, wait_until)

        assert await orchestrator.handle_fix(make_fix(T0, 0.0, SPEED_35_MPS)) == 35
        assert orchestrator.fixes_processed == 1

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_stop_tracking_discards_grace_session(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that grace time from before stop_tracking() never confirms a violation."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.ready(orchestrator, wait_until)

        await orchestrator.handle_fix(make_fix(T0 - 1000, 100.0))
        await orchestrator.start_delivering()
        await orchestrator.handle_fix(make_fix(T0, 0.0, SPEED_35_MPS))
        assert orchestrator.violation_detector.session is not None

        orchestrator.stop_tracking()
        assert orchestrator.violation_detector.session is None

        await orchestrator.handle_fix(make_fix(T0 + 10_500, 0.0, SPEED_35_MPS))
        await settle()

        assert orchestrator.violations_recorded == 0
        assert speeding(seeded_store.documents[DRIVER_KEY]) == []

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_blocked_route_discards_grace_session(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        wait_until: Callable,
    ) -> None:
        """Test that navigating to the login screen mid-grace drops the overspeed session."""
        source = ReplayPositionSource([make_fix(T0 - 1000, 100.0)])
        source.pause()
        orchestrator = make_orchestrator(source)

        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.is_tracking and orchestrator.branch_id == "b1")
        await settle()
        assert await orchestrator.start_delivering() is True

        await orchestrator.handle_fix(make_fix(T0, 0.0, SPEED_35_MPS))
        assert orchestrator.violation_detector.session is not None

        await orchestrator.set_route("/Login")
        assert orchestrator.is_tracking is False
        assert orchestrator.violation_detector.session is None

        await orchestrator.handle_fix(make_fix(T0 + 10_500, 0.0, SPEED_35_MPS))
        await settle()

        assert orchestrator.violations_recorded == 0
        assert speeding(seeded_store.documents[DRIVER_KEY]) == []

        await orchestrator.close()


class TestShiftLifecycle:
    """Test start/end/cancel shift flows."""

    async def delivering(
        self, orchestrator: TrackingOrchestrator, make_fix: Callable[..., PositionFix], clock, wait_until: Callable
    ) -> None:
        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.branch_id == "b1")
        await orchestrator.handle_fix(make_fix(clock(), 500.0))
        await orchestrator.start_shift()
        assert await orchestrator.start_delivering() is True

    @pytest.mark.asyncio
    async def test_start_delivering_requires_location(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        notifier: LoggingNotificationSink,
        wait_until: Callable,
    ) -> None:
        """Test that delivering cannot start before a location is known."""
        orchestrator = make_orchestrator(ReplayPositionSource([]))
        await orchestrator.sign_in(DRIVER)

        assert await orchestrator.start_delivering() is False
        assert notifier.alerts[0][0] == "Location Required"

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_end_shift_appends_history(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test ending a shift with data appends a "Shift completed" entry and goes Offline."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        events: list[TrackingEvent] = []
        orchestrator.add_event_listener(events.append)
        await self.delivering(orchestrator, make_fix, clock, wait_until)

        clock.advance(60_000)
        await orchestrator.handle_fix(make_fix(clock(), 600.0, 10.0))
        clock.advance(60_000)
        await orchestrator.handle_fix(make_fix(clock(), 700.0, 10.0))

        entry = await orchestrator.end_shift()

        assert entry is not None
        assert entry.duration_minutes == 2
        assert entry.top_speed_kmh == 40
        assert entry.distance_km == pytest.approx(0.2, abs=0.01)
        history = seeded_store.documents[DRIVER_KEY]["violations"]
        assert history[-1]["message"] == "Shift completed"
        assert seeded_store.documents[DRIVER_KEY]["status"] == "Offline"
        assert orchestrator.trip_metrics.active is False
        assert isinstance(events[-1], ShiftEnded) and events[-1].entry == entry

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_end_shift_without_data(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test ending an empty shift writes no history."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.delivering(orchestrator, make_fix, clock, wait_until)

        assert await orchestrator.end_shift() is None

        assert seeded_store.documents[DRIVER_KEY]["status"] == "Offline"
        assert seeded_store.documents[DRIVER_KEY].get("violations", []) == []

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_end_shift_failure_keeps_metrics(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        notifier: LoggingNotificationSink,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test that a failed history write keeps the shift so it can be retried."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.delivering(orchestrator, make_fix, clock, wait_until)
        clock.advance(60_000)
        await orchestrator.handle_fix(make_fix(clock(), 600.0, 10.0))

        seeded_store.fail_writes = True
        assert await orchestrator.end_shift() is None

        assert orchestrator.trip_metrics.active is True
        assert notifier.alerts[-1] == ("Error", "Failed to save shift data. Please try again.")

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_cancel_shift(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        seeded_store: InMemoryDocumentStore,
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test cancelling discards metrics without history."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await self.delivering(orchestrator, make_fix, clock, wait_until)
        clock.advance(60_000)
        await orchestrator.handle_fix(make_fix(clock(), 600.0, 10.0))

        await orchestrator.cancel_shift()

        assert orchestrator.trip_metrics.active is False
        assert orchestrator.driver_status is DriverStatus.OFFLINE
        assert seeded_store.documents[DRIVER_KEY].get("violations", []) == []

        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_sign_in_restores_interrupted_shift(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        local_store: InMemoryKeyValueStore,
        make_fix: Callable[..., PositionFix],
        clock,
    ) -> None:
        """Test that signing in after a crash resumes the persisted shift."""
        before_crash = TripMetricsAccumulator(ShiftStorage(local_store), MetricsSettings(), clock)
        await before_crash.start(make_fix(0).coordinate, DRIVER)
        before_crash.on_fix(45, make_fix(0, 100.0).coordinate)
        await before_crash.persist()

        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await orchestrator.sign_in(DRIVER)

        assert orchestrator.trip_metrics.active is True
        assert orchestrator.trip_metrics.top_speed_kmh == 45

        await orchestrator.close()


class TestStatus:
    """Test the live status summary."""

    @pytest.mark.asyncio
    async def test_get_status(
        self,
        make_orchestrator: Callable[..., TrackingOrchestrator],
        make_fix: Callable[..., PositionFix],
        clock,
        wait_until: Callable,
    ) -> None:
        """Test the status dictionary reflects live state."""
        orchestrator = make_orchestrator(ReplayPositionSource([]), clock=clock)
        await orchestrator.sign_in(DRIVER)
        assert await wait_until(lambda: orchestrator.branch_id == "b1")
        await orchestrator.handle_fix(make_fix(clock(), 0.0, 5.0))

        status = orchestrator.get_status()

        assert status["driverId"] == DRIVER
        assert status["status"] == "Available"
        assert status["branchId"] == "b1"
        assert status["speedKmh"] == 20
        assert status["zonesLoaded"] == 1
        assert status["metrics"]["active"] is False
        assert status["statistics"]["fixesProcessed"] == 1

        await orchestrator.close()

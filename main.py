"""Driver Telemetry - GPS trace replay and live tracking API.

Replays a recorded GPS trace (CSV) through the tracking pipeline against a
branch's hazard zones (JSON), using the local backends in place of the
device and cloud services. Optionally serves the live tracking API while
the replay runs.

Usage:
    python main.py data/demo_trace.csv --zones data/demo_zones.json
    python main.py data/demo_trace.csv --zones data/demo_zones.json --serve --realtime
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI

from telemetry.api_server import create_app
from telemetry.config import ConfigurationError, LoggingSettings, Settings, get_config
from telemetry.interfaces import PositionSourceError, branch_document_key, driver_document_key
from telemetry.local_backends import (
    InMemoryDocumentStore,
    InMemoryKeyValueStore,
    JsonFileKeyValueStore,
    LoggingNotificationSink,
    ReplayPositionSource,
)
from telemetry.orchestrator import TrackingOrchestrator
from telemetry.tracking_models import ViolationKind

logger = logging.getLogger(__name__)

DEMO_TRACE = Path("data/demo_trace.csv")
DEMO_ZONES = Path("data/demo_zones.json")


def configure_logging(settings: LoggingSettings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Logging configuration
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.file_path:
        handlers.append(
            RotatingFileHandler(settings.file_path, maxBytes=settings.max_file_size_mb * 1024 * 1024, backupCount=3)
        )

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def load_zones(path: Path) -> list[dict[str, Any]]:
    """Load raw zone records from a JSON file (a list, or ``{"zones": [...]}``)."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("zones") or data.get("slowdowns") or []
    if not isinstance(data, list):
        raise ValueError(f"Zone file {path} must contain a list of zones")
    return data


class TraceReplay:
    """Runs one delivering shift over a recorded trace."""

    def __init__(
        self,
        config: Settings,
        source: ReplayPositionSource,
        zones: list[dict[str, Any]],
        driver_id: str = "demo-driver",
        branch_id: str = "demo-branch",
        state_file: Path | None = None,
    ) -> None:
        """Wire an orchestrator to local backends.

        Args:
            config: Application configuration
            source: Replayed position source
            zones: Raw zone records for the branch
            driver_id: Driver to sign in
            branch_id: Branch holding the zones
            state_file: JSON file for local shift state (in-memory when None)
        """
        self.driver_id = driver_id
        self.source = source
        self.document_store = InMemoryDocumentStore(
            {
                branch_document_key(branch_id): {"zones": zones},
                driver_document_key(driver_id): {"status": "Available", "branchId": branch_id},
            }
        )
        local_store = JsonFileKeyValueStore(state_file) if state_file else InMemoryKeyValueStore()
        self.notifier = LoggingNotificationSink()
        self.orchestrator = TrackingOrchestrator(
            config,
            source,
            self.document_store,
            local_store,
            self.notifier,
            clock=source.now_ms,
        )

    async def run(self) -> dict[str, Any]:
        """Replay the whole trace as a single delivering shift.

        Returns:
            Summary of the replay
        """
        orchestrator = self.orchestrator
        self.source.pause()

        await orchestrator.sign_in(self.driver_id)
        await orchestrator.set_route("/Home")

        # Let the driver document load zones and start the watch
        for _ in range(100):
            if orchestrator.is_tracking and orchestrator.branch_id is not None:
                break
            await asyncio.sleep(0.01)
        else:
            logger.error("Tracking did not start, aborting replay")
            await orchestrator.close()
            return {"fixes": 0, "violations": [], "shift": None}

        await orchestrator.start_shift()
        await orchestrator.start_delivering()
        self.source.resume()

        await self.source.finished.wait()
        entry = await orchestrator.end_shift()

        document = await self.document_store.read_once(driver_document_key(self.driver_id)) or {}
        violations = [
            v for v in document.get("violations", []) if v.get("message") == ViolationKind.SPEEDING.value
        ]
        summary = {
            "fixes": orchestrator.fixes_processed,
            "violations": violations,
            "shift": entry.to_document() if entry else None,
            "spoken": list(self.notifier.spoken),
        }
        await orchestrator.close()
        return summary


def log_summary(summary: dict[str, Any]) -> None:
    logger.info("=== REPLAY SUMMARY ===")
    logger.info(f"Fixes processed: {summary['fixes']}")
    logger.info(f"Violations recorded: {len(summary['violations'])}")
    for violation in summary["violations"]:
        logger.info(
            f"  {violation['zoneCategory'] or 'Global'} zone {violation['zoneId']}: "
            f"top {violation['topSpeed']} km/h, avg {violation['avgSpeed']} km/h, limit {violation['speedLimit']} km/h"
        )
    if summary["shift"]:
        shift = summary["shift"]
        logger.info(
            f"Shift: {shift['distance']} km in {shift['time']} min, "
            f"top {shift['topSpeed']} km/h, avg {shift['avgSpeed']} km/h"
        )


def build_replay(
    config: Settings,
    trace: Path,
    zones_path: Path,
    realtime: bool = False,
    speedup: float = 1.0,
    state_file: Path | None = None,
) -> TraceReplay:
    source = ReplayPositionSource.from_csv(trace, realtime=realtime, speedup=speedup)
    return TraceReplay(config, source, load_zones(zones_path), state_file=state_file)


def create_demo_app() -> FastAPI:
    """Application factory used by the development server.

    Replays the bundled demo trace in real time while serving the API.
    """
    config = get_config()
    configure_logging(config.logging)
    replay = build_replay(config, DEMO_TRACE, DEMO_ZONES, realtime=True)

    async def run_replay() -> None:
        log_summary(await replay.run())

    return create_app(replay.orchestrator, background=run_replay)


async def serve(replay: TraceReplay, config: Settings) -> None:
    """Serve the API while the replay runs, until interrupted."""

    async def run_replay() -> None:
        log_summary(await replay.run())

    app = create_app(replay.orchestrator, background=run_replay)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.server.host, port=config.server.port, log_level=config.logging.level.lower())
    )
    await server.serve()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay a GPS trace through the driver telemetry pipeline")
    parser.add_argument("trace", type=Path, help="CSV trace (timestamp_ms, latitude, longitude[, speed_mps])")
    parser.add_argument("--zones", type=Path, default=DEMO_ZONES, help="JSON list of branch zones")
    parser.add_argument("--state-file", type=Path, default=None, help="Persist local shift state to this file")
    parser.add_argument("--realtime", action="store_true", help="Pace fixes by their timestamps")
    parser.add_argument("--speedup", type=float, default=1.0, help="Replay speed multiplier with --realtime")
    parser.add_argument("--serve", action="store_true", help="Serve the tracking API while replaying")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging)
    logger.info("Driver telemetry starting up...")

    try:
        replay = build_replay(config, args.trace, args.zones, args.realtime, args.speedup, args.state_file)
    except (PositionSourceError, OSError, ValueError) as e:
        logger.error(f"Failed to load replay inputs: {e}")
        sys.exit(1)

    if args.serve:
        await serve(replay, config)
    else:
        log_summary(await replay.run())


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
    except Exception as e:
        logger.error(f"Application crashed: {e}")
        sys.exit(1)

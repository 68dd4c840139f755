"""Tests for the trace replay entry point."""

import json
from pathlib import Path

import pytest

from main import build_replay, load_zones, parse_args
from telemetry.config import Settings

DATA_DIR = Path(__file__).parent.parent / "data"


class TestLoadZones:
    """Test zone file loading."""

    def test_list_file(self) -> None:
        """Test the bundled demo zone list."""
        zones = load_zones(DATA_DIR / "demo_zones.json")

        assert len(zones) == 3
        assert zones[0]["id"] == "school-main-gate"

    def test_legacy_slowdowns_document(self, tmp_path) -> None:
        """Test a branch document export using the legacy field name."""
        path = tmp_path / "branch.json"
        path.write_text(json.dumps({"slowdowns": [{"category": "Church"}]}), encoding="utf-8")

        assert load_zones(path) == [{"category": "Church"}]

    def test_invalid_file(self, tmp_path) -> None:
        """Test that a non-list zone file is rejected."""
        path = tmp_path / "zones.json"
        path.write_text('"nope"', encoding="utf-8")

        with pytest.raises(ValueError):
            load_zones(path)


class TestArguments:
    """Test command-line parsing."""

    def test_defaults(self) -> None:
        """Test defaults for a bare trace argument."""
        args = parse_args(["trace.csv"])

        assert args.trace == Path("trace.csv")
        assert args.realtime is False
        assert args.serve is False
        assert args.speedup == 1.0


class TestTraceReplay:
    """Replay the bundled demo trace end to end."""

    @pytest.mark.asyncio
    async def test_demo_trace_records_school_violation(self) -> None:
        """Test the demo drive at 36 km/h through the School zone gives one violation."""
        replay = build_replay(Settings(), DATA_DIR / "demo_trace.csv", DATA_DIR / "demo_zones.json")

        summary = await replay.run()

        assert summary["fixes"] == 60
        assert len(summary["violations"]) == 1
        violation = summary["violations"][0]
        assert violation["zoneId"] == "school-main-gate"
        assert violation["zoneLimit"] == 20
        assert violation["topSpeed"] == 36
        assert summary["shift"]["topSpeed"] == 36
        assert summary["shift"]["distance"] == pytest.approx(0.53, abs=0.01)
        assert "Slow down ahead. You are entering a School zone, limit 20 kilometers per hour." in summary["spoken"]
        assert "You have left the School zone." in summary["spoken"]

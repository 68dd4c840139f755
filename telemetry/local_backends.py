"""Local implementations of the collaborator interfaces.

Used by the replay CLI, the development server and the test suite. The
in-memory document store behaves like a realtime document database: each
update or append is pushed to every subscriber of the key.
"""

from __future__ import annotations

import asyncio
import copy
import csv
import json
import logging
import os
from collections.abc import AsyncIterator, Iterable
from pathlib import Path
from typing import Any

from telemetry.interfaces import (
    DocumentStore,
    KeyValueStore,
    NotificationSink,
    PositionSource,
    PositionSourceError,
    WatchOptions,
)
from telemetry.tracking_models import PositionFix

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed document store with change subscriptions."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None):
        self.documents: dict[str, dict[str, Any]] = copy.deepcopy(documents) if documents else {}
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = {}

        # Set to simulate a network outage on writes
        self.fail_writes = False
        self.write_count = 0

    async def read_once(self, key: str) -> dict[str, Any] | None:
        document = self.documents.get(key)
        return copy.deepcopy(document) if document is not None else None

    async def subscribe(self, key: str) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._subscribers.setdefault(key, []).append(queue)
        try:
            if key in self.documents:
                yield copy.deepcopy(self.documents[key])
            while True:
                yield await queue.get()
        finally:
            self._subscribers[key].remove(queue)

    async def update(self, key: str, fields: dict[str, Any]) -> None:
        self._check_writable(key)
        self.documents.setdefault(key, {}).update(copy.deepcopy(fields))
        self._notify(key)

    async def append(self, key: str, field: str, value: Any) -> None:
        self._check_writable(key)
        document = self.documents.setdefault(key, {})
        existing = document.get(field)
        if not isinstance(existing, list):
            existing = []
        document[field] = existing + [copy.deepcopy(value)]
        self._notify(key)

    def set_document(self, key: str, document: dict[str, Any]) -> None:
        """Replace a document wholesale (admin-side edit)."""
        self.documents[key] = copy.deepcopy(document)
        self._notify(key)

    def _check_writable(self, key: str) -> None:
        if self.fail_writes:
            raise ConnectionError(f"Document store unavailable, write to {key} failed")
        self.write_count += 1

    def _notify(self, key: str) -> None:
        for queue in self._subscribers.get(key, []):
            queue.put_nowait(copy.deepcopy(self.documents[key]))


class InMemoryKeyValueStore(KeyValueStore):
    """Volatile key-value store."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value

    async def remove(self, key: str) -> None:
        self.values.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """Key-value store persisted to a single JSON file.

    Every write replaces the file atomically, so the contents survive a
    process kill between writes.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            data[key] = value
            await asyncio.to_thread(self._write, data)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._write, data)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable key-value file {self.path}, starting empty: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)


def _optional_float(value: str | None) -> float | None:
    # Empty or negative means "not reported"
    if value is None or value.strip() == "":
        return None
    number = float(value)
    return number if number >= 0 else None


class ReplayPositionSource(PositionSource):
    """Position source that replays a recorded trace."""

    def __init__(
        self,
        fixes: Iterable[PositionFix],
        permission_granted: bool = True,
        realtime: bool = False,
        speedup: float = 1.0,
    ):
        """Initialize the replay source.

        Args:
            fixes: Fixes in chronological order
            permission_granted: Result of request_permission()
            realtime: Sleep between fixes according to their timestamps
            speedup: Replay speed multiplier when ``realtime`` is set
        """
        self.fixes = list(fixes)
        self.permission_granted = permission_granted
        self.realtime = realtime
        self.speedup = speedup
        self.delivered = 0

        # Set once the last fix has been consumed
        self.finished = asyncio.Event()
        self._resume = asyncio.Event()
        self._resume.set()

    def now_ms(self) -> int:
        """Trace time: timestamp of the most recently delivered fix.

        Pass as the orchestrator clock so throttles and durations follow the
        recorded timeline during a fast replay.
        """
        if not self.fixes:
            return 0
        return self.fixes[max(0, self.delivered - 1)].timestamp_ms

    def pause(self) -> None:
        """Hold fixes back until resume() is called."""
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    @classmethod
    def from_csv(cls, path: str | Path, **kwargs: Any) -> ReplayPositionSource:
        """Load a trace from CSV.

        Required columns: ``timestamp_ms``, ``latitude``, ``longitude``.
        Optional: ``speed_mps``, ``heading``, ``accuracy``.

        Raises:
            PositionSourceError: If the file cannot be read or a row is invalid
        """
        fixes = []
        try:
            with open(path, newline="", encoding="utf-8") as f:
                for line_number, row in enumerate(csv.DictReader(f), start=2):
                    try:
                        fixes.append(
                            PositionFix(
                                latitude=float(row["latitude"]),
                                longitude=float(row["longitude"]),
                                timestamp_ms=int(float(row["timestamp_ms"])),
                                speed_mps=_optional_float(row.get("speed_mps")),
                                heading_degrees=_optional_float(row.get("heading")),
                                accuracy_m=_optional_float(row.get("accuracy")),
                            )
                        )
                    except (KeyError, TypeError, ValueError) as e:
                        raise PositionSourceError(f"Invalid trace row {line_number} in {path}: {e}", e) from e
        except OSError as e:
            raise PositionSourceError(f"Cannot read trace {path}: {e}", e) from e

        logger.info(f"Loaded {len(fixes)} fixes from {path}")
        return cls(fixes, **kwargs)

    async def request_permission(self) -> bool:
        return self.permission_granted

    async def get_current_fix(self) -> PositionFix | None:
        return self.fixes[0] if self.fixes else None

    async def watch(self, options: WatchOptions) -> AsyncIterator[PositionFix]:
        previous: PositionFix | None = None
        for fix in self.fixes:
            await self._resume.wait()
            if self.realtime and previous is not None:
                delay_s = max(0, fix.timestamp_ms - previous.timestamp_ms) / 1000 / self.speedup
                await asyncio.sleep(delay_s)
            previous = fix
            self.delivered += 1
            yield fix
        self.finished.set()
        logger.info(f"Replay finished after {self.delivered} fixes")


class LoggingNotificationSink(NotificationSink):
    """Notification sink that logs and records everything it is asked to say."""

    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.notifications: list[tuple[str, str]] = []
        self.alerts: list[tuple[str, str]] = []

    async def speak(self, text: str) -> None:
        logger.info(f"[speech] {text}")
        self.spoken.append(text)

    async def push_notification(self, title: str, body: str) -> None:
        logger.info(f"[notification] {title}: {body}")
        self.notifications.append((title, body))

    async def alert(self, title: str, body: str) -> None:
        logger.warning(f"[alert] {title}: {body}")
        self.alerts.append((title, body))

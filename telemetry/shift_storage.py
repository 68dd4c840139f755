"""Local persistence of in-progress shift data.

Wraps the durable key-value store with typed helpers for the shift metrics
snapshot, the "shift is active" flag, and the last known location. Storage
errors are logged and reported as None/False; a failed local write must
never interrupt tracking.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from telemetry.interfaces import KeyValueStore
from telemetry.tracking_models import Coordinate, ShiftMetricsSnapshot, current_millis

logger = logging.getLogger(__name__)

SHIFT_METRICS_KEY = "telemetry:shift_metrics"
SHIFT_STATE_KEY = "telemetry:shift_state"
LAST_LOCATION_KEY = "telemetry:last_location"


class ShiftStorage:
    """Typed access to shift data in the local key-value store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save_metrics(self, snapshot: ShiftMetricsSnapshot, saved_at_ms: int | None = None) -> bool:
        """Persist a metrics snapshot.

        Args:
            snapshot: Snapshot to store
            saved_at_ms: Save timestamp (defaults to now)

        Returns:
            True if stored successfully
        """
        data = snapshot.to_storage(saved_at_ms if saved_at_ms is not None else current_millis())
        return await self._set_json(SHIFT_METRICS_KEY, data)

    async def load_metrics(self) -> ShiftMetricsSnapshot | None:
        data = await self._get_json(SHIFT_METRICS_KEY)
        if data is None:
            return None
        try:
            return ShiftMetricsSnapshot.from_storage(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Stored shift metrics are corrupt, ignoring: {e}")
            return None

    async def clear_metrics(self) -> bool:
        return await self._remove(SHIFT_METRICS_KEY)

    async def save_state(self, is_active: bool, driver_id: str | None) -> bool:
        """Persist whether a shift is active and for which driver."""
        return await self._set_json(
            SHIFT_STATE_KEY, {"isActive": is_active, "uid": driver_id, "timestamp": current_millis()}
        )

    async def load_state(self) -> dict[str, Any] | None:
        data = await self._get_json(SHIFT_STATE_KEY)
        return data if isinstance(data, dict) else None

    async def clear_state(self) -> bool:
        return await self._remove(SHIFT_STATE_KEY)

    async def save_last_location(self, location: Coordinate) -> bool:
        return await self._set_json(LAST_LOCATION_KEY, location.to_document())

    async def load_last_location(self) -> Coordinate | None:
        return Coordinate.from_document(await self._get_json(LAST_LOCATION_KEY))

    async def _set_json(self, key: str, data: Any) -> bool:
        try:
            await self.store.set(key, json.dumps(data))
            logger.debug(f"Saved {key}")
            return True
        except Exception as e:
            logger.error(f"Failed to save {key}: {e}")
            return False

    async def _get_json(self, key: str) -> Any:
        try:
            raw = await self.store.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.error(f"Failed to load {key}: {e}")
            return None

    async def _remove(self, key: str) -> bool:
        try:
            await self.store.remove(key)
            logger.debug(f"Cleared {key}")
            return True
        except Exception as e:
            logger.error(f"Failed to clear {key}: {e}")
            return False

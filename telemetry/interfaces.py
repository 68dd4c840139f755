"""Collaborator contracts consumed by the tracker.

The tracker never talks to device APIs or cloud SDKs directly. It consumes
these abstract interfaces: a position source, a remote document store
holding one mutable document per driver (plus read-only branch documents),
a durable local key-value store, and a notification sink.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from telemetry.tracking_models import PositionFix


class LocationPermissionError(Exception):
    """Raised when the user denies location access."""

    pass


class PositionSourceError(Exception):
    """Raised when the position source cannot deliver fixes.

    Args:
        message: Error description
        cause: Optional underlying device error
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class WatchOptions:
    """Position stream subscription options."""

    min_interval_ms: int = 3000
    min_distance_m: float = 5.0


def driver_document_key(driver_id: str) -> str:
    return f"users/{driver_id}"


def branch_document_key(branch_id: str) -> str:
    return f"branches/{branch_id}"


class PositionSource(ABC):
    """Device location service."""

    @abstractmethod
    async def request_permission(self) -> bool:
        """Ask for foreground location permission; True when granted.

        Raises:
            LocationPermissionError: If location services are disabled on the device
        """

    @abstractmethod
    async def get_current_fix(self) -> PositionFix | None:
        """Return the current position, or None when unavailable."""

    @abstractmethod
    def watch(self, options: WatchOptions) -> AsyncIterator[PositionFix]:
        """Stream fixes until the consuming task is cancelled."""


class DocumentStore(ABC):
    """Remote document store (one mutable document per key)."""

    @abstractmethod
    async def read_once(self, key: str) -> dict[str, Any] | None:
        """Read a document; None when it does not exist."""

    @abstractmethod
    def subscribe(self, key: str) -> AsyncIterator[dict[str, Any]]:
        """Stream the document each time it changes."""

    @abstractmethod
    async def update(self, key: str, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the document."""

    @abstractmethod
    async def append(self, key: str, field: str, value: Any) -> None:
        """Append ``value`` to the list stored under ``field``."""


class KeyValueStore(ABC):
    """Durable local key-value storage that survives process restarts."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored string, or None."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a string value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key if present."""


class NotificationSink(ABC):
    """Text-to-speech, push notification and blocking alert output."""

    @abstractmethod
    async def speak(self, text: str) -> None:
        """Speak ``text`` aloud."""

    @abstractmethod
    async def push_notification(self, title: str, body: str) -> None:
        """Show a push/in-app notification."""

    async def alert(self, title: str, body: str) -> None:
        """Show a blocking alert; defaults to a push notification."""
        await self.push_notification(title, body)

"""Driver-facing alerts for newly recorded speeding violations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from telemetry.config import ViolationSettings
from telemetry.interfaces import NotificationSink
from telemetry.tracking_models import Violation, ViolationKind, current_millis

logger = logging.getLogger(__name__)

VIOLATION_SPEECH = "You have a violation"
VIOLATION_NOTICE_TITLE = "Notice of Violation"
VIOLATION_NOTICE_BODY = "Open your Driving Stats to review your violation."


def violation_key(entry: dict[str, Any]) -> str:
    """Content key identifying a violations-list entry."""
    return f"{entry.get('message')}_{entry.get('issuedAt')}_{entry.get('topSpeed')}_{entry.get('avgSpeed')}"


class ViolationAlertMonitor:
    """Speaks and pushes a notice once per new speeding violation.

    Violations can be noticed twice: when this device emits them and when
    they come back through the driver document subscription. Entries are
    keyed by content so each one alerts at most once.
    """

    def __init__(
        self,
        notifier: NotificationSink | None,
        settings: ViolationSettings | None = None,
        clock: Callable[[], int] = current_millis,
    ):
        self.notifier = notifier
        self.settings = settings or ViolationSettings()
        self.clock = clock

        self.enabled = True
        self.alerted_keys: set[str] = set()
        self.seen_count: int | None = None
        self._busy_until_ms = 0
        self.alerts_sent = 0

    @property
    def is_busy(self) -> bool:
        return self.clock() < self._busy_until_ms

    def clear(self) -> None:
        """Forget alert history (on sign-out)."""
        self.alerted_keys.clear()
        self.seen_count = None
        self._busy_until_ms = 0

    async def notify_violation(self, violation: Violation) -> bool:
        """Alert for a violation emitted on this device.

        Returns:
            True if the alert was delivered
        """
        key = violation_key(violation.to_document())
        if key in self.alerted_keys:
            return False
        self.alerted_keys.add(key)

        if not self.enabled:
            return False
        return await self._alert()

    async def on_violations_list(self, entries: list[Any]) -> bool:
        """Inspect the driver document's violations list for new entries.

        The first list seen after sign-in is taken as the baseline. Only the
        first new speeding entry per update alerts.

        Args:
            entries: Current ``violations`` list from the driver document

        Returns:
            True if an alert was delivered
        """
        count = len(entries)
        if self.seen_count is None or count < self.seen_count:
            self.seen_count = count
            return False

        start = self.seen_count
        self.seen_count = count

        if not self.enabled or self.is_busy:
            return False

        for entry in entries[start:]:
            if not isinstance(entry, dict):
                continue

            key = violation_key(entry)
            if key in self.alerted_keys:
                logger.debug(f"Skipping already alerted violation {key}")
                continue
            self.alerted_keys.add(key)

            if entry.get("message") == ViolationKind.SPEEDING.value:
                logger.info(f"Showing new violation alert {key}")
                return await self._alert()

        return False

    async def _alert(self) -> bool:
        if self.notifier is None or self.is_busy:
            return False

        self._busy_until_ms = self.clock() + int(self.settings.alert_busy_seconds * 1000)
        try:
            await self.notifier.speak(VIOLATION_SPEECH)
            await self.notifier.push_notification(VIOLATION_NOTICE_TITLE, VIOLATION_NOTICE_BODY)
            self.alerts_sent += 1
            return True
        except Exception as e:
            logger.error(f"Violation alert failed: {e}")
            return False

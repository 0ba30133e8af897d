"""
Bot-side receiver for change notifications.

Delivery is at-least-once and may repeat an event after a retry. The
receiver keeps the last applied version per key and only applies events
that are strictly newer, which makes handling idempotent.
"""

import threading
from typing import Callable, Dict, Optional

from guildsync.models.config import NotificationEvent


class ConfigEventReceiver:
    """Applies each key's events once, in version order."""

    def __init__(self, on_change: Optional[Callable[[NotificationEvent], None]] = None):
        self._on_change = on_change
        self._versions: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.applied = 0
        self.ignored = 0

    def seed(self, key: str, version: int) -> None:
        """Prime with the version the bot already holds in memory."""
        with self._lock:
            self._versions[key] = max(version, self._versions.get(key, 0))

    def last_version(self, key: str) -> int:
        with self._lock:
            return self._versions.get(key, 0)

    def apply(self, event: NotificationEvent) -> bool:
        """Returns False for duplicate or stale events."""
        with self._lock:
            if event.new_version <= self._versions.get(event.key, 0):
                self.ignored += 1
                return False
            self._versions[event.key] = event.new_version
            self.applied += 1
        if self._on_change is not None:
            self._on_change(event)
        return True

    def handle_json(self, data: dict) -> bool:
        """Entry point for the bot's callback endpoint."""
        return self.apply(NotificationEvent.model_validate(data))

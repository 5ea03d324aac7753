from __future__ import annotations

import logging
import threading
from typing import Protocol

from calbridge.models import SyncSummary


logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def sync_completed(self, summary: SyncSummary) -> None: ...


class LoggingNotificationSink:
    def sync_completed(self, summary: SyncSummary) -> None:
        logger.info(
            "calendar sync completed family=%s connection=%s provider=%s success=%s "
            "added=%d updated=%d deleted=%d",
            summary.family_id,
            summary.connection_id,
            summary.provider,
            summary.success,
            summary.added,
            summary.updated,
            summary.deleted,
        )


class RecentNotificationSink:
    """Keeps the latest summaries in memory so the admin API can show them."""

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = max(1, capacity)
        self._items: list[SyncSummary] = []
        self._lock = threading.Lock()

    def sync_completed(self, summary: SyncSummary) -> None:
        LoggingNotificationSink().sync_completed(summary)
        with self._lock:
            self._items.append(summary)
            if len(self._items) > self.capacity:
                del self._items[: len(self._items) - self.capacity]

    def recent(self, family_id: str | None = None) -> list[SyncSummary]:
        with self._lock:
            items = list(self._items)
        if family_id is not None:
            items = [item for item in items if item.family_id == family_id]
        return list(reversed(items))

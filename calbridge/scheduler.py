from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional

from calbridge.config_manager import ConfigManager
from calbridge.connection import CalendarConnection
from calbridge.models import SyncSummary
from calbridge.oauth_flow import OAuthFlowService
from calbridge.state_store import StateStore
from calbridge.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        sync_engine: SyncEngine,
        state_store: StateStore,
        config_manager: ConfigManager,
        oauth_flow: OAuthFlowService | None = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.state_store = state_store
        self.config_manager = config_manager
        self.oauth_flow = oauth_flow
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def sync_due_connections(self, limit: int | None = None, trigger: str = "scheduled") -> list[SyncSummary]:
        """Sync every due connection; one failing connection never stops the batch."""
        config = self.config_manager.load()
        batch_limit = limit if limit is not None else config.sync.batch_limit
        due = self.state_store.due_connections(self.sync_engine.clock(), batch_limit)
        if not due:
            return []
        logger.info("Syncing %d due connection(s)", len(due))
        workers = max(1, min(config.sync.max_workers, len(due)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="calbridge-sync") as executor:
            futures = [
                (connection, executor.submit(self.sync_engine.sync, connection, trigger, self._stop_event))
                for connection in due
            ]
            results = [self._collect(connection, future, trigger) for connection, future in futures]
        logger.info(
            "Sync batch finished succeeded=%d failed=%d changes=%d",
            sum(1 for item in results if item.success),
            sum(1 for item in results if not item.success and not item.skipped),
            sum(item.changes for item in results),
        )
        return results

    def _collect(self, connection: CalendarConnection, future, trigger: str) -> SyncSummary:
        try:
            return future.result()
        except Exception as exc:
            logger.exception("Unexpected error syncing connection=%s", connection.id)
            return SyncSummary(
                connection_id=connection.id,
                family_id=connection.family_id,
                provider=connection.provider.value,
                success=False,
                error_message=f"{type(exc).__name__}: {exc}",
                trigger=trigger,
            )

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calbridge-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self, trigger: str = "scheduled") -> list[SyncSummary]:
        if self.oauth_flow is not None:
            self.oauth_flow.purge_expired_sessions()
        self.prune_history()
        return self.sync_due_connections(trigger=trigger)

    def prune_history(self) -> int:
        config = self.config_manager.load()
        cutoff = self.sync_engine.clock() - timedelta(days=config.sync.run_history_days)
        removed = self.state_store.prune_sync_runs(cutoff)
        if removed:
            logger.info("Pruned %d sync run(s) older than %s", removed, cutoff.isoformat())
        return removed

    def _loop(self) -> None:
        self._run_safely("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run_safely("manual" if manual else "scheduled")

    def _run_safely(self, trigger: str) -> None:
        try:
            self.run_once(trigger=trigger)
        except Exception:
            logger.exception("Scheduled sync batch failed trigger=%s", trigger)

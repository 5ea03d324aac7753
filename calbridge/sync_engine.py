from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable

from calbridge.config_manager import ConfigManager
from calbridge.connection import CalendarConnection
from calbridge.errors import (
    ConnectionNotFoundError,
    InvalidTokenResponseError,
    ProviderHTTPError,
    SyncCancelledError,
    TokenRefreshError,
    is_auth_failure,
)
from calbridge.event_store import EventStore
from calbridge.models import (
    AppConfig,
    CalendarProvider,
    CalendarSyncResult,
    ConnectionStatus,
    OAuthTokens,
    SyncSummary,
    sync_window,
    utc_now,
)
from calbridge.notifications import LoggingNotificationSink, NotificationSink
from calbridge.providers import CalendarProviderAdapter, ProviderRegistry, check_cancelled
from calbridge.reconciler import reconcile
from calbridge.state_store import StateStore


logger = logging.getLogger(__name__)


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        event_store: EventStore,
        registry: ProviderRegistry,
        notifier: NotificationSink | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.event_store = event_store
        self.registry = registry
        self.notifier = notifier or LoggingNotificationSink()
        self.clock = clock

    def sync_connection(
        self,
        connection_id: str,
        cancel_event: threading.Event | None = None,
    ) -> SyncSummary:
        connection = self.state_store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return self.sync(connection, trigger="manual", cancel_event=cancel_event)

    def sync(
        self,
        connection: CalendarConnection,
        trigger: str = "scheduled",
        cancel_event: threading.Event | None = None,
    ) -> SyncSummary:
        started = time.monotonic()
        config = self.config_manager.load()
        owner = uuid.uuid4().hex
        now = self.clock()
        lease_expires = now + timedelta(seconds=config.sync.lease_seconds)

        if not self.state_store.acquire_lease(connection.id, owner, lease_expires, now):
            logger.info("Sync already running elsewhere connection=%s trigger=%s", connection.id, trigger)
            summary = self._summary(connection, trigger, started, success=False, skipped=True)
            summary.error_message = "Sync already in progress"
            self.state_store.record_sync_run(summary)
            return summary

        try:
            current = self.state_store.get_connection(connection.id)
            if current is None:
                raise ConnectionNotFoundError(connection.id)
            if not current.is_enabled or current.status in {
                ConnectionStatus.DISABLED,
                ConnectionStatus.PENDING_AUTH,
            }:
                summary = self._summary(current, trigger, started, success=False, skipped=True)
                summary.error_message = f"Connection is {current.status.value}"
                self.state_store.record_sync_run(summary)
                return summary
            summary = self._run(current, config, trigger, cancel_event, started)
        finally:
            self.state_store.release_lease(connection.id, owner)

        self.state_store.record_sync_run(summary)
        if not summary.skipped:
            self._notify(summary)
        return summary

    def refresh_tokens_if_needed(
        self,
        connection: CalendarConnection,
        adapter: CalendarProviderAdapter,
        config: AppConfig,
    ) -> OAuthTokens:
        tokens = connection.tokens
        if tokens is None or not tokens.access_token:
            raise TokenRefreshError("Connection has no OAuth tokens")
        margin = timedelta(minutes=config.sync.token_refresh_margin_minutes)
        if not tokens.expires_within(margin, self.clock()):
            return tokens
        if not tokens.can_refresh:
            raise TokenRefreshError("Access token expired and no refresh token is available")

        logger.info("Refreshing OAuth tokens connection=%s provider=%s", connection.id, connection.provider.value)
        try:
            refreshed = adapter.refresh_tokens(tokens)
        except (ProviderHTTPError, InvalidTokenResponseError) as exc:
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc
        connection.update_tokens(refreshed)
        # Providers may rotate the refresh token on every refresh.
        saved = self.state_store.modify_connection(connection.id, lambda current: current.update_tokens(refreshed))
        if saved is None:
            raise ConnectionNotFoundError(connection.id)
        return refreshed

    def _fetch(
        self,
        connection: CalendarConnection,
        adapter: CalendarProviderAdapter,
        config: AppConfig,
        cancel_event: threading.Event | None,
    ) -> CalendarSyncResult:
        if connection.provider == CalendarProvider.ICS_URL:
            return adapter.fetch_ics_events(connection.ics_url or "", connection.etag, cancel_event)
        tokens = self.refresh_tokens_if_needed(connection, adapter, config)
        window_start, window_end = sync_window(self.clock(), connection.sync_settings)
        return adapter.fetch_events(
            tokens,
            connection.external_calendar_id or "",
            window_start,
            window_end,
            sync_token=connection.sync_token,
            cancel_event=cancel_event,
        )

    def _run(
        self,
        connection: CalendarConnection,
        config: AppConfig,
        trigger: str,
        cancel_event: threading.Event | None,
        started: float,
    ) -> SyncSummary:
        logger.info(
            "Sync started connection=%s provider=%s trigger=%s",
            connection.id,
            connection.provider.value,
            trigger,
        )
        try:
            adapter = self.registry.get(connection.provider)
            result = self._fetch(connection, adapter, config, cancel_event)
            check_cancelled(cancel_event)
            if self.state_store.get_connection(connection.id) is None:
                raise ConnectionNotFoundError(connection.id)
            outcome = reconcile(connection, result, self.event_store)
            synced_at = self.clock()
            saved = self.state_store.modify_connection(
                connection.id,
                lambda current: current.record_successful_sync(
                    now=synced_at,
                    sync_token=result.sync_token,
                    etag=result.etag,
                    known_event_ids=outcome.known_event_ids,
                ),
            )
            if saved is None:
                self._discard_added(connection, outcome.added_ids)
                raise ConnectionNotFoundError(connection.id)
        except SyncCancelledError:
            logger.info("Sync cancelled connection=%s", connection.id)
            summary = self._summary(connection, trigger, started, success=False, cancelled=True)
            summary.error_message = "Sync was cancelled"
            return summary
        except ConnectionNotFoundError:
            logger.info("Connection removed during sync connection=%s", connection.id)
            summary = self._summary(connection, trigger, started, success=False, skipped=True)
            summary.error_message = "Connection was removed during sync"
            return summary
        except Exception as exc:
            is_auth_error = is_auth_failure(exc)
            error_message = _error_text(exc)
            failed_at = self.clock()
            saved = self.state_store.modify_connection(
                connection.id,
                lambda current: current.record_sync_failure(
                    error_message,
                    now=failed_at,
                    is_auth_error=is_auth_error,
                    max_backoff_minutes=config.sync.max_backoff_minutes,
                ),
            )
            if saved is not None:
                logger.warning(
                    "Sync failed connection=%s status=%s failures=%d next_sync_at=%s error=%s",
                    saved.id,
                    saved.status.value,
                    saved.consecutive_failures,
                    saved.next_sync_at,
                    error_message,
                )
            summary = self._summary(connection, trigger, started, success=False)
            summary.error_message = error_message
            summary.is_auth_error = is_auth_error
            return summary

        summary = self._summary(connection, trigger, started, success=True)
        summary.added = outcome.added
        summary.updated = outcome.updated
        summary.deleted = outcome.deleted
        summary.full_sync = result.full_sync_required
        logger.info(
            "Sync finished connection=%s added=%d updated=%d deleted=%d full_sync=%s",
            connection.id,
            summary.added,
            summary.updated,
            summary.deleted,
            summary.full_sync,
        )
        return summary

    def _discard_added(self, connection: CalendarConnection, external_ids: list[str]) -> None:
        for external_id in external_ids:
            self.event_store.delete(connection.family_id, connection.calendar_key, external_id)

    def _summary(
        self,
        connection: CalendarConnection,
        trigger: str,
        started: float,
        success: bool,
        skipped: bool = False,
        cancelled: bool = False,
    ) -> SyncSummary:
        return SyncSummary(
            connection_id=connection.id,
            family_id=connection.family_id,
            provider=connection.provider.value,
            success=success,
            skipped=skipped,
            cancelled=cancelled,
            trigger=trigger,
            duration_ms=int((time.monotonic() - started) * 1000),
            run_at=self.clock(),
        )

    def _notify(self, summary: SyncSummary) -> None:
        try:
            self.notifier.sync_completed(summary)
        except Exception:
            logger.exception("Notification sink failed for connection=%s", summary.connection_id)

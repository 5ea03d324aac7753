from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import requests

from calbridge.connection import (
    CalendarConnection,
    normalize_ics_url,
    validate_color,
    validate_name,
)
from calbridge.errors import (
    CalbridgeError,
    ConnectionNotFoundError,
    DuplicateConnectionError,
    UnsupportedOperationError,
)
from calbridge.event_store import EventStore
from calbridge.models import CalendarProvider, ConnectionStatus, ExternalCalendarEvent, SyncSettings, utc_now
from calbridge.providers import ProviderRegistry
from calbridge.state_store import StateStore


logger = logging.getLogger(__name__)


@dataclass
class IcsValidation:
    is_valid: bool
    calendar_name: str | None = None
    event_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "calendar_name": self.calendar_name,
            "event_count": self.event_count,
            "error": self.error,
        }


class ConnectionService:
    def __init__(
        self,
        state_store: StateStore,
        event_store: EventStore,
        registry: ProviderRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.event_store = event_store
        self.registry = registry
        self.clock = clock

    def register_ics(
        self,
        family_id: str,
        name: str,
        ics_url: str,
        created_by: str,
        color: str | None = None,
        assigned_member_ids: list[str] | None = None,
    ) -> CalendarConnection:
        connection = CalendarConnection.create_ics_subscription(
            family_id, name, ics_url, created_by, now=self.clock()
        )
        connection.color = validate_color(color)
        connection.assigned_member_ids = list(assigned_member_ids or [])
        if self.state_store.get_connection_by_external_id(family_id, connection.external_calendar_id) is not None:
            raise DuplicateConnectionError("This ICS feed is already connected for this family.")
        self.state_store.add_connection(connection)
        logger.info("Registered ICS subscription family=%s connection=%s", family_id, connection.id)
        return connection

    def validate_ics_url(self, url: str) -> IcsValidation:
        try:
            normalized = normalize_ics_url(url)
            adapter = self.registry.get(CalendarProvider.ICS_URL)
            calendar_name, events = adapter.preview(normalized)
        except (CalbridgeError, requests.RequestException) as exc:
            logger.info("ICS URL validation failed: %s", exc)
            return IcsValidation(is_valid=False, error=str(exc))
        return IcsValidation(is_valid=True, calendar_name=calendar_name, event_count=len(events))

    def list_connections(self, family_id: str) -> list[CalendarConnection]:
        return self.state_store.list_connections(family_id)

    def get_connection(self, family_id: str, connection_id: str) -> CalendarConnection:
        connection = self.state_store.get_connection(connection_id)
        if connection is None or connection.family_id != family_id:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def connections_in_error(self) -> list[CalendarConnection]:
        return self.state_store.connections_in_error()

    def update_connection(
        self,
        family_id: str,
        connection_id: str,
        name: str | None = None,
        color: str | None = None,
        assigned_member_ids: list[str] | None = None,
        is_enabled: bool | None = None,
        sync_settings: dict[str, Any] | None = None,
    ) -> CalendarConnection:
        """Change user-owned settings only; tokens and sync bookkeeping are left as stored."""
        self.get_connection(family_id, connection_id)
        name = validate_name(name) if name is not None else None
        color = validate_color(color) if color is not None else None
        now = self.clock()

        def apply(connection: CalendarConnection) -> None:
            if name is not None:
                connection.name = name
            if color is not None:
                connection.color = color
            if assigned_member_ids is not None:
                connection.assigned_member_ids = list(assigned_member_ids)
            if sync_settings is not None:
                merged = {**connection.sync_settings.to_dict(), **sync_settings}
                if connection.provider == CalendarProvider.ICS_URL:
                    merged["two_way_sync"] = False
                connection.sync_settings = SyncSettings.from_dict(merged)
            if is_enabled is False and connection.is_enabled:
                connection.disable()
            elif is_enabled is True and not connection.is_enabled:
                connection.resume(now)

        return self._modify(connection_id, apply)

    def resume(self, family_id: str, connection_id: str) -> CalendarConnection:
        self.get_connection(family_id, connection_id)
        now = self.clock()

        def apply(connection: CalendarConnection) -> None:
            if connection.status == ConnectionStatus.PENDING_AUTH:
                raise UnsupportedOperationError("Connection has not finished authorization.")
            connection.resume(now)

        connection = self._modify(connection_id, apply)
        logger.info("Resumed connection=%s", connection.id)
        return connection

    def _modify(self, connection_id: str, apply: Callable[[CalendarConnection], None]) -> CalendarConnection:
        connection = self.state_store.modify_connection(connection_id, apply)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    def disconnect(self, family_id: str, connection_id: str, delete_synced_events: bool = True) -> int:
        """Remove a connection; returns the number of synced events deleted."""
        connection = self.get_connection(family_id, connection_id)
        if connection.tokens is not None and connection.requires_oauth:
            try:
                self.registry.get(connection.provider).revoke_tokens(connection.tokens)
            except (CalbridgeError, requests.RequestException) as exc:
                logger.warning("Token revocation failed for connection=%s: %s", connection.id, exc)
        removed = 0
        if delete_synced_events:
            removed = self.event_store.delete_calendar(family_id, connection.calendar_key)
        self.state_store.delete_connection(connection.id)
        logger.info("Disconnected connection=%s events_removed=%d", connection.id, removed)
        return removed

    def _writable(self, family_id: str, connection_id: str) -> CalendarConnection:
        connection = self.get_connection(family_id, connection_id)
        if connection.is_read_only:
            raise UnsupportedOperationError("This calendar connection is read-only.")
        if connection.tokens is None:
            raise UnsupportedOperationError("Connection has not finished authorization.")
        return connection

    def push_event(self, family_id: str, connection_id: str, event: ExternalCalendarEvent) -> str:
        connection = self._writable(family_id, connection_id)
        adapter = self.registry.get(connection.provider)
        return adapter.create_event(connection.tokens, connection.external_calendar_id, event)

    def push_update(self, family_id: str, connection_id: str, event: ExternalCalendarEvent) -> None:
        connection = self._writable(family_id, connection_id)
        adapter = self.registry.get(connection.provider)
        adapter.update_event(connection.tokens, connection.external_calendar_id, event.external_id, event)

    def push_delete(self, family_id: str, connection_id: str, external_id: str) -> None:
        connection = self._writable(family_id, connection_id)
        adapter = self.registry.get(connection.provider)
        adapter.delete_event(connection.tokens, connection.external_calendar_id, external_id)

from __future__ import annotations

from dataclasses import dataclass, field

from calbridge.connection import CalendarConnection
from calbridge.event_store import ADDED, UPDATED, EventStore
from calbridge.models import CalendarProvider, CalendarSyncResult, ExternalCalendarEvent


@dataclass
class ReconcileOutcome:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    known_event_ids: list[str] | None = None
    skipped_ids: list[str] = field(default_factory=list)
    added_ids: list[str] = field(default_factory=list)


def exclusion_reason(connection: CalendarConnection, event: ExternalCalendarEvent) -> str:
    if event.is_cancelled:
        return "cancelled"
    if event.is_all_day and not connection.sync_settings.import_all_day:
        return "all_day_excluded"
    if event.is_declined and not connection.sync_settings.import_declined:
        return "declined_excluded"
    return ""


def _prior_ids(connection: CalendarConnection, event_store: EventStore) -> set[str]:
    if connection.known_event_ids:
        return set(connection.known_event_ids)
    return event_store.list_external_ids(connection.family_id, connection.calendar_key)


def reconcile(
    connection: CalendarConnection,
    result: CalendarSyncResult,
    event_store: EventStore,
) -> ReconcileOutcome:
    """Apply a fetch result to the event store.

    Upserts are idempotent: re-applying the same result counts nothing. For ICS
    feeds a full snapshot replaces the known id set and anything missing from
    it is deleted.
    """
    outcome = ReconcileOutcome()
    family_id = connection.family_id
    calendar_key = connection.calendar_key
    is_snapshot = connection.provider == CalendarProvider.ICS_URL and result.full_sync_required
    prior_ids = _prior_ids(connection, event_store) if is_snapshot else set()
    seen_ids: set[str] = set()

    for event in result.events:
        if not event.external_id:
            continue
        seen_ids.add(event.external_id)
        if exclusion_reason(connection, event):
            outcome.skipped_ids.append(event.external_id)
            if event_store.delete(family_id, calendar_key, event.external_id):
                outcome.deleted += 1
            continue
        status = event_store.upsert(connection, event)
        if status == ADDED:
            outcome.added_ids.append(event.external_id)
            outcome.added += 1
        elif status == UPDATED:
            outcome.updated += 1

    for external_id in result.deleted_external_ids:
        if external_id and event_store.delete(family_id, calendar_key, external_id):
            outcome.deleted += 1

    if is_snapshot:
        for external_id in sorted(prior_ids - seen_ids):
            if event_store.delete(family_id, calendar_key, external_id):
                outcome.deleted += 1
        outcome.known_event_ids = sorted(seen_ids - set(outcome.skipped_ids))

    return outcome

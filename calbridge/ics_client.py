from __future__ import annotations

import base64
import hashlib
import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any

import requests
from icalendar import Calendar as ICalendar

from calbridge.errors import IcsParseError, IcsTooLargeError, UnsupportedOperationError
from calbridge.models import (
    CalendarInfo,
    CalendarProvider,
    CalendarSyncResult,
    ExternalCalendarEvent,
    IcsConfig,
    OAuthTokens,
    date_to_datetime,
)
from calbridge.providers import check_cancelled, ensure_success


logger = logging.getLogger(__name__)

MAX_REMINDER_MINUTES = 7 * 24 * 60
_CHUNK_SIZE = 64 * 1024


def content_etag(content: bytes) -> str:
    digest = hashlib.sha256(content).digest()
    return '"' + base64.b64encode(digest).decode("ascii")[:16] + '"'


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _reminders(vevent: Any) -> list[int]:
    reminders: list[int] = []
    for alarm in vevent.walk("VALARM"):
        trigger = _decoded(alarm, "TRIGGER")
        if not isinstance(trigger, timedelta):
            continue
        minutes = int(abs(trigger.total_seconds()) // 60)
        if 0 < minutes <= MAX_REMINDER_MINUTES:
            reminders.append(minutes)
    return reminders


def map_vevent(vevent: Any) -> ExternalCalendarEvent | None:
    uid = _text(vevent, "UID")
    dtstart_raw = _decoded(vevent, "DTSTART")
    start = _coerce_datetime(dtstart_raw)
    if not uid or start is None:
        return None
    is_all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)

    end = _coerce_datetime(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        else:
            end = start + (timedelta(days=1) if is_all_day else timedelta(hours=1))

    recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
    external_id = uid
    recurring_event_id = None
    if recurrence_id is not None:
        # Overridden instances share the series UID.
        stamp = recurrence_id.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        external_id = f"{uid}_{stamp}"
        recurring_event_id = uid

    rrule = vevent.get("RRULE")
    organizer = _text(vevent, "ORGANIZER")
    if organizer and organizer.lower().startswith("mailto:"):
        organizer = organizer[len("mailto:"):]
    return ExternalCalendarEvent(
        external_id=external_id,
        title=_text(vevent, "SUMMARY") or "(No title)",
        description=_text(vevent, "DESCRIPTION"),
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        location=_text(vevent, "LOCATION"),
        recurrence_rule="RRULE:" + rrule.to_ical().decode("utf-8") if rrule is not None else None,
        recurring_event_id=recurring_event_id,
        original_start_time=recurrence_id,
        is_cancelled=(_text(vevent, "STATUS") or "").upper() == "CANCELLED",
        reminders=_reminders(vevent),
        updated_at=_coerce_datetime(_decoded(vevent, "LAST-MODIFIED")),
        organizer_email=organizer,
    )


def parse_ics(content: bytes) -> list[ExternalCalendarEvent]:
    try:
        calendar_obj = ICalendar.from_ical(content)
    except ValueError as exc:
        raise IcsParseError(f"Invalid iCalendar data: {exc}") from exc
    events: list[ExternalCalendarEvent] = []
    for vevent in calendar_obj.walk("VEVENT"):
        try:
            mapped = map_vevent(vevent)
        except (ValueError, TypeError) as exc:
            logger.warning("Skipping unparseable ICS event uid=%s: %s", vevent.get("UID"), exc)
            continue
        if mapped is not None:
            events.append(mapped)
    return events


class IcsCalendarClient:
    """Read-only subscription to a published .ics feed."""

    provider = CalendarProvider.ICS_URL
    requires_oauth = False
    supports_two_way_sync = False

    def __init__(self, config: IcsConfig, http: requests.Session | None = None) -> None:
        self.config = config
        self.http = http or requests.Session()

    def _download(self, url: str, etag: str | None) -> Any:
        headers = {"User-Agent": self.config.user_agent, "Accept": "text/calendar, */*"}
        if etag:
            headers["If-None-Match"] = etag
        return self.http.request(
            "GET",
            url,
            headers=headers,
            timeout=self.config.timeout_seconds,
            stream=True,
        )

    def _read_body(self, response: Any, cancel_event: threading.Event | None) -> bytes:
        limit = self.config.max_file_size_bytes
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise IcsTooLargeError(f"ICS file exceeds the {limit} byte limit")
        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            check_cancelled(cancel_event)
            if not chunk:
                continue
            total += len(chunk)
            if total > limit:
                raise IcsTooLargeError(f"ICS file exceeds the {limit} byte limit")
            chunks.append(chunk)
        return b"".join(chunks)

    def fetch_ics_events(
        self,
        url: str,
        etag: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        check_cancelled(cancel_event)
        response = self._download(url, etag)
        try:
            if response.status_code == 304:
                logger.debug("ICS feed not modified url=%s", url)
                return CalendarSyncResult(etag=etag, full_sync_required=False)
            ensure_success(response, "ICS download")
            content = self._read_body(response, cancel_event)
        finally:
            response.close()

        new_etag = response.headers.get("ETag") or content_etag(content)
        if etag and new_etag == etag:
            logger.debug("ICS feed content unchanged url=%s", url)
            return CalendarSyncResult(etag=etag, full_sync_required=False)

        events = parse_ics(content)
        logger.info("Parsed ICS feed url=%s events=%d bytes=%d", url, len(events), len(content))
        return CalendarSyncResult(events=events, etag=new_etag, full_sync_required=True)

    def preview(self, url: str) -> tuple[str | None, list[ExternalCalendarEvent]]:
        """Download and parse a feed without conditional headers; returns (X-WR-CALNAME, events)."""
        response = self._download(url, None)
        try:
            ensure_success(response, "ICS download")
            content = self._read_body(response, None)
        finally:
            response.close()
        try:
            calendar_obj = ICalendar.from_ical(content)
        except ValueError as exc:
            raise IcsParseError(f"Invalid iCalendar data: {exc}") from exc
        return _text(calendar_obj, "X-WR-CALNAME"), parse_ics(content)

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        raise UnsupportedOperationError("ICS subscriptions do not use OAuth")

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        raise UnsupportedOperationError("ICS subscriptions do not use OAuth")

    def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        raise UnsupportedOperationError("ICS subscriptions do not use OAuth")

    def revoke_tokens(self, tokens: OAuthTokens) -> None:
        raise UnsupportedOperationError("ICS subscriptions do not use OAuth")

    def get_account_email(self, tokens: OAuthTokens) -> str:
        raise UnsupportedOperationError("ICS subscriptions do not use OAuth")

    def get_calendars(self, tokens: OAuthTokens) -> list[CalendarInfo]:
        raise UnsupportedOperationError("ICS subscriptions do not list calendars")

    def fetch_events(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        raise UnsupportedOperationError("Use fetch_ics_events for ICS subscriptions")

    def create_event(self, tokens: OAuthTokens, calendar_id: str, event: ExternalCalendarEvent) -> str:
        raise UnsupportedOperationError("ICS subscriptions are read-only")

    def update_event(
        self, tokens: OAuthTokens, calendar_id: str, event_id: str, event: ExternalCalendarEvent
    ) -> None:
        raise UnsupportedOperationError("ICS subscriptions are read-only")

    def delete_event(self, tokens: OAuthTokens, calendar_id: str, event_id: str) -> None:
        raise UnsupportedOperationError("ICS subscriptions are read-only")

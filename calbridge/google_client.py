from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode

import requests

from calbridge.errors import (
    ProviderConfigurationError,
    ProviderResponseError,
    TokenRefreshError,
    UnsupportedOperationError,
)
from calbridge.models import (
    CalendarInfo,
    CalendarProvider,
    CalendarSyncResult,
    ExternalCalendarEvent,
    GoogleConfig,
    OAuthTokens,
    date_to_datetime,
    parse_iso_datetime,
)
from calbridge.providers import (
    bearer_headers,
    check_cancelled,
    ensure_success,
    read_json,
    tokens_from_response,
)


logger = logging.getLogger(__name__)

AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
REVOKE_ENDPOINT = "https://oauth2.googleapis.com/revoke"
USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

GOOGLE_COLORS = {
    "1": "#7986CB",
    "2": "#33B679",
    "3": "#8E24AA",
    "4": "#E67C73",
    "5": "#F6BF26",
    "6": "#F4511E",
    "7": "#039BE5",
    "8": "#616161",
    "9": "#3F51B5",
    "10": "#0B8043",
    "11": "#D50000",
}


def _format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_google_time(value: dict[str, Any] | None) -> tuple[datetime | None, bool]:
    if not value:
        return None, False
    if value.get("dateTime"):
        return parse_iso_datetime(value["dateTime"]), False
    if value.get("date"):
        return date_to_datetime(date.fromisoformat(value["date"])), True
    return None, False


def _is_declined(item: dict[str, Any]) -> bool:
    for attendee in item.get("attendees") or []:
        if attendee.get("self") and attendee.get("responseStatus") == "declined":
            return True
    return False


def map_google_event(item: dict[str, Any]) -> ExternalCalendarEvent | None:
    start, is_all_day = _parse_google_time(item.get("start"))
    if start is None:
        return None
    end, _ = _parse_google_time(item.get("end"))
    if end is None:
        end = start + (timedelta(days=1) if is_all_day else timedelta(hours=1))

    reminders = [
        int(override.get("minutes", 0))
        for override in (item.get("reminders") or {}).get("overrides") or []
        if override.get("method") == "popup"
    ]
    rrule = next(
        (rule for rule in item.get("recurrence") or [] if str(rule).startswith("RRULE:")),
        None,
    )
    original_start, _ = _parse_google_time(item.get("originalStartTime"))
    return ExternalCalendarEvent(
        external_id=str(item.get("id", "")),
        title=item.get("summary") or "(No title)",
        description=item.get("description"),
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        location=item.get("location"),
        color=GOOGLE_COLORS.get(str(item.get("colorId"))) if item.get("colorId") else None,
        recurrence_rule=rrule,
        recurring_event_id=item.get("recurringEventId"),
        original_start_time=original_start,
        is_cancelled=item.get("status") == "cancelled",
        is_declined=_is_declined(item),
        reminders=reminders,
        updated_at=parse_iso_datetime(item.get("updated")),
        organizer_email=(item.get("organizer") or {}).get("email"),
    )


def _to_google_event(event: ExternalCalendarEvent) -> dict[str, Any]:
    if event.is_all_day:
        start = {"date": event.start_time.date().isoformat()}
        end = {"date": event.end_time.date().isoformat()}
    else:
        start = {"dateTime": _format_utc(event.start_time)}
        end = {"dateTime": _format_utc(event.end_time)}
    body: dict[str, Any] = {"summary": event.title, "start": start, "end": end}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    return body


class GoogleCalendarClient:
    provider = CalendarProvider.GOOGLE
    requires_oauth = True
    supports_two_way_sync = True

    def __init__(self, config: GoogleConfig, http: requests.Session | None = None, timeout: int = 30) -> None:
        self.config = config
        self.http = http or requests.Session()
        self.timeout = timeout

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        if not self.config.is_configured():
            logger.error("Google OAuth client credentials are not configured (google.client_id/client_secret).")
            raise ProviderConfigurationError(
                "Google Calendar integration is not configured. "
                "Set google.client_id and google.client_secret in the calbridge config."
            )
        query = urlencode(
            {
                "client_id": self.config.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.config.scopes),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{AUTH_ENDPOINT}?{query}"

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        response = self.http.request(
            "POST",
            TOKEN_ENDPOINT,
            data={
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            timeout=self.timeout,
        )
        if response.status_code >= 400:
            logger.error("Google token exchange failed with status %s", response.status_code)
        ensure_success(response, "Google token exchange")
        tokens = tokens_from_response(read_json(response, "Google token exchange"), "Google")
        logger.debug("Google token exchange ok has_refresh_token=%s", tokens.can_refresh)
        return tokens

    def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        if not tokens.refresh_token:
            raise TokenRefreshError("No refresh token available")
        response = self.http.request(
            "POST",
            TOKEN_ENDPOINT,
            data={
                "refresh_token": tokens.refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout,
        )
        ensure_success(response, "Google token refresh")
        # Google usually omits refresh_token on refresh.
        return tokens_from_response(
            read_json(response, "Google token refresh"),
            "Google",
            previous_refresh_token=tokens.refresh_token,
        )

    def revoke_tokens(self, tokens: OAuthTokens) -> None:
        try:
            response = self.http.request(
                "POST",
                REVOKE_ENDPOINT,
                data={"token": tokens.refresh_token or tokens.access_token},
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning("Google token revocation returned HTTP %s", response.status_code)
        except requests.RequestException as exc:
            logger.warning("Failed to revoke Google tokens: %s", exc)

    def get_account_email(self, tokens: OAuthTokens) -> str:
        response = self.http.request("GET", USERINFO_ENDPOINT, headers=bearer_headers(tokens), timeout=self.timeout)
        ensure_success(response, "Google userinfo")
        email = read_json(response, "Google userinfo").get("email")
        if not email:
            raise ProviderResponseError("Failed to get account email")
        return str(email)

    def get_calendars(self, tokens: OAuthTokens) -> list[CalendarInfo]:
        response = self.http.request(
            "GET",
            f"{CALENDAR_API_BASE_URL}/users/me/calendarList",
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        ensure_success(response, "Google calendar list")
        items = read_json(response, "Google calendar list").get("items") or []
        return [
            CalendarInfo(
                calendar_id=str(item["id"]),
                name=item.get("summary") or str(item["id"]),
                description=item.get("description"),
                color=item.get("backgroundColor"),
                is_read_only=item.get("accessRole") in {"reader", "freeBusyReader"},
                is_primary=bool(item.get("primary", False)),
                time_zone=item.get("timeZone"),
            )
            for item in items
            if item.get("id")
        ]

    def _events_params(
        self,
        start: datetime,
        end: datetime,
        sync_token: str | None,
        page_token: str | None,
    ) -> dict[str, str]:
        params = {"maxResults": "250", "singleEvents": "false"}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params["timeMin"] = _format_utc(start)
            params["timeMax"] = _format_utc(end)
        if page_token:
            params["pageToken"] = page_token
        return params

    def fetch_events(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events"
        events: list[ExternalCalendarEvent] = []
        deleted_ids: list[str] = []
        page_token: str | None = None
        new_sync_token: str | None = None
        full_sync_required = False

        while True:
            check_cancelled(cancel_event)
            response = self.http.request(
                "GET",
                url,
                params=self._events_params(start, end, sync_token, page_token),
                headers=bearer_headers(tokens),
                timeout=self.timeout,
            )
            if response.status_code == 410:
                if full_sync_required and not sync_token:
                    ensure_success(response, "Google events full resync")
                logger.info("Google sync token expired for calendar %s, restarting full sync", calendar_id)
                full_sync_required = True
                sync_token = None
                page_token = None
                events.clear()
                deleted_ids.clear()
                continue
            ensure_success(response, "Google events")
            payload = read_json(response, "Google events")
            for item in payload.get("items") or []:
                if item.get("status") == "cancelled":
                    deleted_ids.append(str(item.get("id", "")))
                    continue
                mapped = map_google_event(item)
                if mapped is not None:
                    events.append(mapped)
            page_token = payload.get("nextPageToken")
            new_sync_token = payload.get("nextSyncToken") or new_sync_token
            if not page_token:
                break

        return CalendarSyncResult(
            events=events,
            deleted_external_ids=deleted_ids,
            sync_token=new_sync_token,
            full_sync_required=full_sync_required,
        )

    def fetch_ics_events(
        self,
        url: str,
        etag: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        raise UnsupportedOperationError("Google Calendar provider does not support ICS URLs")

    def create_event(self, tokens: OAuthTokens, calendar_id: str, event: ExternalCalendarEvent) -> str:
        response = self.http.request(
            "POST",
            f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events",
            json=_to_google_event(event),
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        ensure_success(response, "Google create event")
        event_id = read_json(response, "Google create event").get("id")
        if not event_id:
            raise ProviderResponseError("Google did not return an id for the created event")
        return str(event_id)

    def update_event(
        self, tokens: OAuthTokens, calendar_id: str, event_id: str, event: ExternalCalendarEvent
    ) -> None:
        response = self.http.request(
            "PUT",
            f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            json=_to_google_event(event),
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        ensure_success(response, "Google update event")

    def delete_event(self, tokens: OAuthTokens, calendar_id: str, event_id: str) -> None:
        response = self.http.request(
            "DELETE",
            f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        # 410 means it is already gone.
        if response.status_code != 410:
            ensure_success(response, "Google delete event")

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
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
    MicrosoftConfig,
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

LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
PREFER_HEADER = 'odata.maxpagesize=100, outlook.timezone="UTC"'

_DAY_CODES = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
}
_FREQUENCIES = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absoluteMonthly": "MONTHLY",
    "relativeMonthly": "MONTHLY",
    "absoluteYearly": "YEARLY",
    "relativeYearly": "YEARLY",
}
_WEEK_INDEX = {"first": 1, "second": 2, "third": 3, "fourth": 4, "last": -1}


def _format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def _parse_graph_time(value: dict[str, Any] | None, is_all_day: bool) -> datetime | None:
    if not value or not value.get("dateTime"):
        return None
    parsed = parse_iso_datetime(value["dateTime"])
    if parsed is None:
        return None
    if is_all_day:
        return date_to_datetime(parsed.date())
    return parsed


def build_rrule(recurrence: dict[str, Any] | None) -> str | None:
    """Translate a Graph patternedRecurrence into an RFC 5545 RRULE line."""
    if not recurrence:
        return None
    pattern = recurrence.get("pattern") or {}
    freq = _FREQUENCIES.get(str(pattern.get("type", "")))
    if freq is None:
        return None
    parts = [f"FREQ={freq}"]
    interval = int(pattern.get("interval") or 1)
    if interval > 1:
        parts.append(f"INTERVAL={interval}")

    days = [_DAY_CODES[d.lower()] for d in pattern.get("daysOfWeek") or [] if d.lower() in _DAY_CODES]
    pattern_type = pattern.get("type")
    if pattern_type in {"relativeMonthly", "relativeYearly"} and days:
        index = _WEEK_INDEX.get(str(pattern.get("index", "first")), 1)
        parts.append("BYDAY=" + ",".join(f"{index}{day}" for day in days))
    elif days:
        parts.append("BYDAY=" + ",".join(days))
    if pattern_type in {"absoluteMonthly", "absoluteYearly"} and pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={int(pattern['dayOfMonth'])}")
    if pattern_type in {"absoluteYearly", "relativeYearly"} and pattern.get("month"):
        parts.append(f"BYMONTH={int(pattern['month'])}")

    range_ = recurrence.get("range") or {}
    if range_.get("type") == "endDate" and range_.get("endDate"):
        parts.append("UNTIL=" + str(range_["endDate"]).replace("-", "") + "T235959Z")
    elif range_.get("type") == "numbered" and range_.get("numberOfOccurrences"):
        parts.append(f"COUNT={int(range_['numberOfOccurrences'])}")
    return "RRULE:" + ";".join(parts)


def map_graph_event(item: dict[str, Any]) -> ExternalCalendarEvent | None:
    is_all_day = bool(item.get("isAllDay", False))
    start = _parse_graph_time(item.get("start"), is_all_day)
    if start is None:
        return None
    end = _parse_graph_time(item.get("end"), is_all_day)
    if end is None:
        end = start + (timedelta(days=1) if is_all_day else timedelta(hours=1))

    reminders: list[int] = []
    if item.get("isReminderOn") and item.get("reminderMinutesBeforeStart") is not None:
        reminders.append(int(item["reminderMinutesBeforeStart"]))
    response_status = (item.get("responseStatus") or {}).get("response")
    body = item.get("body") or {}
    return ExternalCalendarEvent(
        external_id=str(item.get("id", "")),
        title=item.get("subject") or "(No title)",
        description=item.get("bodyPreview") or body.get("content") or None,
        start_time=start,
        end_time=end,
        is_all_day=is_all_day,
        location=(item.get("location") or {}).get("displayName") or None,
        recurrence_rule=build_rrule(item.get("recurrence")),
        recurring_event_id=item.get("seriesMasterId"),
        original_start_time=parse_iso_datetime(item.get("originalStart")),
        is_cancelled=bool(item.get("isCancelled", False)),
        is_declined=response_status == "declined",
        reminders=reminders,
        updated_at=parse_iso_datetime(item.get("lastModifiedDateTime")),
        organizer_email=((item.get("organizer") or {}).get("emailAddress") or {}).get("address"),
    )


def _to_graph_event(event: ExternalCalendarEvent) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": event.title,
        "isAllDay": event.is_all_day,
        "start": {"dateTime": _format_utc(event.start_time), "timeZone": "UTC"},
        "end": {"dateTime": _format_utc(event.end_time), "timeZone": "UTC"},
    }
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    return body


class MicrosoftCalendarClient:
    provider = CalendarProvider.OUTLOOK
    requires_oauth = True
    supports_two_way_sync = True

    def __init__(self, config: MicrosoftConfig, http: requests.Session | None = None, timeout: int = 30) -> None:
        self.config = config
        self.http = http or requests.Session()
        self.timeout = timeout

    @property
    def _oauth_base(self) -> str:
        return f"{LOGIN_BASE_URL}/{self.config.tenant_id or 'common'}/oauth2/v2.0"

    def _graph_headers(self, tokens: OAuthTokens) -> dict[str, str]:
        headers = bearer_headers(tokens)
        headers["Prefer"] = PREFER_HEADER
        return headers

    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        if not self.config.is_configured():
            logger.error("Microsoft OAuth credentials are not configured (microsoft.client_id/client_secret).")
            raise ProviderConfigurationError(
                "Outlook Calendar integration is not configured. "
                "Set microsoft.client_id and microsoft.client_secret in the calbridge config."
            )
        query = urlencode(
            {
                "client_id": self.config.client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "response_mode": "query",
                "scope": " ".join(self.config.scopes),
                "state": state,
            }
        )
        return f"{self._oauth_base}/authorize?{query}"

    def _token_request(self, data: dict[str, str], context: str) -> dict[str, Any]:
        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": " ".join(self.config.scopes),
            **data,
        }
        response = self.http.request("POST", f"{self._oauth_base}/token", data=payload, timeout=self.timeout)
        ensure_success(response, context)
        return read_json(response, context)

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        payload = self._token_request(
            {"code": code, "redirect_uri": redirect_uri, "grant_type": "authorization_code"},
            "Microsoft token exchange",
        )
        return tokens_from_response(payload, "Microsoft")

    def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens:
        if not tokens.refresh_token:
            raise TokenRefreshError("No refresh token available")
        payload = self._token_request(
            {"refresh_token": tokens.refresh_token, "grant_type": "refresh_token"},
            "Microsoft token refresh",
        )
        return tokens_from_response(payload, "Microsoft", previous_refresh_token=tokens.refresh_token)

    def revoke_tokens(self, tokens: OAuthTokens) -> None:
        # Graph has no token revocation endpoint; the grant expires on its own.
        logger.info("Microsoft tokens cannot be revoked remotely; discarding locally")

    def get_account_email(self, tokens: OAuthTokens) -> str:
        response = self.http.request("GET", f"{GRAPH_BASE_URL}/me", headers=bearer_headers(tokens), timeout=self.timeout)
        ensure_success(response, "Microsoft profile")
        payload = read_json(response, "Microsoft profile")
        email = payload.get("mail") or payload.get("userPrincipalName")
        if not email:
            raise ProviderResponseError("Failed to get account email")
        return str(email)

    def get_calendars(self, tokens: OAuthTokens) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        url: str | None = f"{GRAPH_BASE_URL}/me/calendars"
        while url:
            response = self.http.request("GET", url, headers=bearer_headers(tokens), timeout=self.timeout)
            ensure_success(response, "Microsoft calendar list")
            payload = read_json(response, "Microsoft calendar list")
            for item in payload.get("value") or []:
                if not item.get("id"):
                    continue
                calendars.append(
                    CalendarInfo(
                        calendar_id=str(item["id"]),
                        name=item.get("name") or str(item["id"]),
                        color=item.get("hexColor") or None,
                        is_read_only=not item.get("canEdit", True),
                        is_primary=bool(item.get("isDefaultCalendar", False)),
                    )
                )
            url = payload.get("@odata.nextLink")
        return calendars

    def _initial_delta_url(self, calendar_id: str, start: datetime, end: datetime) -> str:
        query = urlencode({"startDateTime": _format_utc(start) + "Z", "endDateTime": _format_utc(end) + "Z"})
        return f"{GRAPH_BASE_URL}/me/calendars/{quote(calendar_id, safe='')}/calendarView/delta?{query}"

    def fetch_events(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        """Walk calendarView/delta; the stored cursor is the full deltaLink URL."""
        events: list[ExternalCalendarEvent] = []
        deleted_ids: list[str] = []
        full_sync_required = False
        url: str | None = sync_token or self._initial_delta_url(calendar_id, start, end)
        delta_link: str | None = None
        resumed = bool(sync_token)

        while url:
            check_cancelled(cancel_event)
            response = self.http.request("GET", url, headers=self._graph_headers(tokens), timeout=self.timeout)
            if response.status_code == 410:
                if not resumed:
                    ensure_success(response, "Microsoft delta full resync")
                logger.info("Microsoft delta link expired for calendar %s, restarting full sync", calendar_id)
                full_sync_required = True
                resumed = False
                events.clear()
                deleted_ids.clear()
                url = self._initial_delta_url(calendar_id, start, end)
                continue
            ensure_success(response, "Microsoft calendar delta")
            payload = read_json(response, "Microsoft calendar delta")
            for item in payload.get("value") or []:
                if "@removed" in item or item.get("isCancelled"):
                    deleted_ids.append(str(item.get("id", "")))
                    continue
                mapped = map_graph_event(item)
                if mapped is not None:
                    events.append(mapped)
            url = payload.get("@odata.nextLink")
            delta_link = payload.get("@odata.deltaLink") or delta_link

        return CalendarSyncResult(
            events=events,
            deleted_external_ids=deleted_ids,
            sync_token=delta_link,
            full_sync_required=full_sync_required,
        )

    def fetch_ics_events(
        self,
        url: str,
        etag: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult:
        raise UnsupportedOperationError("Outlook provider does not support ICS URLs")

    def create_event(self, tokens: OAuthTokens, calendar_id: str, event: ExternalCalendarEvent) -> str:
        response = self.http.request(
            "POST",
            f"{GRAPH_BASE_URL}/me/calendars/{quote(calendar_id, safe='')}/events",
            json=_to_graph_event(event),
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        ensure_success(response, "Microsoft create event")
        event_id = read_json(response, "Microsoft create event").get("id")
        if not event_id:
            raise ProviderResponseError("Microsoft did not return an id for the created event")
        return str(event_id)

    def update_event(
        self, tokens: OAuthTokens, calendar_id: str, event_id: str, event: ExternalCalendarEvent
    ) -> None:
        response = self.http.request(
            "PATCH",
            f"{GRAPH_BASE_URL}/me/events/{quote(event_id, safe='')}",
            json=_to_graph_event(event),
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        ensure_success(response, "Microsoft update event")

    def delete_event(self, tokens: OAuthTokens, calendar_id: str, event_id: str) -> None:
        response = self.http.request(
            "DELETE",
            f"{GRAPH_BASE_URL}/me/events/{quote(event_id, safe='')}",
            headers=bearer_headers(tokens),
            timeout=self.timeout,
        )
        if response.status_code != 404:
            ensure_success(response, "Microsoft delete event")

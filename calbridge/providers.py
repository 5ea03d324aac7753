from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Protocol

import requests

from calbridge.errors import (
    InvalidTokenResponseError,
    ProviderConfigurationError,
    ProviderHTTPError,
    SyncCancelledError,
)
from calbridge.models import (
    AppConfig,
    CalendarInfo,
    CalendarProvider,
    CalendarSyncResult,
    ExternalCalendarEvent,
    OAuthTokens,
)


class CalendarProviderAdapter(Protocol):
    """Uniform fetch/auth contract; unsupported operations raise UnsupportedOperationError."""

    provider: CalendarProvider
    requires_oauth: bool
    supports_two_way_sync: bool

    def get_authorization_url(self, state: str, redirect_uri: str) -> str: ...

    def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens: ...

    def refresh_tokens(self, tokens: OAuthTokens) -> OAuthTokens: ...

    def revoke_tokens(self, tokens: OAuthTokens) -> None: ...

    def get_account_email(self, tokens: OAuthTokens) -> str: ...

    def get_calendars(self, tokens: OAuthTokens) -> list[CalendarInfo]: ...

    def fetch_events(
        self,
        tokens: OAuthTokens,
        calendar_id: str,
        start: datetime,
        end: datetime,
        sync_token: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult: ...

    def fetch_ics_events(
        self,
        url: str,
        etag: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CalendarSyncResult: ...

    def create_event(self, tokens: OAuthTokens, calendar_id: str, event: ExternalCalendarEvent) -> str: ...

    def update_event(
        self, tokens: OAuthTokens, calendar_id: str, event_id: str, event: ExternalCalendarEvent
    ) -> None: ...

    def delete_event(self, tokens: OAuthTokens, calendar_id: str, event_id: str) -> None: ...


def check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError("Sync was cancelled.")


def bearer_headers(tokens: OAuthTokens) -> dict[str, str]:
    return {"Authorization": f"{tokens.token_type or 'Bearer'} {tokens.access_token}"}


def _error_detail(response: Any) -> str:
    try:
        payload = response.json()
    except ValueError:
        return str(getattr(response, "text", "") or "")[:300]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)[:300]
        if error:
            description = payload.get("error_description")
            return f"{error}: {description}" if description else str(error)
    return str(payload)[:300]


def ensure_success(response: Any, context: str) -> None:
    status = int(response.status_code)
    if status >= 400:
        raise ProviderHTTPError(status, f"{context} failed: {_error_detail(response)}")


def read_json(response: Any, context: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderHTTPError(int(response.status_code), f"{context} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProviderHTTPError(int(response.status_code), f"{context} returned an unexpected payload")
    return payload


def tokens_from_response(
    payload: dict[str, Any],
    provider_label: str,
    previous_refresh_token: str | None = None,
) -> OAuthTokens:
    access_token = str(payload.get("access_token") or "").strip()
    if not access_token:
        raise InvalidTokenResponseError(f"{provider_label} OAuth returned an empty access token")
    expires_in = payload.get("expires_in")
    return OAuthTokens.create(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or previous_refresh_token,
        expires_in_seconds=int(expires_in) if expires_in else None,
        scope=payload.get("scope"),
        token_type=str(payload.get("token_type") or "Bearer"),
    )


class ProviderRegistry:
    def __init__(self, adapters: list[CalendarProviderAdapter]) -> None:
        self._adapters = {adapter.provider: adapter for adapter in adapters}

    def get(self, provider: CalendarProvider) -> CalendarProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ProviderConfigurationError(f"Calendar provider {provider.value} is not configured.")
        return adapter


def build_registry(config: AppConfig, http: requests.Session | None = None) -> ProviderRegistry:
    from calbridge.google_client import GoogleCalendarClient
    from calbridge.ics_client import IcsCalendarClient
    from calbridge.microsoft_client import MicrosoftCalendarClient

    session = http or requests.Session()
    timeout = config.sync.request_timeout_seconds
    return ProviderRegistry(
        [
            GoogleCalendarClient(config.google, http=session, timeout=timeout),
            MicrosoftCalendarClient(config.microsoft, http=session, timeout=timeout),
            IcsCalendarClient(config.ics, http=session),
        ]
    )

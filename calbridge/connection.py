from __future__ import annotations

import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlparse

from calbridge.errors import OAuthSessionError, ValidationError
from calbridge.models import (
    CalendarProvider,
    ConnectionStatus,
    OAuthTokens,
    SyncSettings,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


SESSION_LIFETIME = timedelta(minutes=15)
MAX_NAME_LENGTH = 100
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _new_id() -> str:
    return uuid.uuid4().hex


def generate_state() -> str:
    """Return 256 bits of randomness, URL-safe base64 without padding."""
    return secrets.token_urlsafe(32)


def validate_name(name: str) -> str:
    cleaned = str(name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required.")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be {MAX_NAME_LENGTH} characters or less.")
    return cleaned


def validate_color(color: str | None) -> str | None:
    if color is None or not str(color).strip():
        return None
    value = str(color).strip()
    if not HEX_COLOR_PATTERN.match(value):
        raise ValidationError("Color must be a valid hex color code (e.g. #FF5733).")
    return value


def normalize_ics_url(url: str) -> str:
    text = str(url or "").strip()
    if not text:
        raise ValidationError("ICS URL is required.")
    if text.lower().startswith("webcal://"):
        text = "https://" + text[len("webcal://"):]
    parsed = urlparse(text)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError("Valid ICS URL is required (http, https, or webcal).")
    return text


def validate_redirect_uri(redirect_uri: str) -> str:
    text = str(redirect_uri or "").strip()
    parsed = urlparse(text)
    if not parsed.scheme or not parsed.netloc:
        raise ValidationError("Valid redirect URI is required.")
    return text


@dataclass
class CalendarConnection:
    family_id: str
    provider: CalendarProvider
    name: str
    id: str = field(default_factory=_new_id)
    status: ConnectionStatus = ConnectionStatus.PENDING_AUTH
    external_calendar_id: str | None = None
    external_account_id: str | None = None
    tokens: OAuthTokens | None = None
    ics_url: str | None = None
    assigned_member_ids: list[str] = field(default_factory=list)
    color: str | None = None
    sync_settings: SyncSettings = field(default_factory=SyncSettings)
    is_enabled: bool = True
    last_synced_at: datetime | None = None
    next_sync_at: datetime | None = None
    last_sync_error: str | None = None
    consecutive_failures: int = 0
    sync_token: str | None = None
    etag: str | None = None
    known_event_ids: list[str] = field(default_factory=list)
    created_by: str = "system"
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create_oauth(
        cls,
        family_id: str,
        provider: CalendarProvider,
        name: str,
        created_by: str,
    ) -> "CalendarConnection":
        if not str(family_id or "").strip():
            raise ValidationError("Family ID is required.")
        if not provider.requires_oauth:
            raise ValidationError(f"Provider {provider.value} does not support OAuth.")
        return cls(
            family_id=family_id,
            provider=provider,
            name=validate_name(name),
            status=ConnectionStatus.PENDING_AUTH,
            created_by=created_by,
        )

    @classmethod
    def create_ics_subscription(
        cls,
        family_id: str,
        name: str,
        ics_url: str,
        created_by: str,
        now: datetime | None = None,
    ) -> "CalendarConnection":
        if not str(family_id or "").strip():
            raise ValidationError("Family ID is required.")
        normalized = normalize_ics_url(ics_url)
        current = now or utc_now()
        return cls(
            family_id=family_id,
            provider=CalendarProvider.ICS_URL,
            name=validate_name(name),
            ics_url=normalized,
            external_calendar_id=normalized,
            status=ConnectionStatus.ACTIVE,
            sync_settings=SyncSettings.for_ics_subscription(),
            next_sync_at=current,
            created_by=created_by,
            created_at=current,
        )

    @property
    def requires_oauth(self) -> bool:
        return self.provider.requires_oauth

    @property
    def is_read_only(self) -> bool:
        return self.provider == CalendarProvider.ICS_URL or not self.sync_settings.two_way_sync

    @property
    def calendar_key(self) -> str:
        return self.external_calendar_id or self.id

    def attach_oauth(
        self,
        tokens: OAuthTokens,
        external_calendar_id: str,
        external_account_id: str | None,
    ) -> None:
        if not str(external_calendar_id or "").strip():
            raise ValidationError("External calendar ID is required.")
        self.tokens = tokens
        self.external_calendar_id = external_calendar_id
        self.external_account_id = external_account_id

    def activate(self, now: datetime | None = None) -> None:
        self.status = ConnectionStatus.ACTIVE
        self.is_enabled = True
        # First sync is due straight away.
        self.next_sync_at = now or utc_now()

    def update_tokens(self, tokens: OAuthTokens) -> None:
        self.tokens = tokens

    def record_successful_sync(
        self,
        now: datetime,
        sync_token: str | None = None,
        etag: str | None = None,
        known_event_ids: list[str] | None = None,
    ) -> None:
        self.last_synced_at = now
        self.last_sync_error = None
        self.consecutive_failures = 0
        if sync_token is not None:
            self.sync_token = sync_token
        if etag is not None:
            self.etag = etag
        if known_event_ids is not None:
            self.known_event_ids = sorted(set(known_event_ids))
        if not self.is_enabled:
            return
        self.status = ConnectionStatus.ACTIVE
        self.next_sync_at = now + timedelta(minutes=self.sync_settings.interval_minutes)

    def record_sync_failure(
        self,
        error: str,
        now: datetime,
        is_auth_error: bool = False,
        max_backoff_minutes: int = 1440,
    ) -> None:
        self.last_sync_error = error
        self.consecutive_failures += 1
        if not self.is_enabled:
            return
        self.status = ConnectionStatus.AUTH_ERROR if is_auth_error else ConnectionStatus.SYNC_ERROR
        self.next_sync_at = now + timedelta(minutes=self.backoff_minutes(max_backoff_minutes))

    def backoff_minutes(self, max_backoff_minutes: int = 1440) -> int:
        delay = self.sync_settings.interval_minutes * (2 ** self.consecutive_failures)
        return min(delay, max_backoff_minutes)

    def disable(self) -> None:
        self.is_enabled = False
        self.status = ConnectionStatus.DISABLED
        self.next_sync_at = None

    def resume(self, now: datetime | None = None) -> None:
        """Manual re-activation; the only way out of auth_error."""
        self.is_enabled = True
        self.status = ConnectionStatus.ACTIVE
        self.consecutive_failures = 0
        self.last_sync_error = None
        self.next_sync_at = now or utc_now()

    def to_dict(self, include_secrets: bool = True) -> dict[str, Any]:
        tokens = self.tokens.to_dict() if self.tokens and include_secrets else None
        return {
            "id": self.id,
            "family_id": self.family_id,
            "name": self.name,
            "provider": self.provider.value,
            "status": self.status.value,
            "external_calendar_id": self.external_calendar_id,
            "external_account_id": self.external_account_id,
            "tokens": tokens,
            "ics_url": self.ics_url,
            "assigned_member_ids": list(self.assigned_member_ids),
            "color": self.color,
            "sync_settings": self.sync_settings.to_dict(),
            "is_enabled": self.is_enabled,
            "is_read_only": self.is_read_only,
            "last_synced_at": serialize_datetime(self.last_synced_at),
            "next_sync_at": serialize_datetime(self.next_sync_at),
            "last_sync_error": self.last_sync_error,
            "consecutive_failures": self.consecutive_failures,
            "sync_token": self.sync_token if include_secrets else None,
            "etag": self.etag,
            "known_event_ids": list(self.known_event_ids) if include_secrets else [],
            "created_by": self.created_by,
            "created_at": serialize_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalendarConnection":
        return cls(
            id=str(data["id"]),
            family_id=str(data["family_id"]),
            name=str(data.get("name", "")),
            provider=CalendarProvider(data["provider"]),
            status=ConnectionStatus(data.get("status", ConnectionStatus.PENDING_AUTH.value)),
            external_calendar_id=data.get("external_calendar_id"),
            external_account_id=data.get("external_account_id"),
            tokens=OAuthTokens.from_dict(data.get("tokens")),
            ics_url=data.get("ics_url"),
            assigned_member_ids=[str(x) for x in data.get("assigned_member_ids", [])],
            color=data.get("color"),
            sync_settings=SyncSettings.from_dict(data.get("sync_settings")),
            is_enabled=bool(data.get("is_enabled", True)),
            last_synced_at=parse_iso_datetime(data.get("last_synced_at")),
            next_sync_at=parse_iso_datetime(data.get("next_sync_at")),
            last_sync_error=data.get("last_sync_error"),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            sync_token=data.get("sync_token"),
            etag=data.get("etag"),
            known_event_ids=[str(x) for x in data.get("known_event_ids", [])],
            created_by=str(data.get("created_by", "system")),
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
        )


@dataclass
class OAuthSession:
    family_id: str
    provider: CalendarProvider
    redirect_uri: str
    created_by: str
    id: str = field(default_factory=_new_id)
    state: str = field(default_factory=generate_state)
    created_at: datetime = field(default_factory=utc_now)
    expires_at: datetime | None = None
    is_completed: bool = False
    tokens: OAuthTokens | None = None
    account_email: str | None = None

    def __post_init__(self) -> None:
        if self.expires_at is None:
            self.expires_at = self.created_at + SESSION_LIFETIME

    @classmethod
    def create(
        cls,
        family_id: str,
        provider: CalendarProvider,
        redirect_uri: str,
        created_by: str,
        now: datetime | None = None,
    ) -> "OAuthSession":
        created_at = now or utc_now()
        return cls(
            family_id=family_id,
            provider=provider,
            redirect_uri=redirect_uri,
            created_by=created_by,
            created_at=created_at,
            expires_at=created_at + SESSION_LIFETIME,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def is_valid_for_connection_creation(self, now: datetime | None = None) -> bool:
        return self.is_completed and not self.is_expired(now) and self.tokens is not None

    def complete(self, tokens: OAuthTokens, account_email: str, now: datetime | None = None) -> None:
        if self.is_expired(now):
            raise OAuthSessionError("OAuth session has expired", "OAUTH_SESSION_EXPIRED")
        if self.is_completed:
            raise OAuthSessionError("OAuth session has already been completed", "OAUTH_SESSION_COMPLETED")
        self.tokens = tokens
        self.account_email = account_email
        self.is_completed = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "family_id": self.family_id,
            "provider": self.provider.value,
            "state": self.state,
            "redirect_uri": self.redirect_uri,
            "created_by": self.created_by,
            "created_at": serialize_datetime(self.created_at),
            "expires_at": serialize_datetime(self.expires_at),
            "is_completed": self.is_completed,
            "tokens": self.tokens.to_dict() if self.tokens else None,
            "account_email": self.account_email,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthSession":
        return cls(
            id=str(data["id"]),
            family_id=str(data["family_id"]),
            provider=CalendarProvider(data["provider"]),
            state=str(data["state"]),
            redirect_uri=str(data.get("redirect_uri", "")),
            created_by=str(data.get("created_by", "system")),
            created_at=parse_iso_datetime(data.get("created_at")) or utc_now(),
            expires_at=parse_iso_datetime(data.get("expires_at")),
            is_completed=bool(data.get("is_completed", False)),
            tokens=OAuthTokens.from_dict(data.get("tokens")),
            account_email=data.get("account_email"),
        )

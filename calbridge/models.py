from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


GOOGLE_DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]
MICROSOFT_DEFAULT_SCOPES = ["offline_access", "Calendars.Read", "User.Read"]

_FRACTION_PATTERN = re.compile(r"\.(\d+)")


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICS_URL = "ics_url"

    @property
    def requires_oauth(self) -> bool:
        return self in {CalendarProvider.GOOGLE, CalendarProvider.OUTLOOK}


class ConnectionStatus(str, Enum):
    PENDING_AUTH = "pending_auth"
    ACTIVE = "active"
    AUTH_ERROR = "auth_error"
    SYNC_ERROR = "sync_error"
    DISABLED = "disabled"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph sends 7 fractional digits, Google 3; fromisoformat wants 6.
    text = _FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(default_factory=lambda: list(GOOGLE_DEFAULT_SCOPES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        scopes = [str(x).strip() for x in data.get("scopes", GOOGLE_DEFAULT_SCOPES) if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            scopes=scopes or list(GOOGLE_DEFAULT_SCOPES),
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class MicrosoftConfig:
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = "common"
    scopes: list[str] = field(default_factory=lambda: list(MICROSOFT_DEFAULT_SCOPES))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MicrosoftConfig":
        data = data or {}
        scopes = [str(x).strip() for x in data.get("scopes", MICROSOFT_DEFAULT_SCOPES) if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            tenant_id=str(data.get("tenant_id", "common")).strip() or "common",
            scopes=scopes or list(MICROSOFT_DEFAULT_SCOPES),
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class IcsConfig:
    timeout_seconds: int = 30
    max_file_size_bytes: int = 5 * 1024 * 1024
    user_agent: str = "calbridge/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IcsConfig":
        data = data or {}
        return cls(
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_file_size_bytes=max(1024, int(data.get("max_file_size_bytes", 5 * 1024 * 1024))),
            user_agent=str(data.get("user_agent", "calbridge/0.1")).strip() or "calbridge/0.1",
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    batch_limit: int = 50
    max_workers: int = 4
    max_backoff_minutes: int = 1440
    token_refresh_margin_minutes: int = 5
    lease_seconds: int = 600
    request_timeout_seconds: int = 30
    run_history_days: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            batch_limit=max(1, int(data.get("batch_limit", 50))),
            max_workers=max(1, int(data.get("max_workers", 4))),
            max_backoff_minutes=max(1, int(data.get("max_backoff_minutes", 1440))),
            token_refresh_margin_minutes=max(0, int(data.get("token_refresh_margin_minutes", 5))),
            lease_seconds=max(30, int(data.get("lease_seconds", 600))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
            run_history_days=max(1, int(data.get("run_history_days", 30))),
        )


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    ics: IcsConfig = field(default_factory=IcsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    default_redirect_uri: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            microsoft=MicrosoftConfig.from_dict(data.get("microsoft")),
            ics=IcsConfig.from_dict(data.get("ics")),
            sync=SyncConfig.from_dict(data.get("sync")),
            default_redirect_uri=str(data.get("default_redirect_uri", "")).strip(),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None
    scope: str | None = None

    @classmethod
    def create(
        cls,
        access_token: str,
        refresh_token: str | None,
        expires_in_seconds: int | None,
        scope: str | None = None,
        token_type: str = "Bearer",
        now: datetime | None = None,
    ) -> "OAuthTokens":
        issued_at = now or utc_now()
        expires_at = None
        if expires_in_seconds:
            expires_at = issued_at + timedelta(seconds=int(expires_in_seconds))
        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            token_type=token_type or "Bearer",
            expires_at=expires_at,
            scope=scope,
        )

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def expires_within(self, margin: timedelta, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now()) + margin

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": serialize_datetime(self.expires_at),
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OAuthTokens | None":
        if not data:
            return None
        return cls(
            access_token=str(data.get("access_token", "")),
            refresh_token=data.get("refresh_token") or None,
            token_type=str(data.get("token_type", "Bearer") or "Bearer"),
            expires_at=parse_iso_datetime(data.get("expires_at")),
            scope=data.get("scope"),
        )


@dataclass
class SyncSettings:
    interval_minutes: int = 15
    past_days: int = 7
    future_days: int = 90
    import_all_day: bool = True
    import_declined: bool = False
    two_way_sync: bool = False

    @classmethod
    def for_ics_subscription(cls) -> "SyncSettings":
        return cls(interval_minutes=60, past_days=7, future_days=180, two_way_sync=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncSettings":
        data = data or {}
        return cls(
            interval_minutes=max(5, int(data.get("interval_minutes", 15))),
            past_days=max(0, int(data.get("past_days", 7))),
            future_days=max(1, int(data.get("future_days", 90))),
            import_all_day=bool(data.get("import_all_day", True)),
            import_declined=bool(data.get("import_declined", False)),
            two_way_sync=bool(data.get("two_way_sync", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExternalCalendarEvent:
    external_id: str
    title: str = "(No title)"
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool = False
    location: str | None = None
    color: str | None = None
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    original_start_time: datetime | None = None
    is_cancelled: bool = False
    is_declined: bool = False
    reminders: list[int] = field(default_factory=list)
    updated_at: datetime | None = None
    organizer_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("start_time", "end_time", "original_start_time", "updated_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class CalendarSyncResult:
    events: list[ExternalCalendarEvent] = field(default_factory=list)
    deleted_external_ids: list[str] = field(default_factory=list)
    sync_token: str | None = None
    etag: str | None = None
    full_sync_required: bool = False


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str
    description: str | None = None
    color: str | None = None
    is_read_only: bool = False
    is_primary: bool = False
    time_zone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncSummary:
    connection_id: str
    family_id: str
    provider: str
    success: bool
    added: int = 0
    updated: int = 0
    deleted: int = 0
    error_message: str | None = None
    is_auth_error: bool = False
    skipped: bool = False
    cancelled: bool = False
    full_sync: bool = False
    trigger: str = "scheduled"
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def changes(self) -> int:
        return self.added + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["run_at"] = serialize_datetime(self.run_at)
        return payload


def sync_window(now: datetime, settings: SyncSettings) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=settings.past_days), now_utc + timedelta(days=settings.future_days)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import requests

from calbridge.connection import (
    CalendarConnection,
    OAuthSession,
    validate_color,
    validate_name,
    validate_redirect_uri,
)
from calbridge.errors import OAuthSessionError, ProviderConnectionError, ValidationError
from calbridge.models import CalendarInfo, CalendarProvider, utc_now
from calbridge.providers import ProviderRegistry
from calbridge.state_store import StateStore


logger = logging.getLogger(__name__)

RESTART_HINT = "Please restart the calendar connection flow."


@dataclass
class OAuthInitiation:
    session_id: str
    authorization_url: str
    state: str

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "authorization_url": self.authorization_url, "state": self.state}


@dataclass
class OAuthCompletion:
    session_id: str
    account_email: str
    calendars: list[CalendarInfo] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "account_email": self.account_email,
            "calendars": [calendar.to_dict() for calendar in self.calendars],
        }


@dataclass
class CalendarSelection:
    external_calendar_id: str
    display_name: str
    color: str | None = None
    assigned_member_ids: list[str] = field(default_factory=list)

    def validate(self) -> None:
        if not str(self.external_calendar_id or "").strip():
            raise ValidationError("External calendar ID is required.")
        self.display_name = validate_name(self.display_name)
        self.color = validate_color(self.color)


class OAuthFlowService:
    """Two-step OAuth connection flow backed by short-lived, single-use sessions."""

    def __init__(
        self,
        state_store: StateStore,
        registry: ProviderRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.registry = registry
        self.clock = clock

    def initiate_oauth(
        self,
        family_id: str,
        provider: CalendarProvider,
        redirect_uri: str,
        created_by: str,
    ) -> OAuthInitiation:
        if not str(family_id or "").strip():
            raise ValidationError("Family ID is required.")
        if not provider.requires_oauth:
            raise ValidationError(f"Provider {provider.value} does not support OAuth. Use register_ics instead.")
        redirect_uri = validate_redirect_uri(redirect_uri)
        adapter = self.registry.get(provider)

        session = OAuthSession.create(family_id, provider, redirect_uri, created_by, now=self.clock())
        authorization_url = adapter.get_authorization_url(session.state, redirect_uri)
        self.state_store.save_session(session)
        logger.info("OAuth flow started family=%s provider=%s session=%s", family_id, provider.value, session.id)
        return OAuthInitiation(session_id=session.id, authorization_url=authorization_url, state=session.state)

    def complete_oauth_by_state(self, code: str, state: str, redirect_uri: str) -> OAuthCompletion:
        if not str(code or "").strip():
            raise ValidationError("Authorization code is required.")
        session = self.state_store.get_session_by_state(str(state or ""))
        if session is None:
            raise OAuthSessionError(f"Invalid OAuth state. {RESTART_HINT}", "OAUTH_STATE_INVALID")
        now = self.clock()
        if session.is_expired(now):
            raise OAuthSessionError(f"OAuth session has expired. {RESTART_HINT}", "OAUTH_SESSION_EXPIRED")
        if session.is_completed:
            raise OAuthSessionError(
                f"OAuth session has already been completed. {RESTART_HINT}", "OAUTH_SESSION_COMPLETED"
            )
        if session.redirect_uri != redirect_uri:
            raise OAuthSessionError(f"Redirect URI mismatch. {RESTART_HINT}", "OAUTH_REDIRECT_MISMATCH")

        adapter = self.registry.get(session.provider)
        try:
            tokens = adapter.exchange_code(code, redirect_uri)
            account_email = adapter.get_account_email(tokens)
            session.complete(tokens, account_email, now=now)
            self.state_store.save_session(session)
            calendars = adapter.get_calendars(tokens)
        except requests.RequestException as exc:
            logger.warning(
                "OAuth completion failed session=%s provider=%s: %s",
                session.id,
                session.provider.value,
                exc,
            )
            raise ProviderConnectionError(
                f"Could not reach {session.provider.value} to finish authorization: {type(exc).__name__}"
            ) from exc

        logger.info(
            "OAuth flow completed session=%s provider=%s calendars=%d",
            session.id,
            session.provider.value,
            len(calendars),
        )
        return OAuthCompletion(session_id=session.id, account_email=account_email, calendars=calendars)

    def create_connections_from_session(
        self,
        family_id: str,
        session_id: str,
        calendars: list[CalendarSelection],
    ) -> list[CalendarConnection]:
        if not calendars:
            raise ValidationError("At least one calendar must be selected.")
        for selection in calendars:
            selection.validate()

        session = self.state_store.get_session(session_id, family_id)
        if session is None:
            raise OAuthSessionError(f"OAuth session not found. {RESTART_HINT}", "OAUTH_SESSION_NOT_FOUND")
        now = self.clock()
        if not session.is_completed:
            raise OAuthSessionError(f"OAuth session has not been completed. {RESTART_HINT}", "OAUTH_SESSION_NOT_COMPLETED")
        if not session.is_valid_for_connection_creation(now):
            raise OAuthSessionError(f"OAuth session has expired. {RESTART_HINT}", "OAUTH_SESSION_EXPIRED")

        created: list[CalendarConnection] = []
        for selection in calendars:
            existing = self.state_store.get_connection_by_external_id(family_id, selection.external_calendar_id)
            if existing is not None:
                logger.info(
                    "Skipping already connected calendar family=%s external_calendar_id=%s",
                    family_id,
                    selection.external_calendar_id,
                )
                continue
            connection = CalendarConnection.create_oauth(
                family_id, session.provider, selection.display_name, session.created_by
            )
            connection.color = selection.color
            connection.assigned_member_ids = list(selection.assigned_member_ids)
            connection.attach_oauth(
                session.tokens,
                external_calendar_id=selection.external_calendar_id,
                external_account_id=session.account_email,
            )
            connection.activate(now)
            self.state_store.add_connection(connection)
            created.append(connection)

        self.state_store.delete_session(session.id)
        logger.info("Created %d connection(s) from session=%s", len(created), session.id)
        return created

    def purge_expired_sessions(self) -> int:
        removed = self.state_store.delete_expired_sessions(self.clock())
        if removed:
            logger.info("Purged %d expired OAuth session(s)", removed)
        return removed

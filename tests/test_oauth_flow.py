import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import requests

from calbridge.errors import (
    OAuthSessionError,
    ProviderConfigurationError,
    ProviderConnectionError,
    ProviderResponseError,
    ValidationError,
)
from calbridge.models import CalendarInfo, CalendarProvider, ConnectionStatus, OAuthTokens
from calbridge.oauth_flow import CalendarSelection, OAuthFlowService
from calbridge.providers import ProviderRegistry
from calbridge.state_store import StateStore


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
REDIRECT = "https://app.example.com/oauth/callback"


class OAuthFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.now = NOW
        self.google = mock.Mock()
        self.google.provider = CalendarProvider.GOOGLE
        self.google.get_authorization_url.side_effect = lambda state, uri: f"https://accounts.example/auth?state={state}"
        self.google.exchange_code.return_value = OAuthTokens(access_token="access-1", refresh_token="refresh-1")
        self.google.get_account_email.return_value = "mom@example.com"
        self.google.get_calendars.return_value = [
            CalendarInfo(calendar_id="primary", name="Mom", is_primary=True),
            CalendarInfo(calendar_id="soccer", name="Soccer"),
        ]
        self.flow = OAuthFlowService(self.state_store, ProviderRegistry([self.google]), clock=lambda: self.now)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _complete(self):
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        completion = self.flow.complete_oauth_by_state("code-1", initiation.state, REDIRECT)
        return initiation, completion

    def test_full_flow_creates_active_connections(self) -> None:
        initiation, completion = self._complete()
        self.assertIn(initiation.state, initiation.authorization_url)
        self.assertEqual(completion.account_email, "mom@example.com")
        self.assertEqual([item.calendar_id for item in completion.calendars], ["primary", "soccer"])

        created = self.flow.create_connections_from_session(
            "fam-1",
            completion.session_id,
            [
                CalendarSelection("primary", "Mom", color="#FF5733", assigned_member_ids=["mom"]),
                CalendarSelection("soccer", "Soccer"),
            ],
        )

        self.assertEqual(len(created), 2)
        stored = self.state_store.get_connection(created[0].id)
        self.assertEqual(stored.status, ConnectionStatus.ACTIVE)
        self.assertEqual(stored.next_sync_at, NOW)
        self.assertEqual(stored.tokens.refresh_token, "refresh-1")
        self.assertEqual(stored.external_account_id, "mom@example.com")
        self.assertEqual(stored.color, "#FF5733")
        self.assertIsNone(self.state_store.get_session(completion.session_id, "fam-1"))

    def test_session_cannot_create_connections_twice(self) -> None:
        _, completion = self._complete()
        self.flow.create_connections_from_session(
            "fam-1", completion.session_id, [CalendarSelection("primary", "Mom")]
        )
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.create_connections_from_session(
                "fam-1", completion.session_id, [CalendarSelection("soccer", "Soccer")]
            )
        self.assertEqual(ctx.exception.code, "OAUTH_SESSION_NOT_FOUND")
        self.assertEqual(len(self.state_store.list_connections("fam-1")), 1)

    def test_network_failure_during_exchange_is_mapped(self) -> None:
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        self.google.exchange_code.side_effect = requests.ConnectionError("connection reset")

        with self.assertRaises(ProviderConnectionError):
            self.flow.complete_oauth_by_state("code-1", initiation.state, REDIRECT)
        self.assertFalse(self.state_store.get_session(initiation.session_id, "fam-1").is_completed)

    def test_missing_account_email_is_a_provider_error(self) -> None:
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        self.google.get_account_email.side_effect = ProviderResponseError("Failed to get account email")

        with self.assertRaises(ProviderResponseError):
            self.flow.complete_oauth_by_state("code-1", initiation.state, REDIRECT)

    def test_ics_provider_cannot_start_oauth(self) -> None:
        with self.assertRaises(ValidationError):
            self.flow.initiate_oauth("fam-1", CalendarProvider.ICS_URL, REDIRECT, "user-1")

    def test_invalid_redirect_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, "not-a-uri", "user-1")

    def test_unregistered_provider_fails_fast(self) -> None:
        with self.assertRaises(ProviderConfigurationError):
            self.flow.initiate_oauth("fam-1", CalendarProvider.OUTLOOK, REDIRECT, "user-1")

    def test_unknown_state(self) -> None:
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.complete_oauth_by_state("code", "bogus-state", REDIRECT)
        self.assertEqual(ctx.exception.code, "OAUTH_STATE_INVALID")

    def test_state_is_single_use(self) -> None:
        initiation, _ = self._complete()
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.complete_oauth_by_state("code-2", initiation.state, REDIRECT)
        self.assertEqual(ctx.exception.code, "OAUTH_SESSION_COMPLETED")
        self.assertEqual(self.google.exchange_code.call_count, 1)

    def test_expired_session_rejected(self) -> None:
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        self.now = NOW + timedelta(minutes=16)
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.complete_oauth_by_state("code", initiation.state, REDIRECT)
        self.assertEqual(ctx.exception.code, "OAUTH_SESSION_EXPIRED")
        self.google.exchange_code.assert_not_called()

    def test_redirect_mismatch(self) -> None:
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.complete_oauth_by_state("code", initiation.state, "https://evil.example.com/cb")
        self.assertEqual(ctx.exception.code, "OAUTH_REDIRECT_MISMATCH")

    def test_session_must_belong_to_family(self) -> None:
        _, completion = self._complete()
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.create_connections_from_session(
                "fam-2", completion.session_id, [CalendarSelection("primary", "Mom")]
            )
        self.assertEqual(ctx.exception.code, "OAUTH_SESSION_NOT_FOUND")

    def test_uncompleted_session_cannot_create_connections(self) -> None:
        initiation = self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        with self.assertRaises(OAuthSessionError):
            self.flow.create_connections_from_session(
                "fam-1", initiation.session_id, [CalendarSelection("primary", "Mom")]
            )

    def test_connection_creation_after_expiry_rejected(self) -> None:
        _, completion = self._complete()
        self.now = NOW + timedelta(minutes=20)
        with self.assertRaises(OAuthSessionError) as ctx:
            self.flow.create_connections_from_session(
                "fam-1", completion.session_id, [CalendarSelection("primary", "Mom")]
            )
        self.assertEqual(ctx.exception.code, "OAUTH_SESSION_EXPIRED")

    def test_duplicates_are_skipped(self) -> None:
        _, completion = self._complete()
        self.flow.create_connections_from_session(
            "fam-1", completion.session_id, [CalendarSelection("primary", "Mom")]
        )
        _, second = self._complete()
        created = self.flow.create_connections_from_session(
            "fam-1",
            second.session_id,
            [CalendarSelection("primary", "Mom again"), CalendarSelection("soccer", "Soccer")],
        )
        self.assertEqual([item.external_calendar_id for item in created], ["soccer"])
        self.assertEqual(len(self.state_store.list_connections("fam-1")), 2)

    def test_selection_validation(self) -> None:
        _, completion = self._complete()
        with self.assertRaises(ValidationError):
            self.flow.create_connections_from_session(
                "fam-1", completion.session_id, [CalendarSelection("primary", "Mom", color="blue")]
            )
        with self.assertRaises(ValidationError):
            self.flow.create_connections_from_session(
                "fam-1", completion.session_id, [CalendarSelection("", "Mom")]
            )

    def test_purge_expired_sessions(self) -> None:
        self.flow.initiate_oauth("fam-1", CalendarProvider.GOOGLE, REDIRECT, "user-1")
        self.assertEqual(self.flow.purge_expired_sessions(), 0)
        self.now = NOW + timedelta(hours=1)
        self.assertEqual(self.flow.purge_expired_sessions(), 1)


if __name__ == "__main__":
    unittest.main()

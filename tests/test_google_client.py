import threading
import unittest
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from helpers import FakeResponse, FakeSession

from calbridge.errors import (
    InvalidTokenResponseError,
    ProviderConfigurationError,
    ProviderHTTPError,
    SyncCancelledError,
    UnsupportedOperationError,
)
from calbridge.google_client import GoogleCalendarClient, map_google_event
from calbridge.models import GoogleConfig, OAuthTokens


START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = START + timedelta(days=30)


def _tokens() -> OAuthTokens:
    return OAuthTokens(access_token="access-1", refresh_token="refresh-1")


def _client(responses: list[FakeResponse]) -> tuple[GoogleCalendarClient, FakeSession]:
    session = FakeSession(responses)
    config = GoogleConfig(client_id="client-id", client_secret="client-secret")
    return GoogleCalendarClient(config, http=session, timeout=5), session


class GoogleClientAuthTests(unittest.TestCase):
    def test_authorization_url_requests_offline_access(self) -> None:
        client, _ = _client([])
        url = client.get_authorization_url("state-123", "https://app.example.com/callback")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        self.assertEqual(parsed.netloc, "accounts.google.com")
        self.assertEqual(query["state"], ["state-123"])
        self.assertEqual(query["access_type"], ["offline"])
        self.assertEqual(query["prompt"], ["consent"])
        self.assertEqual(query["redirect_uri"], ["https://app.example.com/callback"])

    def test_unconfigured_client_fails_fast(self) -> None:
        client = GoogleCalendarClient(GoogleConfig(), http=FakeSession())
        with self.assertRaises(ProviderConfigurationError):
            client.get_authorization_url("state", "https://app.example.com/callback")

    def test_missing_client_secret_fails_fast(self) -> None:
        client = GoogleCalendarClient(GoogleConfig(client_id="client-id", client_secret=""), http=FakeSession())
        with self.assertRaises(ProviderConfigurationError):
            client.get_authorization_url("state", "https://app.example.com/callback")

    def test_exchange_rejects_empty_access_token(self) -> None:
        client, _ = _client([FakeResponse(200, {"access_token": "", "expires_in": 3600})])
        with self.assertRaises(InvalidTokenResponseError):
            client.exchange_code("code", "https://app.example.com/callback")

    def test_refresh_keeps_previous_refresh_token(self) -> None:
        client, session = _client([FakeResponse(200, {"access_token": "access-2", "expires_in": 3600})])
        refreshed = client.refresh_tokens(_tokens())
        self.assertEqual(refreshed.access_token, "access-2")
        self.assertEqual(refreshed.refresh_token, "refresh-1")
        self.assertIsNotNone(refreshed.expires_at)
        self.assertEqual(session.calls[0]["data"]["grant_type"], "refresh_token")

    def test_refresh_rejection_is_auth_error(self) -> None:
        client, _ = _client([FakeResponse(400, {"error": "invalid_grant"})])
        with self.assertRaises(ProviderHTTPError) as ctx:
            client.refresh_tokens(_tokens())
        self.assertEqual(ctx.exception.status_code, 400)

    def test_revoke_failure_is_swallowed(self) -> None:
        client, _ = _client([FakeResponse(500, {"error": "boom"})])
        client.revoke_tokens(_tokens())

    def test_ics_fetch_is_unsupported(self) -> None:
        client, _ = _client([])
        with self.assertRaises(UnsupportedOperationError):
            client.fetch_ics_events("https://example.com/cal.ics")


class GoogleClientFetchTests(unittest.TestCase):
    def test_full_fetch_paginates_and_sends_window(self) -> None:
        client, session = _client(
            [
                FakeResponse(
                    200,
                    {
                        "items": [
                            {
                                "id": "evt-1",
                                "summary": "Soccer",
                                "start": {"dateTime": "2026-03-02T16:00:00Z"},
                                "end": {"dateTime": "2026-03-02T17:00:00Z"},
                            }
                        ],
                        "nextPageToken": "page-2",
                    },
                ),
                FakeResponse(
                    200,
                    {
                        "items": [{"id": "evt-2", "status": "cancelled"}],
                        "nextSyncToken": "sync-abc",
                    },
                ),
            ]
        )
        result = client.fetch_events(_tokens(), "primary", START, END)

        self.assertEqual([event.external_id for event in result.events], ["evt-1"])
        self.assertEqual(result.deleted_external_ids, ["evt-2"])
        self.assertEqual(result.sync_token, "sync-abc")
        self.assertFalse(result.full_sync_required)
        first_params = session.calls[0]["params"]
        self.assertIn("timeMin", first_params)
        self.assertEqual(first_params["maxResults"], "250")
        self.assertEqual(session.calls[1]["params"]["pageToken"], "page-2")

    def test_incremental_fetch_omits_window(self) -> None:
        client, session = _client([FakeResponse(200, {"items": [], "nextSyncToken": "sync-2"})])
        client.fetch_events(_tokens(), "primary", START, END, sync_token="sync-1")
        params = session.calls[0]["params"]
        self.assertEqual(params["syncToken"], "sync-1")
        self.assertNotIn("timeMin", params)

    def test_gone_cursor_discards_partial_results_and_restarts(self) -> None:
        client, session = _client(
            [
                FakeResponse(
                    200,
                    {
                        "items": [
                            {
                                "id": "stale",
                                "start": {"dateTime": "2026-03-02T16:00:00Z"},
                                "end": {"dateTime": "2026-03-02T17:00:00Z"},
                            }
                        ],
                        "nextPageToken": "page-2",
                    },
                ),
                FakeResponse(410, {"error": {"message": "Sync token is no longer valid"}}),
                FakeResponse(
                    200,
                    {
                        "items": [
                            {
                                "id": "fresh",
                                "start": {"date": "2026-03-05"},
                                "end": {"date": "2026-03-06"},
                            }
                        ],
                        "nextSyncToken": "sync-new",
                    },
                ),
            ]
        )
        result = client.fetch_events(_tokens(), "primary", START, END, sync_token="sync-old")

        self.assertTrue(result.full_sync_required)
        self.assertEqual([event.external_id for event in result.events], ["fresh"])
        self.assertEqual(result.sync_token, "sync-new")
        restart_params = session.calls[2]["params"]
        self.assertNotIn("syncToken", restart_params)
        self.assertNotIn("pageToken", restart_params)
        self.assertIn("timeMin", restart_params)

    def test_unauthorized_raises_auth_error(self) -> None:
        client, _ = _client([FakeResponse(401, {"error": {"message": "Invalid Credentials"}})])
        with self.assertRaises(ProviderHTTPError) as ctx:
            client.fetch_events(_tokens(), "primary", START, END)
        self.assertTrue(ctx.exception.is_auth_error)

    def test_cancelled_before_request(self) -> None:
        client, session = _client([])
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(SyncCancelledError):
            client.fetch_events(_tokens(), "primary", START, END, cancel_event=cancel)
        self.assertEqual(session.calls, [])

    def test_delete_tolerates_gone(self) -> None:
        client, _ = _client([FakeResponse(410, {"error": "gone"})])
        client.delete_event(_tokens(), "primary", "evt-1")


class GoogleEventMappingTests(unittest.TestCase):
    def test_maps_all_day_color_reminders_and_declined(self) -> None:
        event = map_google_event(
            {
                "id": "evt-1",
                "start": {"date": "2026-03-05"},
                "end": {"date": "2026-03-06"},
                "colorId": "11",
                "reminders": {
                    "overrides": [
                        {"method": "popup", "minutes": 30},
                        {"method": "email", "minutes": 60},
                    ]
                },
                "recurrence": ["EXDATE:20260310", "RRULE:FREQ=WEEKLY;BYDAY=TH"],
                "attendees": [{"email": "me@example.com", "self": True, "responseStatus": "declined"}],
                "organizer": {"email": "coach@example.com"},
            }
        )
        self.assertIsNotNone(event)
        self.assertEqual(event.title, "(No title)")
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.start_time, datetime(2026, 3, 5, tzinfo=timezone.utc))
        self.assertEqual(event.color, "#D50000")
        self.assertEqual(event.reminders, [30])
        self.assertEqual(event.recurrence_rule, "RRULE:FREQ=WEEKLY;BYDAY=TH")
        self.assertTrue(event.is_declined)
        self.assertEqual(event.organizer_email, "coach@example.com")

    def test_missing_start_is_skipped(self) -> None:
        self.assertIsNone(map_google_event({"id": "evt-1"}))


if __name__ == "__main__":
    unittest.main()

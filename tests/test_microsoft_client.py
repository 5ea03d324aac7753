import unittest
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

from helpers import FakeResponse, FakeSession

from calbridge.errors import ProviderConfigurationError, ProviderHTTPError, TokenRefreshError
from calbridge.microsoft_client import PREFER_HEADER, MicrosoftCalendarClient, build_rrule, map_graph_event
from calbridge.models import MicrosoftConfig, OAuthTokens


START = datetime(2026, 3, 1, tzinfo=timezone.utc)
END = START + timedelta(days=30)


def _client(responses: list[FakeResponse]) -> tuple[MicrosoftCalendarClient, FakeSession]:
    session = FakeSession(responses)
    config = MicrosoftConfig(client_id="ms-client", client_secret="ms-secret", tenant_id="contoso")
    return MicrosoftCalendarClient(config, http=session, timeout=5), session


def _tokens() -> OAuthTokens:
    return OAuthTokens(access_token="access-1", refresh_token="refresh-1")


def _graph_event(event_id: str, subject: str = "Dentist") -> dict:
    return {
        "id": event_id,
        "subject": subject,
        "start": {"dateTime": "2026-03-03T09:00:00.0000000", "timeZone": "UTC"},
        "end": {"dateTime": "2026-03-03T10:00:00.0000000", "timeZone": "UTC"},
        "responseStatus": {"response": "accepted"},
    }


class MicrosoftClientAuthTests(unittest.TestCase):
    def test_authorization_url_uses_tenant(self) -> None:
        client, _ = _client([])
        url = client.get_authorization_url("state-1", "https://app.example.com/callback")
        parsed = urlparse(url)
        self.assertEqual(parsed.path, "/contoso/oauth2/v2.0/authorize")
        query = parse_qs(parsed.query)
        self.assertEqual(query["response_mode"], ["query"])
        self.assertIn("offline_access", query["scope"][0])

    def test_unconfigured_client_fails_fast(self) -> None:
        client = MicrosoftCalendarClient(MicrosoftConfig(), http=FakeSession())
        with self.assertRaises(ProviderConfigurationError):
            client.get_authorization_url("state", "https://app.example.com/callback")

    def test_missing_client_secret_fails_fast(self) -> None:
        client = MicrosoftCalendarClient(MicrosoftConfig(client_id="ms-client"), http=FakeSession())
        with self.assertRaises(ProviderConfigurationError):
            client.get_authorization_url("state", "https://app.example.com/callback")

    def test_refresh_without_refresh_token(self) -> None:
        client, session = _client([])
        with self.assertRaises(TokenRefreshError):
            client.refresh_tokens(OAuthTokens(access_token="a"))
        self.assertEqual(session.calls, [])

    def test_refresh_sends_scope(self) -> None:
        client, session = _client(
            [FakeResponse(200, {"access_token": "a2", "refresh_token": "r2", "expires_in": 3600})]
        )
        refreshed = client.refresh_tokens(_tokens())
        self.assertEqual(refreshed.refresh_token, "r2")
        self.assertIn("scope", session.calls[0]["data"])
        self.assertTrue(session.calls[0]["url"].endswith("/contoso/oauth2/v2.0/token"))

    def test_account_email_falls_back_to_principal_name(self) -> None:
        client, _ = _client([FakeResponse(200, {"mail": None, "userPrincipalName": "kid@contoso.com"})])
        self.assertEqual(client.get_account_email(_tokens()), "kid@contoso.com")

    def test_revoke_makes_no_request(self) -> None:
        client, session = _client([])
        client.revoke_tokens(_tokens())
        self.assertEqual(session.calls, [])


class MicrosoftClientFetchTests(unittest.TestCase):
    def test_delta_follows_next_link_and_returns_delta_link(self) -> None:
        client, session = _client(
            [
                FakeResponse(
                    200,
                    {
                        "value": [_graph_event("evt-1"), {"id": "evt-2", "@removed": {"reason": "deleted"}}],
                        "@odata.nextLink": "https://graph.microsoft.com/v1.0/next-page",
                    },
                ),
                FakeResponse(
                    200,
                    {
                        "value": [{**_graph_event("evt-3"), "isCancelled": True}],
                        "@odata.deltaLink": "https://graph.microsoft.com/v1.0/delta-link",
                    },
                ),
            ]
        )
        result = client.fetch_events(_tokens(), "cal-1", START, END)

        self.assertEqual([event.external_id for event in result.events], ["evt-1"])
        self.assertEqual(result.deleted_external_ids, ["evt-2", "evt-3"])
        self.assertEqual(result.sync_token, "https://graph.microsoft.com/v1.0/delta-link")
        self.assertIn("calendarView/delta", session.calls[0]["url"])
        self.assertEqual(session.calls[0]["headers"]["Prefer"], PREFER_HEADER)
        self.assertEqual(session.calls[1]["url"], "https://graph.microsoft.com/v1.0/next-page")

    def test_incremental_fetch_uses_stored_delta_link(self) -> None:
        client, session = _client([FakeResponse(200, {"value": [], "@odata.deltaLink": "https://graph/delta-2"})])
        result = client.fetch_events(_tokens(), "cal-1", START, END, sync_token="https://graph/delta-1")
        self.assertEqual(session.calls[0]["url"], "https://graph/delta-1")
        self.assertEqual(result.sync_token, "https://graph/delta-2")

    def test_gone_delta_link_restarts_with_clean_results(self) -> None:
        client, session = _client(
            [
                FakeResponse(
                    200,
                    {"value": [_graph_event("stale")], "@odata.nextLink": "https://graph/next"},
                ),
                FakeResponse(410, {"error": {"code": "SyncStateNotFound"}}),
                FakeResponse(200, {"value": [_graph_event("fresh")], "@odata.deltaLink": "https://graph/delta-new"}),
            ]
        )
        result = client.fetch_events(_tokens(), "cal-1", START, END, sync_token="https://graph/delta-old")

        self.assertTrue(result.full_sync_required)
        self.assertEqual([event.external_id for event in result.events], ["fresh"])
        self.assertIn("calendarView/delta?startDateTime=", session.calls[2]["url"])

    def test_forbidden_is_auth_error(self) -> None:
        client, _ = _client([FakeResponse(403, {"error": {"message": "Access denied"}})])
        with self.assertRaises(ProviderHTTPError) as ctx:
            client.fetch_events(_tokens(), "cal-1", START, END)
        self.assertTrue(ctx.exception.is_auth_error)

    def test_delete_tolerates_not_found(self) -> None:
        client, _ = _client([FakeResponse(404, {"error": {"code": "ErrorItemNotFound"}})])
        client.delete_event(_tokens(), "cal-1", "evt-1")


class GraphMappingTests(unittest.TestCase):
    def test_maps_declined_and_reminder(self) -> None:
        event = map_graph_event(
            {
                **_graph_event("evt-1"),
                "responseStatus": {"response": "declined"},
                "isReminderOn": True,
                "reminderMinutesBeforeStart": 15,
                "location": {"displayName": "Clinic"},
                "organizer": {"emailAddress": {"address": "dr@example.com"}},
            }
        )
        self.assertTrue(event.is_declined)
        self.assertEqual(event.reminders, [15])
        self.assertEqual(event.location, "Clinic")
        self.assertEqual(event.start_time, datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(event.organizer_email, "dr@example.com")

    def test_all_day_is_midnight_utc(self) -> None:
        event = map_graph_event(
            {
                "id": "evt-1",
                "isAllDay": True,
                "start": {"dateTime": "2026-03-05T00:00:00.0000000", "timeZone": "UTC"},
                "end": {"dateTime": "2026-03-06T00:00:00.0000000", "timeZone": "UTC"},
            }
        )
        self.assertTrue(event.is_all_day)
        self.assertEqual(event.start_time, datetime(2026, 3, 5, tzinfo=timezone.utc))

    def test_weekly_recurrence_to_rrule(self) -> None:
        rule = build_rrule(
            {
                "pattern": {"type": "weekly", "interval": 2, "daysOfWeek": ["monday", "wednesday"]},
                "range": {"type": "endDate", "endDate": "2026-06-30"},
            }
        )
        self.assertEqual(rule, "RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;UNTIL=20260630T235959Z")

    def test_relative_monthly_recurrence(self) -> None:
        rule = build_rrule(
            {
                "pattern": {"type": "relativeMonthly", "interval": 1, "daysOfWeek": ["friday"], "index": "last"},
                "range": {"type": "numbered", "numberOfOccurrences": 5},
            }
        )
        self.assertEqual(rule, "RRULE:FREQ=MONTHLY;BYDAY=-1FR;COUNT=5")


if __name__ == "__main__":
    unittest.main()

import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from calbridge.connection import CalendarConnection
from calbridge.models import AppConfig, CalendarProvider, SyncSummary
from calbridge.scheduler import SyncScheduler


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _connection(name: str) -> CalendarConnection:
    return CalendarConnection.create_ics_subscription(
        "fam-1", name, f"https://example.com/{name}.ics", "user-1", now=NOW
    )


def _summary(connection: CalendarConnection, trigger: str = "scheduled", cancel_event=None) -> SyncSummary:
    return SyncSummary(
        connection_id=connection.id,
        family_id=connection.family_id,
        provider=connection.provider.value,
        success=True,
        trigger=trigger,
    )


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict({"sync": {"batch_limit": 7, "max_workers": 2}})
        self.state_store = mock.Mock()
        self.state_store.prune_sync_runs.return_value = 0
        self.sync_engine = mock.Mock()
        self.sync_engine.clock.return_value = NOW
        self.oauth_flow = mock.Mock()
        self.scheduler = SyncScheduler(
            self.sync_engine, self.state_store, self.config_manager, oauth_flow=self.oauth_flow
        )

    def test_one_failure_does_not_stop_the_batch(self) -> None:
        connections = [_connection("a"), _connection("b"), _connection("c")]
        self.state_store.due_connections.return_value = connections

        def sync(connection, trigger="scheduled", cancel_event=None):
            if connection.name == "b":
                raise RuntimeError("unexpected")
            return _summary(connection, trigger)

        self.sync_engine.sync.side_effect = sync

        results = self.scheduler.sync_due_connections()

        self.assertEqual([item.connection_id for item in results], [item.id for item in connections])
        self.assertEqual([item.success for item in results], [True, False, True])
        self.assertIn("RuntimeError", results[1].error_message)
        self.state_store.due_connections.assert_called_once_with(NOW, 7)

    def test_batch_log_reports_total_changes(self) -> None:
        connections = [_connection("a"), _connection("b")]
        self.state_store.due_connections.return_value = connections

        def sync(connection, trigger="scheduled", cancel_event=None):
            summary = _summary(connection, trigger)
            summary.added, summary.deleted = 2, 1
            return summary

        self.sync_engine.sync.side_effect = sync

        with self.assertLogs("calbridge.scheduler", level="INFO") as logs:
            self.scheduler.sync_due_connections()

        self.assertIn("succeeded=2 failed=0 changes=6", logs.output[-1])

    def test_explicit_limit_overrides_config(self) -> None:
        self.state_store.due_connections.return_value = []
        self.assertEqual(self.scheduler.sync_due_connections(limit=3), [])
        self.state_store.due_connections.assert_called_once_with(NOW, 3)
        self.sync_engine.sync.assert_not_called()

    def test_run_once_purges_sessions(self) -> None:
        self.state_store.due_connections.return_value = [_connection("a")]
        self.sync_engine.sync.side_effect = _summary

        results = self.scheduler.run_once(trigger="manual")

        self.oauth_flow.purge_expired_sessions.assert_called_once_with()
        self.assertEqual(results[0].trigger, "manual")

    def test_run_once_prunes_old_sync_runs(self) -> None:
        self.state_store.due_connections.return_value = []
        self.state_store.prune_sync_runs.return_value = 4

        self.scheduler.run_once()

        self.state_store.prune_sync_runs.assert_called_once_with(NOW - timedelta(days=30))

    def test_stop_event_is_passed_as_cancel_signal(self) -> None:
        connection = _connection("a")
        self.state_store.due_connections.return_value = [connection]
        self.sync_engine.sync.side_effect = _summary

        self.scheduler.sync_due_connections()

        args = self.sync_engine.sync.call_args.args
        self.assertIs(args[2], self.scheduler._stop_event)


if __name__ == "__main__":
    unittest.main()

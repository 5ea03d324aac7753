from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from calbridge.connection import CalendarConnection, OAuthSession
from calbridge.errors import DuplicateConnectionError
from calbridge.models import ConnectionStatus, SyncSummary, utc_now


DUE_STATUSES = (ConnectionStatus.ACTIVE.value, ConnectionStatus.SYNC_ERROR.value)
ERROR_STATUSES = (ConnectionStatus.AUTH_ERROR.value, ConnectionStatus.SYNC_ERROR.value)

UPDATE_CONNECTION_SQL = """
UPDATE calendar_connections
SET external_calendar_id = ?,
    status = ?,
    is_enabled = ?,
    next_sync_at = ?,
    payload_json = ?,
    updated_at = ?
WHERE id = ?
"""


def _time_key(value: datetime | None) -> str | None:
    """Fixed-width UTC text so SQLite can compare timestamps as strings."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_connections (
            id TEXT PRIMARY KEY,
            family_id TEXT NOT NULL,
            external_calendar_id TEXT,
            provider TEXT NOT NULL,
            status TEXT NOT NULL,
            is_enabled INTEGER NOT NULL,
            next_sync_at TEXT,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (family_id, external_calendar_id)
        );

        CREATE INDEX IF NOT EXISTS idx_connections_due
            ON calendar_connections(is_enabled, status, next_sync_at);

        CREATE TABLE IF NOT EXISTS oauth_sessions (
            id TEXT PRIMARY KEY,
            family_id TEXT NOT NULL,
            state TEXT NOT NULL UNIQUE,
            expires_at TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_leases (
            connection_id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            connection_id TEXT NOT NULL,
            family_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            added INTEGER NOT NULL,
            updated INTEGER NOT NULL,
            deleted INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Connections

    def add_connection(self, connection: CalendarConnection) -> None:
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO calendar_connections(
                            id, family_id, external_calendar_id, provider, status,
                            is_enabled, next_sync_at, payload_json, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._connection_row(connection),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateConnectionError(
                        f"Calendar {connection.external_calendar_id} is already connected for this family."
                    ) from exc
                conn.commit()

    def save_connection(self, connection: CalendarConnection) -> bool:
        """Overwrite an existing row; never resurrects a deleted connection."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(UPDATE_CONNECTION_SQL, self._update_row(connection))
                conn.commit()
                return cursor.rowcount > 0

    def modify_connection(
        self,
        connection_id: str,
        mutate: Callable[[CalendarConnection], None],
    ) -> CalendarConnection | None:
        """Apply ``mutate`` to the stored row in one transaction.

        Callers change only the fields they own, so concurrent settings edits
        and sync bookkeeping do not overwrite each other. Returns None when the
        connection no longer exists.
        """
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT payload_json FROM calendar_connections WHERE id = ?",
                    (str(connection_id),),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return None
                connection = CalendarConnection.from_dict(json.loads(row["payload_json"]))
                mutate(connection)
                conn.execute(UPDATE_CONNECTION_SQL, self._update_row(connection))
                conn.commit()
        return connection

    @classmethod
    def _update_row(cls, connection: CalendarConnection) -> tuple[Any, ...]:
        _, _, external_calendar_id, _, *rest = cls._connection_row(connection)
        return (external_calendar_id, *rest, connection.id)

    @staticmethod
    def _connection_row(connection: CalendarConnection) -> tuple[Any, ...]:
        return (
            connection.id,
            connection.family_id,
            connection.external_calendar_id,
            connection.provider.value,
            connection.status.value,
            1 if connection.is_enabled else 0,
            _time_key(connection.next_sync_at),
            json.dumps(connection.to_dict(), ensure_ascii=False),
            _time_key(utc_now()),
        )

    def get_connection(self, connection_id: str) -> CalendarConnection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM calendar_connections WHERE id = ?",
                    (str(connection_id),),
                ).fetchone()
        if row is None:
            return None
        return CalendarConnection.from_dict(json.loads(row["payload_json"]))

    def get_connection_by_external_id(
        self, family_id: str, external_calendar_id: str
    ) -> CalendarConnection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT payload_json
                    FROM calendar_connections
                    WHERE family_id = ? AND external_calendar_id = ?
                    """,
                    (str(family_id), str(external_calendar_id)),
                ).fetchone()
        if row is None:
            return None
        return CalendarConnection.from_dict(json.loads(row["payload_json"]))

    def list_connections(self, family_id: str) -> list[CalendarConnection]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT payload_json
                    FROM calendar_connections
                    WHERE family_id = ?
                    ORDER BY updated_at DESC
                    """,
                    (str(family_id),),
                ).fetchall()
        return [CalendarConnection.from_dict(json.loads(row["payload_json"])) for row in rows]

    def delete_connection(self, connection_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM calendar_connections WHERE id = ?",
                    (str(connection_id),),
                )
                conn.execute("DELETE FROM sync_leases WHERE connection_id = ?", (str(connection_id),))
                conn.commit()
                return cursor.rowcount > 0

    def due_connections(self, now: datetime, limit: int = 50) -> list[CalendarConnection]:
        placeholders = ", ".join("?" for _ in DUE_STATUSES)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT payload_json
                    FROM calendar_connections
                    WHERE is_enabled = 1
                      AND status IN ({placeholders})
                      AND next_sync_at IS NOT NULL
                      AND next_sync_at <= ?
                    ORDER BY next_sync_at ASC
                    LIMIT ?
                    """,
                    (*DUE_STATUSES, _time_key(now), max(1, int(limit))),
                ).fetchall()
        return [CalendarConnection.from_dict(json.loads(row["payload_json"])) for row in rows]

    def connections_in_error(self) -> list[CalendarConnection]:
        placeholders = ", ".join("?" for _ in ERROR_STATUSES)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT payload_json
                    FROM calendar_connections
                    WHERE status IN ({placeholders})
                    ORDER BY updated_at DESC
                    """,
                    ERROR_STATUSES,
                ).fetchall()
        return [CalendarConnection.from_dict(json.loads(row["payload_json"])) for row in rows]

    # OAuth sessions

    def save_session(self, session: OAuthSession) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_sessions(id, family_id, state, expires_at, payload_json)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        expires_at = excluded.expires_at,
                        payload_json = excluded.payload_json
                    """,
                    (
                        session.id,
                        session.family_id,
                        session.state,
                        _time_key(session.expires_at),
                        json.dumps(session.to_dict(), ensure_ascii=False),
                    ),
                )
                conn.commit()

    def get_session(self, session_id: str, family_id: str) -> OAuthSession | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM oauth_sessions WHERE id = ? AND family_id = ?",
                    (str(session_id), str(family_id)),
                ).fetchone()
        if row is None:
            return None
        return OAuthSession.from_dict(json.loads(row["payload_json"]))

    def get_session_by_state(self, state: str) -> OAuthSession | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM oauth_sessions WHERE state = ?",
                    (str(state),),
                ).fetchone()
        if row is None:
            return None
        return OAuthSession.from_dict(json.loads(row["payload_json"]))

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM oauth_sessions WHERE id = ?", (str(session_id),))
                conn.commit()
                return cursor.rowcount > 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM oauth_sessions WHERE expires_at <= ?",
                    (_time_key(now),),
                )
                conn.commit()
                return int(cursor.rowcount)

    # Leases

    def acquire_lease(self, connection_id: str, owner: str, expires_at: datetime, now: datetime) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_leases(connection_id, owner, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(connection_id) DO UPDATE SET
                        owner = excluded.owner,
                        expires_at = excluded.expires_at
                    WHERE sync_leases.expires_at <= ?
                    """,
                    (str(connection_id), str(owner), _time_key(expires_at), _time_key(now)),
                )
                conn.commit()
                return cursor.rowcount > 0

    def release_lease(self, connection_id: str, owner: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM sync_leases WHERE connection_id = ? AND owner = ?",
                    (str(connection_id), str(owner)),
                )
                conn.commit()

    # Sync history

    def record_sync_run(self, summary: SyncSummary) -> int:
        if summary.success:
            status = "success"
        elif summary.skipped:
            status = "skipped"
        elif summary.cancelled:
            status = "cancelled"
        else:
            status = "failed"
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, connection_id, family_id, provider, trigger, status,
                        message, duration_ms, added, updated, deleted
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _time_key(summary.run_at),
                        summary.connection_id,
                        summary.family_id,
                        summary.provider,
                        summary.trigger,
                        status,
                        summary.error_message or "",
                        int(summary.duration_ms),
                        int(summary.added),
                        int(summary.updated),
                        int(summary.deleted),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20, connection_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if connection_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, connection_id, family_id, provider, trigger, status,
                               message, duration_ms, added, updated, deleted
                        FROM sync_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_at, connection_id, family_id, provider, trigger, status,
                               message, duration_ms, added, updated, deleted
                        FROM sync_runs
                        WHERE connection_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(connection_id), max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]

    def prune_sync_runs(self, before: datetime) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM sync_runs WHERE run_at < ?", (_time_key(before),))
                conn.commit()
                return int(cursor.rowcount)

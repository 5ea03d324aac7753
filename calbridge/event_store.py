from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from calbridge.connection import CalendarConnection
from calbridge.models import ExternalCalendarEvent, utc_now


ADDED = "added"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


def event_fingerprint(event: ExternalCalendarEvent, color: str | None, assignees: list[str]) -> str:
    payload = event.to_dict()
    # Bookkeeping only; a provider bumping it without content changes is not an update.
    payload.pop("updated_at", None)
    payload["effective_color"] = color
    payload["assignees"] = sorted(assignees)
    return _hash_text(json.dumps(payload, sort_keys=True, ensure_ascii=False))


class EventStore:
    """Family events that originate from an external calendar, keyed by external id."""

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
        CREATE TABLE IF NOT EXISTS synced_events (
            family_id TEXT NOT NULL,
            calendar_key TEXT NOT NULL,
            external_id TEXT NOT NULL,
            connection_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            fingerprint TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (family_id, calendar_key, external_id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def upsert(self, connection: CalendarConnection, event: ExternalCalendarEvent) -> str:
        color = event.color or connection.color
        assignees = list(connection.assigned_member_ids)
        fingerprint = event_fingerprint(event, color, assignees)
        payload = event.to_dict()
        payload["color"] = color
        payload["assignees"] = assignees
        key = (connection.family_id, connection.calendar_key, event.external_id)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT fingerprint
                    FROM synced_events
                    WHERE family_id = ? AND calendar_key = ? AND external_id = ?
                    """,
                    key,
                ).fetchone()
                if row is not None and row["fingerprint"] == fingerprint:
                    return UNCHANGED
                conn.execute(
                    """
                    INSERT INTO synced_events(
                        family_id, calendar_key, external_id, connection_id, provider,
                        payload_json, fingerprint, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(family_id, calendar_key, external_id) DO UPDATE SET
                        connection_id = excluded.connection_id,
                        payload_json = excluded.payload_json,
                        fingerprint = excluded.fingerprint,
                        updated_at = excluded.updated_at
                    """,
                    (
                        *key,
                        connection.id,
                        connection.provider.value,
                        json.dumps(payload, ensure_ascii=False),
                        fingerprint,
                        utc_now().isoformat(),
                    ),
                )
                conn.commit()
        return ADDED if row is None else UPDATED

    def delete(self, family_id: str, calendar_key: str, external_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    DELETE FROM synced_events
                    WHERE family_id = ? AND calendar_key = ? AND external_id = ?
                    """,
                    (family_id, calendar_key, external_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def delete_calendar(self, family_id: str, calendar_key: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM synced_events WHERE family_id = ? AND calendar_key = ?",
                    (family_id, calendar_key),
                )
                conn.commit()
                return int(cursor.rowcount)

    def list_external_ids(self, family_id: str, calendar_key: str) -> set[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT external_id FROM synced_events WHERE family_id = ? AND calendar_key = ?",
                    (family_id, calendar_key),
                ).fetchall()
        return {str(row["external_id"]) for row in rows}

    def list_events(self, family_id: str, calendar_key: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if calendar_key is None:
                    rows = conn.execute(
                        """
                        SELECT calendar_key, connection_id, provider, payload_json
                        FROM synced_events
                        WHERE family_id = ?
                        ORDER BY calendar_key, external_id
                        """,
                        (family_id,),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT calendar_key, connection_id, provider, payload_json
                        FROM synced_events
                        WHERE family_id = ? AND calendar_key = ?
                        ORDER BY external_id
                        """,
                        (family_id, calendar_key),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = json.loads(row["payload_json"])
            item["calendar_key"] = row["calendar_key"]
            item["connection_id"] = row["connection_id"]
            item["provider"] = row["provider"]
            output.append(item)
        return output

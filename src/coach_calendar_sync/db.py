"""
SQLite persistence: settings store and session repository.

The schema matches the desktop application's database, so both can share one
file. Only ``sessions.google_event_id`` and ``sessions.status`` are ever
written by the sync code; trainees are read-only here.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from coach_calendar_sync.models import Session
from coach_calendar_sync.models import SessionStatus
from coach_calendar_sync.models import Trainee
from coach_calendar_sync.models import format_timestamp
from coach_calendar_sync.models import parse_timestamp

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = """
    s.id, s.trainee_id, s.start_time, s.end_time, s.location, s.status,
    s.notes, s.google_event_id,
    t.first_name, t.last_name, t.email, t.phone
"""

# Field name on Session -> column on the sessions table.
_PATCHABLE_FIELDS = {
    "remote_event_id": "google_event_id",
    "status": "status",
}


class AppDatabase:
    """Owns the SQLite connection and schema."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database file and create missing tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA busy_timeout = 5000")
        self._init_schema()

    def _init_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS trainees (
                id         TEXT PRIMARY KEY,
                first_name TEXT NOT NULL,
                last_name  TEXT,
                email      TEXT,
                phone      TEXT,
                status     TEXT DEFAULT 'active',
                created_at TEXT DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id              TEXT PRIMARY KEY,
                trainee_id      TEXT,
                start_time      TEXT,
                end_time        TEXT,
                location        TEXT,
                status          TEXT,
                notes           TEXT,
                google_event_id TEXT,
                FOREIGN KEY (trainee_id) REFERENCES trainees(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS sent_messages (
                id           TEXT PRIMARY KEY,
                trainee_id   TEXT,
                template_id  TEXT,
                channel      TEXT,
                sent_at      TEXT DEFAULT (datetime('now')),
                context_json TEXT,
                FOREIGN KEY (trainee_id) REFERENCES trainees(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS settings (
                key   TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self._migrate_if_needed()
        self.conn.executescript("""
            CREATE INDEX IF NOT EXISTS idx_sessions_time ON sessions(start_time, end_time);
            CREATE INDEX IF NOT EXISTS idx_sessions_google ON sessions(google_event_id);
            CREATE INDEX IF NOT EXISTS idx_sent_messages_session ON sent_messages(session_id);
            CREATE INDEX IF NOT EXISTS idx_sent_messages_sentat ON sent_messages(sent_at);
        """)
        self.conn.commit()

    def _migrate_if_needed(self):
        """Add columns that older databases were created without."""
        columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(sessions)")}
        if "google_event_id" not in columns:
            logger.info("Migrating database: adding sessions.google_event_id")
            self.conn.execute("ALTER TABLE sessions ADD COLUMN google_event_id TEXT")

        columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(sent_messages)")}
        if "session_id" not in columns:
            logger.info("Migrating database: adding sent_messages.session_id")
            self.conn.execute("ALTER TABLE sent_messages ADD COLUMN session_id TEXT")
            # Older rows only carry the session id inside context_json.
            self.conn.execute("""
                UPDATE sent_messages
                SET session_id = json_extract(context_json, '$.sessionId')
                WHERE json_valid(context_json) = 1
            """)

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


class SettingsStore:
    """Key/value settings. Structured values are stored as JSON text."""

    def __init__(self, db: AppDatabase):
        self.db = db

    def get(self, key: str, default: Any = None) -> Any:
        row = self.db.conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            return row["value"]

    def set(self, key: str, value: Any):
        raw = value if isinstance(value, str) else json.dumps(value)
        self.db.conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, raw),
        )
        self.db.commit()

    def delete(self, key: str):
        self.db.conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        self.db.commit()

    def items(self) -> list[tuple[str, str]]:
        """Return raw (key, stored text) pairs ordered by key."""
        cursor = self.db.conn.execute("SELECT key, value FROM settings ORDER BY key")
        return [(row["key"], row["value"]) for row in cursor.fetchall()]


def _row_to_session(row: sqlite3.Row) -> Session:
    trainee = None
    if row["trainee_id"] and row["first_name"] is not None:
        trainee = Trainee(
            id=row["trainee_id"],
            first_name=row["first_name"],
            last_name=row["last_name"] or "",
            email=row["email"] or None,
            phone=row["phone"] or None,
        )
    return Session(
        id=row["id"],
        start_time=parse_timestamp(row["start_time"]),
        end_time=parse_timestamp(row["end_time"]) if row["end_time"] else None,
        trainee=trainee,
        location=row["location"] or None,
        notes=row["notes"] or "",
        status=SessionStatus(row["status"] or SessionStatus.PLANNED),
        remote_event_id=row["google_event_id"] or None,
    )


class SessionRepository:
    """Session reads, the two patchable fields, and the sent-message log."""

    def __init__(self, db: AppDatabase):
        self.db = db

    def get_session_with_trainee(self, session_id: str) -> Session | None:
        row = self.db.conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions s "
            "LEFT JOIN trainees t ON t.id = s.trainee_id WHERE s.id = ?",
            (session_id,),
        ).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions_overlapping(self, start: str, end: str) -> list[Session]:
        """Sessions with start < end and (no end time or end time > start).

        Stored times may carry milliseconds or a UTC offset, so comparisons go
        through ``julianday()`` and order by instant rather than by text.
        """
        start_str = format_timestamp(parse_timestamp(start))
        end_str = format_timestamp(parse_timestamp(end))
        cursor = self.db.conn.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions s "
            "LEFT JOIN trainees t ON t.id = s.trainee_id "
            "WHERE julianday(s.start_time) < julianday(?) "
            "AND (s.end_time IS NULL OR julianday(s.end_time) > julianday(?)) "
            "ORDER BY julianday(s.start_time) ASC",
            (end_str, start_str),
        )
        return [_row_to_session(row) for row in cursor.fetchall()]

    def patch_session(self, session_id: str, **fields):
        """Update ``remote_event_id`` and/or ``status`` on one session."""
        unknown = set(fields) - set(_PATCHABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot patch session field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{_PATCHABLE_FIELDS[name]} = ?" for name in fields)
        values = [str(v) if isinstance(v, SessionStatus) else v for v in fields.values()]
        self.db.conn.execute(
            f"UPDATE sessions SET {assignments} WHERE id = ?",
            (*values, session_id),
        )
        self.db.commit()

    def record_sent_message(
        self,
        session_id: str,
        remote_event_id: str,
        sent_at: datetime,
        trainee_id: str | None = None,
    ):
        """Append an audit row for an invitation sent through the calendar."""
        at = format_timestamp(sent_at)
        context = {"sessionId": session_id, "eventId": remote_event_id, "at": at, "invited": True}
        self.db.conn.execute(
            "INSERT INTO sent_messages "
            "(id, trainee_id, template_id, channel, sent_at, context_json, session_id) "
            "VALUES (?, ?, NULL, 'google-calendar', ?, ?, ?)",
            (str(uuid.uuid4()), trainee_id, at, json.dumps(context), session_id),
        )
        self.db.commit()

    def list_sent_history(self, start: str, end: str) -> list[dict]:
        """Sessions with invitations sent in [start, end), newest session first.

        Rows written by the desktop app carry ``YYYY-MM-DD HH:MM:SS`` send times.
        """
        cursor = self.db.conn.execute(
            """
            SELECT
                s.id,
                s.start_time,
                s.end_time,
                s.location,
                COUNT(DISTINCT m.trainee_id) AS participants,
                MIN(m.sent_at)               AS first_sent_at,
                MAX(m.sent_at)               AS last_sent_at
            FROM sent_messages m
            JOIN sessions s ON s.id = m.session_id
            WHERE julianday(m.sent_at) >= julianday(?) AND julianday(m.sent_at) < julianday(?)
            GROUP BY s.id
            ORDER BY julianday(s.start_time) DESC
            """,
            (format_timestamp(parse_timestamp(start)), format_timestamp(parse_timestamp(end))),
        )
        return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Insert helpers                                                       #
    # ------------------------------------------------------------------ #

    def add_trainee(
        self,
        first_name: str,
        last_name: str = "",
        email: str | None = None,
        phone: str | None = None,
        trainee_id: str | None = None,
    ) -> str:
        trainee_id = trainee_id or str(uuid.uuid4())
        self.db.conn.execute(
            "INSERT INTO trainees (id, first_name, last_name, email, phone) VALUES (?, ?, ?, ?, ?)",
            (trainee_id, first_name, last_name, email, phone),
        )
        self.db.commit()
        return trainee_id

    def add_session(
        self,
        start_time: datetime,
        end_time: datetime | None = None,
        trainee_id: str | None = None,
        notes: str = "",
        location: str | None = None,
        status: SessionStatus = SessionStatus.PLANNED,
        remote_event_id: str | None = None,
        session_id: str | None = None,
    ) -> str:
        session_id = session_id or str(uuid.uuid4())
        self.db.conn.execute(
            "INSERT INTO sessions "
            "(id, trainee_id, start_time, end_time, location, status, notes, google_event_id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                trainee_id,
                format_timestamp(start_time),
                format_timestamp(end_time) if end_time else None,
                location,
                str(status),
                notes,
                remote_event_id,
            ),
        )
        self.db.commit()
        return session_id

"""
Unit tests for AppDatabase, SettingsStore and SessionRepository, plus settings
resolution on top of the store.
"""

import json
import sqlite3
from datetime import datetime

import pytest

from coach_calendar_sync.db import AppDatabase
from coach_calendar_sync.db import SessionRepository
from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.models import SessionStatus
from coach_calendar_sync.settings import CLIENT_ID_ENV
from coach_calendar_sync.settings import CLIENT_ID_KEY
from coach_calendar_sync.settings import MIN_INTERVAL_KEY
from coach_calendar_sync.settings import TIMEZONE_KEY
from coach_calendar_sync.settings import load_settings
from tests.conftest import make_session


class TestMigration:
    def test_old_database_gains_columns_and_backfills(self, db_path):
        """A desktop-app database from before calendar sync is upgraded in place."""
        conn = sqlite3.connect(db_path)
        conn.executescript("""
            CREATE TABLE sessions (
                id TEXT PRIMARY KEY, trainee_id TEXT, start_time TEXT, end_time TEXT,
                location TEXT, status TEXT, notes TEXT
            );
            CREATE TABLE sent_messages (
                id TEXT PRIMARY KEY, trainee_id TEXT, template_id TEXT, channel TEXT,
                sent_at TEXT, context_json TEXT
            );
            INSERT INTO sessions (id, start_time, status)
                VALUES ('S1', '2025-03-10T09:00:00Z', 'planned');
            INSERT INTO sent_messages (id, channel, sent_at, context_json)
                VALUES ('M1', 'whatsapp', '2025-03-01T10:00:00Z', '{"sessionId": "S1"}');
            INSERT INTO sent_messages (id, channel, sent_at, context_json)
                VALUES ('M2', 'whatsapp', '2025-03-01T10:00:00Z', 'not json');
        """)
        conn.commit()
        conn.close()

        with AppDatabase(db_path) as db:
            rows = db.conn.execute(
                "SELECT id, session_id FROM sent_messages ORDER BY id"
            ).fetchall()
            session = SessionRepository(db).get_session_with_trainee("S1")

        assert [(r["id"], r["session_id"]) for r in rows] == [("M1", "S1"), ("M2", None)]
        assert session.remote_event_id is None
        assert session.trainee is None

    def test_reopening_is_harmless(self, db_path):
        with AppDatabase(db_path) as db:
            SettingsStore(db).set("coach.name", "Dana")
        with AppDatabase(db_path) as db:
            assert SettingsStore(db).get("coach.name") == "Dana"


class TestSettingsStore:
    def test_structured_values_round_trip_as_json(self, settings_store):
        settings_store.set("google.tokens", {"access_token": "a", "expires_at": 1.5})

        assert settings_store.get("google.tokens") == {"access_token": "a", "expires_at": 1.5}

    def test_plain_strings_are_stored_raw(self, settings_store, app_db):
        settings_store.set("calendar.tz", "Europe/London")

        raw = app_db.conn.execute("SELECT value FROM settings WHERE key = 'calendar.tz'").fetchone()
        assert raw["value"] == "Europe/London"
        assert settings_store.get("calendar.tz") == "Europe/London"

    def test_missing_key_returns_default(self, settings_store):
        assert settings_store.get("nope") is None
        assert settings_store.get("nope", 7) == 7

    def test_overwrite_and_delete(self, settings_store):
        settings_store.set("coach.name", "A")
        settings_store.set("coach.name", "B")
        assert settings_store.get("coach.name") == "B"

        settings_store.delete("coach.name")
        assert settings_store.get("coach.name") is None

    def test_items_are_ordered_raw_pairs(self, settings_store):
        settings_store.set("b", 2)
        settings_store.set("a", "x")

        assert settings_store.items() == [("a", "x"), ("b", "2")]


class TestSessionRepository:
    def test_overlap_query(self, repository):
        """start < range end and (no end or end > range start), ordered by start."""
        inside = make_session(repository, start="2025-03-11T09:00:00Z")
        spanning = make_session(
            repository, start="2025-03-09T23:30:00Z", end="2025-03-10T00:30:00Z"
        )
        make_session(repository, start="2025-03-09T08:00:00Z", end="2025-03-09T09:00:00Z")
        make_session(repository, start="2025-03-17T00:00:00Z")
        # open-ended sessions that started before the range still overlap
        open_ended = make_session(repository, start="2025-03-01T09:00:00Z")

        sessions = repository.list_sessions_overlapping(
            "2025-03-10T00:00:00Z", "2025-03-17T00:00:00Z"
        )

        assert [s.id for s in sessions] == [open_ended, spanning, inside]

    def test_overlap_compares_instants_not_text(self, repository):
        """Millisecond and offset-stamped rows written by the desktop app."""
        conn = repository.db.conn
        conn.executemany(
            "INSERT INTO sessions (id, start_time, end_time, status) VALUES (?, ?, ?, 'planned')",
            [
                ("next-week", "2025-03-17T00:00:00.000Z", None),
                ("offset-before", "2025-03-10T01:00:00+02:00", "2025-03-10T02:00:00+02:00"),
                ("offset-inside", "2025-03-10T03:00:00+02:00", "2025-03-10T04:00:00+02:00"),
                ("millis-inside", "2025-03-16T23:00:00.000Z", "2025-03-17T00:00:00.000Z"),
            ],
        )
        conn.commit()

        sessions = repository.list_sessions_overlapping(
            "2025-03-10T00:00:00Z", "2025-03-17T00:00:00Z"
        )

        assert [s.id for s in sessions] == ["offset-inside", "millis-inside"]

    def test_range_accepts_offsets(self, repository):
        session_id = make_session(repository, start="2025-03-10T09:00:00Z")

        sessions = repository.list_sessions_overlapping(
            "2025-03-10T10:30:00+02:00", "2025-03-10T12:00:00+02:00"
        )

        assert [s.id for s in sessions] == [session_id]

    def test_session_joined_with_trainee(self, repository):
        session_id = make_session(repository, first_name="Noa", email="noa@example.com")

        session = repository.get_session_with_trainee(session_id)

        assert session.trainee.first_name == "Noa"
        assert session.trainee.email == "noa@example.com"
        assert session.start_time == datetime.fromisoformat("2025-03-10T09:00:00+00:00")

    def test_unknown_session_is_none(self, repository):
        assert repository.get_session_with_trainee("missing") is None

    def test_patch_only_remote_id_and_status(self, repository):
        session_id = make_session(repository)

        repository.patch_session(session_id, remote_event_id="evt_1", status=SessionStatus.SENT)
        session = repository.get_session_with_trainee(session_id)
        assert session.remote_event_id == "evt_1"
        assert session.status == SessionStatus.SENT

        repository.patch_session(session_id, remote_event_id=None)
        assert repository.get_session_with_trainee(session_id).remote_event_id is None

        with pytest.raises(ValueError, match="notes"):
            repository.patch_session(session_id, notes="changed")

    def test_record_sent_message_and_history(self, repository):
        first = make_session(repository, start="2025-03-10T09:00:00Z")
        second = make_session(repository, start="2025-03-12T09:00:00Z")
        sent_at = datetime.fromisoformat("2025-03-05T08:00:00+00:00")
        repository.record_sent_message(first, "evt_1", sent_at)
        repository.record_sent_message(second, "evt_2", sent_at)
        repository.record_sent_message(second, "evt_2", sent_at.replace(hour=9))

        rows = repository.list_sent_history("2025-03-01T00:00:00Z", "2025-03-08T00:00:00Z")

        assert [r["id"] for r in rows] == [second, first]
        assert rows[0]["first_sent_at"] == "2025-03-05T08:00:00Z"
        assert rows[0]["last_sent_at"] == "2025-03-05T09:00:00Z"

        context = json.loads(
            repository.db.conn.execute(
                "SELECT context_json FROM sent_messages WHERE session_id = ?", (first,)
            ).fetchone()["context_json"]
        )
        assert context == {
            "sessionId": first,
            "eventId": "evt_1",
            "at": "2025-03-05T08:00:00Z",
            "invited": True,
        }

    def test_history_includes_app_written_send_times(self, repository):
        session_id = make_session(repository)
        conn = repository.db.conn
        conn.executemany(
            "INSERT INTO sent_messages (id, channel, sent_at, session_id) "
            "VALUES (?, 'whatsapp', ?, ?)",
            [
                ("M1", "2025-03-07 23:30:00", session_id),
                ("M2", "2025-03-08 00:00:00", session_id),
            ],
        )
        conn.commit()

        rows = repository.list_sent_history("2025-03-01T00:00:00Z", "2025-03-08T00:00:00Z")

        assert [r["id"] for r in rows] == [session_id]
        assert rows[0]["first_sent_at"] == rows[0]["last_sent_at"] == "2025-03-07 23:30:00"

    def test_history_range_excludes_other_sends(self, repository):
        session_id = make_session(repository)
        repository.record_sent_message(
            session_id, "evt_1", datetime.fromisoformat("2025-02-01T08:00:00+00:00")
        )

        assert repository.list_sent_history("2025-03-01T00:00:00Z", "2025-03-08T00:00:00Z") == []


class TestLoadSettings:
    def test_defaults(self, settings_store):
        settings = load_settings(settings_store, environ={})

        assert settings.client_id is None
        assert settings.calendar_id == "primary"
        assert settings.min_interval_ms == 1200
        assert settings.timezone == "Asia/Jerusalem"
        assert settings.coach_name == "Fitness Coach"
        assert settings.auth_timeout_sec == 300.0

    def test_store_wins_over_environment(self, settings_store):
        assert load_settings(settings_store, {CLIENT_ID_ENV: "env"}).client_id == "env"

        settings_store.set(CLIENT_ID_KEY, "stored")
        assert load_settings(settings_store, {CLIENT_ID_ENV: "env"}).client_id == "stored"

    def test_numeric_values(self, settings_store):
        settings_store.set(MIN_INTERVAL_KEY, "500")
        assert load_settings(settings_store, environ={}).min_interval_ms == 500

        settings_store.set(MIN_INTERVAL_KEY, 750)
        assert load_settings(settings_store, environ={}).min_interval_ms == 750

    def test_invalid_number_falls_back(self, settings_store, caplog):
        settings_store.set(MIN_INTERVAL_KEY, "fast")

        assert load_settings(settings_store, environ={}).min_interval_ms == 1200
        assert "Ignoring invalid value" in caplog.text

    def test_blank_text_uses_default(self, settings_store):
        settings_store.set(TIMEZONE_KEY, "  ")

        assert load_settings(settings_store, environ={}).timezone == "Asia/Jerusalem"

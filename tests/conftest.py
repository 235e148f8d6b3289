"""
Shared pytest fixtures and session helpers.
"""

from datetime import datetime

import pytest

from coach_calendar_sync.db import AppDatabase
from coach_calendar_sync.db import SessionRepository
from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.models import parse_timestamp
from coach_calendar_sync.sync.reconcile import EventReconciler
from tests.fake_client import FakeCalendarApi

FIXED_NOW = datetime.fromisoformat("2025-03-09T12:00:00+00:00")


def make_session(
    repository: SessionRepository,
    start: str = "2025-03-10T09:00:00Z",
    end: str | None = None,
    first_name: str | None = "Alice",
    email: str | None = "alice@example.com",
    **kwargs,
) -> str:
    """Insert a session (and its trainee, unless ``first_name`` is None); return its id."""
    trainee_id = None
    if first_name is not None:
        trainee_id = repository.add_trainee(first_name, "Levi", email=email)
    return repository.add_session(
        parse_timestamp(start),
        end_time=parse_timestamp(end) if end else None,
        trainee_id=trainee_id,
        **kwargs,
    )


class FakeClock:
    """Monotonic clock whose time only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "coach.db"


@pytest.fixture
def app_db(db_path):
    with AppDatabase(db_path) as db:
        yield db


@pytest.fixture
def repository(app_db):
    return SessionRepository(app_db)


@pytest.fixture
def settings_store(app_db):
    return SettingsStore(app_db)


@pytest.fixture
def sync_settings():
    return SyncSettings(client_id="client-123", timezone="UTC", coach_name="Dana")


@pytest.fixture
def fake_api():
    return FakeCalendarApi()


@pytest.fixture
def reconciler(repository, fake_api, sync_settings):
    async def get_client():
        return fake_api

    return EventReconciler(
        repository, get_client, lambda: sync_settings, clock=lambda: FIXED_NOW
    )


@pytest.fixture
def fake_clock():
    return FakeClock()

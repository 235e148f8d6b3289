"""
CalendarSyncService — wires the credential manager, event cache, reconciler
and bulk dispatcher around one database and one HTTP client.
"""

import asyncio
import logging
import time
import webbrowser
from collections.abc import Awaitable
from collections.abc import Callable

import httpx

from coach_calendar_sync.auth import CredentialManager
from coach_calendar_sync.cache import RemoteEventCache
from coach_calendar_sync.db import AppDatabase
from coach_calendar_sync.db import SessionRepository
from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.models import RemoteEvent
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.settings import load_settings
from coach_calendar_sync.sync.dispatch import BulkDispatcher
from coach_calendar_sync.sync.dispatch import Throttle
from coach_calendar_sync.sync.reconcile import EventReconciler
from coach_calendar_sync.sync.utils import normalize_remote_event


class CalendarSyncService:
    """One instance per process and event loop; owns all mutable sync state."""

    def __init__(
        self,
        db: AppDatabase,
        http_client: httpx.AsyncClient | None = None,
        credentials: CredentialManager | None = None,
        open_browser: Callable[[str], object] = webbrowser.open,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.logger = logging.getLogger(__name__)
        self.settings_store = SettingsStore(db)
        self.repository = SessionRepository(db)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self.credentials = credentials or CredentialManager(
            self.settings_store, self.http_client, open_browser=open_browser
        )

        self.cache = RemoteEventCache(self._fetch_events, clock=clock)
        self.reconciler = EventReconciler(
            self.repository, self.credentials.get_client, self.settings
        )
        self.dispatcher = BulkDispatcher(
            self.repository, self.reconciler, self.settings, Throttle(clock=clock, sleep=sleep)
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def settings(self) -> SyncSettings:
        return load_settings(self.settings_store)

    async def _fetch_events(self, start: str, end: str) -> list[RemoteEvent]:
        client = await self.credentials.get_client()
        items = await client.list_events(self.settings().calendar_id, start, end)
        self.logger.debug(f"Fetched {len(items)} remote event(s) for {start} .. {end}")
        return [normalize_remote_event(item) for item in items]

    async def list_remote_events(self, start: str, end: str) -> list[RemoteEvent]:
        return await self.cache.list_events(start, end)

    def disconnect(self):
        """Drop the stored credential and every cached read.

        Session records keep their remote event ids; stale ones are recreated
        on their next upsert.
        """
        self.credentials.disconnect()
        self.cache.clear()

    async def aclose(self):
        if self._owns_http_client:
            await self.http_client.aclose()

"""
Short-lived read cache for remote event listings.

Entries are keyed by the literal (start, end) strings the caller passed, so
callers should use stable range boundaries. Concurrent reads of a key that is
already being fetched share the one in-flight request.

The maps are unsynchronised: one instance must only be used from one event
loop.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass

from coach_calendar_sync.models import RemoteEvent

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 60.0

FetchEvents = Callable[[str, str], Awaitable[list[RemoteEvent]]]


def _retrieve_exception(task: asyncio.Task):
    # Every waiter may have been cancelled before a shared fetch failed.
    if not task.cancelled():
        task.exception()


@dataclass
class _CacheEntry:
    fetched_at: float
    items: list[RemoteEvent]


class RemoteEventCache:
    def __init__(
        self,
        fetch: FetchEvents,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], _CacheEntry] = {}
        self._in_flight: dict[tuple[str, str], asyncio.Task] = {}

    async def list_events(self, start: str, end: str) -> list[RemoteEvent]:
        key = (start, end)
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.fetched_at < self.ttl:
            logger.debug(f"Event cache hit for {start} .. {end}")
            return entry.items

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key))
            task.add_done_callback(_retrieve_exception)
            self._in_flight[key] = task
        else:
            logger.debug(f"Joining in-flight event fetch for {start} .. {end}")
        # A cancelled caller must not cancel the fetch other callers share.
        return await asyncio.shield(task)

    async def _load(self, key: tuple[str, str]) -> list[RemoteEvent]:
        current = asyncio.current_task()
        try:
            items = await self._fetch(*key)
            # clear() may have run while we were waiting; don't repopulate.
            if self._in_flight.get(key) is current:
                self._entries[key] = _CacheEntry(self._clock(), items)
            return items
        finally:
            if self._in_flight.get(key) is current:
                del self._in_flight[key]

    def clear(self):
        """Drop cached entries and forget in-flight fetches."""
        self._entries.clear()
        self._in_flight.clear()

    def __len__(self) -> int:
        return len(self._entries)

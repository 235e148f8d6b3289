"""
Bulk invitation sending under an outbound rate limit.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from collections.abc import Callable

from coach_calendar_sync.db import SessionRepository
from coach_calendar_sync.models import SendOutcome
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.sync.reconcile import EventReconciler

logger = logging.getLogger(__name__)


class Throttle:
    """Enforces a minimum spacing between successive dispatch starts.

    The last-dispatch timestamp is kept across batches. Not thread-safe: one
    instance per event loop.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None

    async def wait(self, min_interval: float):
        if self._last_call is not None:
            delay = self._last_call + min_interval - self._clock()
            if delay > 0:
                logger.debug(f"Throttling for {delay:.3f}s")
                await self._sleep(delay)
        self._last_call = self._clock()


class BulkDispatcher:
    def __init__(
        self,
        repository: SessionRepository,
        reconciler: EventReconciler,
        get_settings: Callable[[], SyncSettings],
        throttle: Throttle | None = None,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.get_settings = get_settings
        self.throttle = throttle or Throttle()

    async def send_all_in_range(self, start: str, end: str) -> list[SendOutcome]:
        """Invite every session overlapping [start, end), in repository order.

        One session failing does not stop the batch; its error is recorded in
        its outcome instead.
        """
        sessions = self.repository.list_sessions_overlapping(start, end)
        min_interval = self.get_settings().min_interval_ms / 1000
        logger.info(f"Sending invitations for {len(sessions)} session(s)")

        outcomes: list[SendOutcome] = []
        for session in sessions:
            await self.throttle.wait(min_interval)
            try:
                event_id = await self.reconciler.upsert(session.id, include_attendee=True)
            except Exception as e:
                logger.warning(f"Failed to send invitation for session {session.id}: {e}")
                outcomes.append(SendOutcome(session_id=session.id, ok=False, error=str(e)))
            else:
                outcomes.append(
                    SendOutcome(session_id=session.id, ok=True, remote_event_id=event_id)
                )

        created = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(f"Created {created} of {len(outcomes)} invitation(s)")
        return outcomes

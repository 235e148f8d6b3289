"""
Request handlers returning uniform ``{"ok": ...}`` envelopes.

Transport-agnostic: the CLI calls these directly, and ``dispatch`` routes the
desktop app's channel names to them. No exception crosses this boundary.
"""

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import UTC
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from coach_calendar_sync.models import RemoteEvent
from coach_calendar_sync.models import Session
from coach_calendar_sync.models import format_timestamp
from coach_calendar_sync.sync import CalendarSyncService

logger = logging.getLogger(__name__)

Envelope = dict[str, Any]

HISTORY_DEFAULT_DAYS = 30


def session_to_dict(session: Session) -> dict[str, Any]:
    trainee = session.trainee
    return {
        "id": session.id,
        "traineeId": trainee.id if trainee else None,
        "firstName": trainee.first_name if trainee else None,
        "lastName": trainee.last_name if trainee else None,
        "email": trainee.email if trainee else None,
        "startTime": format_timestamp(session.start_time),
        "endTime": format_timestamp(session.end_time) if session.end_time else None,
        "location": session.location,
        "notes": session.notes,
        "status": str(session.status),
        "remoteEventId": session.remote_event_id,
    }


def remote_event_to_dict(event: RemoteEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "summary": event.summary,
        "start": event.start,
        "end": event.end,
        "allDay": event.all_day,
    }


def history_range(
    start: str | None, end: str | None, tz: tzinfo, now: datetime
) -> tuple[str, str]:
    """Whole-day bounds for a history query, in the coach's timezone.

    Runs from midnight of the first day to midnight after the last, so the end
    day is included. Missing bounds default to the last
    ``HISTORY_DEFAULT_DAYS`` days; naive values are read as local to ``tz``.
    """

    def day(value: str | None, default: datetime) -> date:
        if not value:
            return default.astimezone(tz).date()
        parsed = datetime.fromisoformat(value.strip())
        if parsed.tzinfo is None:
            return parsed.date()
        return parsed.astimezone(tz).date()

    first = day(start, now - timedelta(days=HISTORY_DEFAULT_DAYS))
    last = day(end, now) + timedelta(days=1)
    return (
        format_timestamp(datetime.combine(first, time.min, tzinfo=tz)),
        format_timestamp(datetime.combine(last, time.min, tzinfo=tz)),
    )


async def _envelope(
    operation: str, call: Callable[[], Awaitable[Envelope]], **on_error: Any
) -> Envelope:
    try:
        return await call()
    except Exception as e:
        logger.debug(f"{operation} failed: {e}", exc_info=True)
        return {"ok": False, "error": str(e), **on_error}


class CalendarHandlers:
    def __init__(self, service: CalendarSyncService):
        self.service = service

    async def list_sessions(self, start: str, end: str) -> Envelope:
        async def call():
            sessions = self.service.repository.list_sessions_overlapping(start, end)
            return {"ok": True, "sessions": [session_to_dict(s) for s in sessions]}

        return await _envelope("list sessions", call, sessions=[])

    async def send_invite(self, session_id: str) -> Envelope:
        return await self.upsert_session(session_id, include_attendee=True)

    async def send_all(self, start: str, end: str) -> Envelope:
        async def call():
            outcomes = await self.service.dispatcher.send_all_in_range(start, end)
            return {
                "ok": True,
                "results": [outcome.as_dict() for outcome in outcomes],
                "created": sum(1 for outcome in outcomes if outcome.ok),
                "total": len(outcomes),
            }

        return await _envelope("send all", call, results=[])

    async def list_events(self, start: str, end: str) -> Envelope:
        async def call():
            events = await self.service.list_remote_events(start, end)
            return {"ok": True, "items": [remote_event_to_dict(e) for e in events]}

        return await _envelope("list events", call, items=[])

    async def upsert_session(self, session_id: str, include_attendee: bool = False) -> Envelope:
        async def call():
            event_id = await self.service.reconciler.upsert(
                session_id, include_attendee=include_attendee
            )
            return {"ok": True, "remoteEventId": event_id}

        return await _envelope("upsert", call)

    async def delete_session_event(self, session_id: str) -> Envelope:
        async def call():
            skipped = await self.service.reconciler.delete(session_id)
            return {"ok": True, "skipped": True} if skipped else {"ok": True}

        return await _envelope("delete", call)

    async def disconnect(self) -> Envelope:
        async def call():
            self.service.disconnect()
            return {"ok": True}

        return await _envelope("disconnect", call)

    async def history(self, start: str | None = None, end: str | None = None) -> Envelope:
        async def call():
            tz = ZoneInfo(self.service.settings().timezone)
            range_start, range_end = history_range(start, end, tz, datetime.now(UTC))
            rows = self.service.repository.list_sent_history(range_start, range_end)
            return {"ok": True, "items": rows}

        return await _envelope("history", call, items=[])

    # ------------------------------------------------------------------ #
    # Channel routing                                                      #
    # ------------------------------------------------------------------ #

    async def dispatch(self, channel: str, payload: dict[str, Any] | None = None) -> Envelope:
        """Route a desktop-app channel name and payload to its handler."""
        payload = payload or {}
        routes: dict[str, Callable[[], Awaitable[Envelope]]] = {
            "invites:listWeek": lambda: self.list_sessions(payload["start"], payload["end"]),
            "invites:sendGoogle": lambda: self.send_invite(payload["sessionId"]),
            "invites:sendAllGoogle": lambda: self.send_all(payload["start"], payload["end"]),
            "google:listEvents": lambda: self.list_events(payload["start"], payload["end"]),
            "google:upsertSession": lambda: self.upsert_session(
                payload["sessionId"], include_attendee=bool(payload.get("withAttendee", False))
            ),
            "google:deleteForSession": lambda: self.delete_session_event(payload["sessionId"]),
            "google:disconnect": self.disconnect,
            "history:list": lambda: self.history(payload.get("start"), payload.get("end")),
        }
        route = routes.get(channel)
        if route is None:
            return {"ok": False, "error": f"Unknown channel: {channel}"}
        try:
            return await route()
        except KeyError as e:
            return {"ok": False, "error": f"Missing field in payload: {e.args[0]}"}

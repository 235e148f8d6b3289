"""
Session → remote event reconciliation (upsert and delete).

The remote calendar is not the source of truth: an event may have been
deleted there at any time, so both paths treat "already gone" as normal.
"""

import logging
from collections.abc import Awaitable
from collections.abc import Callable
from datetime import UTC
from datetime import datetime
from typing import Any

from coach_calendar_sync.db import SessionRepository
from coach_calendar_sync.google_client import GoogleCalendarClient
from coach_calendar_sync.models import NotFoundError
from coach_calendar_sync.models import RemoteApiError
from coach_calendar_sync.models import Session
from coach_calendar_sync.models import SessionStatus
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.models import format_timestamp
from coach_calendar_sync.sync.utils import is_not_found_error

logger = logging.getLogger(__name__)

GetClient = Callable[[], Awaitable[GoogleCalendarClient]]


def build_event_body(
    session: Session, settings: SyncSettings, include_attendee: bool
) -> dict[str, Any]:
    """Remote event payload for a session.

    An attendee is attached only when inviting and the trainee has an email;
    otherwise the event is a silent mirror with no attendees at all.
    """
    body: dict[str, Any] = {
        "summary": f"Training with {settings.coach_name}",
        "description": session.notes or "",
        "start": {
            "dateTime": format_timestamp(session.start_time),
            "timeZone": settings.timezone,
        },
        "end": {
            "dateTime": format_timestamp(session.effective_end),
            "timeZone": settings.timezone,
        },
        "reminders": {"useDefault": True},
    }
    if session.location:
        body["location"] = session.location
    trainee = session.trainee
    if include_attendee and trainee is not None and trainee.email:
        body["attendees"] = [{"email": trainee.email, "displayName": trainee.display_name}]
    return body


class EventReconciler:
    """Creates, updates and deletes the remote mirror of a local session."""

    def __init__(
        self,
        repository: SessionRepository,
        get_client: GetClient,
        get_settings: Callable[[], SyncSettings],
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.repository = repository
        self.get_client = get_client
        self.get_settings = get_settings
        self.clock = clock

    def _load(self, session_id: str) -> Session:
        session = self.repository.get_session_with_trainee(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    async def upsert(self, session_id: str, include_attendee: bool = False) -> str:
        """Create or update the session's remote event and return its id.

        A stored event id that the remote no longer knows is replaced by a
        freshly created event. Any other remote failure leaves local state
        untouched.
        """
        session = self._load(session_id)
        settings = self.get_settings()
        body = build_event_body(session, settings, include_attendee)
        send_updates = "all" if include_attendee else "none"
        client = await self.get_client()

        event_id = None
        if session.remote_event_id:
            try:
                response = await client.patch_event(
                    settings.calendar_id, session.remote_event_id, body, send_updates=send_updates
                )
                event_id = response.get("id") or session.remote_event_id
                logger.debug(f"Updated remote event {event_id} for session {session_id}")
            except RemoteApiError as e:
                if not is_not_found_error(e):
                    raise
                logger.info(
                    f"Remote event {session.remote_event_id} for session {session_id} "
                    "is gone, recreating"
                )

        if event_id is None:
            response = await client.insert_event(
                settings.calendar_id, body, send_updates=send_updates
            )
            event_id = response.get("id")
            if not event_id:
                raise RemoteApiError("Google Calendar did not return an event id")
            logger.debug(f"Created remote event {event_id} for session {session_id}")

        if event_id and event_id != session.remote_event_id:
            self.repository.patch_session(session_id, remote_event_id=event_id)

        if include_attendee:
            self.repository.patch_session(session_id, status=SessionStatus.SENT)
            self.repository.record_sent_message(
                session_id,
                event_id,
                self.clock(),
                trainee_id=session.trainee.id if session.trainee else None,
            )
            logger.info(f"Invitation sent for session {session_id} (event {event_id})")

        return event_id

    async def delete(self, session_id: str) -> bool:
        """Delete the session's remote event; return True when there was none.

        An event that is already gone on the remote side counts as deleted.
        """
        session = self.repository.get_session_with_trainee(session_id)
        if session is None or not session.remote_event_id:
            logger.debug(f"No remote event for session {session_id}, nothing to delete")
            return True

        settings = self.get_settings()
        client = await self.get_client()
        try:
            await client.delete_event(
                settings.calendar_id, session.remote_event_id, send_updates="all"
            )
        except RemoteApiError as e:
            if not is_not_found_error(e):
                raise
            logger.debug(f"Remote event {session.remote_event_id} already deleted")

        self.repository.patch_session(session_id, remote_event_id=None)
        logger.info(f"Removed remote event for session {session_id}")
        return False

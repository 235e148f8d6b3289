"""
Pure data models and error types — no sqlite or HTTP imports.
"""

from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from enum import StrEnum
from pathlib import Path

DEFAULT_DB = Path.home() / ".local/share/coach-calendar-sync.db"

# Remote events get a one-hour slot when the session has no end time.
DEFAULT_SESSION_LENGTH = timedelta(hours=1)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip())
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as RFC 3339 in UTC with a trailing ``Z``."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ConfigError(CalendarSyncError):
    """Required configuration (e.g. the OAuth client id) is missing."""


class AuthFlowError(CalendarSyncError):
    """The interactive authorization was denied, errored or timed out."""


class NotFoundError(CalendarSyncError):
    """A referenced local record does not exist."""


class RemoteApiError(CalendarSyncError):
    """The remote calendar API rejected a request or could not be reached.

    ``status_code`` is the HTTP status, or 0 for transport failures.
    """

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class TokenRefreshError(RemoteApiError):
    """Exchanging the refresh token for a new access token failed."""


class SessionStatus(StrEnum):
    PLANNED = "planned"
    SENT = "sent"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass
class Trainee:
    id: str
    first_name: str
    last_name: str = ""
    email: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Athlete"


@dataclass
class Session:
    """A session row joined with its (optional) trainee."""

    id: str
    start_time: datetime
    end_time: datetime | None = None
    trainee: Trainee | None = None
    location: str | None = None
    notes: str = ""
    status: SessionStatus = SessionStatus.PLANNED
    remote_event_id: str | None = None

    @property
    def effective_end(self) -> datetime:
        """End time for the outbound remote payload; never written back."""
        return self.end_time or self.start_time + DEFAULT_SESSION_LENGTH


@dataclass
class RemoteEvent:
    """Read-through projection of a remote calendar event."""

    id: str
    summary: str
    start: str | None
    end: str | None
    all_day: bool = False


@dataclass
class SendOutcome:
    """Per-session result of a bulk send."""

    session_id: str
    ok: bool
    remote_event_id: str | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        result: dict = {"sessionId": self.session_id, "ok": self.ok}
        if self.remote_event_id is not None:
            result["remoteEventId"] = self.remote_event_id
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class SyncSettings:
    """Per-install configuration resolved from the settings store."""

    client_id: str | None = None
    client_secret: str | None = None
    calendar_id: str = "primary"
    min_interval_ms: int = 1200
    timezone: str = "Asia/Jerusalem"
    coach_name: str = "Fitness Coach"
    auth_timeout_sec: float = 300.0


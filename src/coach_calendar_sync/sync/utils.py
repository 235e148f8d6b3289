"""
Stateless helpers shared by the reconcile and read paths.
"""

from typing import Any

from coach_calendar_sync.models import RemoteApiError
from coach_calendar_sync.models import RemoteEvent

# Google answers 404 for unknown event ids and 410 Gone for events that were
# deleted (e.g. by the user in their calendar app).
_NOT_FOUND_STATUS_CODES = frozenset({404, 410})


def is_not_found_error(e: Exception) -> bool:
    """Return True when the remote calendar reports the event does not exist.

    This distinguishes an externally-deleted event (which is harmless and
    should be handled silently) from genuine update/delete failures.
    """
    return isinstance(e, RemoteApiError) and e.status_code in _NOT_FOUND_STATUS_CODES


def event_boundary(value: Any) -> tuple[str | None, bool]:
    """Return (timestamp-or-date, is_all_day) for a Google start/end object.

    The timed ``dateTime`` wins; a date-only ``date`` marks an all-day event.
    """
    if not isinstance(value, dict):
        return None, False
    if value.get("dateTime"):
        return value["dateTime"], False
    if value.get("date"):
        return value["date"], True
    return None, False


def normalize_remote_event(item: dict[str, Any]) -> RemoteEvent:
    start, start_all_day = event_boundary(item.get("start"))
    end, _ = event_boundary(item.get("end"))
    return RemoteEvent(
        id=item.get("id", ""),
        summary=item.get("summary") or "(no title)",
        start=start,
        end=end,
        all_day=start_all_day,
    )

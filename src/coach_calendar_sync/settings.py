"""
Resolve per-install configuration from the settings store.
"""

import logging
import os
from collections.abc import Mapping

from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.models import SyncSettings

logger = logging.getLogger(__name__)

# Settings-store keys recognised by the sync code.
CLIENT_ID_KEY = "google.clientId"
CLIENT_SECRET_KEY = "google.clientSecret"
CALENDAR_ID_KEY = "google.calendarId"
MIN_INTERVAL_KEY = "google.minIntervalMs"
AUTH_TIMEOUT_KEY = "google.authTimeoutSec"
TOKENS_KEY = "google.tokens"
TIMEZONE_KEY = "calendar.tz"
COACH_NAME_KEY = "coach.name"

KNOWN_KEYS = (
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    CALENDAR_ID_KEY,
    MIN_INTERVAL_KEY,
    AUTH_TIMEOUT_KEY,
    TOKENS_KEY,
    TIMEZONE_KEY,
    COACH_NAME_KEY,
)

# Environment fallbacks for the OAuth client, used when the store has none.
CLIENT_ID_ENV = "GOOGLE_CLIENT_ID"
CLIENT_SECRET_ENV = "GOOGLE_CLIENT_SECRET"


def _text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(value, default, key: str):
    if value is None or value == "":
        return default
    try:
        return type(default)(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid value for {key}: {value!r}")
        return default


def load_settings(store: SettingsStore, environ: Mapping[str, str] | None = None) -> SyncSettings:
    """Read every recognised key, applying defaults and environment fallbacks."""
    environ = os.environ if environ is None else environ
    defaults = SyncSettings()
    return SyncSettings(
        client_id=_text(store.get(CLIENT_ID_KEY)) or _text(environ.get(CLIENT_ID_ENV)),
        client_secret=_text(store.get(CLIENT_SECRET_KEY)) or _text(environ.get(CLIENT_SECRET_ENV)),
        calendar_id=_text(store.get(CALENDAR_ID_KEY)) or defaults.calendar_id,
        min_interval_ms=_number(
            store.get(MIN_INTERVAL_KEY), defaults.min_interval_ms, MIN_INTERVAL_KEY
        ),
        timezone=_text(store.get(TIMEZONE_KEY)) or defaults.timezone,
        coach_name=_text(store.get(COACH_NAME_KEY)) or defaults.coach_name,
        auth_timeout_sec=_number(
            store.get(AUTH_TIMEOUT_KEY), defaults.auth_timeout_sec, AUTH_TIMEOUT_KEY
        ),
    )

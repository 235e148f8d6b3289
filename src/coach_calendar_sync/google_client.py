"""
Google Calendar v3 REST client and OAuth token handling over httpx.
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote
from urllib.parse import urlencode

import httpx

from coach_calendar_sync.models import AuthFlowError
from coach_calendar_sync.models import RemoteApiError
from coach_calendar_sync.models import TokenRefreshError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# Event read/write only; no calendar-list or account scopes.
CALENDAR_SCOPES = ("https://www.googleapis.com/auth/calendar.events",)
LOCAL_REDIRECT = "http://127.0.0.1:5174/oauth2callback"

LIST_MAX_RESULTS = 2500

# Access tokens are refreshed this many seconds before they expire.
_EXPIRY_SKEW_SECONDS = 60

TokensListener = Callable[[dict[str, Any]], None]


def _safe_error_message(response: httpx.Response) -> str:
    """Extract Google's error message without echoing the whole body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return " ".join(error["message"].split())[:200]
        if isinstance(error, str) and error.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return f"{error}: {' '.join(description.split())[:200]}"
            return error.strip()

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def tokens_from_response(payload: dict[str, Any], now: float) -> dict[str, Any]:
    """Turn a token-endpoint response into the stored token mapping.

    ``expires_in`` (relative) becomes ``expires_at`` (epoch seconds). Keys the
    endpoint did not send are left out, so merging never erases a stored
    refresh token.
    """
    tokens = {
        key: payload[key]
        for key in ("access_token", "refresh_token", "token_type", "scope", "id_token")
        if payload.get(key)
    }
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, int | float) and not isinstance(expires_in, bool):
        tokens["expires_at"] = now + expires_in
    return tokens


def build_authorization_url(
    client_id: str,
    state: str,
    redirect_uri: str = LOCAL_REDIRECT,
    scopes: tuple[str, ...] = CALENDAR_SCOPES,
) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def new_state() -> str:
    return secrets.token_urlsafe(32)


async def exchange_code(
    http_client: httpx.AsyncClient,
    client_id: str,
    client_secret: str | None,
    code: str,
    redirect_uri: str = LOCAL_REDIRECT,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    """Exchange an authorization code for the initial token set."""
    data = {
        "client_id": client_id,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": redirect_uri,
    }
    if client_secret:
        data["client_secret"] = client_secret
    try:
        response = await http_client.post(
            GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
        )
    except httpx.HTTPError as e:
        raise AuthFlowError(f"Token exchange request failed: {e}") from e

    if not response.is_success:
        raise AuthFlowError(
            f"Token exchange failed ({response.status_code}): {_safe_error_message(response)}"
        )
    try:
        payload = response.json()
    except ValueError as e:
        raise AuthFlowError("Token endpoint returned invalid JSON") from e
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise AuthFlowError("Token endpoint response is missing an access_token")
    return tokens_from_response(payload, clock())


class GoogleCredentials:
    """OAuth token set that refreshes itself and announces new tokens.

    Handlers registered with :meth:`on_tokens` receive only the fields the
    token endpoint returned on each refresh; merging into storage is their job.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str | None,
        tokens: dict[str, Any],
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._tokens = dict(tokens)
        self._http_client = http_client
        self._clock = clock
        self._listeners: list[TokensListener] = []
        self._refresh_lock = asyncio.Lock()

    @property
    def tokens(self) -> dict[str, Any]:
        return dict(self._tokens)

    def on_tokens(self, listener: TokensListener):
        self._listeners.append(listener)

    def is_fresh(self) -> bool:
        if not self._tokens.get("access_token"):
            return False
        expires_at = self._tokens.get("expires_at")
        if expires_at is None:
            # Unknown expiry: use the token until the API answers 401.
            return True
        return self._clock() < expires_at - _EXPIRY_SKEW_SECONDS

    async def get_access_token(self, force_refresh: bool = False) -> str:
        if not force_refresh and self.is_fresh():
            return self._tokens["access_token"]

        async with self._refresh_lock:
            if not force_refresh and self.is_fresh():
                return self._tokens["access_token"]
            await self._refresh()
            return self._tokens["access_token"]

    async def _refresh(self):
        refresh_token = self._tokens.get("refresh_token")
        if not refresh_token:
            raise TokenRefreshError("Access token expired and no refresh token is stored", 401)

        data = {
            "client_id": self.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret
        try:
            response = await self._http_client.post(
                GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        if not response.is_success:
            raise TokenRefreshError(
                f"Token refresh failed ({response.status_code}): {_safe_error_message(response)}",
                response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise TokenRefreshError(
                "Token endpoint returned invalid JSON", response.status_code
            ) from e
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TokenRefreshError("Token refresh response is missing an access_token")

        updated = tokens_from_response(payload, self._clock())
        self._tokens.update(updated)
        logger.debug("Google access token refreshed")
        for listener in self._listeners:
            listener(dict(updated))


class GoogleCalendarClient:
    """Thin async wrapper over the four event endpoints the sync code uses."""

    def __init__(self, credentials: GoogleCredentials, http_client: httpx.AsyncClient):
        self.credentials = credentials
        self._http_client = http_client

    async def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self.credentials.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Google Calendar request failed: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{GOOGLE_CALENDAR_API}{path}"
        response = await self._send(method, url, params, json_body, force_refresh=False)
        if response.status_code == 401:
            logger.debug("Google Calendar answered 401, retrying with a refreshed token")
            response = await self._send(method, url, params, json_body, force_refresh=True)

        if not response.is_success:
            raise RemoteApiError(
                f"Google Calendar API request failed ({response.status_code}): "
                f"{_safe_error_message(response)}",
                response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteApiError(
                "Google Calendar API returned invalid JSON", response.status_code
            ) from e
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _events_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def list_events(
        self,
        calendar_id: str,
        time_min: str,
        time_max: str,
        max_results: int = LIST_MAX_RESULTS,
    ) -> list[dict[str, Any]]:
        """Single-occurrence events in [time_min, time_max), ordered by start."""
        payload = await self._request(
            "GET",
            self._events_path(calendar_id),
            params={
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": max_results,
            },
        )
        items = payload.get("items")
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []

    async def insert_event(
        self, calendar_id: str, body: dict[str, Any], send_updates: str = "none"
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            self._events_path(calendar_id),
            params={"sendUpdates": send_updates},
            json_body=body,
        )

    async def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any], send_updates: str = "none"
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            self._events_path(calendar_id, event_id),
            params={"sendUpdates": send_updates},
            json_body=body,
        )

    async def delete_event(self, calendar_id: str, event_id: str, send_updates: str = "all"):
        await self._request(
            "DELETE",
            self._events_path(calendar_id, event_id),
            params={"sendUpdates": send_updates},
        )

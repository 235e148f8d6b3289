"""
Credential manager: stored Google tokens, refresh persistence, and the
one-time interactive authorization flow.
"""

import asyncio
import logging
import webbrowser
from collections.abc import Callable
from typing import Any

import httpx

from coach_calendar_sync.db import SettingsStore
from coach_calendar_sync.google_client import LOCAL_REDIRECT
from coach_calendar_sync.google_client import GoogleCalendarClient
from coach_calendar_sync.google_client import GoogleCredentials
from coach_calendar_sync.google_client import build_authorization_url
from coach_calendar_sync.google_client import exchange_code
from coach_calendar_sync.google_client import new_state
from coach_calendar_sync.models import AuthFlowError
from coach_calendar_sync.models import ConfigError
from coach_calendar_sync.models import SyncSettings
from coach_calendar_sync.oauth_callback import wait_for_callback
from coach_calendar_sync.settings import TOKENS_KEY
from coach_calendar_sync.settings import load_settings

logger = logging.getLogger(__name__)


def _usable(tokens: Any) -> bool:
    return isinstance(tokens, dict) and bool(
        tokens.get("access_token") or tokens.get("refresh_token")
    )


class CredentialManager:
    """Hands out authenticated calendar clients backed by the settings store."""

    def __init__(
        self,
        store: SettingsStore,
        http_client: httpx.AsyncClient,
        open_browser: Callable[[str], object] = webbrowser.open,
        redirect_uri: str = LOCAL_REDIRECT,
    ):
        self.store = store
        self.http_client = http_client
        self.open_browser = open_browser
        self.redirect_uri = redirect_uri
        self._auth_lock = asyncio.Lock()
        # Bumped on disconnect; clients from an older generation stop persisting.
        self._generation = 0

    def has_credential(self) -> bool:
        return _usable(self.store.get(TOKENS_KEY))

    async def get_client(self) -> GoogleCalendarClient:
        """Return a client for the stored credential, authorizing first if needed.

        No network call is made when a credential is already stored; an
        expired access token is refreshed lazily on the first API call.
        """
        settings = load_settings(self.store)
        if not settings.client_id:
            raise ConfigError("missing clientId")

        tokens = self.store.get(TOKENS_KEY)
        if not _usable(tokens):
            async with self._auth_lock:
                # Another caller may have finished the flow while we waited.
                tokens = self.store.get(TOKENS_KEY)
                if not _usable(tokens):
                    tokens = await self._authorize(settings)
                    self.store.set(TOKENS_KEY, tokens)
                    logger.info("Google Calendar authorization complete")

        return self._build_client(settings, tokens)

    def _build_client(self, settings: SyncSettings, tokens: dict) -> GoogleCalendarClient:
        credentials = GoogleCredentials(
            settings.client_id, settings.client_secret, tokens, self.http_client
        )
        generation = self._generation
        credentials.on_tokens(lambda tokens: self._persist_tokens(tokens, generation))
        return GoogleCalendarClient(credentials, self.http_client)

    def _persist_tokens(self, tokens: dict[str, Any], generation: int):
        """Merge refreshed fields over the stored set; unrelated fields survive.

        Refreshes from a client handed out before the last disconnect are
        dropped, as are refreshes with no stored credential to merge into.
        """
        if not tokens:
            return
        previous = self.store.get(TOKENS_KEY)
        if generation != self._generation or not _usable(previous):
            logger.debug("Dropping token refresh for a disconnected credential")
            return
        merged = {**previous, **tokens}
        self.store.set(TOKENS_KEY, merged)
        logger.debug("Persisted refreshed Google tokens")

    async def _authorize(self, settings: SyncSettings) -> dict[str, Any]:
        state = new_state()
        auth_url = build_authorization_url(settings.client_id, state, self.redirect_uri)
        logger.info("Opening browser for Google Calendar authorization...")

        params = await wait_for_callback(
            self.redirect_uri,
            timeout=settings.auth_timeout_sec or None,
            on_listening=lambda: self.open_browser(auth_url),
        )
        if params.get("error"):
            raise AuthFlowError(params["error"])
        if params.get("state") != state:
            raise AuthFlowError("OAuth state mismatch")
        code = params.get("code")
        if not code:
            raise AuthFlowError("missing authorization code")

        return await exchange_code(
            self.http_client,
            settings.client_id,
            settings.client_secret,
            code,
            redirect_uri=self.redirect_uri,
        )

    def disconnect(self):
        """Forget the stored credential so the next call re-authorizes."""
        self._generation += 1
        self.store.delete(TOKENS_KEY)
        logger.info("Google Calendar credential removed")

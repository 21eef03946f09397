"""Connector lifecycle: connect, authorize, and disconnect a user's calendar.

A user has at most one connector. Connecting a provider replaces whatever
was connected before; disconnecting is a soft delete that keeps the row but
clears its credentials.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from cellarsync.models import CaldavCredentials, Connector, ProviderName
from cellarsync.providers.base import CalendarCredentialError, CalendarProvider, CalendarSyncError
from cellarsync.providers.caldav import CaldavProvider
from cellarsync.providers.oauth import OAuthCalendarProvider
from cellarsync.stores import ConnectorStore
from cellarsync.vault import CredentialVault

logger = logging.getLogger(__name__)


class ConnectorService:
    def __init__(
        self,
        connector_store: ConnectorStore,
        vault: CredentialVault,
        providers: Mapping[ProviderName, CalendarProvider],
    ) -> None:
        self._store = connector_store
        self._vault = vault
        self._providers = dict(providers)

    def _oauth_provider(self, provider: ProviderName) -> OAuthCalendarProvider:
        adapter = self._providers.get(provider)
        if not isinstance(adapter, OAuthCalendarProvider):
            raise CalendarSyncError(f"{provider.value} is not configured for OAuth")
        return adapter

    async def _existing_id(self, user_id: str) -> str | None:
        existing = await self._store.get_for_user(user_id)
        return existing.id if existing is not None else None

    async def connect_caldav(self, user_id: str, username: str, password: str) -> Connector:
        """Validate credentials against the server, then store them encrypted.

        Raises CalendarCredentialError for rejected credentials and
        CalendarDiscoveryError when the server cannot be reached.
        """
        adapter = self._providers.get(ProviderName.CALDAV)
        if not isinstance(adapter, CaldavProvider):
            raise CalendarSyncError("CalDAV is not configured")
        username = username.strip()
        if not username or not password:
            raise CalendarCredentialError("CalDAV username and password are required")

        try:
            calendar = await adapter.discover(username, password)
        except CalendarCredentialError as exc:
            raise CalendarCredentialError("Invalid CalDAV username or password") from exc

        credentials = CaldavCredentials(username=username, password=self._vault.encrypt(password))
        connector = Connector.connected(
            user_id=user_id,
            credentials=credentials,
            connector_id=await self._existing_id(user_id),
        )
        stored = await self._store.upsert(connector)
        logger.info("Connected CalDAV calendar %s for user %s", calendar.url, user_id)
        return stored

    def authorization_url(
        self, provider: ProviderName, state: str, *, redirect_uri: str | None = None
    ) -> str:
        return self._oauth_provider(provider).authorization_url(state, redirect_uri=redirect_uri)

    async def connect_oauth(
        self,
        user_id: str,
        provider: ProviderName,
        code: str,
        *,
        redirect_uri: str | None = None,
    ) -> Connector:
        """Exchange an authorization code and switch the user to ``provider``."""
        credentials = await self._oauth_provider(provider).exchange_code(
            code, redirect_uri=redirect_uri
        )
        connector = Connector.connected(
            user_id=user_id,
            credentials=credentials,
            connector_id=await self._existing_id(user_id),
        )
        stored = await self._store.upsert(connector)
        logger.info("Connected %s calendar for user %s", provider.value, user_id)
        return stored

    async def disconnect(self, user_id: str) -> Connector | None:
        existing = await self._store.get_for_user(user_id)
        if existing is None:
            return None
        stored = await self._store.upsert(existing.disconnected())
        logger.info("Disconnected %s calendar for user %s", existing.name, user_id)
        return stored

"""Shared OAuth2 machinery for the Microsoft Graph and Google adapters.

Both providers use the authorization-code grant with offline access. The
stored token is reused until it is within ``TOKEN_REFRESH_BUFFER`` of
expiry, then refreshed at the provider token endpoint. A 400/401 from the
token endpoint means the grant was revoked: the connector is marked invalid
and persisted, and later runs skip it until the user reconnects.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx

from cellarsync.config import OAuthClientConfig
from cellarsync.core.metrics import ProviderMetrics
from cellarsync.models import Connector, GoogleCredentials, MicrosoftCredentials
from cellarsync.providers.base import (
    CalendarCredentialError,
    CalendarDraft,
    CalendarHandle,
    CalendarProvider,
    CalendarRequestError,
    CalendarSyncError,
    CalendarTokenRefreshError,
    safe_error_message,
)
from cellarsync.stores import ConnectorStore
from cellarsync.vault import token_is_usable

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = {429, 503}
MAX_ATTEMPTS = 3
BASE_BACKOFF_SECONDS = 1.0
DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return DEFAULT_EXPIRES_IN_SECONDS


class OAuthCalendarProvider(CalendarProvider):
    """Bearer-token adapter base: token lifecycle plus retrying requests."""

    credentials_type: type[MicrosoftCredentials] | type[GoogleCredentials]
    #: Retry timeouts and transport errors as well as 429/503 replies.
    retry_transport_errors = False

    def __init__(
        self,
        client: OAuthClientConfig,
        connector_store: ConnectorStore,
        *,
        display_timezone: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._client = client
        self._connector_store = connector_store
        self._display_timezone = display_timezone
        self._display_tz = ZoneInfo(display_timezone)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._metrics = ProviderMetrics(self.name.value)
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._refresh_waiters: dict[str, int] = {}

    # -- provider specifics ------------------------------------------------

    @property
    @abc.abstractmethod
    def token_url(self) -> str:
        """Token endpoint for code exchange and refresh."""

    @property
    @abc.abstractmethod
    def authorize_url(self) -> str:
        """Consent endpoint the user is redirected to."""

    @property
    @abc.abstractmethod
    def default_scope(self) -> str:
        """Scopes requested when the config does not override them."""

    @property
    @abc.abstractmethod
    def api_base_url(self) -> str:
        """Base URL calendar API paths are resolved against."""

    def authorization_params(self) -> dict[str, str]:
        """Provider-specific extras forcing a refresh token to be issued."""
        return {}

    @abc.abstractmethod
    async def update_event(
        self,
        handle: CalendarHandle,
        external_id: str,
        draft: CalendarDraft,
    ) -> bool:
        """Patch an event by id. Returns False when it no longer exists."""

    @property
    def scope(self) -> str:
        return self._client.scope or self.default_scope

    # -- consent -----------------------------------------------------------

    def authorization_url(self, state: str, *, redirect_uri: str | None = None) -> str:
        params = {
            "client_id": self._client.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri or self._client.redirect_uri or "",
            "scope": self.scope,
            "state": state,
            **self.authorization_params(),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str | None = None,
    ) -> MicrosoftCredentials | GoogleCredentials:
        """Trade an authorization code for a fresh credential set."""
        payload = await self._post_token(
            {
                "client_id": self._client.client_id,
                "client_secret": self._client.client_secret,
                "code": code,
                "redirect_uri": redirect_uri or self._client.redirect_uri or "",
                "grant_type": "authorization_code",
                "scope": self.scope,
            },
            operation="exchange_code",
        )
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise CalendarCredentialError(
                f"{self.name.value} did not issue a refresh token; offline access is required"
            )
        return self.credentials_type(
            access_token=self._access_token_from(payload),
            refresh_token=refresh_token.strip(),
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=str(payload.get("scope") or self.scope),
            expires_at=self._expiry_from(payload),
        )

    # -- token lifecycle ---------------------------------------------------

    def _oauth_credentials(self, connector: Connector) -> MicrosoftCredentials | GoogleCredentials:
        credentials = connector.credentials
        if not isinstance(credentials, self.credentials_type):
            raise CalendarCredentialError(f"Connector carries no {self.name.value} credentials")
        return credentials

    async def get_usable_access_token(
        self,
        connector: Connector,
        *,
        now: datetime | None = None,
    ) -> str | None:
        """Return a bearer token, refreshing it when within the expiry buffer.

        Returns None when the connector is inactive/invalid or the refresh
        grant has been revoked.
        """
        credentials = self._oauth_credentials(connector)
        if not credentials.is_usable:
            return None
        if token_is_usable(credentials, now=now):
            return credentials.access_token
        return await self.refresh_token(connector)

    @asynccontextmanager
    async def _user_refresh_lock(self, user_id: str) -> AsyncIterator[None]:
        """Per-user refresh lock, dropped once no caller holds or awaits it."""
        lock = self._refresh_locks.setdefault(user_id, asyncio.Lock())
        self._refresh_waiters[user_id] = self._refresh_waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refresh_waiters[user_id] -= 1
            if not self._refresh_waiters[user_id]:
                del self._refresh_waiters[user_id]
                del self._refresh_locks[user_id]

    async def _latest_credentials(
        self, connector: Connector
    ) -> MicrosoftCredentials | GoogleCredentials:
        stored = await self._connector_store.get_for_user(connector.user_id)
        if stored is not None and isinstance(stored.credentials, self.credentials_type):
            return stored.credentials
        return self._oauth_credentials(connector)

    async def refresh_token(self, connector: Connector) -> str | None:
        """Refresh and persist the connector's access token.

        Refreshes are serialized per user. Under the lock the stored
        connector is re-read: when another caller has already replaced the
        token this caller holds, that token is reused rather than spending
        the (possibly rotated) refresh token twice. Keeps the previous
        refresh token when the provider does not rotate it. On a 400/401 the
        connector is marked invalid and None returned.
        """
        held_access_token = self._oauth_credentials(connector).access_token
        async with self._user_refresh_lock(connector.user_id):
            credentials = await self._latest_credentials(connector)
            if not credentials.is_usable:
                connector.credentials = credentials
                return None
            if credentials.access_token != held_access_token and token_is_usable(credentials):
                logger.debug("%s token already refreshed by another caller", self.name.value)
                connector.credentials = credentials
                return credentials.access_token

            try:
                payload = await self._post_token(
                    {
                        "client_id": self._client.client_id,
                        "client_secret": self._client.client_secret,
                        "refresh_token": credentials.refresh_token,
                        "grant_type": "refresh_token",
                        "scope": self.scope,
                    },
                    operation="refresh_token",
                )
            except CalendarRequestError as exc:
                if exc.status_code not in (400, 401):
                    raise CalendarTokenRefreshError(
                        f"{self.name.value} token refresh failed ({exc.status_code}): {exc.message}"
                    ) from exc
                logger.warning(
                    "%s refresh token rejected (%d); marking connector invalid",
                    self.name.value,
                    exc.status_code,
                )
                connector.credentials = credentials.model_copy(update={"is_valid": False})
                await self._connector_store.save_credentials(connector)
                return None

            rotated = payload.get("refresh_token")
            updated = credentials.model_copy(
                update={
                    "access_token": self._access_token_from(payload),
                    "refresh_token": rotated.strip()
                    if isinstance(rotated, str) and rotated.strip()
                    else credentials.refresh_token,
                    "expires_at": self._expiry_from(payload),
                    "scope": str(payload.get("scope") or credentials.scope),
                    "is_valid": True,
                }
            )
            connector.credentials = updated
            await self._connector_store.save_credentials(connector)
            logger.info("Refreshed %s access token", self.name.value)
            return updated.access_token

    async def _post_token(self, data: dict[str, str], *, operation: str) -> dict[str, Any]:
        try:
            with self._metrics.track_call(operation) as call:
                response = await self._http_client.post(
                    self.token_url, data=data, headers={"Accept": "application/json"}
                )
                call.record_response(response.status_code)
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"{self.name.value} token endpoint request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                provider=self.name.value,
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                f"{self.name.value} token endpoint returned invalid JSON"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarTokenRefreshError(
                f"{self.name.value} token endpoint returned an unexpected payload"
            )
        return payload

    def _access_token_from(self, payload: dict[str, Any]) -> str:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                f"{self.name.value} token response is missing a non-empty access_token"
            )
        return access_token.strip()

    @staticmethod
    def _expiry_from(payload: dict[str, Any]) -> datetime:
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        return datetime.now(UTC) + timedelta(seconds=expires_in)

    # -- handle + requests -------------------------------------------------

    async def discover_calendar(self, connector: Connector) -> CalendarHandle:
        access_token = await self.get_usable_access_token(connector)
        if access_token is None:
            raise CalendarCredentialError(
                f"{self.name.value} authorization is no longer valid; reconnect the calendar"
            )
        return CalendarHandle(
            provider=self.name,
            url=self.api_base_url,
            access_token=access_token,
            connector=connector,
        )

    async def _request_once(
        self,
        handle: CalendarHandle,
        *,
        method: str,
        url: str,
        operation: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Authorization": f"Bearer {handle.access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        with self._metrics.track_call(operation) as call:
            response = await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
            call.record_response(response.status_code)
        return response

    async def _request_with_bearer(
        self,
        handle: CalendarHandle,
        *,
        method: str,
        path: str,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authenticated request with bounded retries.

        A 401 triggers one forced token refresh. 429/503 replies (and, when
        ``retry_transport_errors`` is set, timeouts and transport errors) are
        retried with exponential backoff, honouring Retry-After on 429.
        """
        url = path if path.startswith("http") else f"{self.api_base_url}{path}"
        attempt = 1
        refreshed = False
        while True:
            try:
                response = await self._request_once(
                    handle,
                    method=method,
                    url=url,
                    operation=operation,
                    params=params,
                    json_body=json_body,
                    extra_headers=extra_headers,
                )
            except httpx.HTTPError as exc:
                if not self.retry_transport_errors or attempt >= MAX_ATTEMPTS:
                    raise CalendarSyncError(
                        f"{self.name.value} calendar request failed: {type(exc).__name__}"
                    ) from exc
                backoff = BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "%s request failed (%s), retrying in %.1fs (attempt %d/%d)",
                    self.name.value,
                    type(exc).__name__,
                    backoff,
                    attempt,
                    MAX_ATTEMPTS,
                )
                await asyncio.sleep(backoff)
                attempt += 1
                continue

            if response.status_code == 401 and not refreshed and handle.connector is not None:
                refreshed = True
                access_token = await self.refresh_token(handle.connector)
                if access_token is None:
                    raise CalendarCredentialError(
                        f"{self.name.value} rejected the access token and the refresh grant"
                    )
                handle.access_token = access_token
                continue

            if response.status_code in RETRY_STATUS_CODES and attempt < MAX_ATTEMPTS:
                backoff = BASE_BACKOFF_SECONDS * (2 ** (attempt - 1))
                if response.status_code == 429:
                    retry_after_header = response.headers.get("Retry-After")
                    if retry_after_header is not None:
                        try:
                            backoff = float(retry_after_header)
                        except ValueError:
                            pass
                logger.warning(
                    "%s rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                    self.name.value,
                    response.status_code,
                    backoff,
                    attempt,
                    MAX_ATTEMPTS,
                )
                await asyncio.sleep(backoff)
                attempt += 1
                continue

            return response

    async def _request_json(
        self,
        handle: CalendarHandle,
        *,
        method: str,
        path: str,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            handle,
            method=method,
            path=path,
            operation=operation,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                provider=self.name.value,
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        if response.status_code == 204:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError(
                f"{self.name.value} returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError(f"{self.name.value} returned an unexpected JSON payload shape")
        return payload

    async def _delete_by_id(self, handle: CalendarHandle, path: str) -> bool:
        response = await self._request_with_bearer(
            handle, method="DELETE", path=path, operation="delete_event"
        )
        # 404 means the event was already deleted.
        if response.status_code == 404:
            logger.debug("%s event at %s already deleted", self.name.value, path)
            return True
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                provider=self.name.value,
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        return True

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

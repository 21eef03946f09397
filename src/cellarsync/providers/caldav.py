"""CalDAV adapter (Orange-style servers).

Discovery walks the standard principal -> calendar-home-set -> calendar
collection chain with PROPFIND and caches the result per username. Listing
is two-phase: a Depth 1 PROPFIND enumerates ``.ics`` resources, then each
resource is fetched and parsed on its own. CalDAV gives us no id we can
keep for published events, so deletes go through ``BestEffortMatcher``.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import TypeVar
from urllib.parse import quote, urljoin

import httpx

from cellarsync.config import CaldavConfig
from cellarsync.core.metrics import ProviderMetrics
from cellarsync.models import CaldavCredentials, Connector, NormalizedExternalEvent, ProviderName
from cellarsync.normalizer import normalize_caldav_event
from cellarsync.providers.base import (
    CalendarConflictError,
    CalendarCredentialError,
    CalendarDiscoveryError,
    CalendarDraft,
    CalendarHandle,
    CalendarProvider,
    CalendarRequestError,
    DiscoveredCalendar,
)
from cellarsync.providers.cache import CalendarHandleCache
from cellarsync.providers.ical import CaldavRawEvent, TimestampKind, build_calendar, parse_calendar
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.vault import CredentialVault, DecryptionError

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
DISCOVERY_BACKOFF_SECONDS = 1.0
# Replies on the calendar collection meaning the cached URL no longer exists.
STALE_COLLECTION_STATUSES = frozenset({404, 409, 410})

T = TypeVar("T")

_PRINCIPAL_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:current-user-principal/></d:prop></d:propfind>'
)
_HOME_SET_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">'
    "<d:prop><c:calendar-home-set/></d:prop></d:propfind>"
)
_COLLECTIONS_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/><d:displayname/></d:prop></d:propfind>'
)
_RESOURCES_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:getetag/><d:getcontenttype/></d:prop></d:propfind>'
)


def _tag(namespace: str, name: str) -> str:
    return f"{{{namespace}}}{name}"


@dataclass(frozen=True)
class _Resource:
    href: str
    etag: str | None = None


def _parse_multistatus(response: httpx.Response) -> ET.Element:
    try:
        return ET.fromstring(response.content)
    except ET.ParseError as exc:
        raise CalendarRequestError(
            provider=ProviderName.CALDAV.value,
            status_code=response.status_code,
            message=f"Malformed multistatus body: {exc}",
        ) from exc


def _find_href(root: ET.Element, prop: str, namespace: str = DAV_NS) -> str | None:
    node = root.find(f".//{_tag(namespace, prop)}/{_tag(DAV_NS, 'href')}")
    if node is None or not (node.text or "").strip():
        return None
    return node.text.strip()


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, CalendarRequestError) and exc.status_code >= 500


def _ensure_collection_url(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


class CaldavProvider(CalendarProvider):
    """Basic-auth CalDAV adapter with cached discovery."""

    def __init__(
        self,
        config: CaldavConfig,
        vault: CredentialVault,
        cache: CalendarHandleCache,
        *,
        display_tz: tzinfo,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self._config = config
        self._vault = vault
        self._cache = cache
        self._display_tz = display_tz
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._metrics = ProviderMetrics(ProviderName.CALDAV.value)

    @property
    def name(self) -> ProviderName:
        return ProviderName.CALDAV

    # -- transport ---------------------------------------------------------

    async def _dav_request(
        self,
        method: str,
        url: str,
        *,
        auth: httpx.BasicAuth,
        operation: str,
        depth: str | None = None,
        body: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers: dict[str, str] = {}
        if depth is not None:
            request_headers["Depth"] = depth
        if isinstance(body, str):
            request_headers["Content-Type"] = "application/xml; charset=utf-8"
        if headers:
            request_headers.update(headers)

        with self._metrics.track_call(operation) as call:
            response = await self._http_client.request(
                method, url, content=body, headers=request_headers, auth=auth
            )
            call.record_response(response.status_code)

        if response.status_code in (401, 403):
            raise CalendarCredentialError(
                f"CalDAV server rejected the credentials (HTTP {response.status_code})"
            )
        return response

    async def _propfind(
        self, url: str, *, auth: httpx.BasicAuth, body: str, depth: str, operation: str
    ) -> ET.Element:
        response = await self._dav_request(
            "PROPFIND", url, auth=auth, operation=operation, depth=depth, body=body
        )
        if response.status_code not in (200, 207):
            raise CalendarRequestError(
                provider=ProviderName.CALDAV.value,
                status_code=response.status_code,
                message=f"PROPFIND {url} failed",
            )
        return _parse_multistatus(response)

    # -- discovery ---------------------------------------------------------

    def _credentials(self, connector: Connector) -> tuple[str, str]:
        credentials = connector.credentials
        if not isinstance(credentials, CaldavCredentials):
            raise CalendarCredentialError("Connector carries no CalDAV credentials")
        try:
            password = self._vault.decrypt(credentials.password)
        except DecryptionError as exc:
            raise CalendarCredentialError(
                "Stored CalDAV password could not be decrypted; reconnect the calendar"
            ) from exc
        return credentials.username, password

    async def discover_calendar(self, connector: Connector) -> CalendarHandle:
        username, password = self._credentials(connector)
        discovered = self._cache.get(username)
        if discovered is None:
            discovered = await self.discover(username, password)
            self._cache.set(username, discovered)
        else:
            logger.debug("Using cached CalDAV calendar for %s", username)
        return CalendarHandle(
            provider=ProviderName.CALDAV,
            url=discovered.url,
            display_name=discovered.display_name,
            username=username,
            password=password,
        )

    async def discover(self, username: str, password: str) -> DiscoveredCalendar:
        """Run discovery against the server, bypassing the cache.

        Transport failures and 5xx replies are retried with linear backoff
        (1s, 2s, ...) up to ``discovery_max_retries`` times. Rejected
        credentials are never retried.
        """
        auth = httpx.BasicAuth(username, password)
        attempt = 0
        while True:
            try:
                return await self._discover_once(auth)
            except (httpx.TransportError, CalendarRequestError) as exc:
                if not _is_transient(exc):
                    raise
                if attempt >= self._config.discovery_max_retries:
                    raise CalendarDiscoveryError(
                        f"CalDAV discovery failed after {attempt + 1} attempt(s): {exc}"
                    ) from exc
                attempt += 1
                delay = DISCOVERY_BACKOFF_SECONDS * attempt
                logger.warning(
                    "CalDAV discovery failed (%s), retrying in %.1fs (attempt %d/%d)",
                    type(exc).__name__,
                    delay,
                    attempt,
                    self._config.discovery_max_retries,
                )
                await asyncio.sleep(delay)

    async def _discover_once(self, auth: httpx.BasicAuth) -> DiscoveredCalendar:
        server_url = _ensure_collection_url(self._config.server_url)

        root = await self._propfind(
            server_url, auth=auth, body=_PRINCIPAL_BODY, depth="0", operation="discover"
        )
        principal_href = _find_href(root, "current-user-principal")
        if principal_href is None:
            raise CalendarDiscoveryError("CalDAV server did not report a current-user-principal")
        principal_url = urljoin(server_url, principal_href)

        root = await self._propfind(
            principal_url, auth=auth, body=_HOME_SET_BODY, depth="0", operation="discover"
        )
        home_href = _find_href(root, "calendar-home-set", CALDAV_NS)
        if home_href is None:
            raise CalendarDiscoveryError("CalDAV principal has no calendar-home-set")
        home_url = _ensure_collection_url(urljoin(principal_url, home_href))

        root = await self._propfind(
            home_url, auth=auth, body=_COLLECTIONS_BODY, depth="1", operation="discover"
        )
        for response in root.iter(_tag(DAV_NS, "response")):
            resource_type = response.find(f".//{_tag(DAV_NS, 'resourcetype')}")
            if resource_type is None or resource_type.find(_tag(CALDAV_NS, "calendar")) is None:
                continue
            href = response.findtext(_tag(DAV_NS, "href"), default="").strip()
            if not href:
                continue
            display_name = response.findtext(f".//{_tag(DAV_NS, 'displayname')}")
            calendar = DiscoveredCalendar(
                url=_ensure_collection_url(urljoin(home_url, href)),
                display_name=display_name.strip() if display_name else None,
            )
            logger.info("Discovered CalDAV calendar %s", calendar.url)
            return calendar

        raise CalendarDiscoveryError("No calendar collection found under the calendar home")

    # -- listing -----------------------------------------------------------

    async def _list_resources(self, handle: CalendarHandle) -> list[_Resource]:
        root = await self._propfind(
            handle.url,
            auth=handle.basic_auth,
            body=_RESOURCES_BODY,
            depth="1",
            operation="list_events",
        )
        resources: list[_Resource] = []
        for response in root.iter(_tag(DAV_NS, "response")):
            href = response.findtext(_tag(DAV_NS, "href"), default="").strip()
            if not href.endswith(".ics"):
                continue
            etag = response.findtext(f".//{_tag(DAV_NS, 'getetag')}")
            resources.append(
                _Resource(href=urljoin(handle.url, href), etag=etag.strip() if etag else None)
            )
        return resources

    async def _fetch_resource(
        self, handle: CalendarHandle, resource: _Resource
    ) -> list[CaldavRawEvent]:
        response = await self._dav_request(
            "GET", resource.href, auth=handle.basic_auth, operation="get_event"
        )
        if response.status_code != 200:
            raise CalendarRequestError(
                provider=ProviderName.CALDAV.value,
                status_code=response.status_code,
                message=f"GET {resource.href} failed",
            )
        return parse_calendar(response.content, href=resource.href, etag=resource.etag)

    async def _fetch_all(self, handle: CalendarHandle) -> list[CaldavRawEvent]:
        events: list[CaldavRawEvent] = []
        for resource in await self._list_resources(handle):
            try:
                events.extend(await self._fetch_resource(handle, resource))
            except (CalendarRequestError, httpx.TransportError, ValueError) as exc:
                logger.warning("Skipping unreadable CalDAV resource %s: %r", resource.href, exc)
        return events

    async def _on_collection(
        self, handle: CalendarHandle, operation: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``operation`` against ``handle.url``, rediscovering once if the URL is gone.

        Rejected credentials drop the cached calendar and propagate. A
        404/409/410 on the collection drops it too, then discovery runs again,
        ``handle`` is pointed at the new URL and ``operation`` is retried.
        """
        try:
            return await operation()
        except CalendarCredentialError:
            self._forget(handle)
            raise
        except CalendarRequestError as exc:
            if exc.status_code not in STALE_COLLECTION_STATUSES:
                raise
            if handle.username is None or handle.password is None:
                raise
            self._forget(handle)
            logger.info(
                "Cached CalDAV calendar %s returned %d; rediscovering", handle.url, exc.status_code
            )

        discovered = await self.discover(handle.username, handle.password)
        self._cache.set(handle.username, discovered)
        handle.url = discovered.url
        handle.display_name = discovered.display_name
        return await operation()

    def _forget(self, handle: CalendarHandle) -> None:
        if handle.username is not None:
            self._cache.invalidate(handle.username)

    async def list_events(
        self,
        handle: CalendarHandle,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[CaldavRawEvent]:
        first_day = window_start.date()
        last_day = window_end.date()
        events = await self._on_collection(handle, lambda: self._fetch_all(handle))
        return [event for event in events if _overlaps(event, first_day, last_day)]

    def normalize(self, raw_event: CaldavRawEvent) -> list[NormalizedExternalEvent]:
        return normalize_caldav_event(
            raw_event,
            display_tz=self._display_tz,
            no_zone_offset_hours=self._config.no_zone_offset_hours,
        )

    # -- writes ------------------------------------------------------------

    async def create_event(self, handle: CalendarHandle, draft: CalendarDraft) -> str:
        """Upload a new resource; refuses to overwrite an existing one."""
        uid, document = build_calendar(draft)

        async def put() -> None:
            resource_url = urljoin(handle.url, f"{quote(uid, safe='@')}.ics")
            response = await self._dav_request(
                "PUT",
                resource_url,
                auth=handle.basic_auth,
                operation="create_event",
                body=document,
                headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
            )
            if response.status_code == 412:
                raise CalendarConflictError(f"CalDAV resource already exists: {resource_url}")
            if response.status_code not in (200, 201, 204):
                raise CalendarRequestError(
                    provider=ProviderName.CALDAV.value,
                    status_code=response.status_code,
                    message=f"PUT {resource_url} failed",
                )

        await self._on_collection(handle, put)
        return uid

    async def delete_event(
        self,
        handle: CalendarHandle,
        *,
        external_id: str | None = None,
        matcher: BestEffortMatcher | None = None,
    ) -> bool:
        if matcher is None:
            raise ValueError("CalDAV deletes require a BestEffortMatcher")

        target = matcher.select(await self._on_collection(handle, lambda: self._fetch_all(handle)))
        if target is None or target.href is None:
            logger.warning(
                "No CalDAV resource matched %r on %s; nothing deleted",
                matcher.title,
                matcher.on_date,
            )
            return False

        response = await self._dav_request(
            "DELETE", target.href, auth=handle.basic_auth, operation="delete_event"
        )
        if response.status_code == 404:
            logger.debug("CalDAV resource %s already deleted", target.href)
            return True
        if response.status_code not in (200, 204):
            raise CalendarRequestError(
                provider=ProviderName.CALDAV.value,
                status_code=response.status_code,
                message=f"DELETE {target.href} failed",
            )
        logger.info("Deleted CalDAV resource %s (uid=%s)", target.href, target.uid)
        return True

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _overlaps(event: CaldavRawEvent, first_day: date, last_day: date) -> bool:
    """True when the event touches ``[first_day, last_day)``."""
    start_day = event.start.day
    end_day = start_day
    if event.start.kind is TimestampKind.DATE and event.end is not None:
        # DTEND of an all-day event is exclusive.
        end_day = max(start_day, event.end.day - timedelta(days=1))
    return start_day < last_day and end_day >= first_day

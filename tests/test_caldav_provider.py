"""Tests for the CalDAV adapter against a scripted httpx transport."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime
from zoneinfo import ZoneInfo

import httpx
import pytest

from cellarsync.config import CaldavConfig
from cellarsync.models import CaldavCredentials, Connector, ProviderName
from cellarsync.providers import caldav as caldav_module
from cellarsync.providers.base import (
    CalendarConflictError,
    CalendarCredentialError,
    CalendarDiscoveryError,
    CalendarDraft,
    CalendarHandle,
    CalendarRequestError,
)
from cellarsync.providers.cache import CalendarHandleCache
from cellarsync.providers.caldav import CaldavProvider
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.vault import CredentialVault
from conftest import caldav_connector

pytestmark = pytest.mark.unit

PARIS = ZoneInfo("Europe/Paris")
SERVER = "https://dav.example.com"
CALENDAR_PATH = "/calendars/owner/default/"

PRINCIPAL_XML = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response><d:href>/</d:href><d:propstat><d:prop>
    <d:current-user-principal><d:href>/principals/owner/</d:href></d:current-user-principal>
  </d:prop></d:propstat></d:response>
</d:multistatus>"""

HOME_SET_XML = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response><d:href>/principals/owner/</d:href><d:propstat><d:prop>
    <c:calendar-home-set><d:href>/calendars/owner/</d:href></c:calendar-home-set>
  </d:prop></d:propstat></d:response>
</d:multistatus>"""

COLLECTIONS_XML = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response><d:href>/calendars/owner/</d:href><d:propstat><d:prop>
    <d:resourcetype><d:collection/></d:resourcetype>
  </d:prop></d:propstat></d:response>
  <d:response><d:href>/calendars/owner/default/</d:href><d:propstat><d:prop>
    <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
    <d:displayname>Agenda</d:displayname>
  </d:prop></d:propstat></d:response>
</d:multistatus>"""

RESOURCES_XML = """<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response><d:href>/calendars/owner/default/</d:href></d:response>
  <d:response><d:href>/calendars/owner/default/a.ics</d:href><d:propstat><d:prop>
    <d:getetag>"etag-a"</d:getetag></d:prop></d:propstat></d:response>
  <d:response><d:href>/calendars/owner/default/b.ics</d:href></d:response>
  <d:response><d:href>/calendars/owner/default/broken.ics</d:href></d:response>
</d:multistatus>"""


def _ics(uid: str, summary: str, dtstart: str) -> str:
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n"
        f"BEGIN:VEVENT\r\nUID:{uid}\r\nSUMMARY:{summary}\r\nDTSTART:{dtstart}\r\n"
        "END:VEVENT\r\nEND:VCALENDAR\r\n"
    )


class FakeCaldavServer:
    """Routes requests by method and path; records everything it sees."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.overrides: dict[tuple[str, str], Callable[[], httpx.Response]] = {}
        self.put_status = 201
        self.removed_collections: set[str] = set()
        self.resources = {
            f"{CALENDAR_PATH}a.ics": _ics("evt-a", "Booking: Jane Doe", "20251015T130000"),
            f"{CALENDAR_PATH}b.ics": _ics("evt-b", "Dentist", "20251205T100000Z"),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key in self.overrides:
            return self.overrides[key]()
        match key:
            case ("PROPFIND", "/"):
                return httpx.Response(207, text=PRINCIPAL_XML)
            case ("PROPFIND", "/principals/owner/"):
                return httpx.Response(207, text=HOME_SET_XML)
            case ("PROPFIND", "/calendars/owner/"):
                return httpx.Response(207, text=COLLECTIONS_XML)
            case ("PROPFIND", path) if path == CALENDAR_PATH:
                return httpx.Response(207, text=RESOURCES_XML)
            case ("GET", path) if path in self.resources:
                return httpx.Response(200, text=self.resources[path])
            case ("GET", _):
                return httpx.Response(500, text="boom")
            case ("PUT", path) if any(path.startswith(c) for c in self.removed_collections):
                return httpx.Response(409)
            case ("PUT", _):
                return httpx.Response(self.put_status)
            case ("DELETE", _):
                return httpx.Response(204)
        return httpx.Response(404)

    def methods(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]


@pytest.fixture
def server() -> FakeCaldavServer:
    return FakeCaldavServer()


@pytest.fixture
def cache() -> CalendarHandleCache:
    return CalendarHandleCache()


@pytest.fixture
def provider(
    server: FakeCaldavServer, vault: CredentialVault, cache: CalendarHandleCache
) -> CaldavProvider:
    return CaldavProvider(
        CaldavConfig(server_url=SERVER),
        vault,
        cache,
        display_tz=PARIS,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
    )


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(caldav_module, "DISCOVERY_BACKOFF_SECONDS", 0.0)


def _handle() -> CalendarHandle:
    return CalendarHandle(
        provider=ProviderName.CALDAV,
        url=f"{SERVER}{CALENDAR_PATH}",
        username="owner@orange.fr",
        password="s3cret",
    )


class TestDiscovery:
    async def test_walks_principal_home_and_collection(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        handle = await provider.discover_calendar(caldav_connector(vault))

        assert handle.url == f"{SERVER}{CALENDAR_PATH}"
        assert handle.display_name == "Agenda"
        assert handle.password == "s3cret"
        assert server.methods() == [
            ("PROPFIND", "/"),
            ("PROPFIND", "/principals/owner/"),
            ("PROPFIND", "/calendars/owner/"),
        ]
        assert server.requests[0].headers["Authorization"].startswith("Basic ")
        assert server.requests[2].headers["Depth"] == "1"

    async def test_second_discovery_uses_cache(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        connector = caldav_connector(vault)
        await provider.discover_calendar(connector)
        await provider.discover_calendar(connector)
        assert len(server.requests) == 3

    async def test_rejected_credentials_are_not_retried(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        server.overrides[("PROPFIND", "/")] = lambda: httpx.Response(401)

        with pytest.raises(CalendarCredentialError):
            await provider.discover_calendar(caldav_connector(vault))
        assert len(server.requests) == 1

    async def test_transient_failure_is_retried(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        replies = iter([httpx.Response(503), httpx.Response(207, text=PRINCIPAL_XML)])
        server.overrides[("PROPFIND", "/")] = lambda: next(replies)

        handle = await provider.discover_calendar(caldav_connector(vault))

        assert handle.url == f"{SERVER}{CALENDAR_PATH}"
        assert server.methods()[:2] == [("PROPFIND", "/"), ("PROPFIND", "/")]

    async def test_gives_up_after_max_retries(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        server.overrides[("PROPFIND", "/")] = lambda: httpx.Response(502)

        with pytest.raises(CalendarDiscoveryError):
            await provider.discover_calendar(caldav_connector(vault))
        assert len(server.requests) == 3

    async def test_undecryptable_password(self, provider: CaldavProvider):
        connector = Connector.connected(
            user_id="user-1",
            credentials=CaldavCredentials(
                username="owner", password=CredentialVault("other-key").encrypt("x")
            ),
        )
        with pytest.raises(CalendarCredentialError, match="decrypted"):
            await provider.discover_calendar(connector)


class TestListing:
    async def test_lists_resources_in_window_and_skips_unreadable(
        self, provider: CaldavProvider, server: FakeCaldavServer
    ):
        events = await provider.list_events(
            _handle(),
            window_start=datetime(2025, 10, 1, tzinfo=PARIS),
            window_end=datetime(2025, 11, 1, tzinfo=PARIS),
        )

        assert [e.uid for e in events] == ["evt-a"]
        assert events[0].etag == '"etag-a"'
        assert ("GET", f"{CALENDAR_PATH}broken.ics") in server.methods()

    async def test_normalize_applies_floating_offset(self, provider: CaldavProvider):
        events = await provider.list_events(
            _handle(),
            window_start=datetime(2025, 10, 1, tzinfo=PARIS),
            window_end=datetime(2025, 11, 1, tzinfo=PARIS),
        )
        (normalized,) = provider.normalize(events[0])
        assert normalized.start_time == "18:00"

    async def test_transport_failure_on_one_resource_skips_it(
        self, provider: CaldavProvider, server: FakeCaldavServer
    ):
        def reset() -> httpx.Response:
            raise httpx.ConnectError("connection reset by peer")

        server.overrides[("GET", f"{CALENDAR_PATH}a.ics")] = reset

        events = await provider.list_events(
            _handle(),
            window_start=datetime(2025, 10, 1, tzinfo=PARIS),
            window_end=datetime(2026, 1, 1, tzinfo=PARIS),
        )

        assert [e.uid for e in events] == ["evt-b"]


MOVED_PATH = "/calendars/owner/work/"
OCTOBER = {
    "window_start": datetime(2025, 10, 1, tzinfo=PARIS),
    "window_end": datetime(2025, 11, 1, tzinfo=PARIS),
}


def _move_calendar(server: FakeCaldavServer) -> None:
    moved = COLLECTIONS_XML.replace(CALENDAR_PATH, MOVED_PATH)
    server.overrides[("PROPFIND", "/calendars/owner/")] = lambda: httpx.Response(207, text=moved)


class TestStaleCalendar:
    async def test_moved_collection_is_rediscovered_and_retried(
        self,
        provider: CaldavProvider,
        server: FakeCaldavServer,
        cache: CalendarHandleCache,
        vault: CredentialVault,
    ):
        connector = caldav_connector(vault)
        handle = await provider.discover_calendar(connector)
        _move_calendar(server)
        server.overrides[("PROPFIND", CALENDAR_PATH)] = lambda: httpx.Response(404)
        server.overrides[("PROPFIND", MOVED_PATH)] = lambda: httpx.Response(
            207, text=RESOURCES_XML
        )

        events = await provider.list_events(handle, **OCTOBER)

        assert [e.uid for e in events] == ["evt-a"]
        assert handle.url == f"{SERVER}{MOVED_PATH}"
        assert server.methods()[3:8] == [
            ("PROPFIND", CALENDAR_PATH),
            ("PROPFIND", "/"),
            ("PROPFIND", "/principals/owner/"),
            ("PROPFIND", "/calendars/owner/"),
            ("PROPFIND", MOVED_PATH),
        ]
        cached = cache.get("owner@orange.fr")
        assert cached is not None
        assert cached.url == f"{SERVER}{MOVED_PATH}"

        seen = len(server.requests)
        again = await provider.discover_calendar(connector)
        assert again.url == f"{SERVER}{MOVED_PATH}"
        assert len(server.requests) == seen

    async def test_create_after_move_lands_in_new_collection(
        self, provider: CaldavProvider, server: FakeCaldavServer, vault: CredentialVault
    ):
        handle = await provider.discover_calendar(caldav_connector(vault))
        _move_calendar(server)
        server.removed_collections.add(CALENDAR_PATH)

        draft = CalendarDraft(
            title="Booking: Jane Doe",
            start=datetime(2025, 10, 15, 13, 0),
            end=datetime(2025, 10, 15, 14, 0),
            timezone="Europe/Paris",
        )
        uid = await provider.create_event(handle, draft)

        puts = [r for r in server.requests if r.method == "PUT"]
        assert len(puts) == 2
        assert puts[0].url.path.startswith(CALENDAR_PATH)
        assert puts[1].url.path.startswith(MOVED_PATH)
        assert puts[1].url.path.endswith(".ics")
        assert uid.endswith("@cellarsync")

    async def test_rejected_credentials_drop_cached_calendar(
        self,
        provider: CaldavProvider,
        server: FakeCaldavServer,
        cache: CalendarHandleCache,
        vault: CredentialVault,
    ):
        handle = await provider.discover_calendar(caldav_connector(vault))
        server.overrides[("PROPFIND", CALENDAR_PATH)] = lambda: httpx.Response(401)

        with pytest.raises(CalendarCredentialError):
            await provider.list_events(handle, **OCTOBER)
        assert cache.get("owner@orange.fr") is None

    async def test_server_error_keeps_cached_calendar(
        self,
        provider: CaldavProvider,
        server: FakeCaldavServer,
        cache: CalendarHandleCache,
        vault: CredentialVault,
    ):
        handle = await provider.discover_calendar(caldav_connector(vault))
        server.overrides[("PROPFIND", CALENDAR_PATH)] = lambda: httpx.Response(500)

        with pytest.raises(CalendarRequestError):
            await provider.list_events(handle, **OCTOBER)
        assert cache.get("owner@orange.fr") is not None
        assert len(server.requests) == 4


class TestWrites:
    def _draft(self) -> CalendarDraft:
        return CalendarDraft(
            title="Booking: Jane Doe",
            start=datetime(2025, 10, 15, 13, 0),
            end=datetime(2025, 10, 15, 14, 0),
            timezone="Europe/Paris",
            description="Participants: 2 adult(s)",
        )

    async def test_create_puts_a_new_resource(
        self, provider: CaldavProvider, server: FakeCaldavServer
    ):
        uid = await provider.create_event(_handle(), self._draft())

        (request,) = server.requests
        assert request.method == "PUT"
        assert request.url.path.startswith(CALENDAR_PATH)
        assert request.url.path.endswith(".ics")
        assert request.headers["If-None-Match"] == "*"
        assert request.headers["Content-Type"].startswith("text/calendar")
        assert uid.endswith("@cellarsync")
        assert b"SUMMARY:Booking: Jane Doe" in request.content
        assert b"DTSTART:20251015T130000" in request.content

    async def test_create_conflict(self, provider: CaldavProvider, server: FakeCaldavServer):
        server.put_status = 412

        with pytest.raises(CalendarConflictError):
            await provider.create_event(_handle(), self._draft())

    async def test_delete_removes_matched_resource(
        self, provider: CaldavProvider, server: FakeCaldavServer
    ):
        matcher = BestEffortMatcher(
            title="Booking: Jane Doe", customer_name="Jane Doe", on_date=date(2025, 10, 15)
        )

        assert await provider.delete_event(_handle(), matcher=matcher) is True
        assert server.methods()[-1] == ("DELETE", f"{CALENDAR_PATH}a.ics")

    async def test_delete_without_match_deletes_nothing(
        self, provider: CaldavProvider, server: FakeCaldavServer
    ):
        matcher = BestEffortMatcher(title="Booking: John Smith", on_date=date(2025, 10, 15))

        assert await provider.delete_event(_handle(), matcher=matcher) is False
        assert all(method != "DELETE" for method, _ in server.methods())

    async def test_delete_requires_matcher(self, provider: CaldavProvider):
        with pytest.raises(ValueError):
            await provider.delete_event(_handle(), external_id="evt-a")

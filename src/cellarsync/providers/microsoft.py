"""Microsoft Graph calendar adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

from cellarsync.models import MicrosoftCredentials, NormalizedExternalEvent, ProviderName
from cellarsync.normalizer import normalize_graph_event
from cellarsync.providers.base import CalendarDraft, CalendarHandle, CalendarRequestError
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.providers.oauth import OAuthCalendarProvider

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_LOGIN_BASE_URL = "https://login.microsoftonline.com"
MICROSOFT_DEFAULT_SCOPE = "offline_access User.Read Calendars.ReadWrite"
CALENDAR_VIEW_PAGE_SIZE = 100


def _graph_local_datetime(value: datetime) -> str:
    return value.replace(tzinfo=None).isoformat(timespec="seconds")


def build_graph_event_body(draft: CalendarDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": draft.title,
        "body": {"contentType": "text", "content": draft.description},
        "start": {"dateTime": _graph_local_datetime(draft.start), "timeZone": draft.timezone},
        "end": {"dateTime": _graph_local_datetime(draft.end), "timeZone": draft.timezone},
        "isReminderOn": True,
    }
    if draft.attendee_email:
        body["attendees"] = [
            {
                "emailAddress": {
                    "address": draft.attendee_email,
                    "name": draft.attendee_name or draft.attendee_email,
                },
                "type": "required",
            }
        ]
    return body


class MicrosoftProvider(OAuthCalendarProvider):
    """Graph adapter: calendarView listing and per-event REST writes."""

    credentials_type = MicrosoftCredentials
    retry_transport_errors = True

    @property
    def name(self) -> ProviderName:
        return ProviderName.MICROSOFT

    @property
    def token_url(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._client.tenant}/oauth2/v2.0/token"

    @property
    def authorize_url(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE_URL}/{self._client.tenant}/oauth2/v2.0/authorize"

    @property
    def default_scope(self) -> str:
        return MICROSOFT_DEFAULT_SCOPE

    @property
    def api_base_url(self) -> str:
        return GRAPH_API_BASE_URL

    def authorization_params(self) -> dict[str, str]:
        return {"response_mode": "query"}

    def _timezone_header(self) -> dict[str, str]:
        return {"Prefer": f'outlook.timezone="{self._display_timezone}"'}

    async def list_events(
        self,
        handle: CalendarHandle,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[dict[str, Any]]:
        """Read the calendar view for the window, following ``@odata.nextLink``."""
        events: list[dict[str, Any]] = []
        path = "/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": window_start.isoformat(),
            "endDateTime": window_end.isoformat(),
            "$orderby": "start/dateTime",
            "$top": CALENDAR_VIEW_PAGE_SIZE,
        }
        while True:
            payload = await self._request_json(
                handle,
                method="GET",
                path=path,
                operation="list_events",
                params=params,
                extra_headers=self._timezone_header(),
            )
            items = payload.get("value")
            if isinstance(items, list):
                events.extend(item for item in items if isinstance(item, dict))
            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                return events
            # nextLink already carries every query parameter.
            path, params = next_link, None

    def normalize(self, raw_event: dict[str, Any]) -> list[NormalizedExternalEvent]:
        return normalize_graph_event(raw_event, display_tz=self._display_tz)

    async def create_event(self, handle: CalendarHandle, draft: CalendarDraft) -> str:
        payload = await self._request_json(
            handle,
            method="POST",
            path="/me/events",
            operation="create_event",
            json_body=build_graph_event_body(draft),
            extra_headers=self._timezone_header(),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarRequestError(
                provider=self.name.value,
                status_code=201,
                message="Graph create response carried no event id",
            )
        return event_id

    async def update_event(
        self,
        handle: CalendarHandle,
        external_id: str,
        draft: CalendarDraft,
    ) -> bool:
        try:
            await self._request_json(
                handle,
                method="PATCH",
                path=f"/me/events/{quote(external_id, safe='')}",
                operation="update_event",
                json_body=build_graph_event_body(draft),
                extra_headers=self._timezone_header(),
            )
        except CalendarRequestError as exc:
            if exc.status_code == 404:
                logger.warning("Graph event %s no longer exists; update skipped", external_id)
                return False
            raise
        return True

    async def delete_event(
        self,
        handle: CalendarHandle,
        *,
        external_id: str | None = None,
        matcher: BestEffortMatcher | None = None,
    ) -> bool:
        if not external_id:
            raise ValueError("Graph deletes require the stored external event id")
        return await self._delete_by_id(handle, f"/me/events/{quote(external_id, safe='')}")

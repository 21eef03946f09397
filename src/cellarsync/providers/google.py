"""Google Calendar adapter.

Reads and writes the user's primary calendar. Listing expands recurring
events server-side (``singleEvents``) and pages with ``nextPageToken``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from cellarsync.models import GoogleCredentials, NormalizedExternalEvent, ProviderName
from cellarsync.normalizer import normalize_google_event
from cellarsync.providers.base import CalendarDraft, CalendarHandle, CalendarRequestError
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.providers.oauth import OAuthCalendarProvider

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_DEFAULT_SCOPE = "https://www.googleapis.com/auth/calendar"
PRIMARY_EVENTS_PATH = "/calendars/primary/events"
LIST_PAGE_SIZE = 250
EMAIL_REMINDER_MINUTES = 24 * 60
POPUP_REMINDER_MINUTES = 30


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def build_google_event_body(draft: CalendarDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.title,
        "description": draft.description,
        "start": {
            "dateTime": draft.start.replace(tzinfo=None).isoformat(timespec="seconds"),
            "timeZone": draft.timezone,
        },
        "end": {
            "dateTime": draft.end.replace(tzinfo=None).isoformat(timespec="seconds"),
            "timeZone": draft.timezone,
        },
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "email", "minutes": EMAIL_REMINDER_MINUTES},
                {"method": "popup", "minutes": POPUP_REMINDER_MINUTES},
            ],
        },
    }
    if draft.attendee_email:
        attendee: dict[str, Any] = {"email": draft.attendee_email}
        if draft.attendee_name:
            attendee["displayName"] = draft.attendee_name
        body["attendees"] = [attendee]
    return body


class GoogleProvider(OAuthCalendarProvider):
    """Google adapter with OAuth refresh-token and authenticated request helpers."""

    credentials_type = GoogleCredentials

    @property
    def name(self) -> ProviderName:
        return ProviderName.GOOGLE

    @property
    def token_url(self) -> str:
        return GOOGLE_OAUTH_TOKEN_URL

    @property
    def authorize_url(self) -> str:
        return GOOGLE_OAUTH_AUTHORIZE_URL

    @property
    def default_scope(self) -> str:
        return GOOGLE_DEFAULT_SCOPE

    @property
    def api_base_url(self) -> str:
        return GOOGLE_CALENDAR_API_BASE_URL

    def authorization_params(self) -> dict[str, str]:
        return {"access_type": "offline", "prompt": "consent"}

    async def list_events(
        self,
        handle: CalendarHandle,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": LIST_PAGE_SIZE,
            "timeMin": _google_rfc3339(window_start),
            "timeMax": _google_rfc3339(window_end),
        }
        while True:
            payload = await self._request_json(
                handle,
                method="GET",
                path=PRIMARY_EVENTS_PATH,
                operation="list_events",
                params=params,
            )
            items = payload.get("items")
            if isinstance(items, list):
                events.extend(item for item in items if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return events
            params = {**params, "pageToken": page_token}

    def normalize(self, raw_event: dict[str, Any]) -> list[NormalizedExternalEvent]:
        return normalize_google_event(raw_event, display_tz=self._display_tz)

    async def create_event(self, handle: CalendarHandle, draft: CalendarDraft) -> str:
        payload = await self._request_json(
            handle,
            method="POST",
            path=PRIMARY_EVENTS_PATH,
            operation="create_event",
            json_body=build_google_event_body(draft),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarRequestError(
                provider=self.name.value,
                status_code=200,
                message="Google create response carried no event id",
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
                path=f"{PRIMARY_EVENTS_PATH}/{quote(external_id, safe='')}",
                operation="update_event",
                json_body=build_google_event_body(draft),
            )
        except CalendarRequestError as exc:
            if exc.status_code == 404:
                logger.warning("Google event %s no longer exists; update skipped", external_id)
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
            raise ValueError("Google deletes require the stored external event id")
        return await self._delete_by_id(
            handle, f"{PRIMARY_EVENTS_PATH}/{quote(external_id, safe='')}"
        )

"""Provider-agnostic calendar adapter contract.

This module defines:
- the ``CalendarSyncError`` hierarchy raised by every adapter
- ``CalendarHandle``: an opaque, per-run reference to one discovered calendar
- ``CalendarDraft``: the outbound event shape built from a booking
- ``CalendarProvider``: the interface each provider adapter implements
"""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

import httpx

from cellarsync.models import Connector, NormalizedExternalEvent, ProviderName

if TYPE_CHECKING:
    from cellarsync.providers.matching import BestEffortMatcher

ERROR_MESSAGE_MAX_LENGTH = 200


class CalendarSyncError(RuntimeError):
    """Base error raised by calendar adapters."""


class CalendarCredentialError(CalendarSyncError):
    """Raised when stored credentials are missing, undecryptable, or rejected."""


class CalendarTokenRefreshError(CalendarSyncError):
    """Raised when a refresh-token exchange fails for a reason other than revocation."""


class CalendarRequestError(CalendarSyncError):
    """Raised when a provider API request returns a non-success status."""

    def __init__(self, *, provider: str, status_code: int, message: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.message = message
        super().__init__(f"{provider} calendar request failed ({status_code}): {message}")


class CalendarDiscoveryError(CalendarSyncError):
    """Raised when no calendar collection could be located after all retries."""


class CalendarConflictError(CalendarSyncError):
    """Raised when a create would overwrite an existing resource."""


@dataclass(frozen=True)
class DiscoveredCalendar:
    """Cacheable result of calendar discovery (no secrets)."""

    url: str
    display_name: str | None = None


@dataclass
class CalendarHandle:
    """Reference to one calendar, valid for the duration of a single sync run.

    Carries whatever the adapter needs to authenticate follow-up calls:
    basic-auth credentials for CalDAV, the bearer token and owning connector
    for OAuth providers.
    """

    provider: ProviderName
    url: str
    display_name: str | None = None
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    access_token: str | None = field(default=None, repr=False)
    connector: Connector | None = field(default=None, repr=False)

    @property
    def basic_auth(self) -> httpx.BasicAuth:
        if self.username is None or self.password is None:
            raise CalendarCredentialError("Calendar handle carries no basic-auth credentials")
        return httpx.BasicAuth(self.username, self.password)


@dataclass
class CalendarDraft:
    """Outbound event derived from a booking; times are naive business-local."""

    title: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    attendee_email: str | None = None
    attendee_name: str | None = None
    uid: str | None = None

    @property
    def day(self) -> date:
        return self.start.date()


class CalendarProvider(abc.ABC):
    """Interface every external calendar adapter implements.

    The pipeline for one connector is ``discover_calendar`` ->
    ``list_events`` -> ``normalize`` and the outbound publisher uses the
    ``create_event``/``delete_event`` pair (OAuth adapters add
    ``update_event``).
    """

    @property
    @abc.abstractmethod
    def name(self) -> ProviderName:
        """Provider identity, matching ``Connector.name``."""

    @abc.abstractmethod
    async def discover_calendar(self, connector: Connector) -> CalendarHandle:
        """Resolve the connector's credentials into a usable calendar handle."""

    @abc.abstractmethod
    async def list_events(
        self,
        handle: CalendarHandle,
        *,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Any]:
        """Return provider-native events overlapping ``[window_start, window_end)``."""

    @abc.abstractmethod
    def normalize(self, raw_event: Any) -> list[NormalizedExternalEvent]:
        """Convert one provider-native event into zero or more normalized events."""

    @abc.abstractmethod
    async def create_event(self, handle: CalendarHandle, draft: CalendarDraft) -> str:
        """Create an event and return its external id."""

    @abc.abstractmethod
    async def delete_event(
        self,
        handle: CalendarHandle,
        *,
        external_id: str | None = None,
        matcher: BestEffortMatcher | None = None,
    ) -> bool:
        """Delete an event by id, or by best-effort match where ids are unavailable.

        Returns True when the event is gone afterwards (already-deleted counts).
        """

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


# ---------------------------------------------------------------------------
# Error message hygiene
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|password|token|code"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an error message."""
    redacted = re.sub(
        rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"\b(Bearer|Basic)\s+[A-Za-z0-9._~+/=-]{8,}", r"\1 [REDACTED]", redacted)
    return redacted


def sanitize_error(exc: BaseException) -> str:
    """Return a redacted, whitespace-normalized, truncated message for reports."""
    raw_message = str(exc) or type(exc).__name__
    return " ".join(redact_credential_values(raw_message).split())[:ERROR_MESSAGE_MAX_LENGTH]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short provider error message from a JSON or text body."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error(RuntimeError(message))
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error(RuntimeError(f"{error_payload}: {description}"))
            return sanitize_error(RuntimeError(error_payload))

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error(RuntimeError(raw_text))
    return "Request failed without an error payload"

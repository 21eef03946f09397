"""Domain models shared by the sync core.

This module defines:
- ``Connector`` and its tagged credential union (one branch per provider)
- ``Event``: the local calendar record written by reconciliation
- ``Booking``: the slice of a reservation the outbound publisher needs
- ``NormalizedExternalEvent``: provider-neutral event produced by normalization
- ``SyncReport``: the structured result of an orchestrator run
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EVENT_NAME_MAX_LENGTH = 200
_HHMM_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


class ProviderName(StrEnum):
    """Closed set of connector identities."""

    NONE = "none"
    CALDAV = "caldav"
    MICROSOFT = "microsoft"
    GOOGLE = "google"


class EventType(StrEnum):
    BOOKING = "booking"
    PERSONAL = "personal"
    EXTERNAL = "external"
    BLOCKED = "blocked"


class EventStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"


class SyncStatus(StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"
    UNKNOWN = "unknown"
    NOT_IMPLEMENTED = "not_implemented"


class RunState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially-failed"


def validate_hhmm(value: str) -> str:
    normalized = value.strip()
    if not _HHMM_PATTERN.match(normalized):
        raise ValueError(f"time must be HH:MM, got {value!r}")
    hours, minutes = normalized.split(":")
    return f"{int(hours):02d}:{minutes}"


# ---------------------------------------------------------------------------
# Credential union
# ---------------------------------------------------------------------------


class NoCredentials(BaseModel):
    """Placeholder branch for a disconnected connector."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["none"] = "none"

    @property
    def is_usable(self) -> bool:
        return False


class CaldavCredentials(BaseModel):
    """Basic-auth credentials; ``password`` holds vault ciphertext, never plaintext."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["caldav"] = "caldav"
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    is_active: bool = True
    is_valid: bool = True

    @property
    def is_usable(self) -> bool:
        return self.is_active and self.is_valid

    def __repr__(self) -> str:
        return (
            f"CaldavCredentials(username={self.username!r}, password=<REDACTED>, "
            f"is_active={self.is_active!r}, is_valid={self.is_valid!r})"
        )

    __str__ = __repr__


class _OAuthCredentials(BaseModel):
    """Token set shared by the Microsoft and Google branches."""

    model_config = ConfigDict(extra="forbid")

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    token_type: str = "Bearer"
    scope: str = ""
    expires_at: datetime
    account_email: str | None = None
    is_active: bool = True
    is_valid: bool = True
    connected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("expires_at", "connected_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @property
    def is_usable(self) -> bool:
        return self.is_active and self.is_valid

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"expires_at={self.expires_at.isoformat()!r}, scope={self.scope!r}, "
            f"is_active={self.is_active!r}, is_valid={self.is_valid!r})"
        )

    __str__ = __repr__


class MicrosoftCredentials(_OAuthCredentials):
    kind: Literal["microsoft"] = "microsoft"


class GoogleCredentials(_OAuthCredentials):
    kind: Literal["google"] = "google"


Credentials = Annotated[
    NoCredentials | CaldavCredentials | MicrosoftCredentials | GoogleCredentials,
    Field(discriminator="kind"),
]
OAuthCredentials = MicrosoftCredentials | GoogleCredentials


class Connector(BaseModel):
    """Per-user link to at most one external calendar provider.

    ``name`` is kept as the raw stored string so rows written by older
    deployments with an unrecognised provider still load; ``provider``
    returns ``None`` for those.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str | None = None
    user_id: str = Field(min_length=1)
    name: str = ProviderName.NONE.value
    credentials: Credentials = Field(default_factory=NoCredentials)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _credentials_match_provider(self) -> Connector:
        provider = self.provider
        if provider is None:
            return self
        if provider is ProviderName.NONE:
            if self.credentials.kind != "none":
                raise ValueError("a disconnected connector cannot carry credentials")
        elif self.credentials.kind not in (provider.value, "none"):
            raise ValueError(
                f"connector '{provider.value}' carries '{self.credentials.kind}' credentials"
            )
        return self

    @property
    def provider(self) -> ProviderName | None:
        try:
            return ProviderName(self.name)
        except ValueError:
            return None

    @classmethod
    def connected(
        cls,
        *,
        user_id: str,
        credentials: CaldavCredentials | MicrosoftCredentials | GoogleCredentials,
        connector_id: str | None = None,
    ) -> Connector:
        """Build a connector switched to ``credentials``' provider, clearing other branches."""
        return cls(id=connector_id, user_id=user_id, name=credentials.kind, credentials=credentials)

    def disconnected(self) -> Connector:
        return Connector(id=self.id, user_id=self.user_id, created_at=self.created_at)


# ---------------------------------------------------------------------------
# Local events and bookings
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """One occurrence on a user's local calendar."""

    id: str | None = None
    user_id: str
    booking_id: str | None = None
    name: str = Field(min_length=1, max_length=EVENT_NAME_MAX_LENGTH)
    event_date: date
    time: str
    end_time: str | None = None
    description: str | None = None
    event_type: EventType = EventType.PERSONAL
    external_calendar_source: str | None = None
    external_event_id: str | None = None
    status: EventStatus = EventStatus.ACTIVE
    is_all_day: bool = False

    @field_validator("time")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        return validate_hhmm(value)

    @field_validator("end_time")
    @classmethod
    def _validate_end_time(cls, value: str | None) -> str | None:
        return validate_hhmm(value) if value else None


class Booking(BaseModel):
    """A confirmed reservation, as much of it as calendar publishing reads."""

    id: str
    user_id: str
    service_id: str | None = None
    booking_date: date
    time: str
    customer_first_name: str = ""
    customer_last_name: str = ""
    customer_email: str | None = None
    customer_phone: str | None = None
    participants_adults: int = 0
    participants_children: int = 0
    notes: str | None = None
    external_event_id: str | None = None

    @field_validator("time")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        return validate_hhmm(value)

    @property
    def customer_name(self) -> str:
        return " ".join(
            part for part in (self.customer_first_name.strip(), self.customer_last_name.strip()) if part
        )

    @property
    def starts_at(self) -> datetime:
        hours, minutes = (int(part) for part in self.time.split(":"))
        day = self.booking_date
        return datetime(day.year, day.month, day.day, hours, minutes)


class NormalizedExternalEvent(BaseModel):
    """Provider-neutral event; times are HH:MM already projected to display time."""

    model_config = ConfigDict(frozen=True)

    uid: str = Field(min_length=1)
    title: str
    description: str | None = None
    is_all_day: bool = False
    start_date: date
    start_time: str
    end_time: str | None = None
    status: EventStatus = EventStatus.ACTIVE

    @field_validator("start_time")
    @classmethod
    def _validate_start(cls, value: str) -> str:
        return validate_hhmm(value)

    @field_validator("end_time")
    @classmethod
    def _validate_end(cls, value: str | None) -> str | None:
        return validate_hhmm(value) if value else None


# ---------------------------------------------------------------------------
# Sync report
# ---------------------------------------------------------------------------


@dataclass
class ReconcileCounts:
    """Per-batch outcome of the reconciliation engine."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def as_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
        }


class _ReportModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectorSyncResult(_ReportModel):
    connector_type: str
    user_id: str
    status: SyncStatus
    message: str
    events_synced: int | None = None
    counts: dict[str, int] | None = None


class SyncReportData(_ReportModel):
    total_processed: int = 0
    sync_results: list[ConnectorSyncResult] = Field(default_factory=list)


class SyncReport(_ReportModel):
    success: bool
    message: str
    data: SyncReportData = Field(default_factory=SyncReportData)

    def to_payload(self) -> dict[str, Any]:
        """Serialize with the camelCase keys ops tooling consumes."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

"""Outbound booking publisher.

Bookings are committed by the booking layer first; publishing them to the
owner's external calendar happens afterwards in background tasks. A failure
is logged and counted, never raised back into the booking path.

CalDAV has no update primitive, so an update is delete-then-create, and
deletes go through ``BestEffortMatcher``. Microsoft and Google events are
patched and deleted by the id stored on the booking at creation time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from datetime import timedelta
from typing import Any, Protocol

from cellarsync.core.logging import sync_context
from cellarsync.core.metrics import ProviderMetrics
from cellarsync.models import Booking, Connector, ProviderName
from cellarsync.providers.base import CalendarDraft, CalendarProvider, sanitize_error
from cellarsync.providers.matching import BestEffortMatcher
from cellarsync.providers.oauth import OAuthCalendarProvider
from cellarsync.stores import BookingStore, ConnectorStore

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60
PUBLISHED_TITLE_LABEL = "Booking"


class ServiceCatalog(Protocol):
    async def get_service_duration(self, user_id: str, service_id: str) -> int | None:
        """Duration in minutes, or None when unknown."""
        ...


def published_title(booking: Booking) -> str:
    return f"{PUBLISHED_TITLE_LABEL}: {booking.customer_name or 'Customer'}"


def booking_description(booking: Booking) -> str:
    lines = [f"Customer: {booking.customer_name}"] if booking.customer_name else []
    participants = f"{booking.participants_adults} adult(s)"
    if booking.participants_children:
        participants += f", {booking.participants_children} child(ren)"
    lines.append(f"Participants: {participants}")
    if booking.customer_email:
        lines.append(f"Email: {booking.customer_email}")
    if booking.customer_phone:
        lines.append(f"Phone: {booking.customer_phone}")
    if booking.notes:
        lines.append(f"Notes: {booking.notes}")
    return "\n".join(lines)


def _calendar_fields_changed(old: Booking, new: Booking) -> bool:
    return (
        old.booking_date != new.booking_date
        or old.time != new.time
        or old.customer_name != new.customer_name
    )


class BookingPublisher:
    """Pushes booking lifecycle changes to the owner's connected calendar."""

    def __init__(
        self,
        connector_store: ConnectorStore,
        booking_store: BookingStore,
        providers: Mapping[ProviderName, CalendarProvider],
        *,
        timezone: str,
        caldav_write_offset_hours: int = -1,
        catalog: ServiceCatalog | None = None,
    ) -> None:
        self._connector_store = connector_store
        self._booking_store = booking_store
        self._providers = dict(providers)
        self._timezone = timezone
        self._caldav_write_offset_hours = caldav_write_offset_hours
        self._catalog = catalog
        self._tasks: set[asyncio.Task[None]] = set()

    # -- fire-and-forget entry points -------------------------------------

    def on_booking_created(self, booking: Booking) -> asyncio.Task[None]:
        return self._spawn(self.publish_created(booking), f"publish-created-{booking.id}")

    def on_booking_updated(self, old: Booking, new: Booking) -> asyncio.Task[None]:
        return self._spawn(self.publish_updated(old, new), f"publish-updated-{new.id}")

    def on_booking_deleted(self, booking: Booking) -> asyncio.Task[None]:
        return self._spawn(self.publish_deleted(booking), f"publish-deleted-{booking.id}")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight publish tasks (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # -- awaitable publish operations -------------------------------------

    async def _resolve(self, user_id: str) -> tuple[Connector, CalendarProvider] | None:
        connector = await self._connector_store.get_for_user(user_id)
        if connector is None or connector.provider in (None, ProviderName.NONE):
            return None
        if not connector.credentials.is_usable:
            logger.debug("Connector for user %s is not usable; not publishing", user_id)
            return None
        adapter = self._providers.get(connector.provider)
        if adapter is None:
            logger.info("No %s adapter configured; not publishing", connector.provider.value)
            return None
        return connector, adapter

    async def _duration(self, booking: Booking) -> timedelta:
        minutes: int | None = None
        if self._catalog is not None and booking.service_id:
            try:
                minutes = await self._catalog.get_service_duration(
                    booking.user_id, booking.service_id
                )
            except Exception:
                logger.warning(
                    "Service duration lookup failed for %s", booking.service_id, exc_info=True
                )
        return timedelta(minutes=minutes if minutes and minutes > 0 else DEFAULT_DURATION_MINUTES)

    async def build_draft(self, booking: Booking, provider: ProviderName) -> CalendarDraft:
        start = booking.starts_at
        if provider is ProviderName.CALDAV:
            start += timedelta(hours=self._caldav_write_offset_hours)
        return CalendarDraft(
            title=published_title(booking),
            start=start,
            end=start + await self._duration(booking),
            timezone=self._timezone,
            description=booking_description(booking),
            attendee_email=booking.customer_email,
            attendee_name=booking.customer_name or None,
        )

    def _matcher(self, booking: Booking) -> BestEffortMatcher:
        start = booking.starts_at + timedelta(hours=self._caldav_write_offset_hours)
        return BestEffortMatcher(
            title=published_title(booking),
            customer_name=booking.customer_name or None,
            on_date=start.date(),
        )

    async def publish_created(self, booking: Booking) -> None:
        await self._publish("create", booking.user_id, self._create, booking)

    async def publish_updated(self, old: Booking, new: Booking) -> None:
        await self._publish("update", new.user_id, self._update, old, new)

    async def publish_deleted(self, booking: Booking) -> None:
        await self._publish("delete", booking.user_id, self._delete, booking)

    async def _publish(
        self,
        action: str,
        user_id: str,
        operation: Callable[..., Awaitable[None]],
        *bookings: Booking,
    ) -> None:
        resolved = await self._safe_resolve(user_id)
        if resolved is None:
            return
        connector, adapter = resolved
        metrics = ProviderMetrics(adapter.name.value)
        with sync_context(provider=adapter.name.value, user_id=user_id):
            try:
                await operation(connector, adapter, *bookings)
            except Exception as exc:
                metrics.record_publish(action, "error")
                logger.error(
                    "Failed to %s calendar event for booking %s: %s",
                    action,
                    bookings[-1].id,
                    sanitize_error(exc),
                    exc_info=True,
                )
                return
        metrics.record_publish(action, "success")

    async def _safe_resolve(self, user_id: str) -> tuple[Connector, CalendarProvider] | None:
        try:
            return await self._resolve(user_id)
        except Exception:
            logger.error("Could not load connector for user %s", user_id, exc_info=True)
            return None

    async def _create(
        self, connector: Connector, adapter: CalendarProvider, booking: Booking
    ) -> None:
        handle = await adapter.discover_calendar(connector)
        draft = await self.build_draft(booking, adapter.name)
        external_id = await adapter.create_event(handle, draft)
        if isinstance(adapter, OAuthCalendarProvider):
            await self._booking_store.set_external_event_id(booking.id, external_id)
        logger.info("Published booking %s to %s", booking.id, adapter.name.value)

    async def _update(
        self, connector: Connector, adapter: CalendarProvider, old: Booking, new: Booking
    ) -> None:
        if isinstance(adapter, OAuthCalendarProvider):
            external_id = new.external_event_id or old.external_event_id
            if not external_id:
                logger.info("Booking %s was never published; creating instead", new.id)
                await self._create(connector, adapter, new)
                return
            handle = await adapter.discover_calendar(connector)
            draft = await self.build_draft(new, adapter.name)
            if not await adapter.update_event(handle, external_id, draft):
                logger.warning("Calendar event for booking %s is gone; not recreated", new.id)
            return

        if not _calendar_fields_changed(old, new):
            logger.debug("Booking %s changed no calendar fields", new.id)
            return
        handle = await adapter.discover_calendar(connector)
        try:
            await adapter.delete_event(handle, matcher=self._matcher(old))
        except Exception as exc:
            # Best-effort delete: give up on the old event, still publish the new one.
            logger.warning(
                "Could not remove previous calendar event for booking %s: %s",
                old.id,
                sanitize_error(exc),
            )
        await adapter.create_event(handle, await self.build_draft(new, adapter.name))
        logger.info("Republished booking %s to %s", new.id, adapter.name.value)

    async def _delete(
        self, connector: Connector, adapter: CalendarProvider, booking: Booking
    ) -> None:
        if isinstance(adapter, OAuthCalendarProvider):
            if not booking.external_event_id:
                logger.info("Booking %s has no stored calendar event id", booking.id)
                return
            handle = await adapter.discover_calendar(connector)
            await adapter.delete_event(handle, external_id=booking.external_event_id)
            return
        handle = await adapter.discover_calendar(connector)
        if not await adapter.delete_event(handle, matcher=self._matcher(booking)):
            logger.info("Booking %s had no matching calendar event", booking.id)

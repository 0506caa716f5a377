"""One-way sync between the upstream calendar service and local storage.

Writes go to the upstream service first and are mirrored locally only after
it confirms them. The two steps are not atomic: when the local write fails
after a successful remote call, the error propagates and the remote change
stays un-mirrored. Reads are served exclusively from local storage.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from opentelemetry import trace

from calmirror.conflicts import check_conflicts, event_interval
from calmirror.errors import (
    NotFoundError,
    RemoteOperationError,
    RequestValidationError,
    format_error,
)
from calmirror.logging import set_user_context
from calmirror.models import (
    Calendar,
    ConflictResult,
    Credentials,
    Datespan,
    Event,
    EventCreate,
    EventFilter,
    EventPatch,
    EventUpdate,
    TimeBound,
    Timespan,
    build_when,
)
from calmirror.remote import CalendarClient
from calmirror.storage.base import StorageAdapter

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Credentials], CalendarClient]

_AUTH_FAILURE_STATUS_CODES = frozenset({401, 403})
_MISSING_BOUNDS = "event time window needs a start and an end"
_READ_ONLY_UPSTREAM = "read_only is set by the calendar provider"
# Patch fields with an upstream counterpart; "when" is sent as start/end.
_FORWARDED_PATCH_FIELDS = ("title", "description", "location", "busy", "participants")


def _when_bounds(when: Timespan | Datespan) -> tuple[TimeBound, TimeBound] | None:
    if isinstance(when, Timespan):
        if when.start_time is None or when.end_time is None:
            return None
        return when.start_time, when.end_time
    if when.start_date is None or when.end_date is None:
        return None
    return when.start_date, when.end_date


def _when_timezone(when: Timespan | Datespan) -> str | None:
    return when.start_timezone if isinstance(when, Timespan) else None


class EventSyncService:
    """Keeps the local store current with writes made through this service."""

    def __init__(self, adapter: StorageAdapter, client_factory: ClientFactory) -> None:
        self._adapter = adapter
        self._client_factory = client_factory
        self._tracer = trace.get_tracer("calmirror")

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    async def credentials_for(self, user_id: str) -> Credentials:
        credentials = await self._adapter.get_credentials(user_id)
        if credentials is None:
            raise NotFoundError(
                format_error(
                    "Failed to load credentials", f"No credentials found for user {user_id}"
                )
            )
        return credentials

    @asynccontextmanager
    async def client(self, user_id: str) -> AsyncIterator[CalendarClient]:
        """Yield a remote client built from *user_id*'s stored credentials."""
        credentials = await self.credentials_for(user_id)
        client = self._client_factory(credentials)
        try:
            yield client
        finally:
            await client.aclose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_event(self, user_id: str, calendar_id: str, event: Event) -> str:
        """Create *event* upstream, mirror it locally and return the upstream id."""
        set_user_context(user_id)
        with self._tracer.start_as_current_span("calmirror.sync.create_event") as span:
            span.set_attribute("calmirror.user_id", user_id)
            span.set_attribute("calmirror.calendar_id", calendar_id)

            bounds = _when_bounds(event.when)
            if bounds is None:
                raise RequestValidationError(
                    format_error("Failed to create event", _MISSING_BOUNDS)
                )
            params = EventCreate(
                calendar_id=calendar_id,
                title=event.title or "",
                start=bounds[0],
                end=bounds[1],
                timezone=_when_timezone(event.when),
                description=event.description,
                location=event.location,
                participants=event.participants,
            )

            async with self.client(user_id) as client:
                created = await client.create_event(params)

            if not created.id:
                raise RemoteOperationError(
                    "Failed to create event: Calendar API returned an event without an id"
                )
            span.set_attribute("calmirror.event_id", created.id)
            event_id = await self._adapter.store_event(created, user_id, calendar_id)
            logger.info("Created event %s in calendar %s", event_id, calendar_id)
            return event_id

    async def update_event(self, user_id: str, event_id: str, patch: EventPatch) -> None:
        """Apply *patch* upstream, then to the local record.

        Every field the patch sets explicitly, including cleared ones, is sent
        upstream so the local record never drifts from the remote one.
        """
        set_user_context(user_id)
        with self._tracer.start_as_current_span("calmirror.sync.update_event") as span:
            span.set_attribute("calmirror.user_id", user_id)
            span.set_attribute("calmirror.event_id", event_id)

            changes = patch.changes()
            cleared = patch.cleared_required_fields()
            if cleared:
                raise RequestValidationError(
                    format_error("Failed to update event", f"cannot clear {', '.join(cleared)}")
                )
            if "read_only" in changes:
                raise RequestValidationError(
                    format_error("Failed to update event", _READ_ONLY_UPSTREAM)
                )
            update_fields: dict[str, object] = {
                name: changes[name] for name in _FORWARDED_PATCH_FIELDS if name in changes
            }
            when = changes.get("when")
            if when is not None:
                bounds = _when_bounds(when)
                if bounds is None:
                    raise RequestValidationError(
                        format_error("Failed to update event", _MISSING_BOUNDS)
                    )
                update_fields.update(
                    start=bounds[0], end=bounds[1], timezone=_when_timezone(when)
                )

            current = await self._adapter.get_event(event_id)
            if current is None:
                raise NotFoundError(
                    format_error("Failed to update event", f"Event {event_id} not found")
                )
            span.set_attribute("calmirror.calendar_id", current.calendar_id)
            params = EventUpdate(calendar_id=current.calendar_id, **update_fields)

            async with self.client(user_id) as client:
                await client.update_event(event_id, params)

            await self._adapter.update_event(event_id, patch)
            logger.info("Updated event %s", event_id)

    async def delete_event(
        self, user_id: str, event_id: str, calendar_id: str | None = None
    ) -> None:
        """Delete the event upstream, then locally.

        The calendar id is taken from the local record when not given.
        """
        set_user_context(user_id)
        with self._tracer.start_as_current_span("calmirror.sync.delete_event") as span:
            span.set_attribute("calmirror.user_id", user_id)
            span.set_attribute("calmirror.event_id", event_id)

            if not calendar_id:
                current = await self._adapter.get_event(event_id)
                if current is None:
                    raise NotFoundError(
                        format_error("Failed to delete event", f"Event {event_id} not found")
                    )
                calendar_id = current.calendar_id
            span.set_attribute("calmirror.calendar_id", calendar_id)

            async with self.client(user_id) as client:
                await client.delete_event(event_id, calendar_id)

            await self._adapter.delete_event(event_id)
            logger.info("Deleted event %s from calendar %s", event_id, calendar_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_event(self, event_id: str) -> Event | None:
        return await self._adapter.get_event(event_id)

    async def get_events(self, filters: EventFilter | None = None) -> list[Event]:
        return await self._adapter.get_events(filters)

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def check_conflicts(
        self,
        user_id: str,
        start: TimeBound,
        end: TimeBound,
        *,
        calendar_id: str | None = None,
        exclude_id: str | None = None,
    ) -> ConflictResult:
        """Check ``[start, end)`` against the locally mirrored events."""
        interval = event_interval(build_when(start, end))
        filters = EventFilter(
            user_id=user_id,
            calendar_id=calendar_id,
            start_time=int(interval[0]) if interval is not None else None,
            end_time=int(interval[1]) if interval is not None else None,
        )
        existing = await self._adapter.get_events(filters)
        return check_conflicts(start, end, existing, exclude_id=exclude_id)

    async def check_remote_conflicts(
        self,
        user_id: str,
        start: TimeBound,
        end: TimeBound,
        *,
        calendar_id: str | None = None,
    ) -> ConflictResult:
        """Check ``[start, end)`` against what the upstream service lists."""
        set_user_context(user_id)
        with self._tracer.start_as_current_span("calmirror.sync.check_remote_conflicts") as span:
            span.set_attribute("calmirror.user_id", user_id)
            if calendar_id:
                span.set_attribute("calmirror.calendar_id", calendar_id)
            async with self.client(user_id) as client:
                return await client.check_time_conflicts(start, end, calendar_id)

    # ------------------------------------------------------------------
    # Calendars and credentials
    # ------------------------------------------------------------------

    async def refresh_calendars(self, user_id: str) -> list[Calendar]:
        """Mirror the upstream calendar list into local storage."""
        set_user_context(user_id)
        with self._tracer.start_as_current_span("calmirror.sync.refresh_calendars") as span:
            span.set_attribute("calmirror.user_id", user_id)
            async with self.client(user_id) as client:
                calendars = await client.list_calendars()
            for calendar in calendars:
                await self._adapter.store_calendar(user_id, calendar)
            logger.info("Refreshed %d calendar(s) for user %s", len(calendars), user_id)
            return calendars

    async def validate_credentials(self, user_id: str) -> bool:
        """Check the upstream service with the stored credentials.

        Credentials rejected with 401/403 are marked expired. Any other upstream
        failure propagates.
        """
        set_user_context(user_id)
        if await self._adapter.get_credentials(user_id) is None:
            return False
        try:
            await self.refresh_calendars(user_id)
        except RemoteOperationError as exc:
            if exc.status_code not in _AUTH_FAILURE_STATUS_CODES:
                raise
            logger.warning(
                "Upstream rejected credentials for user %s (status=%s); marking expired",
                user_id,
                exc.status_code,
            )
            await self._adapter.mark_credential_expired(user_id)
            return False
        return await self._adapter.has_valid_credential(user_id)

    async def disconnect(self, user_id: str) -> None:
        """Forget the stored credentials for *user_id*."""
        await self._adapter.delete_credentials(user_id)
        logger.info("Disconnected user %s", user_id)

"""Process-local storage backing for tests and development.

Nothing survives a restart. Every read returns a copy so callers cannot mutate
stored state.
"""

from __future__ import annotations

import uuid
from typing import Any

from calmirror.config import LoggingConfig, TableNames
from calmirror.conflicts import event_interval
from calmirror.errors import NotFoundError, format_error
from calmirror.models import Calendar, Credentials, Event, EventFilter, EventPatch
from calmirror.storage.base import StorageAdapter, utc_now_seconds


def _discard(index: dict[str, set[str]], key: str, value: str) -> None:
    members = index.get(key)
    if members is None:
        return
    members.discard(value)
    if not members:
        del index[key]


class InMemoryAdapter(StorageAdapter):
    """Dictionary-backed adapter with secondary indexes by user and calendar."""

    def __init__(
        self,
        *,
        tables: TableNames | None = None,
        auto_connect: bool = True,
        logging_config: LoggingConfig | None = None,
    ) -> None:
        super().__init__(tables=tables, auto_connect=auto_connect, logging_config=logging_config)
        self._credentials: dict[str, Credentials] = {}
        self._expired_users: set[str] = set()
        self._events: dict[str, Event] = {}
        self._calendars: dict[str, Calendar] = {}
        self._event_users: dict[str, str] = {}
        self._calendar_users: dict[str, str] = {}
        self._user_events: dict[str, set[str]] = {}
        self._calendar_events: dict[str, set[str]] = {}
        self._user_calendars: dict[str, set[str]] = {}

    async def _open(self) -> None:
        pass

    async def _close(self) -> None:
        pass

    def clear(self) -> None:
        """Drop every stored record."""
        self._credentials.clear()
        self._expired_users.clear()
        self._events.clear()
        self._calendars.clear()
        self._event_users.clear()
        self._calendar_users.clear()
        self._user_events.clear()
        self._calendar_events.clear()
        self._user_calendars.clear()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def store_credentials(self, user_id: str, credentials: Credentials) -> None:
        await self.ensure_connected()
        self._credentials[user_id] = credentials.model_copy(deep=True)
        self._expired_users.discard(user_id)
        self._log_operation(
            "upsert", self.tables.credentials, {"user_id": user_id, **credentials.model_dump()}
        )

    async def get_credentials(self, user_id: str) -> Credentials | None:
        await self.ensure_connected()
        credentials = self._credentials.get(user_id)
        return credentials.model_copy(deep=True) if credentials is not None else None

    async def delete_credentials(self, user_id: str) -> None:
        await self.ensure_connected()
        self._credentials.pop(user_id, None)
        self._expired_users.discard(user_id)
        self._log_operation("delete", self.tables.credentials, {"user_id": user_id})

    async def mark_credential_expired(self, user_id: str) -> None:
        await self.ensure_connected()
        credentials = self._credentials.get(user_id)
        if credentials is None:
            self._logger.warning("No credentials stored for user %s; nothing to expire", user_id)
            return
        self._credentials[user_id] = credentials.model_copy(update={"expires_at": 0})
        self._expired_users.add(user_id)
        self._log_operation(
            "update", self.tables.credentials, {"user_id": user_id, "grant_expired": True}
        )

    async def has_valid_credential(self, user_id: str) -> bool:
        await self.ensure_connected()
        credentials = self._credentials.get(user_id)
        if credentials is None or user_id in self._expired_users:
            return False
        if credentials.expires_at is None:
            return True
        return utc_now_seconds() < credentials.expires_at

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _unindex_event(self, event_id: str) -> None:
        previous = self._events.get(event_id)
        owner = self._event_users.pop(event_id, None)
        if owner is not None:
            _discard(self._user_events, owner, event_id)
        if previous is not None:
            _discard(self._calendar_events, previous.calendar_id, event_id)

    async def store_event(self, event: Event, user_id: str, calendar_id: str) -> str:
        await self.ensure_connected()
        event_id = event.id or str(uuid.uuid4())
        now = utc_now_seconds()

        self._unindex_event(event_id)
        stored = event.model_copy(
            deep=True,
            update={
                "id": event_id,
                "calendar_id": calendar_id,
                "created_at": event.created_at if event.created_at is not None else now,
                "updated_at": now,
            },
        )
        self._events[event_id] = stored
        self._event_users[event_id] = user_id
        self._user_events.setdefault(user_id, set()).add(event_id)
        self._calendar_events.setdefault(calendar_id, set()).add(event_id)

        self._log_operation("insert", self.tables.events, stored)
        return event_id

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        changes = self._patch_changes(patch, "Failed to update event")
        await self.ensure_connected()
        existing = self._events.get(event_id)
        if existing is None:
            raise NotFoundError(
                format_error("Failed to update event", f"Event {event_id} not found")
            )

        updated = existing.model_copy(
            deep=True, update={**changes, "updated_at": utc_now_seconds()}
        )
        self._events[event_id] = updated
        self._log_operation("update", self.tables.events, {"id": event_id, **changes})

    async def delete_event(self, event_id: str) -> None:
        await self.ensure_connected()
        if event_id not in self._events:
            raise NotFoundError(
                format_error("Failed to delete event", f"Event {event_id} not found")
            )
        self._unindex_event(event_id)
        del self._events[event_id]
        self._log_operation("delete", self.tables.events, {"id": event_id})

    async def get_event(self, event_id: str) -> Event | None:
        await self.ensure_connected()
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event is not None else None

    def _candidate_ids(self, filters: EventFilter) -> list[str]:
        candidates: list[str] = list(self._events)
        if filters.user_id is not None:
            user_ids = self._user_events.get(filters.user_id, set())
            candidates = [event_id for event_id in candidates if event_id in user_ids]
        if filters.calendar_id is not None:
            calendar_ids = self._calendar_events.get(filters.calendar_id, set())
            candidates = [event_id for event_id in candidates if event_id in calendar_ids]
        return candidates

    async def get_events(self, filters: EventFilter | None = None) -> list[Event]:
        await self.ensure_connected()
        filters = filters or EventFilter()

        matched: list[tuple[float | None, Event]] = []
        for event_id in self._candidate_ids(filters):
            event = self._events[event_id]
            interval = event_interval(event.when)
            if filters.start_time is not None or filters.end_time is not None:
                if interval is None:
                    continue
                event_start, event_end = interval
                if filters.start_time is not None and event_end < filters.start_time:
                    continue
                if filters.end_time is not None and event_start > filters.end_time:
                    continue
            matched.append((interval[0] if interval is not None else None, event))

        # Events without a start sort last.
        matched.sort(key=lambda item: (item[0] is None, item[0] or 0.0))
        events = [event.model_copy(deep=True) for _, event in matched]
        if filters.limit is not None and filters.limit > 0:
            events = events[: filters.limit]
        return events

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def store_calendar(self, user_id: str, calendar: Calendar) -> None:
        await self.ensure_connected()
        previous_owner = self._calendar_users.get(calendar.id)
        if previous_owner is not None and previous_owner != user_id:
            _discard(self._user_calendars, previous_owner, calendar.id)

        self._calendars[calendar.id] = calendar.model_copy(deep=True)
        self._calendar_users[calendar.id] = user_id
        self._user_calendars.setdefault(user_id, set()).add(calendar.id)
        self._log_operation(
            "upsert", self.tables.calendars, {"user_id": user_id, **calendar.model_dump()}
        )

    async def get_calendars(self, user_id: str) -> list[Calendar]:
        await self.ensure_connected()
        calendar_ids = self._user_calendars.get(user_id, set())
        return [
            calendar.model_copy(deep=True)
            for calendar_id, calendar in self._calendars.items()
            if calendar_id in calendar_ids
        ]

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        await self.ensure_connected()
        calendar = self._calendars.get(calendar_id)
        return calendar.model_copy(deep=True) if calendar is not None else None

    async def execute_query(self, query: str, *params: Any) -> list[dict[str, Any]]:
        self._logger.warning("execute_query is not supported by %s; returning no rows", self.name)
        return []

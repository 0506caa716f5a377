"""Persistence contract shared by every storage backing.

``StorageAdapter`` owns connection management: every data operation first
awaits :meth:`StorageAdapter.ensure_connected`, which lazily connects when
``auto_connect`` is enabled. Concurrent callers share a single in-flight
connection attempt; a failed attempt is forgotten so the next call retries.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from calmirror.config import LoggingConfig, TableNames
from calmirror.errors import (
    CalendarMirrorError,
    RequestValidationError,
    StorageConnectionError,
    StorageOperationError,
    format_error,
)
from calmirror.logging import log_db_operation
from calmirror.models import Calendar, Credentials, Event, EventFilter, EventPatch


def utc_now_seconds() -> int:
    """Current time as integer epoch seconds."""
    return int(time.time())


class StorageAdapter(abc.ABC):
    """Abstract persistence backing for credentials, calendars and events."""

    def __init__(
        self,
        *,
        tables: TableNames | None = None,
        auto_connect: bool = True,
        logging_config: LoggingConfig | None = None,
    ) -> None:
        self.tables = tables or TableNames()
        self.auto_connect = auto_connect
        self.logging_config = logging_config or LoggingConfig()
        self.is_connected = False
        self._logger = logging.getLogger(f"{__name__}.{type(self).__name__}")
        self._connect_lock = asyncio.Lock()
        self._connect_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return type(self).__name__

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def _open(self) -> None:
        """Establish the underlying resource (pool, client, ...)."""
        ...

    @abc.abstractmethod
    async def _close(self) -> None:
        """Release the underlying resource; must tolerate never having opened."""
        ...

    async def connect(self) -> None:
        """Connect to the backing store; a no-op when already connected.

        Concurrent callers await the same attempt.
        """
        if self.is_connected:
            return

        async with self._connect_lock:
            if self.is_connected:
                return
            if self._connect_task is None:
                self._connect_task = asyncio.ensure_future(self._establish())
            task = self._connect_task

        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._connect_task is task:
                self._connect_task = None

    async def _establish(self) -> None:
        try:
            await self._open()
        except CalendarMirrorError:
            raise
        except Exception as exc:
            message = format_error(f"Failed to connect {self.name}", exc)
            self._logger.error(message)
            raise StorageConnectionError(message) from exc
        self.is_connected = True
        self._logger.info("%s connected", self.name)

    async def disconnect(self) -> None:
        """Release the backing store."""
        try:
            await self._close()
        except Exception as exc:
            message = format_error("Failed to disconnect", exc)
            self._logger.error(message)
            raise StorageConnectionError(message) from exc
        self.is_connected = False
        self._logger.info("%s disconnected", self.name)

    async def ensure_connected(self) -> None:
        """Guard run before every data operation."""
        if self.is_connected:
            return
        if not self.auto_connect:
            raise StorageConnectionError(
                "Database not connected. Call connect() first or enable auto_connect "
                "in configuration."
            )
        await self.connect()

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, prefix: str) -> AsyncIterator[None]:
        """Wrap backend failures as StorageOperationError with *prefix*."""
        try:
            yield
        except CalendarMirrorError:
            raise
        except Exception as exc:
            message = format_error(prefix, exc)
            self._logger.error(message)
            raise StorageOperationError(message) from exc

    @staticmethod
    def _patch_changes(patch: EventPatch, prefix: str) -> dict[str, object]:
        """Return *patch*'s explicit changes, refusing to null a required field."""
        cleared = patch.cleared_required_fields()
        if cleared:
            raise RequestValidationError(
                format_error(prefix, f"cannot clear {', '.join(cleared)}")
            )
        return patch.changes()

    def _log_operation(self, operation: str, table: str, data: Any) -> None:
        if not self.logging_config.enabled:
            return
        log_db_operation(
            self._logger,
            operation,
            table,
            data,
            pretty=self.logging_config.pretty_print,
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_credentials(self, user_id: str, credentials: Credentials) -> None:
        """Store or replace the credentials for *user_id*."""
        ...

    @abc.abstractmethod
    async def get_credentials(self, user_id: str) -> Credentials | None: ...

    @abc.abstractmethod
    async def delete_credentials(self, user_id: str) -> None: ...

    @abc.abstractmethod
    async def mark_credential_expired(self, user_id: str) -> None:
        """Flag the stored credentials as expired regardless of their expiry."""
        ...

    @abc.abstractmethod
    async def has_valid_credential(self, user_id: str) -> bool:
        """Return True when credentials exist, are not flagged, and are unexpired."""
        ...

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_event(self, event: Event, user_id: str, calendar_id: str) -> str:
        """Persist *event* and return its id (generated when the event has none)."""
        ...

    @abc.abstractmethod
    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        """Apply *patch*; raises NotFoundError when the event does not exist."""
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete the event; raises NotFoundError when it does not exist."""
        ...

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> Event | None: ...

    @abc.abstractmethod
    async def get_events(self, filters: EventFilter | None = None) -> list[Event]:
        """Return matching events ordered by start time ascending.

        A time-filtered event matches when its interval intersects
        ``[start_time, end_time]`` inclusively.
        """
        ...

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def store_calendar(self, user_id: str, calendar: Calendar) -> None:
        """Upsert *calendar* by id."""
        ...

    @abc.abstractmethod
    async def get_calendars(self, user_id: str) -> list[Calendar]: ...

    @abc.abstractmethod
    async def get_calendar(self, calendar_id: str) -> Calendar | None: ...

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def execute_query(self, query: str, *params: Any) -> list[dict[str, Any]]:
        """Run a backend-specific query; for diagnostics only."""
        ...

"""Application context wiring configuration, storage, and the sync service.

Callers construct one ``CalendarMirror`` per process and control its lifetime
explicitly::

    async with CalendarMirror(load_config(path)) as mirror:
        await mirror.store_credentials(user_id, credentials)
        event_id = await mirror.events.create_event(user_id, calendar_id, event)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from calmirror.config import MirrorConfig
from calmirror.errors import format_error
from calmirror.models import Credentials
from calmirror.remote import CalendarClient, HttpCalendarClient
from calmirror.storage import StorageAdapter, create_adapter
from calmirror.sync import ClientFactory, EventSyncService

logger = logging.getLogger(__name__)


@dataclass
class ConnectionTestResult:
    """Outcome of :meth:`CalendarMirror.test_connection`."""

    success: bool
    timestamp: datetime | None = None
    error: str | None = None


class CalendarMirror:
    """Owns the storage adapter and the services built on top of it."""

    def __init__(
        self,
        config: MirrorConfig | None = None,
        *,
        adapter: StorageAdapter | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.config = config or MirrorConfig()
        self.adapter = adapter if adapter is not None else create_adapter(self.config)
        self._client_factory = client_factory or self._default_client_factory
        self.events = EventSyncService(self.adapter, self._client_factory)
        self._started = False

    def _default_client_factory(self, credentials: Credentials) -> CalendarClient:
        return HttpCalendarClient(self.config.provider, credentials)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, test_connection: bool = False) -> None:
        """Connect the storage adapter; a no-op when already started."""
        if self._started:
            return
        await self.adapter.connect()
        if test_connection:
            result = await self.test_connection()
            if result.success:
                logger.info("Storage connection test succeeded at %s", result.timestamp)
            else:
                logger.warning("Storage connection test failed: %s", result.error)
        self._started = True
        logger.info("CalendarMirror started with %s", self.adapter.name)

    async def shutdown(self) -> None:
        """Disconnect the storage adapter; a no-op when not started."""
        if not self._started:
            return
        await self.adapter.disconnect()
        self._started = False
        logger.info("CalendarMirror shut down")

    async def __aenter__(self) -> CalendarMirror:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    async def test_connection(self) -> ConnectionTestResult:
        """Connect and run a trivial query; failures are reported, not raised."""
        try:
            await self.adapter.ensure_connected()
            rows = await self.adapter.execute_query("SELECT NOW() AS time")
        except Exception as exc:
            message = format_error("Connection test failed", exc)
            logger.error(message)
            return ConnectionTestResult(success=False, error=message)

        timestamp = rows[0].get("time") if rows else None
        if not isinstance(timestamp, datetime):
            timestamp = datetime.now(UTC)
        return ConnectionTestResult(success=True, timestamp=timestamp)

    async def client_for(self, user_id: str) -> CalendarClient:
        """Build a remote client from *user_id*'s stored credentials.

        The caller owns the client and should ``await client.aclose()``.
        Raises NotFoundError when no credentials are stored.
        """
        credentials = await self.events.credentials_for(user_id)
        return self._client_factory(credentials)

    async def store_credentials(self, user_id: str, credentials: Credentials) -> None:
        await self.adapter.store_credentials(user_id, credentials)

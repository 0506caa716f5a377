"""PostgreSQL storage backing over an asyncpg connection pool."""

from __future__ import annotations

import logging
import ssl
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import asyncpg

from calmirror.config import ConnectionParams, LoggingConfig, SSLConfig, TableNames
from calmirror.errors import NotFoundError, StorageConnectionError, format_error
from calmirror.models import (
    Calendar,
    Credentials,
    Datespan,
    Event,
    EventFilter,
    EventPatch,
    Timespan,
    WhenKind,
    parse_date_bound,
)
from calmirror.storage.base import StorageAdapter

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, UTC)

# Patch fields that map one-to-one onto event columns.
_PATCH_COLUMNS = ("title", "description", "location", "busy", "read_only")


def build_ssl_context(config: SSLConfig | None) -> ssl.SSLContext | str | None:
    """Translate SSLConfig into the ``ssl`` argument accepted by asyncpg.

    A configured certificate that does not exist on disk logs a warning and
    falls back to TLS without verification.
    """
    if config is None:
        return None

    if config.certificate_path:
        cert_path = Path(config.certificate_path)
        if not cert_path.exists():
            logger.warning(
                "SSL certificate not found at %s; falling back to unverified TLS",
                cert_path,
            )
            return "require"
        context = ssl.create_default_context(cafile=str(cert_path))
    else:
        context = ssl.create_default_context()

    if not config.reject_unauthorized:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _to_datetime(seconds: int | float | None) -> datetime | None:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, UTC)


def _to_seconds(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def _when_columns(when: Timespan | Datespan) -> tuple[datetime | None, datetime | None, str]:
    """Return ``(start_datetime, end_datetime, when_object)`` for *when*."""
    if isinstance(when, Timespan):
        return _to_datetime(when.start_time), _to_datetime(when.end_time), WhenKind.timespan.value

    start = parse_date_bound(when.start_date) if when.start_date else None
    end = parse_date_bound(when.end_date) if when.end_date else None
    return start, end, WhenKind.datespan.value


def _row_to_when(row: Any) -> Timespan | Datespan:
    start: datetime | None = row["start_datetime"]
    end: datetime | None = row["end_datetime"]
    if row["when_object"] == WhenKind.datespan:
        return Datespan(
            start_date=start.astimezone(UTC).date().isoformat() if start else None,
            end_date=end.astimezone(UTC).date().isoformat() if end else None,
        )
    return Timespan(start_time=_to_seconds(start), end_time=_to_seconds(end))


def _row_to_event(row: Any) -> Event:
    event_ids = row["nylas_event_ids"] or []
    calendar_ids = row["nylas_calendar_ids"] or []
    busy = row["busy"]
    return Event(
        id=event_ids[0] if event_ids else str(row["id"]),
        calendar_id=calendar_ids[0] if calendar_ids else "",
        grant_id=row["grant_id"] or "",
        title=row["title"],
        description=row["description"],
        location=row["location"],
        busy=True if busy is None else busy,
        read_only=bool(row["read_only"]),
        created_at=_to_seconds(row["created_at"]),
        updated_at=_to_seconds(row["updated_at"]),
        when=_row_to_when(row),
    )


def _row_to_calendar(row: Any) -> Calendar:
    return Calendar(
        id=row["id"],
        name=row["name"],
        grant_id=row["grant_id"] or "",
        timezone=row["timezone"] or "UTC",
        description=row["description"],
        hex_color=row["hex_color"],
        hex_foreground_color=row["hex_foreground_color"],
        is_primary=bool(row["is_primary"]),
        is_owned_by_user=bool(row["is_owned_by_user"]),
        read_only=bool(row["is_read_only"]),
    )


def _row_to_credentials(row: Any) -> Credentials:
    return Credentials(
        grant_id=row["grant_id"],
        access_token=row["access_token"],
        email=row["email"],
        provider=row["provider"] or "unknown",
        expires_at=_to_seconds(row["expires_at"]),
        id_token=row["id_token"],
        token_type=row["token_type"],
        scope=row["scope"],
    )


class PostgresAdapter(StorageAdapter):
    """Stores credentials, calendars and events in three PostgreSQL tables.

    Table names come from :class:`~calmirror.config.TableNames` and are
    validated as SQL identifiers before being interpolated into statements.
    """

    def __init__(
        self,
        connection: ConnectionParams | None = None,
        *,
        ssl_config: SSLConfig | None = None,
        tables: TableNames | None = None,
        auto_create_tables: bool = True,
        auto_connect: bool = True,
        logging_config: LoggingConfig | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        super().__init__(tables=tables, auto_connect=auto_connect, logging_config=logging_config)
        self.connection = connection or ConnectionParams()
        self.ssl_config = ssl_config
        self.auto_create_tables = auto_create_tables
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    def __repr__(self) -> str:
        return (
            f"PostgresAdapter(target={self.connection.describe()!r}, "
            f"connected={self.is_connected!r})"
        )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _pool_kwargs(self) -> dict[str, Any]:
        pool_kwargs: dict[str, Any] = {
            "min_size": self.min_pool_size,
            "max_size": self.max_pool_size,
        }
        if self.connection.dsn is not None:
            pool_kwargs["dsn"] = self.connection.dsn
        else:
            pool_kwargs.update(
                host=self.connection.host,
                port=self.connection.port,
                user=self.connection.user,
                password=self.connection.password,
                database=self.connection.database,
            )
        ssl_arg = build_ssl_context(self.ssl_config)
        if ssl_arg is not None:
            pool_kwargs["ssl"] = ssl_arg
        return pool_kwargs

    async def _open(self) -> None:
        pool: asyncpg.Pool | None = None
        try:
            pool = await asyncpg.create_pool(**self._pool_kwargs())
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                if self.auto_create_tables:
                    await self._create_tables(conn)
        except Exception as exc:
            if pool is not None:
                await pool.close()
            message = format_error("Failed to connect to PostgreSQL", exc)
            self._logger.error(message)
            raise StorageConnectionError(message) from exc

        self.pool = pool
        self._logger.info("Connection pool created for: %s", self.connection.describe())

    async def _close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            self._logger.info("Connection pool closed for: %s", self.connection.describe())

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise StorageConnectionError(
                f"{self.name} has no active connection pool for {self.connection.describe()}"
            )
        return self.pool

    async def create_tables(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        await self.ensure_connected()
        async with self._operation("Failed to create tables"):
            async with self._require_pool().acquire() as conn:
                await self._create_tables(conn)

    async def _create_tables(self, conn: asyncpg.Connection) -> None:
        credentials = self.tables.credentials
        calendars = self.tables.calendars
        events = self.tables.events
        async with conn.transaction():
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {credentials} (
                    user_id TEXT PRIMARY KEY,
                    grant_id TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    email TEXT NOT NULL,
                    provider TEXT NOT NULL DEFAULT 'unknown',
                    expires_at TIMESTAMPTZ,
                    id_token TEXT,
                    token_type TEXT,
                    scope TEXT,
                    grant_expired BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {calendars} (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    timezone TEXT NOT NULL DEFAULT 'UTC',
                    hex_color TEXT,
                    hex_foreground_color TEXT,
                    is_primary BOOLEAN NOT NULL DEFAULT FALSE,
                    is_read_only BOOLEAN NOT NULL DEFAULT FALSE,
                    is_owned_by_user BOOLEAN NOT NULL DEFAULT FALSE,
                    grant_id TEXT NOT NULL DEFAULT '',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS {calendars}_user_id_idx ON {calendars} (user_id)"
            )
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {events} (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    nylas_event_ids TEXT[] NOT NULL,
                    nylas_calendar_ids TEXT[] NOT NULL,
                    title TEXT,
                    description TEXT,
                    start_datetime TIMESTAMPTZ,
                    end_datetime TIMESTAMPTZ,
                    busy BOOLEAN NOT NULL DEFAULT TRUE,
                    read_only BOOLEAN NOT NULL DEFAULT FALSE,
                    grant_id TEXT NOT NULL DEFAULT '',
                    user_id TEXT NOT NULL,
                    when_object TEXT NOT NULL DEFAULT 'timespan',
                    location TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            for column in ("user_id", "start_datetime", "end_datetime"):
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {events}_{column}_idx ON {events} ({column})"
                )
        self._logger.info(
            "Ensured tables exist: %s, %s, %s", credentials, calendars, events
        )

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def store_credentials(self, user_id: str, credentials: Credentials) -> None:
        await self.ensure_connected()
        table = self.tables.credentials
        values = (
            credentials.grant_id,
            credentials.access_token,
            credentials.email,
            credentials.provider,
            _to_datetime(credentials.expires_at),
            credentials.id_token,
            credentials.token_type,
            credentials.scope,
        )
        async with self._operation("Failed to store credentials"):
            async with self._require_pool().acquire() as conn:
                exists = await conn.fetchval(
                    f"SELECT 1 FROM {table} WHERE user_id = $1", user_id
                )
                if exists:
                    await conn.execute(
                        f"""
                        UPDATE {table}
                        SET grant_id = $2, access_token = $3, email = $4, provider = $5,
                            expires_at = $6, id_token = $7, token_type = $8, scope = $9,
                            grant_expired = FALSE, updated_at = now()
                        WHERE user_id = $1
                        """,
                        user_id,
                        *values,
                    )
                else:
                    await conn.execute(
                        f"""
                        INSERT INTO {table} (
                            user_id, grant_id, access_token, email, provider,
                            expires_at, id_token, token_type, scope
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        """,
                        user_id,
                        *values,
                    )
        self._log_operation(
            "update" if exists else "insert",
            table,
            {"user_id": user_id, **credentials.model_dump()},
        )

    async def get_credentials(self, user_id: str) -> Credentials | None:
        await self.ensure_connected()
        async with self._operation("Failed to get credentials"):
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {self.tables.credentials} WHERE user_id = $1", user_id
                )
        self._log_operation("select", self.tables.credentials, {"user_id": user_id})
        if row is None:
            return None
        return _row_to_credentials(row)

    async def delete_credentials(self, user_id: str) -> None:
        await self.ensure_connected()
        async with self._operation("Failed to delete credentials"):
            async with self._require_pool().acquire() as conn:
                await conn.execute(
                    f"DELETE FROM {self.tables.credentials} WHERE user_id = $1", user_id
                )
        self._log_operation("delete", self.tables.credentials, {"user_id": user_id})

    async def mark_credential_expired(self, user_id: str) -> None:
        await self.ensure_connected()
        async with self._operation("Failed to mark credential expired"):
            async with self._require_pool().acquire() as conn:
                await conn.execute(
                    f"""
                    UPDATE {self.tables.credentials}
                    SET grant_expired = TRUE, expires_at = $2, updated_at = now()
                    WHERE user_id = $1
                    """,
                    user_id,
                    _EPOCH,
                )
        self._log_operation(
            "update", self.tables.credentials, {"user_id": user_id, "grant_expired": True}
        )

    async def has_valid_credential(self, user_id: str) -> bool:
        await self.ensure_connected()
        async with self._operation("Failed to check credential validity"):
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT expires_at, grant_expired FROM {self.tables.credentials} "
                    "WHERE user_id = $1",
                    user_id,
                )
        if row is None or row["grant_expired"]:
            return False
        expires_at: datetime | None = row["expires_at"]
        if expires_at is None:
            return True
        return datetime.now(UTC) < expires_at

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def store_event(self, event: Event, user_id: str, calendar_id: str) -> str:
        await self.ensure_connected()
        table = self.tables.events
        event_id = event.id or str(uuid.uuid4())
        start, end, when_object = _when_columns(event.when)
        values = (
            event.title,
            event.description,
            event.location,
            start,
            end,
            when_object,
            event.busy,
            event.read_only,
            event.grant_id,
            user_id,
        )
        async with self._operation("Failed to store event"):
            async with self._require_pool().acquire() as conn:
                row_id = await conn.fetchval(
                    f"SELECT id FROM {table} WHERE $1 = ANY(nylas_event_ids) LIMIT 1",
                    event_id,
                )
                if row_id is not None:
                    await conn.execute(
                        f"""
                        UPDATE {table}
                        SET nylas_calendar_ids = $2, title = $3, description = $4,
                            location = $5, start_datetime = $6, end_datetime = $7,
                            when_object = $8, busy = $9, read_only = $10, grant_id = $11,
                            user_id = $12, updated_at = now()
                        WHERE id = $1
                        """,
                        row_id,
                        [calendar_id],
                        *values,
                    )
                else:
                    await conn.execute(
                        f"""
                        INSERT INTO {table} (
                            nylas_event_ids, nylas_calendar_ids, title, description,
                            location, start_datetime, end_datetime, when_object,
                            busy, read_only, grant_id, user_id
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                        """,
                        [event_id],
                        [calendar_id],
                        *values,
                    )
        self._log_operation(
            "update" if row_id is not None else "insert",
            table,
            {"id": event_id, "user_id": user_id, "calendar_id": calendar_id, **event.model_dump()},
        )
        return event_id

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        changes = self._patch_changes(patch, "Failed to update event")
        await self.ensure_connected()
        table = self.tables.events

        assignments: list[str] = []
        args: list[Any] = []
        for column in _PATCH_COLUMNS:
            if column in changes:
                args.append(changes[column])
                assignments.append(f"{column} = ${len(args) + 1}")
        when = changes.get("when")
        if when is not None:
            start, end, when_object = _when_columns(when)
            for column, value in (
                ("start_datetime", start),
                ("end_datetime", end),
                ("when_object", when_object),
            ):
                args.append(value)
                assignments.append(f"{column} = ${len(args) + 1}")
        assignments.append("updated_at = now()")

        async with self._operation("Failed to update event"):
            async with self._require_pool().acquire() as conn:
                row_id = await conn.fetchval(
                    f"SELECT id FROM {table} WHERE $1 = ANY(nylas_event_ids) LIMIT 1",
                    event_id,
                )
                if row_id is None:
                    raise NotFoundError(
                        format_error("Failed to update event", f"Event {event_id} not found")
                    )
                await conn.execute(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE id = $1",
                    row_id,
                    *args,
                )
        self._log_operation("update", table, {"id": event_id, **changes})

    async def delete_event(self, event_id: str) -> None:
        await self.ensure_connected()
        table = self.tables.events
        async with self._operation("Failed to delete event"):
            async with self._require_pool().acquire() as conn:
                deleted = await conn.fetch(
                    f"DELETE FROM {table} WHERE $1 = ANY(nylas_event_ids) RETURNING id",
                    event_id,
                )
                if not deleted:
                    raise NotFoundError(
                        format_error("Failed to delete event", f"Event {event_id} not found")
                    )
        self._log_operation("delete", table, {"id": event_id})

    async def get_event(self, event_id: str) -> Event | None:
        await self.ensure_connected()
        async with self._operation("Failed to get event"):
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {self.tables.events} "
                    "WHERE $1 = ANY(nylas_event_ids) LIMIT 1",
                    event_id,
                )
        self._log_operation("select", self.tables.events, {"id": event_id})
        if row is None:
            return None
        return _row_to_event(row)

    async def get_events(self, filters: EventFilter | None = None) -> list[Event]:
        await self.ensure_connected()
        filters = filters or EventFilter()

        conditions: list[str] = []
        args: list[Any] = []
        if filters.user_id is not None:
            args.append(filters.user_id)
            conditions.append(f"user_id = ${len(args)}")
        if filters.calendar_id is not None:
            args.append(filters.calendar_id)
            conditions.append(f"${len(args)} = ANY(nylas_calendar_ids)")
        if filters.start_time is not None:
            args.append(_to_datetime(filters.start_time))
            conditions.append(f"end_datetime >= ${len(args)}")
        if filters.end_time is not None:
            args.append(_to_datetime(filters.end_time))
            conditions.append(f"start_datetime <= ${len(args)}")

        query = f"SELECT * FROM {self.tables.events}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY start_datetime ASC"
        if filters.limit is not None and filters.limit > 0:
            args.append(filters.limit)
            query += f" LIMIT ${len(args)}"

        async with self._operation("Failed to get events"):
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(query, *args)
        self._log_operation("select", self.tables.events, filters.model_dump(exclude_none=True))
        return [_row_to_event(row) for row in rows]

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def store_calendar(self, user_id: str, calendar: Calendar) -> None:
        await self.ensure_connected()
        table = self.tables.calendars
        values = (
            user_id,
            calendar.name,
            calendar.description,
            calendar.timezone or "UTC",
            calendar.hex_color,
            calendar.hex_foreground_color,
            calendar.is_primary,
            calendar.read_only,
            calendar.is_owned_by_user,
            calendar.grant_id,
        )
        async with self._operation("Failed to store calendar"):
            async with self._require_pool().acquire() as conn:
                exists = await conn.fetchval(f"SELECT 1 FROM {table} WHERE id = $1", calendar.id)
                if exists:
                    await conn.execute(
                        f"""
                        UPDATE {table}
                        SET user_id = $2, name = $3, description = $4, timezone = $5,
                            hex_color = $6, hex_foreground_color = $7, is_primary = $8,
                            is_read_only = $9, is_owned_by_user = $10, grant_id = $11,
                            updated_at = now()
                        WHERE id = $1
                        """,
                        calendar.id,
                        *values,
                    )
                else:
                    await conn.execute(
                        f"""
                        INSERT INTO {table} (
                            id, user_id, name, description, timezone, hex_color,
                            hex_foreground_color, is_primary, is_read_only,
                            is_owned_by_user, grant_id
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        """,
                        calendar.id,
                        *values,
                    )
        self._log_operation(
            "update" if exists else "insert",
            table,
            {"user_id": user_id, **calendar.model_dump()},
        )

    async def get_calendars(self, user_id: str) -> list[Calendar]:
        await self.ensure_connected()
        async with self._operation("Failed to get calendars"):
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT * FROM {self.tables.calendars} WHERE user_id = $1 "
                    "ORDER BY created_at ASC, id ASC",
                    user_id,
                )
        self._log_operation("select", self.tables.calendars, {"user_id": user_id})
        return [_row_to_calendar(row) for row in rows]

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        await self.ensure_connected()
        async with self._operation("Failed to get calendar"):
            async with self._require_pool().acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT * FROM {self.tables.calendars} WHERE id = $1", calendar_id
                )
        self._log_operation("select", self.tables.calendars, {"id": calendar_id})
        if row is None:
            return None
        return _row_to_calendar(row)

    async def execute_query(self, query: str, *params: Any) -> list[dict[str, Any]]:
        await self.ensure_connected()
        async with self._operation("Failed to execute query"):
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(query, *params)
        self._log_operation("query", "raw", {"query": query, "params": list(params)})
        return [dict(row) for row in rows]

"""calmirror: one-way mirror of upstream calendar events into a local store."""

from calmirror.config import MirrorConfig, config_from_env, load_config, standard_table_names
from calmirror.conflicts import check_conflicts, overlaps
from calmirror.context import CalendarMirror, ConnectionTestResult
from calmirror.errors import (
    CalendarMirrorError,
    NotFoundError,
    RemoteOperationError,
    RequestValidationError,
    StorageConnectionError,
    StorageOperationError,
)
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
    Participant,
    Timespan,
)
from calmirror.remote import CalendarClient, HttpCalendarClient
from calmirror.storage import InMemoryAdapter, PostgresAdapter, StorageAdapter, create_adapter
from calmirror.sync import EventSyncService

__all__ = [
    "Calendar",
    "CalendarClient",
    "CalendarMirror",
    "CalendarMirrorError",
    "ConflictResult",
    "ConnectionTestResult",
    "Credentials",
    "Datespan",
    "Event",
    "EventCreate",
    "EventFilter",
    "EventPatch",
    "EventSyncService",
    "EventUpdate",
    "HttpCalendarClient",
    "InMemoryAdapter",
    "MirrorConfig",
    "NotFoundError",
    "Participant",
    "PostgresAdapter",
    "RemoteOperationError",
    "RequestValidationError",
    "StorageAdapter",
    "StorageConnectionError",
    "StorageOperationError",
    "Timespan",
    "check_conflicts",
    "config_from_env",
    "create_adapter",
    "load_config",
    "overlaps",
    "standard_table_names",
]

"""Error hierarchy shared by the storage adapters, remote client and sync service."""

from __future__ import annotations


class CalendarMirrorError(RuntimeError):
    """Base error for every failure raised by calmirror."""


class StorageConnectionError(CalendarMirrorError):
    """Raised when the backing store cannot be (auto-)connected."""


class NotFoundError(CalendarMirrorError):
    """Raised when a referenced event, credential or calendar does not exist."""


class RequestValidationError(CalendarMirrorError):
    """Raised when a required field is missing; no I/O has been attempted."""


class StorageOperationError(CalendarMirrorError):
    """Raised when the backing store rejects or fails an operation."""


class RemoteOperationError(CalendarMirrorError):
    """Raised when the upstream calendar service rejects a call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def format_error(prefix: str, exc: BaseException | str) -> str:
    """Return ``"<prefix>: <cause>"`` for diagnostics."""
    cause = exc if isinstance(exc, str) else (str(exc) or type(exc).__name__)
    return f"{prefix}: {cause}"

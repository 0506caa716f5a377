"""Log setup for calmirror processes and the records the storage layer emits.

Library code only ever calls ``logging.getLogger(__name__)``. A host process
that wants calmirror's output formatting calls :func:`configure_logging` once;
records from every stdlib logger are then rendered by structlog, either as a
console line (``fmt="text"``) or as one JSON object per line (``fmt="json"``).

Each record is stamped with the user the current task acts for (see
:func:`set_user_context`) and with the ids of the active OpenTelemetry span,
so a storage write can be matched to the sync call that caused it.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from opentelemetry import trace

_user_context: ContextVar[str | None] = ContextVar("calmirror_user_id", default=None)

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16

# Chatty at INFO; calmirror's own records already cover their requests.
_NOISE_LOGGERS = (
    "asyncpg",
    "httpx",
    "httpcore",
)

_PACKAGE_LOGGER = "calmirror"


def set_user_context(user_id: str | None) -> None:
    """Record *user_id* as the acting user for the running task."""
    _user_context.set(user_id)


def get_user_context() -> str | None:
    return _user_context.get()


def add_user_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: add ``user_id`` (None outside a sync call)."""
    event_dict["user_id"] = _user_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: add hex ``trace_id``/``span_id``, zeroed without a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(*, json_output: bool) -> list[structlog.types.Processor]:
    # JSON consumers want full ISO timestamps; a terminal only needs the clock.
    timestamper = structlog.processors.TimeStamper(fmt="iso" if json_output else "%H:%M:%S")
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        timestamper,
        add_user_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    *,
    enabled: bool = True,
) -> None:
    """Route all stdlib logging through a single structlog-rendered stderr handler.

    Safe to call repeatedly: the root logger's handlers are replaced, not
    appended to. ``enabled=False`` mutes the ``calmirror`` logger tree while
    leaving the handler in place for the host application's own loggers.
    """
    json_output = fmt == "json"
    pre_chain = _pre_chain(json_output=json_output)
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Children inherit the effective level, so this mutes every calmirror logger.
    logging.getLogger(_PACKAGE_LOGGER).setLevel(
        logging.NOTSET if enabled else logging.CRITICAL + 1
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Storage operation records

_MAX_STRING_LENGTH = 200
_MAX_LIST_ITEMS = 5
_LIST_PREVIEW_ITEMS = 3
_SENSITIVE_KEYS = frozenset(
    {"access_token", "id_token", "refresh_token", "password", "api_key", "client_secret"}
)


def simplify_for_logging(data: Any) -> Any:
    """Return a copy of *data* safe and compact enough to log.

    Long strings are truncated, long lists summarised and credential-like keys
    redacted. Pydantic models are dumped first.
    """
    if hasattr(data, "model_dump"):
        data = data.model_dump()

    if isinstance(data, dict):
        simplified: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in _SENSITIVE_KEYS and value is not None:
                simplified[key] = "[REDACTED]"
            else:
                simplified[key] = simplify_for_logging(value)
        return simplified

    if isinstance(data, list | tuple | set):
        items = list(data)
        if len(items) > _MAX_LIST_ITEMS:
            head = [simplify_for_logging(item) for item in items[:_LIST_PREVIEW_ITEMS]]
            return [*head, f"... {len(items) - _LIST_PREVIEW_ITEMS} more items"]
        return [simplify_for_logging(item) for item in items]

    if isinstance(data, str) and len(data) > _MAX_STRING_LENGTH:
        return data[: _MAX_STRING_LENGTH - 3] + "..."

    return data


def log_db_operation(
    logger: logging.Logger,
    operation: str,
    table: str,
    data: Any,
    *,
    pretty: bool = True,
) -> None:
    """Emit one DEBUG record describing a storage operation."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    payload = simplify_for_logging(data)
    rendered = json.dumps(payload, indent=2 if pretty else None, default=str, sort_keys=True)
    logger.debug(
        "DB %s on %s: %s",
        operation.upper(),
        table,
        rendered,
        extra={"db_operation": operation, "db_table": table},
    )

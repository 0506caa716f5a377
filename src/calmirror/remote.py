"""Client for the upstream calendar service.

``CalendarClient`` is the interface the sync service depends on;
``HttpCalendarClient`` talks to a grant-scoped REST API (Nylas v3 layout)
over ``httpx``. Requests are never retried.
"""

from __future__ import annotations

import abc
import logging
import math
import re
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from calmirror.config import ProviderConfig
from calmirror.conflicts import check_conflicts, event_interval
from calmirror.errors import (
    NotFoundError,
    RemoteOperationError,
    RequestValidationError,
    format_error,
)
from calmirror.models import (
    Calendar,
    ConflictResult,
    Credentials,
    Datespan,
    Event,
    EventCreate,
    EventUpdate,
    Participant,
    TimeBound,
    Timespan,
    build_when,
)

logger = logging.getLogger(__name__)

MAX_CALENDARS_PER_PAGE = 200
_MAX_ERROR_MESSAGE_LENGTH = 200
# EventUpdate fields copied into the request body verbatim, nulls included.
_UPDATE_BODY_FIELDS = ("title", "description", "location", "busy")


# ---------------------------------------------------------------------------
# Error sanitising
# ---------------------------------------------------------------------------


def _redact_credential_values(message: str) -> str:
    """Redact credential-looking values from an upstream error message."""
    redacted = message
    # key=value style pairs
    redacted = re.sub(
        r"(?i)\b(api_key|client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        redacted,
    )
    # JSON/Python dict style quoted values
    redacted = re.sub(
        r"""(?i)(['"]?(?:api_key|client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    # Bearer headers echoed back
    redacted = re.sub(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            candidate = error_payload.get("message")
            if isinstance(candidate, str) and candidate.strip():
                message = candidate
        elif isinstance(error_payload, str) and error_payload.strip():
            message = error_payload

    if message is None:
        message = response.text.strip() or "Request failed without an error payload"

    return _redact_credential_values(" ".join(message.split()))[:_MAX_ERROR_MESSAGE_LENGTH]


# ---------------------------------------------------------------------------
# Payload translation
# ---------------------------------------------------------------------------


def _parse_when(payload: dict[str, Any]) -> Timespan | Datespan:
    if payload.get("object") == "datespan" or "start_date" in payload:
        return Datespan(start_date=payload.get("start_date"), end_date=payload.get("end_date"))
    if payload.get("object") == "date" and "date" in payload:
        return Datespan(start_date=payload["date"], end_date=payload["date"])
    return Timespan(
        start_time=payload.get("start_time"),
        end_time=payload.get("end_time"),
        start_timezone=payload.get("start_timezone"),
        end_timezone=payload.get("end_timezone"),
    )


def _when_payload(when: Timespan | Datespan) -> dict[str, Any]:
    if isinstance(when, Timespan):
        payload: dict[str, Any] = {
            "object": "timespan",
            "start_time": when.start_time,
            "end_time": when.end_time,
        }
        if when.start_timezone:
            payload["start_timezone"] = when.start_timezone
        if when.end_timezone:
            payload["end_timezone"] = when.end_timezone
        return payload
    return {"object": "datespan", "start_date": when.start_date, "end_date": when.end_date}


def _participants_payload(participants: list[Participant]) -> list[dict[str, Any]]:
    return [
        {"email": participant.email, "name": participant.name or "", "status": "noreply"}
        for participant in participants
    ]


def _parse_event(payload: dict[str, Any]) -> Event:
    when_payload = payload.get("when")
    if not isinstance(when_payload, dict):
        when_payload = {}
    try:
        return Event.model_validate({**payload, "when": _parse_when(when_payload).model_dump()})
    except ValidationError as exc:
        raise RemoteOperationError(
            format_error("Calendar API returned an invalid event payload", exc)
        ) from exc


def _parse_calendar(payload: dict[str, Any]) -> Calendar:
    try:
        return Calendar.model_validate(payload)
    except ValidationError as exc:
        raise RemoteOperationError(
            format_error("Calendar API returned an invalid calendar payload", exc)
        ) from exc


# ---------------------------------------------------------------------------
# Client interface
# ---------------------------------------------------------------------------


class CalendarClient(abc.ABC):
    """Operations the sync service needs from the upstream calendar service."""

    @abc.abstractmethod
    async def list_calendars(self) -> list[Calendar]: ...

    @abc.abstractmethod
    async def get_primary_calendar(self) -> Calendar:
        """Return the primary calendar owned by the user, else the first one."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        start: int | float | None = None,
        end: int | float | None = None,
        limit: int | None = None,
    ) -> list[Event]: ...

    @abc.abstractmethod
    async def create_event(self, params: EventCreate) -> Event: ...

    @abc.abstractmethod
    async def update_event(self, event_id: str, params: EventUpdate) -> Event: ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str, calendar_id: str) -> None: ...

    async def check_time_conflicts(
        self,
        start: TimeBound,
        end: TimeBound,
        calendar_id: str | None = None,
    ) -> ConflictResult:
        """Check ``[start, end)`` against the events the upstream service lists."""
        when = build_when(start, end)
        if calendar_id is None:
            calendar_id = (await self.get_primary_calendar()).id

        if isinstance(when, Timespan):
            window_start: float | None = when.start_time
            window_end: float | None = when.end_time
        else:
            interval = event_interval(when)
            window_start, window_end = interval if interval is not None else (None, None)

        existing = await self.list_events(
            calendar_id,
            start=window_start,
            end=window_end,
        )
        return check_conflicts(start, end, existing)

    async def aclose(self) -> None:
        """Release any transport resources."""


class HttpCalendarClient(CalendarClient):
    """Grant-scoped REST client for the upstream calendar service."""

    def __init__(
        self,
        config: ProviderConfig,
        credentials: Credentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=config.timeout)
        self._primary_calendar: Calendar | None = None

    def __repr__(self) -> str:
        return (
            f"HttpCalendarClient(api_uri={self._config.api_uri!r}, "
            f"grant_id={self._credentials.grant_id!r})"
        )

    @property
    def grant_id(self) -> str:
        return self._credentials.grant_id

    def _grant_path(self, path: str) -> str:
        normalized_path = path if path.startswith("/") else f"/{path}"
        grant = quote(self._credentials.grant_id, safe="")
        return f"{self._config.api_uri}/v3/grants/{grant}{normalized_path}"

    def _headers(self) -> dict[str, str]:
        token = self._config.api_key or self._credentials.access_token
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        operation: str,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise RemoteOperationError(
                format_error(f"Failed to {operation}", _redact_credential_values(str(exc)))
            ) from exc

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_once(
            method,
            self._grant_path(path),
            params=params,
            json_body=json_body,
            operation=operation,
        )

        if response.status_code < 200 or response.status_code >= 300:
            message = format_error(f"Failed to {operation}", _safe_error_message(response))
            logger.warning(
                "Calendar API %s %s returned %d", method, path, response.status_code
            )
            raise RemoteOperationError(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteOperationError(
                f"Failed to {operation}: Calendar API returned invalid JSON",
                status_code=response.status_code,
            ) from exc

        if not isinstance(payload, dict):
            raise RemoteOperationError(
                f"Failed to {operation}: Calendar API returned an unexpected JSON payload shape",
                status_code=response.status_code,
            )
        return payload

    async def list_calendars(self) -> list[Calendar]:
        payload = await self._request_json(
            "GET",
            "/calendars",
            operation="fetch calendars",
            params={"limit": MAX_CALENDARS_PER_PAGE},
        )
        items = payload.get("data")
        if not isinstance(items, list):
            return []
        return [_parse_calendar(item) for item in items if isinstance(item, dict)]

    async def get_primary_calendar(self) -> Calendar:
        if self._primary_calendar is not None:
            return self._primary_calendar

        calendars = await self.list_calendars()
        primary = next(
            (
                calendar
                for calendar in calendars
                if calendar.is_primary and calendar.is_owned_by_user
            ),
            calendars[0] if calendars else None,
        )
        if primary is None:
            raise NotFoundError(
                format_error("Failed to get primary calendar", "No calendar found for user")
            )
        self._primary_calendar = primary
        return primary

    async def list_events(
        self,
        calendar_id: str,
        *,
        start: int | float | None = None,
        end: int | float | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        if not calendar_id:
            raise RequestValidationError(
                format_error("Failed to fetch events", "calendar_id is required")
            )
        params: dict[str, Any] = {"calendar_id": calendar_id}
        if limit:
            params["limit"] = limit
        if start is not None:
            params["start"] = str(math.floor(start))
        if end is not None:
            params["end"] = str(math.ceil(end))

        payload = await self._request_json(
            "GET", "/events", operation="fetch events", params=params
        )
        items = payload.get("data")
        if not isinstance(items, list):
            return []
        return [_parse_event(item) for item in items if isinstance(item, dict)]

    async def create_event(self, params: EventCreate) -> Event:
        body: dict[str, Any] = {
            "title": params.title,
            "when": _when_payload(params.when()),
        }
        if params.description:
            body["description"] = params.description
        if params.location:
            body["location"] = params.location
        if params.participants:
            body["participants"] = _participants_payload(params.participants)

        payload = await self._request_json(
            "POST",
            "/events",
            operation="create event",
            params={"calendar_id": params.calendar_id, "notify_participants": "true"},
            json_body=body,
        )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise RemoteOperationError("Failed to create event: Calendar API returned no event")
        return _parse_event(data)

    async def update_event(self, event_id: str, params: EventUpdate) -> Event:
        calendar_id = params.calendar_id or (
            self._primary_calendar.id if self._primary_calendar is not None else None
        )
        if not calendar_id:
            raise RequestValidationError(
                format_error(
                    "Failed to update event", "Calendar ID is required for updating an event"
                )
            )

        fields_set = params.model_fields_set
        body: dict[str, Any] = {
            name: getattr(params, name) for name in _UPDATE_BODY_FIELDS if name in fields_set
        }
        if params.start is not None and params.end is not None:
            body["when"] = _when_payload(build_when(params.start, params.end, params.timezone))
        if "participants" in fields_set:
            body["participants"] = _participants_payload(params.participants or [])

        payload = await self._request_json(
            "PUT",
            f"/events/{quote(event_id, safe='')}",
            operation="update event",
            params={"calendar_id": calendar_id, "notify_participants": "true"},
            json_body=body,
        )
        data = payload.get("data")
        if not isinstance(data, dict):
            raise RemoteOperationError("Failed to update event: Calendar API returned no event")
        return _parse_event(data)

    async def delete_event(self, event_id: str, calendar_id: str) -> None:
        if not calendar_id:
            raise RequestValidationError(
                format_error(
                    "Failed to delete event", "Calendar ID is required for deleting an event"
                )
            )
        await self._request_json(
            "DELETE",
            f"/events/{quote(event_id, safe='')}",
            operation="delete event",
            params={"calendar_id": calendar_id, "notify_participants": "true"},
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

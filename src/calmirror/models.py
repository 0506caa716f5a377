"""Canonical data shapes shared by storage adapters, the remote client and sync.

Times on the wire and in storage follow the upstream provider's conventions:
timed events carry epoch seconds, all-day events carry ISO date strings.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WhenKind(StrEnum):
    """Discriminator values for :data:`EventWhen`."""

    timespan = "timespan"
    datespan = "datespan"


class Timespan(BaseModel):
    """A time window expressed in epoch seconds."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["timespan"] = "timespan"
    start_time: int | None = None
    end_time: int | None = None
    start_timezone: str | None = None
    end_timezone: str | None = None


class Datespan(BaseModel):
    """An all-day window expressed as ISO date strings."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["datespan"] = "datespan"
    start_date: str | None = None
    end_date: str | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


EventWhen = Annotated[Timespan | Datespan, Field(discriminator="kind")]
TimeBound = int | float | str


def parse_date_bound(value: str) -> datetime | None:
    """Parse an ISO date (or date-time) string into an aware UTC instant."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed_date = date.fromisoformat(value)
        except ValueError:
            return None
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def build_when(
    start: TimeBound,
    end: TimeBound,
    timezone: str | None = None,
) -> Timespan | Datespan:
    """Infer a Timespan (numeric bounds) or Datespan (string bounds)."""
    if isinstance(start, bool) or isinstance(end, bool):
        raise TypeError("event boundaries must be epoch seconds or date strings, not bool")
    if isinstance(start, int | float):
        if not isinstance(end, int | float):
            raise TypeError("start and end must both be epoch seconds or both be date strings")
        return Timespan(
            start_time=int(start),
            end_time=int(end),
            start_timezone=timezone,
            end_timezone=timezone,
        )
    if isinstance(end, int | float):
        raise TypeError("start and end must both be epoch seconds or both be date strings")
    return Datespan(start_date=start, end_date=end)


class Credentials(BaseModel):
    """Grant credentials issued by the upstream provider for one user."""

    model_config = ConfigDict(extra="ignore")

    grant_id: str = Field(min_length=1)
    access_token: str = Field(repr=False)
    email: str
    provider: str = "unknown"
    expires_at: int | None = None
    id_token: str | None = Field(default=None, repr=False)
    token_type: str | None = None
    scope: str | None = None


class Calendar(BaseModel):
    """A calendar as exposed by the upstream provider."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    name: str
    grant_id: str = ""
    timezone: str = "UTC"
    description: str | None = None
    hex_color: str | None = None
    hex_foreground_color: str | None = None
    is_primary: bool = False
    is_owned_by_user: bool = False
    read_only: bool = False


class Participant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    name: str | None = None
    status: str | None = None


class Event(BaseModel):
    """A locally mirrored calendar event.

    ``id`` may be empty for events that have not been assigned an identifier
    yet; storage adapters generate one on insert.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    calendar_id: str = ""
    grant_id: str = ""
    title: str | None = None
    description: str | None = None
    location: str | None = None
    busy: bool = True
    read_only: bool = False
    participants: list[Participant] = Field(default_factory=list)
    created_at: int | None = None
    updated_at: int | None = None
    when: EventWhen


# Event fields a patch may not set to None.
NON_NULLABLE_PATCH_FIELDS = ("when", "busy", "read_only", "participants")


class EventPatch(BaseModel):
    """Partial event update; only explicitly set fields are applied.

    ``title``, ``description`` and ``location`` may be cleared by setting them
    to None. The remaining fields always hold a value on a stored event, so an
    explicit None for them is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    location: str | None = None
    busy: bool | None = None
    read_only: bool | None = None
    participants: list[Participant] | None = None
    when: EventWhen | None = None

    def changes(self) -> dict[str, object]:
        """Return the explicitly set fields as model-typed values."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def cleared_required_fields(self) -> list[str]:
        """Return the non-nullable fields this patch explicitly sets to None."""
        return sorted(
            name
            for name in NON_NULLABLE_PATCH_FIELDS
            if name in self.model_fields_set and getattr(self, name) is None
        )

    @model_validator(mode="after")
    def _reject_cleared_required_fields(self) -> EventPatch:
        cleared = self.cleared_required_fields()
        if cleared:
            raise ValueError(f"cannot clear {', '.join(cleared)}; these fields need a value")
        return self


class EventFilter(BaseModel):
    """Filters accepted by ``StorageAdapter.get_events``."""

    model_config = ConfigDict(extra="forbid")

    user_id: str | None = None
    calendar_id: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    limit: int | None = None


class EventCreate(BaseModel):
    """Parameters for creating an event on the upstream service."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    title: str = ""
    start: TimeBound
    end: TimeBound
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    participants: list[Participant] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_boundary_types(self) -> EventCreate:
        try:
            build_when(self.start, self.end, self.timezone)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc
        return self

    def when(self) -> Timespan | Datespan:
        return build_when(self.start, self.end, self.timezone)


class EventUpdate(BaseModel):
    """Partial parameters for updating an event on the upstream service.

    Fields left unset are not sent; fields explicitly set to None are sent as
    null so the upstream service clears them.
    """

    model_config = ConfigDict(extra="forbid")

    calendar_id: str | None = None
    title: str | None = None
    start: TimeBound | None = None
    end: TimeBound | None = None
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    busy: bool | None = None
    participants: list[Participant] | None = None

    @model_validator(mode="after")
    def _validate_boundary_pair(self) -> EventUpdate:
        if (self.start is None) != (self.end is None):
            raise ValueError("start and end must be updated together")
        if self.start is not None and self.end is not None:
            try:
                build_when(self.start, self.end, self.timezone)
            except TypeError as exc:
                raise ValueError(str(exc)) from exc
        return self


class ConflictingEvent(BaseModel):
    id: str
    title: str | None = None
    when: EventWhen


class ConflictResult(BaseModel):
    """Outcome of a conflict check; computed per request, never persisted."""

    has_conflict: bool
    conflicting_events: list[ConflictingEvent] = Field(default_factory=list)

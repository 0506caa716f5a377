"""Shared fixtures for the calmirror test suite."""

from __future__ import annotations

import shutil
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest

from calmirror.models import Calendar, Credentials, Event, Timespan

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


def make_event(
    event_id: str = "evt-1",
    start: int = 1_000,
    end: int = 2_000,
    *,
    calendar_id: str = "cal-1",
    title: str | None = "Standup",
) -> Event:
    """Build a timed event with sensible defaults."""
    return Event(
        id=event_id,
        calendar_id=calendar_id,
        grant_id="grant-1",
        title=title,
        when=Timespan(start_time=start, end_time=end),
    )


def make_credentials(*, expires_at: int | None = None) -> Credentials:
    return Credentials(
        grant_id="grant-1",
        access_token="secret-access-token",
        email="ada@example.com",
        provider="google",
        expires_at=expires_at,
    )


def make_calendar(calendar_id: str = "cal-1", **overrides) -> Calendar:
    fields = {"id": calendar_id, "name": "Work", "grant_id": "grant-1"}
    fields.update(overrides)
    return Calendar(**fields)


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg

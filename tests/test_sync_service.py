"""Tests for calmirror.sync.EventSyncService.

Uses InMemoryAdapter for storage and a scripted CalendarClient in place of
the upstream service.
"""

from __future__ import annotations

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from calmirror.errors import (
    NotFoundError,
    RemoteOperationError,
    RequestValidationError,
    StorageOperationError,
)
from calmirror.models import (
    Calendar,
    Datespan,
    Event,
    EventCreate,
    EventFilter,
    EventPatch,
    EventUpdate,
    Timespan,
)
from calmirror.remote import CalendarClient
from calmirror.storage.memory import InMemoryAdapter
from calmirror.sync import EventSyncService
from tests.conftest import make_calendar, make_credentials, make_event

pytestmark = pytest.mark.unit


class FakeCalendarClient(CalendarClient):
    """Records every call and serves canned upstream state."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.calendars: list[Calendar] = [make_calendar("cal-1", is_primary=True)]
        self.remote_events: list[Event] = []
        self.fail_with: RemoteOperationError | None = None
        self.closed = 0
        self._next_id = 0
        self.created_id: str | None = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def list_calendars(self) -> list[Calendar]:
        self.calls.append(("list_calendars",))
        self._maybe_fail()
        return list(self.calendars)

    async def get_primary_calendar(self) -> Calendar:
        self.calls.append(("get_primary_calendar",))
        return self.calendars[0]

    async def list_events(self, calendar_id, *, start=None, end=None, limit=None) -> list[Event]:
        self.calls.append(("list_events", calendar_id, start, end))
        self._maybe_fail()
        return list(self.remote_events)

    async def create_event(self, params: EventCreate) -> Event:
        self.calls.append(("create_event", params))
        self._maybe_fail()
        self._next_id += 1
        return Event(
            id=self.created_id if self.created_id is not None else f"remote-{self._next_id}",
            calendar_id=params.calendar_id,
            grant_id="grant-1",
            title=params.title,
            description=params.description,
            location=params.location,
            participants=params.participants,
            when=params.when(),
        )

    async def update_event(self, event_id: str, params: EventUpdate) -> Event:
        self.calls.append(("update_event", event_id, params))
        self._maybe_fail()
        return make_event(event_id)

    async def delete_event(self, event_id: str, calendar_id: str) -> None:
        self.calls.append(("delete_event", event_id, calendar_id))
        self._maybe_fail()

    async def aclose(self) -> None:
        self.closed += 1


class _FailingWritesAdapter(InMemoryAdapter):
    """Raises on event writes once ``fail_writes`` is set."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_writes = False

    def _maybe_fail(self, message: str) -> None:
        if self.fail_writes:
            raise StorageOperationError(f"{message}: disk full")

    async def store_event(self, event: Event, user_id: str, calendar_id: str) -> str:
        self._maybe_fail("Failed to store event")
        return await super().store_event(event, user_id, calendar_id)

    async def update_event(self, event_id: str, patch: EventPatch) -> None:
        self._maybe_fail("Failed to update event")
        await super().update_event(event_id, patch)

    async def delete_event(self, event_id: str) -> None:
        self._maybe_fail("Failed to delete event")
        await super().delete_event(event_id)


@pytest.fixture
def adapter() -> InMemoryAdapter:
    return InMemoryAdapter()


@pytest.fixture
def remote() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
async def service(adapter: InMemoryAdapter, remote: FakeCalendarClient) -> EventSyncService:
    await adapter.store_credentials("u1", make_credentials())
    return EventSyncService(adapter, lambda credentials: remote)


@pytest.fixture
def failing_adapter() -> _FailingWritesAdapter:
    return _FailingWritesAdapter()


@pytest.fixture
async def failing_service(
    failing_adapter: _FailingWritesAdapter, remote: FakeCalendarClient
) -> EventSyncService:
    await failing_adapter.store_credentials("u1", make_credentials())
    return EventSyncService(failing_adapter, lambda credentials: remote)


def _new_event(**overrides) -> Event:
    fields = {
        "title": "Planning",
        "location": "Room 2",
        "when": Timespan(start_time=1_000, end_time=2_000, start_timezone="Europe/Paris"),
    }
    fields.update(overrides)
    return Event(**fields)


# ---------------------------------------------------------------------------
# create_event
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_remote_first_then_mirrored(self, service, adapter, remote) -> None:
        event_id = await service.create_event("u1", "cal-1", _new_event())

        assert event_id == "remote-1"
        name, params = remote.calls[0]
        assert name == "create_event"
        assert params.calendar_id == "cal-1"
        assert params.start == 1_000
        assert params.end == 2_000
        assert params.timezone == "Europe/Paris"

        stored = await adapter.get_event("remote-1")
        assert stored is not None
        assert stored.title == "Planning"
        assert stored.calendar_id == "cal-1"
        by_user = await adapter.get_events(EventFilter(user_id="u1"))
        assert [event.id for event in by_user] == ["remote-1"]

    async def test_all_day_event_sent_as_dates(self, service, remote) -> None:
        event = _new_event(when=Datespan(start_date="2026-05-01", end_date="2026-05-02"))
        await service.create_event("u1", "cal-1", event)
        params = remote.calls[0][1]
        assert params.start == "2026-05-01"
        assert params.when() == Datespan(start_date="2026-05-01", end_date="2026-05-02")

    async def test_remote_failure_leaves_store_untouched(self, service, adapter, remote) -> None:
        remote.fail_with = RemoteOperationError("Failed to create event: boom", status_code=500)
        with pytest.raises(RemoteOperationError):
            await service.create_event("u1", "cal-1", _new_event())
        assert await adapter.get_events() == []

    async def test_missing_bounds_rejected_before_remote_call(self, service, remote) -> None:
        event = _new_event(when=Timespan(start_time=1_000))
        with pytest.raises(RequestValidationError):
            await service.create_event("u1", "cal-1", event)
        assert remote.calls == []

    async def test_unknown_user_has_no_credentials(self, service, remote) -> None:
        with pytest.raises(NotFoundError, match="No credentials found for user ghost"):
            await service.create_event("ghost", "cal-1", _new_event())
        assert remote.calls == []

    async def test_client_closed_after_use(self, service, remote) -> None:
        await service.create_event("u1", "cal-1", _new_event())
        assert remote.closed == 1

    async def test_event_without_upstream_id_is_not_mirrored(
        self, service, adapter, remote
    ) -> None:
        remote.created_id = ""
        with pytest.raises(RemoteOperationError, match="returned an event without an id"):
            await service.create_event("u1", "cal-1", _new_event())
        assert [call[0] for call in remote.calls] == ["create_event"]
        assert await adapter.get_events() == []

    async def test_local_failure_after_remote_create_propagates(
        self, failing_service, failing_adapter, remote
    ) -> None:
        failing_adapter.fail_writes = True
        with pytest.raises(StorageOperationError, match="Failed to store event: disk full"):
            await failing_service.create_event("u1", "cal-1", _new_event())
        assert [call[0] for call in remote.calls] == ["create_event"]
        assert await failing_adapter.get_events() == []


# ---------------------------------------------------------------------------
# update_event / delete_event
# ---------------------------------------------------------------------------


class TestUpdateEvent:
    async def test_patch_applied_remotely_then_locally(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1", title="Old"), "u1", "cal-1")

        await service.update_event("u1", "e1", EventPatch(title="New"))

        name, event_id, params = remote.calls[0]
        assert (name, event_id) == ("update_event", "e1")
        assert params.calendar_id == "cal-1"
        assert params.title == "New"
        assert params.start is None
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.title == "New"

    async def test_time_change_sends_bounds(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1"), "u1", "cal-1")
        await service.update_event(
            "u1", "e1", EventPatch(when=Timespan(start_time=5_000, end_time=6_000))
        )
        params = remote.calls[0][2]
        assert (params.start, params.end) == (5_000, 6_000)
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.when == Timespan(start_time=5_000, end_time=6_000)

    async def test_unknown_event_raises_without_remote_call(self, service, remote) -> None:
        with pytest.raises(NotFoundError):
            await service.update_event("u1", "missing", EventPatch(title="x"))
        assert remote.calls == []

    async def test_remote_failure_keeps_local_record(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1", title="Old"), "u1", "cal-1")
        remote.fail_with = RemoteOperationError("Failed to update event: nope", status_code=400)
        with pytest.raises(RemoteOperationError):
            await service.update_event("u1", "e1", EventPatch(title="New"))
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.title == "Old"

    async def test_cleared_title_sent_upstream_as_null(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1", title="Old"), "u1", "cal-1")

        await service.update_event("u1", "e1", EventPatch(title=None, busy=False))

        params = remote.calls[0][2]
        assert {"title", "busy"} <= params.model_fields_set
        assert params.title is None
        assert params.busy is False
        assert "description" not in params.model_fields_set
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.title is None
        assert stored.busy is False

    async def test_cleared_required_field_rejected_before_any_call(
        self, service, adapter, remote
    ) -> None:
        await adapter.store_event(make_event("e1", 100, 200), "u1", "cal-1")
        # model_construct skips the model validator, as a caller bypassing it would.
        patch = EventPatch.model_construct(when=None)

        with pytest.raises(RequestValidationError, match="cannot clear when"):
            await service.update_event("u1", "e1", patch)
        assert remote.calls == []
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.when == Timespan(start_time=100, end_time=200)

    async def test_read_only_patch_rejected(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1"), "u1", "cal-1")
        with pytest.raises(RequestValidationError, match="set by the calendar provider"):
            await service.update_event("u1", "e1", EventPatch(read_only=True))
        assert remote.calls == []
        stored = await adapter.get_event("e1")
        assert stored is not None
        assert stored.read_only is False

    async def test_local_failure_after_remote_update_propagates(
        self, failing_service, failing_adapter, remote
    ) -> None:
        await failing_adapter.store_event(make_event("e1", title="Old"), "u1", "cal-1")
        failing_adapter.fail_writes = True

        with pytest.raises(StorageOperationError, match="Failed to update event: disk full"):
            await failing_service.update_event("u1", "e1", EventPatch(title="New"))
        assert [call[0] for call in remote.calls] == ["update_event"]
        stored = await failing_adapter.get_event("e1")
        assert stored is not None
        assert stored.title == "Old"


class TestDeleteEvent:
    async def test_calendar_taken_from_local_record(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1", calendar_id="cal-7"), "u1", "cal-7")
        await service.delete_event("u1", "e1")
        assert remote.calls == [("delete_event", "e1", "cal-7")]
        assert await adapter.get_event("e1") is None

    async def test_explicit_calendar_wins(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1"), "u1", "cal-1")
        await service.delete_event("u1", "e1", "cal-override")
        assert remote.calls == [("delete_event", "e1", "cal-override")]

    async def test_unknown_event_without_calendar(self, service, remote) -> None:
        with pytest.raises(NotFoundError):
            await service.delete_event("u1", "missing")
        assert remote.calls == []

    async def test_remote_failure_keeps_local_record(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1"), "u1", "cal-1")
        remote.fail_with = RemoteOperationError("Failed to delete event: gone", status_code=404)
        with pytest.raises(RemoteOperationError):
            await service.delete_event("u1", "e1")
        assert await adapter.get_event("e1") is not None

    async def test_local_failure_after_remote_delete_propagates(
        self, failing_service, failing_adapter, remote
    ) -> None:
        await failing_adapter.store_event(make_event("e1"), "u1", "cal-1")
        failing_adapter.fail_writes = True

        with pytest.raises(StorageOperationError, match="Failed to delete event: disk full"):
            await failing_service.delete_event("u1", "e1")
        assert remote.calls == [("delete_event", "e1", "cal-1")]
        assert await failing_adapter.get_event("e1") is not None


# ---------------------------------------------------------------------------
# Reads and conflicts
# ---------------------------------------------------------------------------


class TestReadsAndConflicts:
    async def test_reads_are_local_only(self, service, adapter, remote) -> None:
        await adapter.store_event(make_event("e1"), "u1", "cal-1")
        assert (await service.get_event("e1")).id == "e1"
        assert [event.id for event in await service.get_events()] == ["e1"]
        assert remote.calls == []

    async def test_local_conflicts(self, service, adapter) -> None:
        await adapter.store_event(make_event("busy", 1_000, 2_000), "u1", "cal-1")
        await adapter.store_event(make_event("after", 2_000, 3_000), "u1", "cal-1")
        await adapter.store_event(make_event("other-user", 1_000, 2_000), "u2", "cal-9")

        result = await service.check_conflicts("u1", 1_500, 2_000)
        assert result.has_conflict is True
        assert [event.id for event in result.conflicting_events] == ["busy"]

    async def test_local_conflicts_exclude_edited_event(self, service, adapter) -> None:
        await adapter.store_event(make_event("busy", 1_000, 2_000), "u1", "cal-1")
        result = await service.check_conflicts("u1", 1_500, 1_800, exclude_id="busy")
        assert result.has_conflict is False

    async def test_remote_conflicts_use_upstream_events(self, service, remote) -> None:
        remote.remote_events = [make_event("upstream", 1_000, 2_000)]
        result = await service.check_remote_conflicts("u1", 1_200, 1_300, calendar_id="cal-1")
        assert [event.id for event in result.conflicting_events] == ["upstream"]
        assert remote.calls[0][:2] == ("list_events", "cal-1")


# ---------------------------------------------------------------------------
# Calendars and credentials
# ---------------------------------------------------------------------------


class TestCalendarsAndCredentials:
    async def test_refresh_calendars_mirrors_list(self, service, adapter, remote) -> None:
        remote.calendars = [make_calendar("cal-1"), make_calendar("cal-2", name="Home")]
        calendars = await service.refresh_calendars("u1")
        assert [calendar.id for calendar in calendars] == ["cal-1", "cal-2"]
        stored = await adapter.get_calendars("u1")
        assert {calendar.id for calendar in stored} == {"cal-1", "cal-2"}

    async def test_validate_credentials_success(self, service) -> None:
        assert await service.validate_credentials("u1") is True

    async def test_validate_credentials_without_credentials(self, service, remote) -> None:
        assert await service.validate_credentials("ghost") is False
        assert remote.calls == []

    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_auth_rejection_marks_expired(
        self, service, adapter, remote, status_code
    ) -> None:
        remote.fail_with = RemoteOperationError(
            "Failed to fetch calendars: denied", status_code=status_code
        )
        assert await service.validate_credentials("u1") is False
        assert await adapter.has_valid_credential("u1") is False

    async def test_other_remote_errors_propagate(self, service, adapter, remote) -> None:
        remote.fail_with = RemoteOperationError("Failed to fetch calendars: down", status_code=503)
        with pytest.raises(RemoteOperationError):
            await service.validate_credentials("u1")
        assert await adapter.has_valid_credential("u1") is True

    async def test_disconnect_forgets_credentials(self, service, adapter) -> None:
        await service.disconnect("u1")
        assert await adapter.get_credentials("u1") is None
        with pytest.raises(NotFoundError):
            await service.credentials_for("u1")


# ---------------------------------------------------------------------------
# Tracing
# ---------------------------------------------------------------------------


def _reset_otel_global_state():
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None


@pytest.fixture
def span_exporter():
    """Install an in-memory TracerProvider for one test, then tear down."""
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


async def test_writes_emit_spans_with_ids(adapter, remote, span_exporter) -> None:
    await adapter.store_credentials("u1", make_credentials())
    service = EventSyncService(adapter, lambda credentials: remote)

    event_id = await service.create_event("u1", "cal-1", _new_event())
    await service.delete_event("u1", event_id)

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    create_span = spans["calmirror.sync.create_event"]
    assert create_span.attributes["calmirror.user_id"] == "u1"
    assert create_span.attributes["calmirror.calendar_id"] == "cal-1"
    assert create_span.attributes["calmirror.event_id"] == event_id
    assert spans["calmirror.sync.delete_event"].attributes["calmirror.event_id"] == event_id

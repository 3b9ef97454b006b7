"""Shared fixtures for the vivcal test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from vivcal.display import EngineStatus
from vivcal.models import CalendarDate, CalendarEvent, Instant
from vivcal.provider import CalendarProvider, ChannelSubscription, EventPage
from vivcal.reminders import ReminderTarget

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeProvider(CalendarProvider):
    """In-memory provider recording every call."""

    def __init__(self) -> None:
        self.events: list[CalendarEvent] = []
        self.day_events: dict[date, list[CalendarEvent]] = {}
        self.list_calls: list[dict[str, Any]] = []
        self.watch_calls: list[dict[str, str]] = []
        self.stopped: list[ChannelSubscription] = []
        self.list_error: BaseException | None = None
        self.watch_error: BaseException | None = None
        self.stop_error: BaseException | None = None
        self.subscription_ttl = timedelta(hours=1)
        self.clock: Callable[[], datetime] = lambda: NOW

    @property
    def name(self) -> str:
        return "fake"

    async def list_events(
        self,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        max_results: int = 50,
    ) -> EventPage:
        self.list_calls.append(
            {"time_min": time_min, "time_max": time_max, "max_results": max_results}
        )
        if self.list_error is not None:
            raise self.list_error
        if time_max is not None:
            items = self.day_events.get(time_min.date(), [])
        else:
            items = self.events
        return EventPage(
            events=tuple(items[:max_results]), truncated=len(items) > max_results
        )

    async def watch(self, *, channel_id: str, callback_url: str) -> ChannelSubscription:
        self.watch_calls.append({"channel_id": channel_id, "callback_url": callback_url})
        if self.watch_error is not None:
            raise self.watch_error
        return ChannelSubscription(
            channel_id=channel_id,
            resource_id=f"resource-{len(self.watch_calls)}",
            expiration=self.clock() + self.subscription_ttl,
        )

    async def stop_channel(self, subscription: ChannelSubscription) -> None:
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped.append(subscription)


class RecordingDisplay:
    """DisplaySink double that records every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def show_reminder(self, target: ReminderTarget) -> None:
        self.calls.append(("show", target))

    def close_reminder(self) -> None:
        self.calls.append(("close", None))

    def events_changed(self, events: tuple[CalendarEvent, ...]) -> None:
        self.calls.append(("events", events))

    def status_changed(self, status: EngineStatus) -> None:
        self.calls.append(("status", status))

    def auth_required(self, message: str) -> None:
        self.calls.append(("auth", message))

    def named(self, name: str) -> list[Any]:
        return [payload for call, payload in self.calls if call == name]


def build_event(
    event_id: str,
    start: datetime | date,
    end: datetime | date | None = None,
    *,
    title: str = "Meeting",
    updated_at: datetime | None = None,
    **fields: Any,
) -> CalendarEvent:
    if isinstance(start, datetime):
        end_value = end if end is not None else start + timedelta(hours=1)
        start_time: Instant | CalendarDate = Instant(at=start)
        end_time: Instant | CalendarDate = Instant(at=end_value)
    else:
        end_value = end if end is not None else start + timedelta(days=1)
        start_time = CalendarDate(day=start)
        end_time = CalendarDate(day=end_value)
    return CalendarEvent(
        event_id=event_id,
        start=start_time,
        end=end_time,
        title=title,
        updated_at=updated_at,
        **fields,
    )


@pytest.fixture
def make_event() -> Callable[..., CalendarEvent]:
    return build_event


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def provider(clock: FakeClock) -> FakeProvider:
    fake = FakeProvider()
    fake.clock = clock
    return fake


@pytest.fixture
def display() -> RecordingDisplay:
    return RecordingDisplay()

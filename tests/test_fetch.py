"""Unit tests for the fetch coordinator."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import httpx
import pytest

from vivcal.cache import EventCache
from vivcal.core.timers import TaskScheduler
from vivcal.credentials import (
    AuthenticationRequiredError,
    CredentialGate,
    OAuthClientCredentials,
    StoredToken,
)
from vivcal.errors import CalendarPayloadError, CalendarRequestError, CalendarTransportError
from vivcal.fetch import FetchCoordinator
from vivcal.provider import GoogleCalendarProvider

pytestmark = pytest.mark.unit

UPDATED = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


@pytest.fixture
def changes() -> list[tuple]:
    return []


@pytest.fixture
def scheduler() -> TaskScheduler:
    return TaskScheduler()


@pytest.fixture
def coordinator(provider, scheduler, clock, monotonic, changes) -> FetchCoordinator:
    return FetchCoordinator(
        provider,
        EventCache(tz=UTC),
        scheduler,
        clock=clock,
        monotonic=monotonic,
        on_events_changed=changes.append,
    )


class TestRefresh:
    async def test_window_starts_at_beginning_of_yesterday(self, coordinator, provider):
        await coordinator.refresh()
        call = provider.list_calls[0]
        assert call["time_min"] == datetime(2026, 3, 1, 0, 0, tzinfo=UTC)
        assert call["time_max"] is None
        assert call["max_results"] == 50

    async def test_change_replaces_cache_and_notifies(
        self, coordinator, provider, clock, make_event, changes
    ):
        provider.events = [
            make_event("b", clock.now + timedelta(days=2), updated_at=UPDATED),
            make_event("a", clock.now + timedelta(hours=1), updated_at=UPDATED),
        ]
        snapshot = await coordinator.refresh()

        assert [e.event_id for e in snapshot] == ["a", "b"]
        assert changes == [snapshot]
        assert coordinator.cache.fetched_days == frozenset(
            {date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)}
        )
        assert coordinator.last_success_at == clock.now

    async def test_unchanged_hash_emits_nothing(
        self, coordinator, provider, clock, monotonic, make_event, changes
    ):
        provider.events = [make_event("a", clock.now + timedelta(hours=1), updated_at=UPDATED)]
        first = await coordinator.refresh()
        monotonic.advance(10)
        second = await coordinator.refresh()

        assert len(provider.list_calls) == 2
        assert second is first
        assert len(changes) == 1

    async def test_gate_answers_from_cache_within_interval(
        self, coordinator, provider, clock, monotonic, make_event
    ):
        provider.events = [make_event("a", clock.now + timedelta(hours=1))]
        await coordinator.refresh()
        monotonic.advance(4.9)
        snapshot = await coordinator.refresh()

        assert len(provider.list_calls) == 1
        assert [e.event_id for e in snapshot] == ["a"]

        monotonic.advance(0.2)
        await coordinator.refresh()
        assert len(provider.list_calls) == 2

    async def test_force_bypasses_gate(self, coordinator, provider, clock, make_event):
        provider.events = [make_event("a", clock.now + timedelta(hours=1))]
        await coordinator.refresh()
        await coordinator.refresh(force_refresh=True)
        assert len(provider.list_calls) == 2

    async def test_empty_cache_is_never_gated(self, coordinator, provider):
        await coordinator.refresh()
        await coordinator.refresh()
        assert len(provider.list_calls) == 2

    @pytest.mark.parametrize(
        "error",
        [
            CalendarTransportError("offline"),
            CalendarRequestError(status_code=500, message="boom"),
            CalendarPayloadError("bad"),
        ],
    )
    async def test_failures_keep_last_known_good(
        self, coordinator, provider, clock, monotonic, make_event, changes, error
    ):
        provider.events = [make_event("a", clock.now + timedelta(hours=1))]
        good = await coordinator.refresh()
        provider.list_error = error
        monotonic.advance(60)

        assert await coordinator.refresh() == good
        assert coordinator.cache.events == good
        assert len(changes) == 1

    async def test_auth_failure_propagates(self, coordinator, provider):
        provider.list_error = AuthenticationRequiredError("expired")
        with pytest.raises(AuthenticationRequiredError):
            await coordinator.refresh()

    async def test_truncated_window_leaves_last_day_unfetched(
        self, provider, scheduler, clock, monotonic, make_event
    ):
        coordinator = FetchCoordinator(
            provider,
            EventCache(tz=UTC),
            scheduler,
            max_results=2,
            clock=clock,
            monotonic=monotonic,
        )
        busy_day = date(2026, 3, 5)
        crowded = [
            make_event(f"e{hour}", datetime(2026, 3, 5, hour, tzinfo=UTC), updated_at=UPDATED)
            for hour in (9, 10, 11, 12)
        ]
        provider.events = crowded
        provider.day_events[busy_day] = crowded

        snapshot = await coordinator.refresh()
        assert [e.event_id for e in snapshot] == ["e9", "e10"]
        assert coordinator.cache.fetched_days == frozenset(
            {date(2026, 3, 1), date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)}
        )

        events = await coordinator.fetch_range(busy_day)
        assert provider.list_calls[-1]["time_max"] is not None
        assert [e.event_id for e in events] == ["e9", "e10", "e11", "e12"]
        assert coordinator.cache.is_fetched(busy_day)
        await scheduler.cancel_all()

    async def test_truncated_window_on_first_day_marks_nothing(
        self, coordinator, provider, make_event
    ):
        provider.events = [
            make_event(f"e{i}", datetime(2026, 3, 1, 8, tzinfo=UTC) + timedelta(minutes=i))
            for i in range(51)
        ]
        await coordinator.refresh()
        assert len(coordinator.cache.events) == 50
        assert coordinator.cache.fetched_days == frozenset()

    async def test_range_merge_does_not_count_as_window_change(
        self, coordinator, provider, scheduler, clock, monotonic, make_event, changes
    ):
        provider.events = [make_event("a", clock.now + timedelta(hours=1), updated_at=UPDATED)]
        await coordinator.refresh()
        far_day = date(2026, 3, 20)
        provider.day_events[far_day] = [
            make_event("far", datetime(2026, 3, 20, 9, tzinfo=UTC), updated_at=UPDATED)
        ]
        await coordinator.fetch_range(far_day)
        await scheduler.cancel_all()
        assert len(changes) == 2

        monotonic.advance(60)
        snapshot = await coordinator.refresh()

        assert len(changes) == 2
        assert [e.event_id for e in snapshot] == ["a", "far"]
        assert coordinator.cache.is_fetched(far_day)

    async def test_empty_first_fetch_leaves_cache_untouched(self, coordinator, provider):
        await coordinator.refresh()
        # Empty fetch has the same hash as the empty cache; nothing replaced.
        assert coordinator.cache.fetched_days == frozenset()


class TestFetchRange:
    async def test_fetches_day_and_prefetches_next_once(
        self, coordinator, provider, scheduler, make_event
    ):
        day = date(2026, 3, 10)
        provider.day_events[day] = [make_event("d1", datetime(2026, 3, 10, 9, tzinfo=UTC))]
        provider.day_events[day + timedelta(days=1)] = [
            make_event("d2", datetime(2026, 3, 11, 9, tzinfo=UTC))
        ]

        events = await coordinator.fetch_range(day)
        assert [e.event_id for e in events] == ["d1"]

        for handle in scheduler.pending:
            await handle.wait()

        assert [c["time_min"].date() for c in provider.list_calls] == [
            date(2026, 3, 10),
            date(2026, 3, 11),
        ]
        first = provider.list_calls[0]
        assert first["time_max"] - first["time_min"] == timedelta(days=1)
        assert coordinator.cache.is_fetched(date(2026, 3, 11))
        assert not coordinator.cache.is_fetched(date(2026, 3, 12))
        assert [e.event_id for e in coordinator.cache.events] == ["d1", "d2"]

    async def test_already_fetched_day_is_served_from_cache(
        self, coordinator, provider, scheduler
    ):
        day = date(2026, 3, 10)
        coordinator.cache.mark_fetched(day)
        coordinator.cache.mark_fetched(day + timedelta(days=1))

        assert await coordinator.fetch_range(day) == ()
        assert provider.list_calls == []
        assert scheduler.pending == []

    async def test_force_refetches_known_day(self, coordinator, provider, scheduler):
        day = date(2026, 3, 10)
        coordinator.cache.mark_fetched(day)
        coordinator.cache.mark_fetched(day + timedelta(days=1))

        await coordinator.fetch_range(day, force=True)
        assert len(provider.list_calls) == 1
        assert scheduler.pending == []

    async def test_merge_keeps_newer_record(
        self, coordinator, provider, scheduler, clock, make_event
    ):
        day = date(2026, 3, 2)
        newer = make_event("a", clock.now + timedelta(hours=1), title="New", updated_at=UPDATED)
        provider.events = [newer]
        await coordinator.refresh()

        older = make_event(
            "a",
            clock.now + timedelta(hours=1),
            title="Old",
            updated_at=UPDATED - timedelta(days=1),
        )
        provider.day_events[day] = [older]
        events = await coordinator.fetch_range(day, force=True)
        assert [e.title for e in events] == ["New"]
        await scheduler.cancel_all()

    async def test_prefetch_failure_is_logged_not_raised(
        self, coordinator, provider, scheduler, caplog
    ):
        day = date(2026, 3, 10)
        await coordinator.fetch_range(day)
        provider.list_error = CalendarTransportError("offline")
        for handle in scheduler.pending:
            await handle.wait()

        assert not coordinator.cache.is_fetched(day + timedelta(days=1))
        assert "failed" in caplog.text

    async def test_failed_fetch_returns_cached_day(self, coordinator, provider, scheduler):
        provider.list_error = CalendarTransportError("offline")
        assert await coordinator.fetch_range(date(2026, 3, 10)) == ()
        assert not coordinator.cache.is_fetched(date(2026, 3, 10))
        assert scheduler.pending == []


class TestTokenEndpointOutage:
    async def test_forced_refresh_serves_cache_when_token_endpoint_is_down(
        self, scheduler, clock, monotonic
    ):
        token_endpoint_up = True

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "oauth2.googleapis.com":
                if not token_endpoint_up:
                    raise httpx.ConnectError("offline", request=request)
                return httpx.Response(200, json={"access_token": "fresh"})
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": "standup",
                            "summary": "Standup",
                            "start": {"dateTime": "2026-03-02T10:00:00Z"},
                            "end": {"dateTime": "2026-03-02T10:30:00Z"},
                        }
                    ]
                },
            )

        token = StoredToken(
            refresh_token="refresh",
            access_token="cached",
            expiry_date=int((clock.now + timedelta(hours=1)).timestamp() * 1000),
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            gate = CredentialGate(
                OAuthClientCredentials(client_id="id", client_secret="secret"),
                token,
                http_client,
                clock=clock,
            )
            coordinator = FetchCoordinator(
                GoogleCalendarProvider(gate, http_client),
                EventCache(tz=UTC),
                scheduler,
                clock=clock,
                monotonic=monotonic,
            )
            good = await coordinator.refresh()
            assert [e.event_id for e in good] == ["standup"]

            token_endpoint_up = False
            clock.advance(hours=2)
            assert await coordinator.refresh(force_refresh=True) == good

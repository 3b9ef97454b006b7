"""Fetch coordination between the calendar provider and the event cache.

:class:`FetchCoordinator` is the only component that calls
``CalendarProvider.list_events``. It enforces the minimum refresh interval,
swaps window fetches into the cache when their change hash differs from the
previous window fetch, and serves per-day range fetches with a one-hop
prefetch of the following day. A day is marked fetched only when the page
covering it was not cut off at ``max_results``.

Transient and malformed-payload failures are logged and answered with the
last-known-good cache. ``AuthenticationRequiredError`` is the only error
that leaves this module.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import date, datetime, timedelta
from datetime import time as dt_time

from vivcal.cache import EventCache, EventSet, compute_change_hash, event_day, sort_events
from vivcal.core.metrics import refresh_gate_hits_total
from vivcal.core.timers import Clock, MonotonicClock, TaskScheduler, utc_now
from vivcal.credentials import AuthenticationRequiredError
from vivcal.errors import CalendarError
from vivcal.provider import CalendarProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 50
DEFAULT_MIN_REFRESH_INTERVAL_SECONDS = 5.0

# Single-day range fetches ask for the provider's page maximum.
DAY_FETCH_MAX_RESULTS = 250

EventsChangedCallback = Callable[[EventSet], None]


def _day_span(first: date, last: date) -> list[date]:
    return [first + timedelta(days=offset) for offset in range((last - first).days + 1)]


class FetchCoordinator:
    """Rate-limited upstream fetches feeding one :class:`EventCache`."""

    def __init__(
        self,
        provider: CalendarProvider,
        cache: EventCache,
        scheduler: TaskScheduler,
        *,
        max_results: int = DEFAULT_MAX_RESULTS,
        min_refresh_interval: float = DEFAULT_MIN_REFRESH_INTERVAL_SECONDS,
        clock: Clock = utc_now,
        monotonic: MonotonicClock = time.monotonic,
        on_events_changed: EventsChangedCallback | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._scheduler = scheduler
        self._max_results = max_results
        self._min_refresh_interval = min_refresh_interval
        self._clock = clock
        self._monotonic = monotonic
        self._on_events_changed = on_events_changed
        self._last_success_monotonic: float | None = None
        self._last_success_at: datetime | None = None
        # Hash of the last window fetch; range merges never touch it.
        self._window_hash = cache.change_hash

    @property
    def cache(self) -> EventCache:
        return self._cache

    @property
    def last_success_at(self) -> datetime | None:
        """Wall-clock time of the last successful upstream fetch."""
        return self._last_success_at

    def _window_start(self) -> datetime:
        today = self._clock().astimezone(self._cache.tz).date()
        return datetime.combine(today - timedelta(days=1), dt_time.min, tzinfo=self._cache.tz)

    def _gate_open(self) -> bool:
        if self._last_success_monotonic is None or self._cache.is_empty:
            return True
        elapsed = self._monotonic() - self._last_success_monotonic
        return elapsed >= self._min_refresh_interval

    def _record_success(self) -> None:
        self._last_success_monotonic = self._monotonic()
        self._last_success_at = self._clock()

    def _emit_changed(self, events: EventSet) -> None:
        if self._on_events_changed is not None:
            self._on_events_changed(events)

    async def refresh(self, *, force_refresh: bool = False) -> EventSet:
        """Fetch the rolling window starting yesterday and replace the cache on change.

        Within the minimum refresh interval of the last successful fetch the
        cached set is returned without calling upstream, unless
        *force_refresh* is set or the cache is empty.
        """
        if not force_refresh and not self._gate_open():
            refresh_gate_hits_total.inc()
            logger.debug("Refresh answered from cache (minimum interval not elapsed)")
            return self._cache.events

        window_start = self._window_start()
        try:
            page = await self._provider.list_events(
                time_min=window_start, max_results=self._max_results
            )
        except AuthenticationRequiredError:
            raise
        except CalendarError as exc:
            logger.warning("Calendar refresh failed, keeping cached events: %s", exc)
            return self._cache.events

        self._record_success()
        events = sort_events(page.events, tz=self._cache.tz)
        window_hash = compute_change_hash(events)
        if window_hash == self._window_hash:
            logger.debug("Calendar refresh returned no changes (%d events)", len(events))
            return self._cache.events

        self._window_hash = window_hash
        snapshot = self._cache.replace(
            events, fetched_days=self._covered_days(window_start.date(), events, page.truncated)
        )
        logger.info("Calendar events changed (%d events)", len(snapshot))
        self._emit_changed(snapshot)
        return snapshot

    def _covered_days(self, first: date, events: EventSet, truncated: bool) -> list[date]:
        """Days from *first* whose events the window fetch returned completely."""
        tz = self._cache.tz
        event_days = [event_day(event, tz) for event in events]
        if truncated:
            # The last returned day may continue past the cut-off.
            if not event_days:
                return []
            return _day_span(first, max(event_days) - timedelta(days=1))
        today = self._clock().astimezone(tz).date()
        return _day_span(first, max([today, *event_days]))

    async def fetch_range(self, day: date, *, force: bool = False) -> EventSet:
        """Return the cached events starting on *day*, fetching that day if needed.

        After a fetch, the following day is prefetched in the background
        once; the prefetch never chains further.
        """
        if not force and self._cache.is_fetched(day):
            return self._cache.events_on(day)

        fetched = await self._fetch_day(day)
        if fetched:
            next_day = day + timedelta(days=1)
            if not self._cache.is_fetched(next_day):
                self._scheduler.spawn(
                    lambda: self._prefetch(next_day), name=f"prefetch:{next_day.isoformat()}"
                )
        return self._cache.events_on(day)

    async def _prefetch(self, day: date) -> None:
        try:
            await self._fetch_day(day)
        except AuthenticationRequiredError as exc:
            logger.warning("Prefetch of %s skipped: %s", day.isoformat(), exc)

    async def _fetch_day(self, day: date) -> bool:
        tz = self._cache.tz
        day_start = datetime.combine(day, dt_time.min, tzinfo=tz)
        day_end = datetime.combine(day + timedelta(days=1), dt_time.min, tzinfo=tz)
        try:
            page = await self._provider.list_events(
                time_min=day_start, time_max=day_end, max_results=DAY_FETCH_MAX_RESULTS
            )
        except AuthenticationRequiredError:
            raise
        except CalendarError as exc:
            logger.warning("Fetch for %s failed, keeping cached events: %s", day.isoformat(), exc)
            return False

        self._record_success()
        previous_hash = self._cache.change_hash
        snapshot = self._cache.merge_in(page.events)
        if page.truncated:
            logger.warning(
                "Fetch for %s hit the %d event page limit; day left unmarked",
                day.isoformat(),
                DAY_FETCH_MAX_RESULTS,
            )
        else:
            self._cache.mark_fetched(day)
        logger.debug("Fetched %d events for %s", len(page.events), day.isoformat())
        if self._cache.change_hash != previous_hash:
            self._emit_changed(snapshot)
        return True

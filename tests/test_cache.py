"""Unit tests for event merge, change hashing and the event cache."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from vivcal.cache import EMPTY_EVENT_SET, EventCache, compute_change_hash, merge, sort_events

pytestmark = pytest.mark.unit

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
EARLY = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
LATE = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestMerge:
    def test_union_sorted_by_start(self, make_event):
        a = make_event("a", T0 + timedelta(hours=2))
        b = make_event("b", T0)
        c = make_event("c", T0 + timedelta(hours=1))
        merged = merge([a], [b, c])
        assert [e.event_id for e in merged] == ["b", "c", "a"]

    def test_later_updated_at_wins_either_order(self, make_event):
        old = make_event("x", T0, title="Old", updated_at=EARLY)
        new = make_event("x", T0, title="New", updated_at=LATE)
        assert merge([old], [new])[0].title == "New"
        assert merge([new], [old])[0].title == "New"

    def test_missing_updated_at_loses(self, make_event):
        stamped = make_event("x", T0, title="Stamped", updated_at=EARLY)
        bare = make_event("x", T0, title="Bare")
        assert merge([stamped], [bare])[0].title == "Stamped"
        assert merge([bare], [stamped])[0].title == "Stamped"

    def test_equal_updated_at_keeps_existing(self, make_event):
        first = make_event("x", T0, title="First", updated_at=EARLY)
        second = make_event("x", T0, title="Second", updated_at=EARLY)
        assert merge([first], [second])[0].title == "First"

    def test_idempotent(self, make_event):
        events = sort_events([make_event("a", T0), make_event("b", T0 + timedelta(hours=1))])
        assert merge(events, events) == events
        assert merge(events, EMPTY_EVENT_SET) == events
        assert merge(EMPTY_EVENT_SET, events) == events

    def test_ties_on_start_break_by_id(self, make_event):
        merged = merge([make_event("z", T0)], [make_event("a", T0)])
        assert [e.event_id for e in merged] == ["a", "z"]

    def test_all_day_sorts_at_local_midnight(self, make_event):
        timed = make_event("timed", datetime(2026, 3, 2, 0, 30, tzinfo=UTC))
        all_day = make_event("allday", date(2026, 3, 2))
        assert [e.event_id for e in merge([timed], [all_day])] == ["allday", "timed"]


class TestChangeHash:
    def test_cosmetic_change_keeps_hash(self, make_event):
        before = [make_event("a", T0, title="Standup", updated_at=EARLY)]
        after = [make_event("a", T0, title="Daily standup", description="x", updated_at=EARLY)]
        assert compute_change_hash(before) == compute_change_hash(after)

    def test_start_move_changes_hash(self, make_event):
        before = [make_event("a", T0, updated_at=EARLY)]
        after = [make_event("a", T0 + timedelta(minutes=30), updated_at=EARLY)]
        assert compute_change_hash(before) != compute_change_hash(after)

    def test_updated_at_change_changes_hash(self, make_event):
        before = [make_event("a", T0, updated_at=EARLY)]
        after = [make_event("a", T0, updated_at=LATE)]
        assert compute_change_hash(before) != compute_change_hash(after)

    def test_order_independent(self, make_event):
        a = make_event("a", T0)
        b = make_event("b", T0 + timedelta(hours=1))
        assert compute_change_hash([a, b]) == compute_change_hash([b, a])

    def test_added_event_changes_hash(self, make_event):
        a = make_event("a", T0)
        assert compute_change_hash([a]) != compute_change_hash([a, make_event("b", T0)])


class TestEventCache:
    def test_starts_empty(self):
        cache = EventCache()
        assert cache.is_empty
        assert cache.events == ()
        assert cache.change_hash == compute_change_hash(())

    def test_replace_resets_fetched_days(self, make_event):
        cache = EventCache()
        cache.mark_fetched(date(2026, 1, 1))
        snapshot = cache.replace(
            [make_event("b", T0 + timedelta(hours=1)), make_event("a", T0)],
            fetched_days=[date(2026, 3, 1), date(2026, 3, 2)],
        )
        assert [e.event_id for e in snapshot] == ["a", "b"]
        assert cache.fetched_days == frozenset({date(2026, 3, 1), date(2026, 3, 2)})
        assert not cache.is_fetched(date(2026, 1, 1))

    def test_snapshot_is_immutable(self, make_event):
        cache = EventCache()
        cache.replace([make_event("a", T0)], fetched_days=[])
        snapshot = cache.events
        cache.merge_in([make_event("b", T0 + timedelta(hours=1))])
        assert len(snapshot) == 1
        assert isinstance(snapshot, tuple)
        assert len(cache.events) == 2

    def test_merge_in_updates_hash(self, make_event):
        cache = EventCache()
        before = cache.change_hash
        cache.merge_in([make_event("a", T0)])
        assert cache.change_hash != before

    def test_events_on_uses_cache_timezone(self, make_event):
        tz = timezone(timedelta(hours=10))
        cache = EventCache(tz=tz)
        # 2026-03-02 20:00 UTC is already 2026-03-03 in UTC+10.
        late = make_event("late", datetime(2026, 3, 2, 20, 0, tzinfo=UTC))
        early = make_event("early", datetime(2026, 3, 2, 1, 0, tzinfo=UTC))
        cache.merge_in([late, early])
        assert [e.event_id for e in cache.events_on(date(2026, 3, 3))] == ["late"]
        assert [e.event_id for e in cache.events_on(date(2026, 3, 2))] == ["early"]

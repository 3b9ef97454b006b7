"""Reminder decision state machine.

:meth:`ReminderEngine.evaluate` picks at most one event to alert for:

- while an event is in progress, the next event once it is within
  ``next_trigger`` of starting (only considered if it starts within
  ``next_window``);
- otherwise the upcoming event once it is within ``lead`` of starting.

A target is shown once while its reminder is open; the user's last
dismissal suppresses it. An open reminder that is no longer wanted is
closed once the current event has been running for ``stale_after``.

Snoozing records the dismissal as well as the snooze deadline, so a snoozed
event stays suppressed when its follow-up evaluation runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vivcal.cache import EventSet
from vivcal.core.metrics import reminders_total
from vivcal.links import resolve_meeting_link
from vivcal.models import CalendarEvent

logger = logging.getLogger(__name__)

DEFAULT_LEAD = timedelta(seconds=60)
DEFAULT_NEXT_WINDOW = timedelta(minutes=30)
DEFAULT_NEXT_TRIGGER = timedelta(minutes=2)
DEFAULT_STALE_AFTER = timedelta(minutes=5)


class ReminderState(BaseModel):
    """Dismissal and snooze bookkeeping, persisted best-effort."""

    model_config = ConfigDict(extra="forbid")

    last_dismissed_id: str | None = None
    snoozed_until: dict[str, datetime] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> ReminderState:
        """Load state from *path*; a missing or unreadable file yields an empty state."""
        try:
            return cls.model_validate_json(path.read_text())
        except FileNotFoundError:
            return cls()
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring unreadable reminder state at %s: %s", path, exc)
            return cls()

    def save(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.model_dump_json(indent=2))
        except OSError:
            logger.warning("Failed to persist reminder state to %s", path, exc_info=True)


@dataclass(frozen=True)
class ReminderTarget:
    """What the display layer needs to show a reminder."""

    event: CalendarEvent
    meeting_link: str | None
    starts_in: timedelta


class ReminderAction(StrEnum):
    SHOW = "show"
    CLOSE = "close"


@dataclass(frozen=True)
class ReminderUpdate:
    action: ReminderAction
    target: ReminderTarget | None = None


class ReminderEngine:
    """Decides which event, if any, should be surfaced as a reminder."""

    def __init__(
        self,
        *,
        tz: tzinfo = UTC,
        lead: timedelta = DEFAULT_LEAD,
        next_window: timedelta = DEFAULT_NEXT_WINDOW,
        next_trigger: timedelta = DEFAULT_NEXT_TRIGGER,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        state_path: Path | None = None,
    ) -> None:
        self._tz = tz
        self._lead = lead
        self._next_window = next_window
        self._next_trigger = next_trigger
        self._stale_after = stale_after
        self._state_path = state_path
        self._state = ReminderState.load(state_path) if state_path else ReminderState()
        self._open_event_id: str | None = None

    @property
    def state(self) -> ReminderState:
        return self._state

    @property
    def open_event_id(self) -> str | None:
        """Event id of the reminder currently shown, if any."""
        return self._open_event_id

    def select_target(self, events: EventSet, now: datetime) -> CalendarEvent | None:
        """Return the event that qualifies for a reminder at *now*, ignoring dismissals."""
        upcoming = [event for event in events if event.end_at(self._tz) > now]
        if not upcoming:
            return None
        current = upcoming[0]
        following = upcoming[1] if len(upcoming) > 1 else None

        in_current = current.start_at(self._tz) <= now < current.end_at(self._tz)
        if in_current and following is not None:
            until_next = following.start_at(self._tz) - now
            if until_next <= self._next_window:
                return following if until_next <= self._next_trigger else None
        if not in_current and current.start_at(self._tz) - now <= self._lead:
            return current
        return None

    def evaluate(self, events: EventSet, now: datetime) -> ReminderUpdate | None:
        """Advance the state machine; returns the display change to apply, if any."""
        self._expire_snoozes(now)
        upcoming = [event for event in events if event.end_at(self._tz) > now]
        if not upcoming:
            return self._close()

        current = upcoming[0]
        target = self.select_target(events, now)
        if target is not None and not self._suppressed(target.event_id):
            if target.event_id == self._open_event_id:
                return None
            self._open_event_id = target.event_id
            reminders_total.labels(action="show").inc()
            logger.info("Showing reminder for event %s", target.event_id)
            return ReminderUpdate(
                action=ReminderAction.SHOW,
                target=ReminderTarget(
                    event=target,
                    meeting_link=resolve_meeting_link(target),
                    starts_in=target.start_at(self._tz) - now,
                ),
            )

        running_for = now - current.start_at(self._tz)
        if self._open_event_id is not None and running_for >= self._stale_after:
            logger.info("Closing stale reminder for event %s", self._open_event_id)
            return self._close()
        return None

    def dismiss(self, event_id: str) -> ReminderUpdate | None:
        """User dismissed *event_id*: suppress it and close any open reminder."""
        self._state = self._state.model_copy(update={"last_dismissed_id": event_id})
        self._persist()
        logger.info("Reminder dismissed for event %s", event_id)
        return self._close()

    def snooze(self, event_id: str, minutes: float, now: datetime) -> ReminderUpdate | None:
        """Close the reminder for *event_id* and record a snooze deadline.

        The caller schedules the follow-up evaluation after *minutes*.
        """
        if minutes <= 0:
            raise ValueError("snooze minutes must be positive")
        snoozed = dict(self._state.snoozed_until)
        snoozed[event_id] = now + timedelta(minutes=minutes)
        self._state = self._state.model_copy(
            update={"last_dismissed_id": event_id, "snoozed_until": snoozed}
        )
        self._persist()
        logger.info("Reminder for event %s snoozed for %s minutes", event_id, minutes)
        return self._close()

    def _suppressed(self, event_id: str) -> bool:
        return event_id == self._state.last_dismissed_id or event_id in self._state.snoozed_until

    def _expire_snoozes(self, now: datetime) -> None:
        remaining = {
            event_id: deadline
            for event_id, deadline in self._state.snoozed_until.items()
            if deadline > now
        }
        if len(remaining) != len(self._state.snoozed_until):
            self._state = self._state.model_copy(update={"snoozed_until": remaining})
            self._persist()

    def _close(self) -> ReminderUpdate | None:
        if self._open_event_id is None:
            return None
        self._open_event_id = None
        reminders_total.labels(action="close").inc()
        return ReminderUpdate(action=ReminderAction.CLOSE)

    def _persist(self) -> None:
        if self._state_path is not None:
            self._state.save(self._state_path)

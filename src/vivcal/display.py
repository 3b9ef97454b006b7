"""Display collaborator contract and the console implementation used by the CLI.

The daemon pushes reminder and status changes through :class:`DisplaySink`.
User actions (dismiss, snooze) travel the other way through
:meth:`vivcal.daemon.CalendarDaemon.dismiss` and
:meth:`vivcal.daemon.CalendarDaemon.snooze`.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import Protocol

import click

from vivcal.cache import EventSet
from vivcal.core.timers import Clock, utc_now
from vivcal.models import CalendarEvent
from vivcal.reminders import ReminderTarget

NO_UPCOMING_EVENTS = "No upcoming events"
NEXT_EVENT_WINDOW = timedelta(minutes=30)
TITLE_MAX_LENGTH = 20
DEGRADED_MARKER = " (polling)"


class EngineStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    AUTH_REQUIRED = "auth_required"
    STOPPED = "stopped"


class DisplaySink(Protocol):
    def show_reminder(self, target: ReminderTarget) -> None: ...

    def close_reminder(self) -> None: ...

    def events_changed(self, events: EventSet) -> None: ...

    def status_changed(self, status: EngineStatus) -> None: ...

    def auth_required(self, message: str) -> None: ...


def ellipsis(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3].strip() + ".."


def format_time_until(start: datetime, now: datetime) -> str:
    """Relative start time rounded to 10 minutes: ``in 1h 20m``, ``in 40m`` or ``now``."""
    minutes = math.floor((start - now).total_seconds() / 60)
    if minutes <= 0:
        return "now"
    hours, remainder = divmod(minutes, 60)
    rounded = math.floor(remainder / 10 + 0.5) * 10
    if rounded == 60:
        hours, rounded = hours + 1, 0
    if hours <= 0 and rounded <= 0:
        return "now"

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if rounded > 0:
        parts.append(f"{rounded}m")
    return "in " + " ".join(parts)


def tray_title(
    events: EventSet,
    now: datetime,
    *,
    tz: tzinfo = UTC,
    degraded: bool = False,
) -> str:
    """One-line summary of the next event; an imminent following event takes precedence."""
    upcoming = [event for event in events if event.end_at(tz) > now]
    if not upcoming:
        title = NO_UPCOMING_EVENTS
    else:
        event: CalendarEvent = upcoming[0]
        title = f"{event.title} {format_time_until(event.start_at(tz), now)}"
        if len(upcoming) > 1:
            following = upcoming[1]
            if following.start_at(tz) - now <= NEXT_EVENT_WINDOW:
                title = (
                    f"{ellipsis(following.title, TITLE_MAX_LENGTH)} "
                    f"{format_time_until(following.start_at(tz), now)}"
                )
    return title + DEGRADED_MARKER if degraded else title


class ConsoleDisplay:
    """Writes reminders and the tray title line to the terminal."""

    def __init__(
        self,
        *,
        tz: tzinfo = UTC,
        clock: Clock = utc_now,
        echo: Callable[[str], None] = click.echo,
    ) -> None:
        self._tz = tz
        self._clock = clock
        self._echo = echo
        self._events: EventSet = ()
        self._status = EngineStatus.STARTING
        self._reminder: ReminderTarget | None = None

    @property
    def reminder(self) -> ReminderTarget | None:
        return self._reminder

    def title(self) -> str:
        return tray_title(
            self._events,
            self._clock(),
            tz=self._tz,
            degraded=self._status == EngineStatus.DEGRADED,
        )

    def show_reminder(self, target: ReminderTarget) -> None:
        self._reminder = target
        start = target.event.start_at(self._tz)
        line = f"Reminder: {target.event.title} ({format_time_until(start, self._clock())})"
        if target.meeting_link:
            line += f" {target.meeting_link}"
        self._echo(line)

    def close_reminder(self) -> None:
        if self._reminder is not None:
            self._echo(f"Reminder closed: {self._reminder.event.title}")
        self._reminder = None

    def events_changed(self, events: EventSet) -> None:
        self._events = events
        self._echo(self.title())

    def status_changed(self, status: EngineStatus) -> None:
        self._status = status
        self._echo(f"Status: {status}")

    def auth_required(self, message: str) -> None:
        self._echo(f"Authentication required: {message}")

"""Canonical calendar event shapes and Google Calendar payload parsing.

An event boundary is either an :class:`Instant` (timed event) or a
:class:`CalendarDate` (all-day event). :func:`to_instant` is the one place
where either form becomes a comparable aware ``datetime``; every time
comparison in the engine goes through it.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, tzinfo
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNTITLED_EVENT = "(untitled)"


class Instant(BaseModel):
    """A timed event boundary."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["instant"] = "instant"
    at: datetime

    @field_validator("at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class CalendarDate(BaseModel):
    """An all-day event boundary."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    day: date


EventTime = Annotated[Instant | CalendarDate, Field(discriminator="kind")]


def to_instant(value: Instant | CalendarDate, tz: tzinfo = UTC) -> datetime:
    """Return *value* as an aware datetime; all-day dates start at local midnight in *tz*."""
    if isinstance(value, Instant):
        return value.at
    return datetime.combine(value.day, time.min, tzinfo=tz)


class Attendee(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    display_name: str | None = None
    response_status: str | None = None
    organizer: bool = False


class EntryPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_point_type: str
    uri: str


class ConferenceData(BaseModel):
    """Structured conferencing descriptor (type + entry points)."""

    model_config = ConfigDict(frozen=True)

    conference_type: str | None = None
    entry_points: tuple[EntryPoint, ...] = ()


class CalendarEvent(BaseModel):
    """Canonical event record held by the cache."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1)
    start: EventTime
    end: EventTime
    title: str = UNTITLED_EVENT
    attendees: tuple[Attendee, ...] = ()
    organizer: str | None = None
    conference: ConferenceData | None = None
    hangout_link: str | None = None
    location: str | None = None
    description: str | None = None
    html_link: str | None = None
    updated_at: datetime | None = None

    @property
    def all_day(self) -> bool:
        return isinstance(self.start, CalendarDate)

    def start_at(self, tz: tzinfo = UTC) -> datetime:
        return to_instant(self.start, tz)

    def end_at(self, tz: tzinfo = UTC) -> datetime:
        return to_instant(self.end, tz)


# ---------------------------------------------------------------------------
# Google Calendar payload parsing
# ---------------------------------------------------------------------------


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_boundary(payload: Any, *, field_name: str, event_id: str) -> EventTime:
    if not isinstance(payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing its {field_name}")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return Instant(at=parse_google_datetime(date_time))

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return CalendarDate(day=date.fromisoformat(date_value.strip()))
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

    raise ValueError(f"Google Calendar event '{event_id}' has no dateTime or date in {field_name}")


def _parse_attendees(payload: Any) -> tuple[Attendee, ...]:
    if not isinstance(payload, list):
        return ()
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_normalize_optional_text(entry.get("responseStatus")),
                organizer=entry.get("organizer") is True,
            )
        )
    return tuple(attendees)


def _parse_conference(payload: Any) -> ConferenceData | None:
    if not isinstance(payload, dict):
        return None

    solution = payload.get("conferenceSolution")
    conference_type = None
    if isinstance(solution, dict):
        key = solution.get("key")
        if isinstance(key, dict):
            conference_type = _normalize_optional_text(key.get("type"))

    entry_points: list[EntryPoint] = []
    raw_entry_points = payload.get("entryPoints")
    if isinstance(raw_entry_points, list):
        for entry in raw_entry_points:
            if not isinstance(entry, dict):
                continue
            uri = _normalize_optional_text(entry.get("uri"))
            kind = _normalize_optional_text(entry.get("entryPointType"))
            if uri and kind:
                entry_points.append(EntryPoint(entry_point_type=kind, uri=uri))

    if conference_type is None and not entry_points:
        return None
    return ConferenceData(conference_type=conference_type, entry_points=tuple(entry_points))


def _parse_optional_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_google_datetime(value)
    except ValueError:
        return None


def event_from_google(payload: dict[str, Any]) -> CalendarEvent | None:
    """Build a :class:`CalendarEvent` from one Calendar API ``events#list`` item.

    Returns ``None`` for cancelled events. Raises ``ValueError`` when the
    payload lacks an id or usable start/end.
    """
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    organizer_payload = payload.get("organizer")
    organizer = (
        _normalize_optional_text(organizer_payload.get("email"))
        if isinstance(organizer_payload, dict)
        else None
    )

    return CalendarEvent(
        event_id=event_id,
        start=_parse_google_boundary(payload.get("start"), field_name="start", event_id=event_id),
        end=_parse_google_boundary(payload.get("end"), field_name="end", event_id=event_id),
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT,
        attendees=_parse_attendees(payload.get("attendees")),
        organizer=organizer,
        conference=_parse_conference(payload.get("conferenceData")),
        hangout_link=_normalize_optional_text(payload.get("hangoutLink")),
        location=_normalize_optional_text(payload.get("location")),
        description=_normalize_optional_text(payload.get("description")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
        updated_at=_parse_optional_timestamp(payload.get("updated")),
    )

"""Meeting-link resolution for reminder targets.

Sources are tried in priority order:

1. the event's explicit video-conferencing link (``hangoutLink``)
2. the first ``video`` entry point of the structured conference descriptor
3. a pattern scan of the location
4. a pattern scan of the description
5. a pattern scan of the canonical event link

The pattern scan tries vendor URL shapes in :data:`MEETING_URL_PATTERNS`
order and returns the first hit with trailing punctuation stripped.
"""

from __future__ import annotations

import html
import re

from vivcal.models import CalendarEvent

# URL bodies stop at whitespace, quotes and angle brackets so links embedded
# in HTML descriptions come out clean.
_URL_TAIL = r"[^\s\"'<>]+"
_TRAILING_CHARS = ".,;:!?)]}>'\""

MEETING_URL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("zoom", re.compile(rf"https://(?:[a-z0-9-]+\.)?zoom\.us/(?:j|my|w|s)/{_URL_TAIL}", re.I)),
    (
        "google_meet",
        re.compile(r"https://meet\.google\.com/[a-z]{3}-[a-z]{4}-[a-z]{3}[^\s\"'<>]*", re.I),
    ),
    ("teams", re.compile(rf"https://teams\.microsoft\.com/l/meetup-join/{_URL_TAIL}", re.I)),
    ("teams_live", re.compile(rf"https://teams\.live\.com/meet/{_URL_TAIL}", re.I)),
    ("webex", re.compile(rf"https://[a-z0-9.-]+\.webex\.com/{_URL_TAIL}", re.I)),
    (
        "goto",
        re.compile(rf"https://(?:meet\.goto\.com|global\.gotomeeting\.com/join)/{_URL_TAIL}", re.I),
    ),
    ("bluejeans", re.compile(r"https://(?:[a-z0-9-]+\.)?bluejeans\.com/\d+[^\s\"'<>]*", re.I)),
    ("whereby", re.compile(rf"https://whereby\.com/{_URL_TAIL}", re.I)),
    ("jitsi", re.compile(rf"https://meet\.jit\.si/{_URL_TAIL}", re.I)),
    ("chime", re.compile(r"https://chime\.aws/\d+[^\s\"'<>]*", re.I)),
)


def _clean(url: str) -> str | None:
    cleaned = url.strip().rstrip(_TRAILING_CHARS)
    return cleaned or None


def scan_for_meeting_url(text: str | None) -> str | None:
    """Return the first vendor meeting URL found in *text*."""
    if not text:
        return None
    haystack = html.unescape(text)
    for _vendor, pattern in MEETING_URL_PATTERNS:
        match = pattern.search(haystack)
        if match:
            cleaned = _clean(match.group(0))
            if cleaned:
                return cleaned
    return None


def _conference_video_uri(event: CalendarEvent) -> str | None:
    if event.conference is None:
        return None
    for entry in event.conference.entry_points:
        if entry.entry_point_type == "video":
            return _clean(entry.uri)
    return None


def resolve_meeting_link(event: CalendarEvent) -> str | None:
    """Resolve the URL a user would click to join *event*, or ``None``."""
    if event.hangout_link:
        link = _clean(event.hangout_link)
        if link:
            return link

    link = _conference_video_uri(event)
    if link:
        return link

    for text in (event.location, event.description, event.html_link):
        link = scan_for_meeting_url(text)
        if link:
            return link
    return None

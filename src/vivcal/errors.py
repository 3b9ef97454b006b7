"""Calendar error hierarchy shared by the provider and the credential gate.

Every :class:`CalendarError` is transient from the engine's point of view:
callers keep serving cached data and try again on the next refresh.
"""

from __future__ import annotations


class CalendarError(RuntimeError):
    """Base error raised by calendar provider operations."""


class CalendarRequestError(CalendarError):
    """Raised when the Calendar API answers with a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarTransportError(CalendarError):
    """Raised when a Google endpoint could not be reached or answered with a server error."""


class CalendarPayloadError(CalendarError):
    """Raised when the Calendar API returns a payload the engine cannot use."""

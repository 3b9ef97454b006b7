"""vivcal: calendar event sync and meeting reminder engine."""

__version__ = "0.1.0"

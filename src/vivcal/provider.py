"""Upstream calendar provider contract and the Google Calendar v3 implementation.

The engine consumes three provider operations: ``list_events`` (read-only),
``watch`` (register a push channel) and ``stop_channel``. Request failures
are raised as :class:`~vivcal.errors.CalendarError` subclasses. A rejected
token refresh surfaces as
:class:`~vivcal.credentials.AuthenticationRequiredError` straight from the
credential gate; an unreachable token endpoint is a transport error like any
other.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from vivcal.core.metrics import track_upstream_call
from vivcal.credentials import CredentialGate
from vivcal.errors import CalendarPayloadError, CalendarRequestError, CalendarTransportError
from vivcal.models import CalendarEvent, event_from_google

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

GOOGLE_MAX_PAGE_SIZE = 250

# Renewal fires this long before a channel expires.
CHANNEL_RENEWAL_LEAD = timedelta(seconds=60)


class ChannelSubscription(BaseModel):
    """A registered push channel. Replaced, never mutated, on renewal."""

    model_config = ConfigDict(frozen=True)

    channel_id: str
    resource_id: str | None = None
    expiration: datetime

    def renewal_deadline(self, lead: timedelta = CHANNEL_RENEWAL_LEAD) -> datetime:
        return self.expiration - lead

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration


class EventPage(BaseModel):
    """One ``list_events`` answer.

    ``truncated`` is set when upstream stopped at ``max_results`` and more
    events exist past the last one returned, so the day of that last event
    may be only partly covered.
    """

    model_config = ConfigDict(frozen=True)

    events: tuple[CalendarEvent, ...] = ()
    truncated: bool = False


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def safe_google_error_message(response: httpx.Response) -> str:
    """Compact, credential-redacted error summary from a Google error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            raw = error_payload.get("message")
            if isinstance(raw, str) and raw.strip():
                message = raw
        elif isinstance(error_payload, str) and error_payload.strip():
            message = error_payload

    if message is None:
        message = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_credential_values(message).split())[:200]


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/-]+=*", "Bearer [REDACTED]", redacted)
    return redacted


class CalendarProvider(abc.ABC):
    """Provider abstraction consumed by the fetch coordinator and update channel."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        max_results: int = 50,
    ) -> EventPage:
        """Return single (expanded) events ending after *time_min*, ordered by start.

        At most *max_results* upstream items are considered; the page is
        flagged ``truncated`` when more were available.
        """
        ...

    @abc.abstractmethod
    async def watch(self, *, channel_id: str, callback_url: str) -> ChannelSubscription:
        """Register a push channel delivering change notifications to *callback_url*."""
        ...

    @abc.abstractmethod
    async def stop_channel(self, subscription: ChannelSubscription) -> None:
        """Stop a previously registered push channel."""
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 provider using bearer tokens from a :class:`CredentialGate`."""

    def __init__(
        self,
        gate: CredentialGate,
        http_client: httpx.AsyncClient,
        *,
        calendar_id: str = "primary",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gate = gate
        self._http_client = http_client
        self._calendar_id = calendar_id
        self._sleep = sleep

    @property
    def name(self) -> str:
        return "google"

    @property
    def _calendar_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}"

    async def list_events(
        self,
        *,
        time_min: datetime,
        time_max: datetime | None = None,
        max_results: int = 50,
    ) -> EventPage:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        page_size = min(max_results, GOOGLE_MAX_PAGE_SIZE)
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "false",
            "orderBy": "startTime",
            "maxResults": page_size,
            "timeMin": google_rfc3339(time_min),
        }
        if time_max is not None:
            params["timeMax"] = google_rfc3339(time_max)

        with track_upstream_call("events.list"):
            payload = await self._request_google_json(
                "GET", f"{self._calendar_path}/events", params=params
            )

        items = payload.get("items")
        if not isinstance(items, list):
            raise CalendarPayloadError("Google Calendar events response missing items array")

        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                raise CalendarPayloadError("Google Calendar events response has a non-object item")
            try:
                event = event_from_google(item)
            except (ValueError, ValidationError) as exc:
                raise CalendarPayloadError(f"Malformed event payload: {exc}") from exc
            if event is not None:
                events.append(event)

        # Cancelled items still count against the page size.
        truncated = bool(payload.get("nextPageToken")) or len(items) >= page_size
        return EventPage(events=tuple(events), truncated=truncated)

    async def watch(self, *, channel_id: str, callback_url: str) -> ChannelSubscription:
        with track_upstream_call("events.watch"):
            payload = await self._request_google_json(
                "POST",
                f"{self._calendar_path}/events/watch",
                json_body={"id": channel_id, "type": "web_hook", "address": callback_url},
            )

        expiration_raw = payload.get("expiration")
        try:
            expiration_ms = int(expiration_raw)
        except (TypeError, ValueError) as exc:
            raise CalendarPayloadError(
                f"Watch response has no usable expiration: {expiration_raw!r}"
            ) from exc

        resource_id = payload.get("resourceId")
        return ChannelSubscription(
            channel_id=str(payload.get("id") or channel_id),
            resource_id=resource_id if isinstance(resource_id, str) else None,
            expiration=datetime.fromtimestamp(expiration_ms / 1000, UTC),
        )

    async def stop_channel(self, subscription: ChannelSubscription) -> None:
        body: dict[str, Any] = {"id": subscription.channel_id}
        if subscription.resource_id:
            body["resourceId"] = subscription.resource_id
        with track_upstream_call("channels.stop"):
            await self._request_google_json("POST", "/channels/stop", json_body=body)

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarPayloadError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarPayloadError("Google Calendar API returned an unexpected JSON payload")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await self._sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._gate.get_valid_token(force_refresh=force_refresh)
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        logger.debug("Calendar API request %s %s", method, url)
        try:
            return await self._http_client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"Google Calendar request failed: {exc}") from exc

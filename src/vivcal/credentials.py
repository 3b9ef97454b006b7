"""Google OAuth credential gate.

The interactive browser consent flow happens elsewhere; this module only
consumes its result: an OAuth client (``client_id``/``client_secret``) and a
token file holding a refresh token plus the last access token and its expiry.

:class:`CredentialGate` hands out a valid bearer token, exchanging the
refresh token at the Google token endpoint when the cached access token is
missing or close to expiry. A refreshed token is written back to the token
file on a best-effort basis. A rejected refresh (4xx, malformed response or
unusable credential files) surfaces as :class:`AuthenticationRequiredError`,
the one error the engine treats as fatal. An unreachable token endpoint or a
429/5xx answer is transient and raises
:class:`~vivcal.errors.CalendarTransportError` instead, so callers keep
serving cached data and retry later.

Secret material (client_secret, refresh_token, access tokens) is never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from vivcal.core.timers import Clock, utc_now
from vivcal.errors import CalendarTransportError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Tokens are treated as expired this long before their real expiry.
TOKEN_EXPIRY_SKEW_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600

# Token endpoint answers that mean "try again later" rather than "re-authenticate".
TRANSIENT_TOKEN_STATUS_CODES = {408, 429}


class AuthenticationRequiredError(RuntimeError):
    """Raised when no valid access token can be obtained; the user must re-authenticate."""


class OAuthClientCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthClientCredentials:
        """Parse a Google client secrets document (flat, ``installed`` or ``web``)."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise AuthenticationRequiredError(
                f"Client secrets must be valid JSON: {exc.msg}"
            ) from exc

        if not isinstance(payload, dict):
            raise AuthenticationRequiredError("Client secrets must decode to a JSON object")

        values = {
            key: _extract_client_value(payload, key) for key in ("client_id", "client_secret")
        }
        missing = sorted(key for key, value in values.items() if not isinstance(value, str))
        if missing:
            raise AuthenticationRequiredError(
                f"Client secrets are missing required field(s): {', '.join(missing)}"
            )
        try:
            return cls(**values)
        except ValidationError as exc:
            raise AuthenticationRequiredError(f"Client secrets are invalid: {exc}") from exc


def _extract_client_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


class StoredToken(BaseModel):
    """Token file contents; ``expiry_date`` is epoch milliseconds."""

    model_config = ConfigDict(extra="allow")

    refresh_token: str = Field(min_length=1)
    access_token: str | None = None
    expiry_date: int | None = None

    @property
    def expires_at(self) -> datetime | None:
        if self.expiry_date is None:
            return None
        return datetime.fromtimestamp(self.expiry_date / 1000, UTC)


def load_client_credentials(path: Path) -> OAuthClientCredentials:
    try:
        raw = Path(path).read_text()
    except OSError as exc:
        raise AuthenticationRequiredError(f"Cannot read client secrets at {path}: {exc}") from exc
    return OAuthClientCredentials.from_json(raw)


def load_token_file(path: Path) -> StoredToken:
    try:
        raw = Path(path).read_text()
    except OSError as exc:
        raise AuthenticationRequiredError(
            f"No stored token at {path}; complete the OAuth consent flow first"
        ) from exc
    try:
        return StoredToken.model_validate_json(raw)
    except ValidationError as exc:
        raise AuthenticationRequiredError(f"Stored token at {path} is invalid") from exc


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


class CredentialGate:
    """Refresh-token OAuth helper with access-token caching."""

    def __init__(
        self,
        client: OAuthClientCredentials,
        token: StoredToken,
        http_client: httpx.AsyncClient,
        *,
        token_path: Path | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._client = client
        self._token = token
        self._http_client = http_client
        self._token_path = token_path
        self._clock = clock
        self._refresh_lock = asyncio.Lock()

    @property
    def token(self) -> StoredToken:
        return self._token

    async def get_valid_token(self, *, force_refresh: bool = False) -> str:
        cached = None if force_refresh else self._fresh_access_token()
        if cached is not None:
            return cached

        async with self._refresh_lock:
            cached = None if force_refresh else self._fresh_access_token()
            if cached is not None:
                return cached
            return await self._refresh_access_token()

    def _fresh_access_token(self) -> str | None:
        """Return the cached access token unless it is missing or inside the expiry skew."""
        access_token = self._token.access_token
        expires_at = self._token.expires_at
        if access_token is None or expires_at is None:
            return None
        if self._clock() >= expires_at - timedelta(seconds=TOKEN_EXPIRY_SKEW_SECONDS):
            return None
        return access_token

    async def _refresh_access_token(self) -> str:
        logger.info("Access token expired, refreshing")
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client.client_id,
                    "client_secret": self._client.client_secret,
                    "refresh_token": self._token.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransportError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        status = response.status_code
        if status in TRANSIENT_TOKEN_STATUS_CODES or status >= 500:
            raise CalendarTransportError(
                f"Google OAuth token endpoint unavailable ({status}); will retry"
            )
        if status < 200 or status >= 300:
            raise AuthenticationRequiredError(
                f"Google OAuth token refresh failed ({status})"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationRequiredError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthenticationRequiredError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        access_token = access_token.strip()
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        expires_at = self._clock() + timedelta(seconds=expires_in)
        self._token = self._token.model_copy(
            update={
                "access_token": access_token,
                "expiry_date": int(expires_at.timestamp() * 1000),
            }
        )
        logger.debug("Refreshed OAuth access token (expires in %ds)", expires_in)
        self._persist()
        return access_token

    def _persist(self) -> None:
        if self._token_path is None:
            return
        try:
            self._token_path.parent.mkdir(parents=True, exist_ok=True)
            self._token_path.write_text(self._token.model_dump_json(indent=2, exclude_none=True))
        except OSError:
            logger.warning(
                "Failed to persist refreshed token to %s", self._token_path, exc_info=True
            )

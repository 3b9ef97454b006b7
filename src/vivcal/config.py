"""Configuration loading and validation.

Reads ``vivcal.toml``, resolves ``${VAR_NAME}`` references from the
environment, and returns a validated :class:`VivcalConfig` dataclass.

Example::

    [calendar]
    calendar_id = "primary"
    timezone = "Europe/Amsterdam"

    [credentials]
    client_secrets = "~/.config/vivcal/credentials.json"
    token_file = "~/.config/vivcal/token.json"

    [channel]
    public_url = "${VIVCAL_PUBLIC_URL}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_FILENAME = "vivcal.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class CalendarSettings:
    """Upstream calendar selection from the [calendar] section."""

    calendar_id: str = "primary"
    timezone: str | None = None
    max_results: int = 50
    min_refresh_interval_s: float = 5.0

    @property
    def tz(self) -> tzinfo:
        """Configured timezone, or the host's local timezone when unset."""
        if self.timezone:
            return ZoneInfo(self.timezone)
        return datetime.now(UTC).astimezone().tzinfo or UTC


@dataclass
class CredentialsConfig:
    client_secrets: Path = Path("credentials.json")
    token_file: Path = Path("token.json")


@dataclass
class ChannelConfig:
    """Push channel and polling settings from the [channel] section.

    ``public_url`` is the externally reachable base URL that forwards to the
    local webhook listener; without it the channel runs in polling-only mode.
    """

    public_url: str | None = None
    host: str = "127.0.0.1"
    port: int = 8085
    path: str = "/calendar-webhook"
    debounce_ms: int = 500
    renewal_lead_s: float = 60.0
    poll_interval_s: float = 60.0
    degraded_poll_interval_s: float = 30.0

    @property
    def callback_url(self) -> str | None:
        if not self.public_url:
            return None
        return self.public_url.rstrip("/") + self.path


@dataclass
class ReminderConfig:
    lead_s: float = 60.0
    next_window_min: float = 30.0
    next_trigger_min: float = 2.0
    stale_after_min: float = 5.0
    default_snooze_min: float = 5.0
    evaluate_interval_s: float = 15.0
    state_file: Path | None = None


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8086


@dataclass
class VivcalConfig:
    """Parsed and validated vivcal configuration."""

    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        raise ConfigError(f"Unresolved environment variable(s): {', '.join(missing)}")
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_number(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be a number.")
    if raw <= 0:
        raise ConfigError(f"Invalid {where}.{key}: {raw!r}. Must be positive.")
    return float(raw)


def _optional_str(section: dict[str, Any], key: str, *, where: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{where}.{key} must be a string when set")
    return raw.strip() or None


def _path(raw: Any, *, base_dir: Path, where: str) -> Path:
    if not isinstance(raw, str | Path) or not str(raw).strip():
        raise ConfigError(f"{where} must be a non-empty path")
    path = Path(str(raw)).expanduser()
    return path if path.is_absolute() else base_dir / path


def parse_config(data: dict[str, Any], *, base_dir: Path) -> VivcalConfig:
    """Validate a parsed TOML document. Relative paths resolve against *base_dir*."""
    data = resolve_env_vars(data)

    # --- [calendar] ---
    calendar_section = _section(data, "calendar")
    calendar_id = str(calendar_section.get("calendar_id", "primary")).strip()
    if not calendar_id:
        raise ConfigError("calendar.calendar_id must be a non-empty string")
    timezone = _optional_str(calendar_section, "timezone", where="calendar")
    if timezone is not None:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown calendar.timezone: {timezone!r}") from exc
    max_results = calendar_section.get("max_results", 50)
    if isinstance(max_results, bool) or not isinstance(max_results, int) or max_results < 1:
        raise ConfigError(
            f"Invalid calendar.max_results: {max_results!r}. Must be a positive integer."
        )
    calendar = CalendarSettings(
        calendar_id=calendar_id,
        timezone=timezone,
        max_results=max_results,
        min_refresh_interval_s=_positive_number(
            calendar_section, "min_refresh_interval_s", 5.0, where="calendar"
        ),
    )

    # --- [credentials] ---
    credentials_section = _section(data, "credentials")
    credentials = CredentialsConfig(
        client_secrets=_path(
            credentials_section.get("client_secrets", "credentials.json"),
            base_dir=base_dir,
            where="credentials.client_secrets",
        ),
        token_file=_path(
            credentials_section.get("token_file", "token.json"),
            base_dir=base_dir,
            where="credentials.token_file",
        ),
    )

    # --- [channel] ---
    channel_section = _section(data, "channel")
    public_url = _optional_str(channel_section, "public_url", where="channel")
    if public_url is not None and not public_url.startswith("https://"):
        raise ConfigError(f"Invalid channel.public_url: {public_url!r}. Must be an https URL.")
    path = str(channel_section.get("path", "/calendar-webhook"))
    if not path.startswith("/"):
        raise ConfigError(f"Invalid channel.path: {path!r}. Must start with '/'.")
    port = channel_section.get("port", 8085)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"Invalid channel.port: {port!r}")
    channel = ChannelConfig(
        public_url=public_url,
        host=str(channel_section.get("host", "127.0.0.1")),
        port=port,
        path=path,
        debounce_ms=int(_positive_number(channel_section, "debounce_ms", 500, where="channel")),
        renewal_lead_s=_positive_number(channel_section, "renewal_lead_s", 60.0, where="channel"),
        poll_interval_s=_positive_number(
            channel_section, "poll_interval_s", 60.0, where="channel"
        ),
        degraded_poll_interval_s=_positive_number(
            channel_section, "degraded_poll_interval_s", 30.0, where="channel"
        ),
    )

    # --- [reminders] ---
    reminders_section = _section(data, "reminders")
    state_file_raw = reminders_section.get("state_file")
    reminders = ReminderConfig(
        lead_s=_positive_number(reminders_section, "lead_s", 60.0, where="reminders"),
        next_window_min=_positive_number(
            reminders_section, "next_window_min", 30.0, where="reminders"
        ),
        next_trigger_min=_positive_number(
            reminders_section, "next_trigger_min", 2.0, where="reminders"
        ),
        stale_after_min=_positive_number(
            reminders_section, "stale_after_min", 5.0, where="reminders"
        ),
        default_snooze_min=_positive_number(
            reminders_section, "default_snooze_min", 5.0, where="reminders"
        ),
        evaluate_interval_s=_positive_number(
            reminders_section, "evaluate_interval_s", 15.0, where="reminders"
        ),
        state_file=(
            _path(state_file_raw, base_dir=base_dir, where="reminders.state_file")
            if state_file_raw is not None
            else None
        ),
    )

    # --- [logging] ---
    logging_section = _section(data, "logging")
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(logging_section, "log_root", where="logging"),
    )

    # --- [health] ---
    health_section = _section(data, "health")
    health_port = health_section.get("port", 8086)
    if isinstance(health_port, bool) or not isinstance(health_port, int):
        raise ConfigError(f"Invalid health.port: {health_port!r}")
    health = HealthConfig(
        enabled=bool(health_section.get("enabled", False)),
        host=str(health_section.get("host", "127.0.0.1")),
        port=health_port,
    )

    return VivcalConfig(
        calendar=calendar,
        credentials=credentials,
        channel=channel,
        reminders=reminders,
        logging=logging_config,
        health=health,
    )


def load_config(path: Path) -> VivcalConfig:
    """Load and validate *path*, or ``vivcal.toml`` inside it when *path* is a directory.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data, base_dir=toml_path.parent)

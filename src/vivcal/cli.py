"""CLI for vivcal: run the sync and reminder daemon, or inspect the calendar once."""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import date, datetime
from pathlib import Path

import click
import httpx

from vivcal import __version__
from vivcal.cache import EventCache
from vivcal.config import ConfigError, VivcalConfig, load_config
from vivcal.core.logging import configure_logging
from vivcal.core.timers import TaskScheduler, utc_now
from vivcal.credentials import (
    AuthenticationRequiredError,
    CredentialGate,
    load_client_credentials,
    load_token_file,
)
from vivcal.display import ConsoleDisplay, EngineStatus, tray_title
from vivcal.fetch import FetchCoordinator
from vivcal.links import resolve_meeting_link
from vivcal.provider import GoogleCalendarProvider

DEFAULT_CONFIG_PATH = Path("vivcal.toml")
HTTP_TIMEOUT_SECONDS = 30.0

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to vivcal.toml (or the directory containing it)",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """vivcal: calendar sync and meeting reminder daemon."""


def _load(config_path: Path) -> VivcalConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(2)


def _configure_logging(config: VivcalConfig) -> None:
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
        account=config.calendar.calendar_id,
    )


def build_provider(config: VivcalConfig, http_client: httpx.AsyncClient) -> GoogleCalendarProvider:
    """Load stored OAuth material and build the Google Calendar provider.

    Raises :class:`AuthenticationRequiredError` when the client secrets or
    token file are missing or invalid.
    """
    gate = CredentialGate(
        load_client_credentials(config.credentials.client_secrets),
        load_token_file(config.credentials.token_file),
        http_client,
        token_path=config.credentials.token_file,
    )
    return GoogleCalendarProvider(gate, http_client, calendar_id=config.calendar.calendar_id)


@cli.command()
@config_option
def run(config_path: Path) -> None:
    """Run the daemon until interrupted."""
    config = _load(config_path)
    _configure_logging(config)
    status = asyncio.run(_run_daemon(config))
    if status == EngineStatus.AUTH_REQUIRED:
        sys.exit(1)


async def _run_daemon(config: VivcalConfig) -> EngineStatus:
    from vivcal.daemon import CalendarDaemon

    display = ConsoleDisplay(tz=config.calendar.tz)
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as http_client:
        try:
            provider = build_provider(config, http_client)
        except AuthenticationRequiredError as exc:
            display.auth_required(str(exc))
            return EngineStatus.AUTH_REQUIRED

        daemon = CalendarDaemon.from_config(config, provider, display)
        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            click.echo("\nShutting down...")
            daemon.request_stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        click.echo(f"vivcal watching calendar {config.calendar.calendar_id!r}")
        await daemon.run()
        return daemon.status


@cli.command()
@config_option
@click.option(
    "--date",
    "day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Print the events starting on this day (YYYY-MM-DD) instead of the upcoming window",
)
def events(config_path: Path, day: datetime | None) -> None:
    """Fetch events once and print them; the upcoming window also prints the tray title."""
    config = _load(config_path)
    _configure_logging(config)
    try:
        asyncio.run(_print_events(config, day.date() if day else None))
    except AuthenticationRequiredError as exc:
        click.echo(f"Authentication required: {exc}", err=True)
        sys.exit(1)


async def _print_events(config: VivcalConfig, day: date | None = None) -> None:
    tz = config.calendar.tz
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS) as http_client:
        provider = build_provider(config, http_client)
        cache = EventCache(tz=tz)
        scheduler = TaskScheduler()
        fetcher = FetchCoordinator(
            provider, cache, scheduler, max_results=config.calendar.max_results
        )
        if day is None:
            snapshot = await fetcher.refresh(force_refresh=True)
        else:
            snapshot = await fetcher.fetch_range(day, force=True)
        await scheduler.cancel_all()

    if fetcher.last_success_at is None:
        click.echo("Calendar could not be reached.", err=True)
    for event in snapshot:
        start = event.start_at(tz)
        when = start.date().isoformat() if event.all_day else start.strftime("%Y-%m-%d %H:%M")
        line = f"{when}  {event.title}"
        link = resolve_meeting_link(event)
        if link:
            line += f"  {link}"
        click.echo(line)
    if day is None:
        click.echo("")
        click.echo(tray_title(snapshot, utc_now(), tz=tz))


@cli.command("check-config")
@config_option
def check_config(config_path: Path) -> None:
    """Validate the configuration file and print the resolved settings."""
    config = _load(config_path)
    channel = config.channel
    click.echo(f"calendar:       {config.calendar.calendar_id}")
    click.echo(f"timezone:       {config.calendar.timezone or 'local'}")
    click.echo(f"client secrets: {config.credentials.client_secrets}")
    click.echo(f"token file:     {config.credentials.token_file}")
    click.echo(f"webhook:        {channel.host}:{channel.port}{channel.path}")
    click.echo(f"callback url:   {channel.callback_url or '(none, polling only)'}")
    click.echo(
        f"polling:        every {channel.poll_interval_s:g}s "
        f"({channel.degraded_poll_interval_s:g}s when degraded)"
    )
    if config.health.enabled:
        click.echo(f"health:         {config.health.host}:{config.health.port}")
    click.echo("Configuration OK")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

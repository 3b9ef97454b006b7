"""Tests for the CLI commands."""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from click.testing import CliRunner

from vivcal import cli as cli_module
from vivcal.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "vivcal.toml"
    path.write_text(
        '[calendar]\ncalendar_id = "work"\ntimezone = "UTC"\n\n'
        '[channel]\npublic_url = "https://vivcal.example.com"\n'
    )
    return path


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    monkeypatch.setattr(cli_module, "configure_logging", lambda **kwargs: None)


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestCheckConfig:
    def test_prints_resolved_settings(self, runner, config_file):
        result = runner.invoke(cli, ["check-config", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "calendar:       work" in result.output
        assert "https://vivcal.example.com/calendar-webhook" in result.output
        assert "Configuration OK" in result.output

    def test_accepts_directory(self, runner, config_file):
        result = runner.invoke(cli, ["check-config", "--config", str(config_file.parent)])
        assert result.exit_code == 0, result.output

    def test_invalid_config_exits_2(self, runner, tmp_path: Path):
        path = tmp_path / "vivcal.toml"
        path.write_text('[channel]\npublic_url = "http://plain.example.com"\n')

        result = runner.invoke(cli, ["check-config", "--config", str(path)])

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output


class TestEvents:
    def test_missing_credentials_exit_1(self, runner, config_file):
        result = runner.invoke(cli, ["events", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Authentication required" in result.output

    def test_date_option_prints_that_day(
        self, runner, config_file, monkeypatch, provider, make_event
    ):
        day = date(2026, 3, 10)
        provider.day_events[day] = [
            make_event("d1", datetime(2026, 3, 10, 14, 30, tzinfo=UTC), title="Design review")
        ]
        monkeypatch.setattr(cli_module, "build_provider", lambda config, http_client: provider)

        result = runner.invoke(
            cli, ["events", "--config", str(config_file), "--date", "2026-03-10"]
        )

        assert result.exit_code == 0, result.output
        assert "2026-03-10 14:30  Design review" in result.output
        call = provider.list_calls[0]
        assert call["time_min"] == datetime(2026, 3, 10, tzinfo=UTC)
        assert call["time_max"] == datetime(2026, 3, 11, tzinfo=UTC)

    def test_invalid_date_is_a_usage_error(self, runner, config_file):
        result = runner.invoke(
            cli, ["events", "--config", str(config_file), "--date", "10/03/2026"]
        )
        assert result.exit_code == 2


class TestRun:
    def test_missing_credentials_exit_1(self, runner, config_file):
        result = runner.invoke(cli, ["run", "--config", str(config_file)])

        assert result.exit_code == 1
        assert "Authentication required" in result.output

"""Tests for the webhook and health HTTP surfaces."""

from __future__ import annotations

import httpx
import pytest

from vivcal.webhook import (
    DEFAULT_WEBHOOK_PATH,
    AppServer,
    HealthStatus,
    create_health_app,
    create_webhook_app,
)

pytestmark = pytest.mark.unit


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


class TestWebhookApp:
    async def test_post_is_accepted_and_forwarded(self):
        notifications: list[int] = []
        app = create_webhook_app(DEFAULT_WEBHOOK_PATH, lambda: notifications.append(1))

        async with _client(app) as client:
            response = await client.post(
                DEFAULT_WEBHOOK_PATH,
                headers={"X-Goog-Resource-State": "exists", "X-Goog-Channel-ID": "chan-1"},
            )

        assert response.status_code == 200
        assert response.json() == {"status": "accepted"}
        assert notifications == [1]

    async def test_empty_sync_ping_is_accepted(self):
        notifications: list[int] = []
        app = create_webhook_app("/hook", lambda: notifications.append(1))

        async with _client(app) as client:
            response = await client.post("/hook", headers={"X-Goog-Resource-State": "sync"})

        assert response.status_code == 200
        assert notifications == [1]

    @pytest.mark.parametrize(
        ("method", "path", "status"),
        [
            ("GET", DEFAULT_WEBHOOK_PATH, 405),
            ("PUT", DEFAULT_WEBHOOK_PATH, 405),
            ("POST", "/other", 404),
            ("GET", "/", 404),
        ],
    )
    async def test_other_routes_trigger_nothing(self, method, path, status):
        notifications: list[int] = []
        app = create_webhook_app(DEFAULT_WEBHOOK_PATH, lambda: notifications.append(1))

        async with _client(app) as client:
            response = await client.request(method, path)

        assert response.status_code == status
        assert notifications == []


class TestHealthApp:
    async def test_health_reports_status(self):
        status = HealthStatus(
            status="running",
            channel_state="active",
            degraded=False,
            auth_required=False,
            event_count=3,
            last_fetch_at="2026-03-02T09:00:00+00:00",
            timestamp="2026-03-02T09:00:05+00:00",
        )
        app = create_health_app(lambda: status)

        async with _client(app) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "running"
        assert body["event_count"] == 3
        assert body["degraded"] is False

    async def test_metrics_exposes_prometheus_text(self):
        app = create_health_app(lambda: None)  # type: ignore[arg-type,return-value]

        async with _client(app) as client:
            response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "vivcal_push_notifications_total" in response.text


class TestAppServer:
    async def test_start_and_stop_on_ephemeral_port(self):
        closed: list[BaseException | None] = []
        app = create_webhook_app(DEFAULT_WEBHOOK_PATH, lambda: None)
        server = AppServer(app, host="127.0.0.1", port=0, name="webhook")

        await server.start(closed.append)
        assert server.running

        await server.stop()
        assert not server.running
        # A requested stop is not reported as an unexpected close.
        assert closed == []

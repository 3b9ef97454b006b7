"""Inbound HTTP surfaces: the push-notification webhook and the health server.

Both are FastAPI apps served by uvicorn as tasks on the running event loop.
The webhook answers ``POST <path>`` with 200 immediately and hands the
notification to a callback; every other path or method falls through to the
framework's 404/405 and triggers nothing.

:class:`AppServer` reports an unexpected exit through ``on_closed`` so the
update channel can fall back to polling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterator
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest
from pydantic import BaseModel

from vivcal.core.metrics import push_notifications_total

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_PATH = "/calendar-webhook"
STARTUP_POLL_SECONDS = 0.01

NotificationCallback = Callable[[], None]
ClosedCallback = Callable[[BaseException | None], None]


class ListenerStartError(RuntimeError):
    """Raised when an embedded HTTP server fails to bind or start."""


class HealthStatus(BaseModel):
    status: str
    channel_state: str
    degraded: bool
    auth_required: bool
    event_count: int
    last_fetch_at: str | None = None
    timestamp: str


def create_webhook_app(path: str, on_notification: NotificationCallback) -> FastAPI:
    """Build the push-notification app; only ``POST <path>`` is routed."""
    app = FastAPI(title="vivcal calendar webhook")

    @app.post(path)
    async def webhook(request: Request) -> dict[str, str]:
        """Accept a calendar change notification."""
        logger.debug(
            "Received push notification: state=%s channel=%s",
            request.headers.get("X-Goog-Resource-State"),
            request.headers.get("X-Goog-Channel-ID"),
        )
        push_notifications_total.inc()
        on_notification()
        return {"status": "accepted"}

    return app


def create_health_app(get_status: Callable[[], HealthStatus]) -> FastAPI:
    app = FastAPI(title="vivcal health")

    @app.get("/health")
    async def health() -> HealthStatus:
        return get_status()

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the daemon."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class AppServer:
    """Run one ASGI app on the current loop until stopped."""

    def __init__(self, app: Any, *, host: str, port: int, name: str) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._name = name
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._on_closed: ClosedCallback | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, on_closed: ClosedCallback | None = None) -> None:
        """Start serving; returns once the socket is bound.

        Raises :class:`ListenerStartError` when the server exits before
        finishing startup (e.g. the port is already in use).
        """
        self._on_closed = on_closed
        self._stopping = False
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level="warning",
            lifespan="off",
        )
        server = _EmbeddedServer(config)
        self._server = server
        self._task = asyncio.create_task(self._serve(server), name=f"vivcal:{self._name}")

        while not server.started:
            if self._task.done():
                self._task = None
                raise ListenerStartError(
                    f"{self._name} server failed to start on {self._host}:{self._port}"
                )
            await asyncio.sleep(STARTUP_POLL_SECONDS)

        self._task.add_done_callback(self._handle_done)
        logger.info(
            "%s server started",
            self._name,
            extra={"host": self._host, "port": self._port},
        )

    async def _serve(self, server: _EmbeddedServer) -> None:
        try:
            await server.serve()
        except SystemExit:
            # uvicorn exits the process on bind failure; keep it inside this task.
            logger.error("%s server exited during startup", self._name)

    def _handle_done(self, task: asyncio.Task[None]) -> None:
        if self._stopping:
            return
        error: BaseException | None = None
        if not task.cancelled():
            error = task.exception()
        logger.warning("%s server stopped unexpectedly: %s", self._name, error)
        if self._on_closed is not None:
            self._on_closed(error)

    async def stop(self) -> None:
        self._stopping = True
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            except Exception:
                logger.exception("%s server failed while stopping", self._name)
        self._task = None
        self._server = None
        logger.info("%s server stopped", self._name)


class WebhookListener:
    """Push-notification transport: the webhook app on an :class:`AppServer`."""

    def __init__(self, *, host: str, port: int, path: str = DEFAULT_WEBHOOK_PATH) -> None:
        self.host = host
        self.port = port
        self.path = path
        self._server: AppServer | None = None

    @property
    def running(self) -> bool:
        return self._server is not None and self._server.running

    async def start(
        self,
        on_notification: NotificationCallback,
        on_closed: ClosedCallback | None = None,
    ) -> None:
        app = create_webhook_app(self.path, on_notification)
        self._server = AppServer(app, host=self.host, port=self.port, name="webhook")
        await self._server.start(on_closed)

    async def stop(self) -> None:
        if self._server is not None:
            await self._server.stop()
            self._server = None

"""The engine's single owned context.

:class:`CalendarDaemon` wires the cache, fetch coordinator, update channel
and reminder engine together and runs them on one event loop. Refresh and
evaluation requests travel through one ``asyncio.Queue`` consumed by a
single task, so the cache and reminder state are only ever touched from
that task or from plain synchronous callbacks on the same loop.

Flow::

    push / poll -> Refresh -> FetchCoordinator.refresh -> EventCache
    fetch_day   -> FetchDay -> FetchCoordinator.fetch_range -> EventCache
                -> Evaluate -> ReminderEngine.evaluate -> DisplaySink
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, date, timedelta, tzinfo

from vivcal.cache import EventCache, EventSet
from vivcal.channel import ChannelState, Listener, UpdateChannel
from vivcal.config import VivcalConfig
from vivcal.core.timers import Clock, MonotonicClock, ScheduledTask, TaskScheduler, utc_now
from vivcal.credentials import AuthenticationRequiredError
from vivcal.display import DisplaySink, EngineStatus
from vivcal.fetch import FetchCoordinator
from vivcal.provider import CHANNEL_RENEWAL_LEAD, CalendarProvider
from vivcal.reminders import ReminderAction, ReminderEngine, ReminderUpdate
from vivcal.webhook import (
    AppServer,
    HealthStatus,
    ListenerStartError,
    WebhookListener,
    create_health_app,
)

logger = logging.getLogger(__name__)

DEFAULT_EVALUATE_INTERVAL_SECONDS = 15.0
DEFAULT_SNOOZE_MINUTES = 5.0


@dataclass(frozen=True)
class Refresh:
    force: bool = False


@dataclass(frozen=True)
class Evaluate:
    pass


@dataclass(frozen=True)
class FetchDay:
    day: date
    reply: asyncio.Future[EventSet] = field(compare=False, repr=False)
    force: bool = False


Message = Refresh | Evaluate | FetchDay


class CalendarDaemon:
    """Owns every engine component, timer and the message queue."""

    def __init__(
        self,
        provider: CalendarProvider,
        display: DisplaySink,
        *,
        tz: tzinfo = UTC,
        clock: Clock = utc_now,
        monotonic: MonotonicClock = time.monotonic,
        scheduler: TaskScheduler | None = None,
        listener: Listener | None = None,
        callback_url: str | None = None,
        max_results: int = 50,
        min_refresh_interval: float = 5.0,
        poll_interval: float = 60.0,
        degraded_poll_interval: float = 30.0,
        debounce: float = 0.5,
        renewal_lead: timedelta = CHANNEL_RENEWAL_LEAD,
        reminders: ReminderEngine | None = None,
        evaluate_interval: float = DEFAULT_EVALUATE_INTERVAL_SECONDS,
        default_snooze_minutes: float = DEFAULT_SNOOZE_MINUTES,
    ) -> None:
        self._display = display
        self._clock = clock
        self._scheduler = scheduler or TaskScheduler()
        self._evaluate_interval = evaluate_interval
        self._default_snooze_minutes = default_snooze_minutes

        self.cache = EventCache(tz=tz)
        self.fetcher = FetchCoordinator(
            provider,
            self.cache,
            self._scheduler,
            max_results=max_results,
            min_refresh_interval=min_refresh_interval,
            clock=clock,
            monotonic=monotonic,
            on_events_changed=self._events_changed,
        )
        self.channel = UpdateChannel(
            provider,
            self._scheduler,
            request_refresh=self.request_refresh,
            listener=listener,
            callback_url=callback_url,
            clock=clock,
            renewal_lead=renewal_lead,
            poll_interval=poll_interval,
            degraded_poll_interval=degraded_poll_interval,
            debounce=debounce,
            on_auth_required=self._handle_auth_required,
            on_state_changed=self._channel_state_changed,
        )
        self.reminders = reminders or ReminderEngine(tz=tz)

        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._evaluate_task: ScheduledTask | None = None
        self._health_server: AppServer | None = None
        self._shutdown = asyncio.Event()
        self._status = EngineStatus.STARTING
        self._started = False
        self._stopped = False

    @classmethod
    def from_config(
        cls,
        config: VivcalConfig,
        provider: CalendarProvider,
        display: DisplaySink,
        *,
        clock: Clock = utc_now,
    ) -> CalendarDaemon:
        """Build a daemon with a webhook listener and reminder engine from *config*."""
        tz = config.calendar.tz
        channel = config.channel
        reminder_config = config.reminders
        daemon = cls(
            provider,
            display,
            tz=tz,
            clock=clock,
            listener=WebhookListener(host=channel.host, port=channel.port, path=channel.path),
            callback_url=channel.callback_url,
            max_results=config.calendar.max_results,
            min_refresh_interval=config.calendar.min_refresh_interval_s,
            poll_interval=channel.poll_interval_s,
            degraded_poll_interval=channel.degraded_poll_interval_s,
            debounce=channel.debounce_ms / 1000,
            renewal_lead=timedelta(seconds=channel.renewal_lead_s),
            reminders=ReminderEngine(
                tz=tz,
                lead=timedelta(seconds=reminder_config.lead_s),
                next_window=timedelta(minutes=reminder_config.next_window_min),
                next_trigger=timedelta(minutes=reminder_config.next_trigger_min),
                stale_after=timedelta(minutes=reminder_config.stale_after_min),
                state_path=reminder_config.state_file,
            ),
            evaluate_interval=reminder_config.evaluate_interval_s,
            default_snooze_minutes=reminder_config.default_snooze_min,
        )
        if config.health.enabled:
            daemon.enable_health_server(host=config.health.host, port=config.health.port)
        return daemon

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def events(self) -> EventSet:
        return self.cache.events

    def enable_health_server(self, *, host: str, port: int) -> None:
        app = create_health_app(self.health_status)
        self._health_server = AppServer(app, host=host, port=port, name="health")

    def health_status(self) -> HealthStatus:
        last_fetch = self.fetcher.last_success_at
        if self._status == EngineStatus.AUTH_REQUIRED:
            overall = "auth_required"
        elif self.channel.degraded:
            overall = "degraded"
        else:
            overall = "healthy"
        return HealthStatus(
            status=overall,
            channel_state=str(self.channel.state),
            degraded=self.channel.degraded,
            auth_required=self._status == EngineStatus.AUTH_REQUIRED,
            event_count=len(self.cache.events),
            last_fetch_at=last_fetch.isoformat() if last_fetch else None,
            timestamp=self._clock().isoformat(),
        )

    def _set_status(self, status: EngineStatus) -> None:
        if status == self._status:
            return
        if self._status == EngineStatus.AUTH_REQUIRED and status != EngineStatus.STOPPED:
            return
        logger.info("Engine status %s -> %s", self._status, status)
        self._status = status
        self._display.status_changed(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the consumer, load the initial window and bring up the update channel."""
        if self._started:
            return
        self._started = True
        self._consumer = asyncio.create_task(self._consume(), name="vivcal:consumer")

        if self._health_server is not None:
            try:
                await self._health_server.start()
            except ListenerStartError as exc:
                logger.warning("Health server unavailable: %s", exc)

        try:
            await self.fetcher.refresh(force_refresh=True)
            self._evaluate()
            await self.channel.start()
        except AuthenticationRequiredError as exc:
            self._handle_auth_required(exc)
            return

        self._evaluate_task = self._scheduler.call_every(
            self._evaluate_interval, lambda: self._enqueue(Evaluate()), name="evaluate"
        )
        self._set_status(EngineStatus.DEGRADED if self.channel.degraded else EngineStatus.RUNNING)
        logger.info("Calendar daemon started (%d events cached)", len(self.cache.events))

    async def run(self) -> None:
        """Start, then block until :meth:`request_stop` or an authentication failure."""
        try:
            await self.start()
            await self._shutdown.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._shutdown.set()

    async def stop(self) -> None:
        """Cancel timers, release the subscription, stop the listeners, then the consumer."""
        if self._stopped:
            return
        self._stopped = True
        await self._scheduler.cancel_all()
        await self.channel.stop()
        if self._health_server is not None:
            await self._health_server.stop()
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
        self._abandon_queued()
        self._set_status(EngineStatus.STOPPED)
        self._shutdown.set()
        logger.info("Calendar daemon stopped")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def request_refresh(self, force: bool = False) -> None:
        self._enqueue(Refresh(force=force))

    def request_evaluate(self) -> None:
        self._enqueue(Evaluate())

    async def fetch_day(self, day: date, *, force: bool = False) -> EventSet:
        """Return the events starting on *day*, fetching that day through the consumer.

        Before :meth:`start` the fetch runs directly; once the daemon has
        stopped, only cached events are returned.
        """
        if self._stopped:
            return self.cache.events_on(day)
        if self._consumer is None:
            return await self._fetch_range(day, force)
        reply: asyncio.Future[EventSet] = asyncio.get_running_loop().create_future()
        self._enqueue(FetchDay(day=day, reply=reply, force=force))
        return await reply

    def _enqueue(self, message: Message) -> None:
        if self._stopped:
            return
        self._queue.put_nowait(message)

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._handle(message)
            except Exception:
                logger.exception("Failed to handle %s", message)
            finally:
                self._queue.task_done()

    async def _handle(self, message: Message) -> None:
        if isinstance(message, Refresh):
            try:
                await self.fetcher.refresh(force_refresh=message.force)
            except AuthenticationRequiredError as exc:
                self._handle_auth_required(exc)
                return
        elif isinstance(message, FetchDay):
            try:
                events = await self._fetch_range(message.day, message.force)
                if not message.reply.done():
                    message.reply.set_result(events)
            finally:
                if not message.reply.done():
                    message.reply.cancel()
        self._evaluate()

    async def _fetch_range(self, day: date, force: bool) -> EventSet:
        try:
            return await self.fetcher.fetch_range(day, force=force)
        except AuthenticationRequiredError as exc:
            self._handle_auth_required(exc)
            return self.cache.events_on(day)

    def _abandon_queued(self) -> None:
        while not self._queue.empty():
            message = self._queue.get_nowait()
            self._queue.task_done()
            if isinstance(message, FetchDay) and not message.reply.done():
                message.reply.cancel()

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def _evaluate(self) -> None:
        self._apply(self.reminders.evaluate(self.cache.events, self._clock()))

    def _apply(self, update: ReminderUpdate | None) -> None:
        if update is None:
            return
        if update.action == ReminderAction.SHOW and update.target is not None:
            self._display.show_reminder(update.target)
        elif update.action == ReminderAction.CLOSE:
            self._display.close_reminder()

    def dismiss(self, event_id: str) -> None:
        self._apply(self.reminders.dismiss(event_id))

    def snooze(self, event_id: str, minutes: float | None = None) -> bool:
        """Close the reminder for *event_id* and re-evaluate after *minutes*.

        Returns ``False``, leaving the reminder untouched, when *minutes* is
        not positive.
        """
        minutes = self._default_snooze_minutes if minutes is None else minutes
        if minutes <= 0:
            logger.warning("Ignoring snooze for event %s: %s minutes", event_id, minutes)
            return False
        self._apply(self.reminders.snooze(event_id, minutes, self._clock()))
        self._scheduler.call_later(
            minutes * 60, lambda: self._enqueue(Evaluate()), name=f"snooze:{event_id}"
        )
        return True

    # ------------------------------------------------------------------
    # Collaborator callbacks
    # ------------------------------------------------------------------

    def _events_changed(self, events: EventSet) -> None:
        self._display.events_changed(events)

    def _channel_state_changed(self, state: ChannelState) -> None:
        if not self._started or self._stopped:
            return
        if state == ChannelState.DEGRADED:
            self._set_status(EngineStatus.DEGRADED)
        elif state == ChannelState.ACTIVE and self._status != EngineStatus.STARTING:
            self._set_status(EngineStatus.RUNNING)

    def _handle_auth_required(self, exc: AuthenticationRequiredError) -> None:
        logger.error("Authentication required: %s", exc)
        self._set_status(EngineStatus.AUTH_REQUIRED)
        self._display.auth_required(str(exc))
        self._shutdown.set()

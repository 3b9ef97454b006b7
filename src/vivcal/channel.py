"""Update channel: push subscription lifecycle with a polling safety net.

State machine::

    unregistered -> registering -> active -> renewing -> active
                         |                      |
                         +------> degraded <----+
    (any) -> closed

Push notifications and poll ticks both end in the same ``request_refresh``
callback; notifications are debounced so a burst collapses into one refresh.
Polling always runs, at ``poll_interval`` while the subscription is active
and ``degraded_poll_interval`` once push delivery is unavailable.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from enum import StrEnum
from typing import Protocol

from vivcal.core.metrics import channel_registrations_total
from vivcal.core.timers import Clock, ScheduledTask, TaskScheduler, utc_now
from vivcal.credentials import AuthenticationRequiredError
from vivcal.errors import CalendarError
from vivcal.provider import CHANNEL_RENEWAL_LEAD, CalendarProvider, ChannelSubscription
from vivcal.webhook import ClosedCallback, ListenerStartError, NotificationCallback

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_DEGRADED_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_DEBOUNCE_SECONDS = 0.5


class ChannelState(StrEnum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    ACTIVE = "active"
    RENEWING = "renewing"
    DEGRADED = "degraded"
    CLOSED = "closed"


class Listener(Protocol):
    """Inbound notification transport (see :class:`vivcal.webhook.WebhookListener`)."""

    async def start(
        self,
        on_notification: NotificationCallback,
        on_closed: ClosedCallback | None = None,
    ) -> None: ...

    async def stop(self) -> None: ...


RefreshCallback = Callable[[], None]
AuthRequiredCallback = Callable[[AuthenticationRequiredError], Awaitable[None] | None]
StateCallback = Callable[[ChannelState], None]


class UpdateChannel:
    """Owns the push subscription, the listener and every channel timer."""

    def __init__(
        self,
        provider: CalendarProvider,
        scheduler: TaskScheduler,
        *,
        request_refresh: RefreshCallback,
        listener: Listener | None = None,
        callback_url: str | None = None,
        clock: Clock = utc_now,
        renewal_lead: timedelta = CHANNEL_RENEWAL_LEAD,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        degraded_poll_interval: float = DEFAULT_DEGRADED_POLL_INTERVAL_SECONDS,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        on_auth_required: AuthRequiredCallback | None = None,
        on_state_changed: StateCallback | None = None,
        channel_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._provider = provider
        self._scheduler = scheduler
        self._request_refresh = request_refresh
        self._listener = listener
        self._callback_url = callback_url
        self._clock = clock
        self._renewal_lead = renewal_lead
        self._poll_interval = poll_interval
        self._degraded_poll_interval = degraded_poll_interval
        self._debounce = debounce
        self._on_auth_required = on_auth_required
        self._on_state_changed = on_state_changed
        self._channel_id_factory = channel_id_factory

        self._state = ChannelState.UNREGISTERED
        self._subscription: ChannelSubscription | None = None
        self._listener_running = False
        self._poll_task: ScheduledTask | None = None
        self._poll_task_interval: float | None = None
        self._renewal_task: ScheduledTask | None = None
        self._debounce_task: ScheduledTask | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def subscription(self) -> ChannelSubscription | None:
        return self._subscription

    @property
    def degraded(self) -> bool:
        return self._state == ChannelState.DEGRADED

    @property
    def poll_interval(self) -> float | None:
        """Interval of the running poll timer, or ``None`` when polling is stopped."""
        if self._poll_task is None or self._poll_task.done:
            return None
        return self._poll_task_interval

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        logger.info("Update channel state %s -> %s", self._state, state)
        self._state = state
        if self._on_state_changed is not None:
            self._on_state_changed(state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling, bring up the listener and register the push subscription.

        Raises :class:`AuthenticationRequiredError` if registration cannot get
        a token; every other failure leaves the channel degraded.
        """
        self._restart_polling(self._poll_interval)

        if self._listener is not None:
            try:
                await self._listener.start(self.notify, self.transport_closed)
                self._listener_running = True
            except (ListenerStartError, OSError) as exc:
                logger.warning("Webhook listener failed to start: %s", exc)

        await self.register()

    async def register(self) -> None:
        """Register a brand-new push subscription with a fresh channel id."""
        if self._state == ChannelState.CLOSED:
            return
        if self._listener is not None and not self._listener_running:
            self.degrade("webhook listener is not running")
            return
        if not self._callback_url:
            self.degrade("no public callback URL configured")
            return

        renewing = self._subscription is not None
        self._set_state(ChannelState.RENEWING if renewing else ChannelState.REGISTERING)
        channel_id = self._channel_id_factory()
        try:
            subscription = await self._provider.watch(
                channel_id=channel_id, callback_url=self._callback_url
            )
        except AuthenticationRequiredError:
            channel_registrations_total.labels(status="auth_required").inc()
            raise
        except CalendarError as exc:
            channel_registrations_total.labels(status="error").inc()
            self.degrade(f"subscription registration failed: {exc}")
            return

        if self._state == ChannelState.CLOSED:
            return

        channel_registrations_total.labels(status="success").inc()
        self._subscription = subscription
        self._set_state(ChannelState.ACTIVE)
        if self._poll_task_interval != self._poll_interval:
            self._restart_polling(self._poll_interval)
        self._schedule_renewal(subscription)
        logger.info(
            "Push channel %s registered (expires %s)",
            subscription.channel_id,
            subscription.expiration.isoformat(),
        )

    def _schedule_renewal(self, subscription: ChannelSubscription) -> None:
        if self._renewal_task is not None:
            self._renewal_task.cancel()
        delay = (subscription.renewal_deadline(self._renewal_lead) - self._clock()).total_seconds()
        self._renewal_task = self._scheduler.call_later(
            max(delay, 0.0), self._renew, name="channel-renewal"
        )

    async def _renew(self) -> None:
        try:
            await self.register()
        except AuthenticationRequiredError as exc:
            logger.error("Push channel renewal needs re-authentication: %s", exc)
            if self._on_auth_required is not None:
                result = self._on_auth_required(exc)
                if result is not None:
                    await result

    def degrade(self, reason: str) -> None:
        """Fall back to fast polling and trigger an immediate refresh."""
        if self._state in (ChannelState.CLOSED, ChannelState.DEGRADED):
            return
        logger.warning("Update channel degraded: %s", reason)
        if self._renewal_task is not None:
            self._renewal_task.cancel()
            self._renewal_task = None
        self._set_state(ChannelState.DEGRADED)
        self._restart_polling(self._degraded_poll_interval)
        self._request_refresh()

    def transport_closed(self, error: BaseException | None = None) -> None:
        """Listener exited while the channel was live."""
        self._listener_running = False
        self.degrade(f"webhook listener closed ({error})" if error else "webhook listener closed")

    def notify(self) -> None:
        """Inbound push notification; collapses bursts into one refresh."""
        if self._state == ChannelState.CLOSED:
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = self._scheduler.call_later(
            self._debounce, self._request_refresh, name="webhook-debounce"
        )

    def _poll(self) -> None:
        logger.debug("Poll tick (state=%s)", self._state)
        self._request_refresh()

    def _restart_polling(self, interval: float) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._poll_task = self._scheduler.call_every(interval, self._poll, name="poll")
        self._poll_task_interval = interval

    async def stop(self) -> None:
        """Cancel timers, release a live subscription, then stop the listener."""
        if self._state == ChannelState.CLOSED:
            return
        self._set_state(ChannelState.CLOSED)

        for handle in (self._poll_task, self._renewal_task, self._debounce_task):
            if handle is not None:
                handle.cancel()
        self._poll_task = self._renewal_task = self._debounce_task = None
        self._poll_task_interval = None

        subscription = self._subscription
        if subscription is not None and not subscription.is_expired(self._clock()):
            try:
                await self._provider.stop_channel(subscription)
                logger.info("Push channel %s stopped", subscription.channel_id)
            except (CalendarError, AuthenticationRequiredError) as exc:
                logger.warning("Failed to stop push channel %s: %s", subscription.channel_id, exc)
        self._subscription = None

        if self._listener is not None and self._listener_running:
            self._listener_running = False
            try:
                await self._listener.stop()
            except Exception:
                logger.exception("Webhook listener failed to stop")

"""Cancellable timers on the running asyncio loop.

Every deferred action in the engine (webhook debounce, subscription renewal,
poll interval, snooze, day prefetch) is scheduled through a
:class:`TaskScheduler`. Each call returns a :class:`ScheduledTask` handle the
owner stores and cancels; ``cancel_all()`` is the teardown path.

Exceptions raised by a callback are logged and swallowed at this boundary so
a failing timer can never take the loop down. ``CancelledError`` always
propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None] | None]
Clock = Callable[[], datetime]
MonotonicClock = Callable[[], float]


def utc_now() -> datetime:
    return datetime.now(UTC)


async def _invoke(callback: Callback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class ScheduledTask:
    """Handle for a scheduled callback."""

    def __init__(self, name: str, task: asyncio.Task[None]) -> None:
        self.name = name
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the task to finish, treating cancellation as completion."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    def __repr__(self) -> str:
        state = "done" if self.done else "pending"
        return f"ScheduledTask(name={self.name!r}, state={state})"


class TaskScheduler:
    """Owns every timer task it creates until it finishes or is cancelled."""

    def __init__(self) -> None:
        self._tasks: set[ScheduledTask] = set()

    @property
    def pending(self) -> list[ScheduledTask]:
        return [handle for handle in self._tasks if not handle.done]

    def call_later(self, delay: float, callback: Callback, *, name: str) -> ScheduledTask:
        """Run *callback* once after *delay* seconds."""

        async def _runner() -> None:
            await asyncio.sleep(max(delay, 0.0))
            await self._run_guarded(name, callback)

        return self._track(name, _runner())

    def call_every(
        self,
        interval: float,
        callback: Callback,
        *,
        name: str,
        run_immediately: bool = False,
    ) -> ScheduledTask:
        """Run *callback* every *interval* seconds until cancelled."""
        if interval <= 0:
            raise ValueError("interval must be positive")

        async def _runner() -> None:
            if run_immediately:
                await self._run_guarded(name, callback)
            while True:
                await asyncio.sleep(interval)
                await self._run_guarded(name, callback)

        return self._track(name, _runner())

    def spawn(self, callback: Callback, *, name: str) -> ScheduledTask:
        """Run *callback* in the background right away (fire-and-forget)."""

        async def _runner() -> None:
            await self._run_guarded(name, callback)

        return self._track(name, _runner())

    async def cancel_all(self) -> None:
        """Cancel every pending task and wait for them to unwind."""
        handles = list(self._tasks)
        for handle in handles:
            handle.cancel()
        for handle in handles:
            try:
                await handle.wait()
            except Exception:
                logger.exception("Timer %s failed while cancelling", handle.name)
        self._tasks.clear()

    def _track(self, name: str, coro: Awaitable[None]) -> ScheduledTask:
        task = asyncio.ensure_future(coro)
        task.set_name(f"vivcal:{name}")
        handle = ScheduledTask(name, task)
        self._tasks.add(handle)
        task.add_done_callback(lambda _t: self._tasks.discard(handle))
        return handle

    @staticmethod
    async def _run_guarded(name: str, callback: Callback) -> None:
        try:
            await _invoke(callback)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled callback %s failed", name)

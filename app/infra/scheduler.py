# app/infra/scheduler.py
"""
In-process async scheduler with two independent fixed-interval timers.

- dispatch timer  -> ``engine.run_dispatch_cycle()``   (default every 5 min)
- retention timer -> ``engine.run_retention_cleanup()`` (default daily)

Each tick runs as its own task: a slow tick never delays the next one,
and two ticks of the same timer may overlap (all writes are idempotent).
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from app.core.dispatch.engine import DispatchEngine, utc_now
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


def seconds_until_hour(hour: int, tz_name: str, now: datetime | None = None) -> float:
    """
    Seconds from ``now`` until the next ``hour``:00 local time in ``tz_name``.

    Returns 0 when ``hour`` is out of range.
    """
    if not 0 <= hour <= 23:
        return 0.0
    tz = ZoneInfo(tz_name)
    local_now = (now or utc_now()).astimezone(tz)
    target = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local_now:
        target = (target + timedelta(days=1)).replace(hour=hour)
    return (target.astimezone(timezone.utc) - local_now.astimezone(timezone.utc)).total_seconds()


class DispatchScheduler:
    """
    Drives a ``DispatchEngine`` from two asyncio timers.

    Usage:
        scheduler = DispatchScheduler(engine, dispatch_interval=300)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: DispatchEngine,
        *,
        dispatch_interval: float = 300.0,
        retention_interval: float = 86400.0,
        retention_initial_delay: float = 0.0,
        retention_run_hour: int | None = None,
        timezone_name: str = "UTC",
        dispatch_enabled: bool = True,
        retention_enabled: bool = True,
    ):
        self._engine = engine
        self._dispatch_interval = dispatch_interval
        self._retention_interval = retention_interval
        self._retention_initial_delay = retention_initial_delay
        self._retention_run_hour = retention_run_hour
        self._timezone_name = timezone_name
        self._dispatch_enabled = dispatch_enabled
        self._retention_enabled = retention_enabled
        self._timers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._running = False

    @classmethod
    def from_settings(cls, engine: DispatchEngine, s) -> "DispatchScheduler":
        return cls(
            engine,
            dispatch_interval=s.dispatch_interval_seconds,
            retention_interval=s.retention_interval_seconds,
            retention_run_hour=s.retention_run_hour,
            timezone_name=s.scheduler_timezone,
            dispatch_enabled=s.dispatch_enabled,
            retention_enabled=s.retention_enabled,
        )

    def retention_delay(self) -> float:
        """Seconds before the first retention run, measured from now"""
        if self._retention_run_hour is not None:
            return seconds_until_hour(self._retention_run_hour, self._timezone_name)
        return self._retention_initial_delay

    @property
    def running(self) -> bool:
        return self._running

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        """Start both timers as asyncio tasks."""
        if self._running:
            return
        self._running = True
        retention_delay = self.retention_delay() if self._retention_enabled else 0.0

        if self._dispatch_enabled:
            self._timers.append(asyncio.create_task(
                self._timer("dispatch", self._dispatch_interval, 0.0, self._engine.run_dispatch_cycle),
                name="dispatch_timer",
            ))
        if self._retention_enabled:
            self._timers.append(asyncio.create_task(
                self._timer(
                    "retention",
                    self._retention_interval,
                    retention_delay,
                    self._engine.run_retention_cleanup,
                ),
                name="retention_timer",
            ))
        for task in self._timers:
            task.add_done_callback(self._on_timer_done)

        logger.info(
            f"Scheduler started: dispatch every {self._dispatch_interval}s "
            f"(enabled={self._dispatch_enabled}), retention every {self._retention_interval}s "
            f"after {retention_delay:.0f}s (enabled={self._retention_enabled})"
        )

    async def stop(self) -> None:
        """Cancel timers and any tick still running."""
        self._running = False
        tasks = [*self._timers, *self._inflight]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._inflight.clear()
        logger.info("Scheduler stopped")

    async def _timer(
        self,
        name: str,
        interval: float,
        initial_delay: float,
        job: Callable[[], Awaitable[Any]],
    ) -> None:
        """Fire ``job`` every ``interval`` seconds without waiting for it to finish."""
        if initial_delay > 0:
            await asyncio.sleep(initial_delay)
        while self._running:
            self._spawn(name, job)
            await asyncio.sleep(interval)

    def _spawn(self, name: str, job: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        task = asyncio.create_task(self._run_tick(name, job), name=f"{name}_tick")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        if len(self._inflight) > 1:
            logger.warning(f"{name} tick started while {len(self._inflight) - 1} tick(s) still running")
        return task

    async def _run_tick(self, name: str, job: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await job()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Scheduled {name} tick failed: {exc.__class__.__name__}: {exc}", exc_info=True)
            inc_counter("scheduler_tick_errors", job=name)
            return None

    @staticmethod
    def _on_timer_done(task: asyncio.Task) -> None:
        """Log unexpected timer death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Scheduler timer {task.get_name()} died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

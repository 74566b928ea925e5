#!/usr/bin/env python3
"""Periodic trigger for the weather broadcast."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from settings import Settings

LOGGER = logging.getLogger("weather_bot.scheduler")

JOB_ID = "weather_broadcast"

BroadcastJob = Callable[[], Awaitable[Any]]


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"TIMEZONE {name!r} is not a known time zone") from exc


def build_trigger(settings: Settings) -> CronTrigger | IntervalTrigger:
    """Return the cron trigger when ``BROADCAST_CRON`` is set, else an interval."""

    tz = _zone(settings.timezone)
    if settings.broadcast_cron:
        return CronTrigger.from_crontab(settings.broadcast_cron, timezone=tz)
    return IntervalTrigger(seconds=settings.broadcast_interval_seconds, timezone=tz)


def configure_jobs(scheduler: AsyncIOScheduler, job: BroadcastJob, trigger: Any) -> AsyncIOScheduler:
    if scheduler.get_job(JOB_ID) is not None:
        scheduler.remove_job(JOB_ID)
    scheduler.add_job(
        job,
        trigger,
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


class BroadcastScheduler:
    """Runs ``job`` once per trigger fire, never two runs at the same time.

    A fire that arrives while the previous run is still in flight is
    skipped, not queued. ``tick`` can be awaited directly to drive the
    schedule without a clock.
    """

    def __init__(
        self,
        job: BroadcastJob,
        *,
        trigger: Any,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._job = job
        self._trigger = trigger
        tz = getattr(trigger, "timezone", None) or ZoneInfo("UTC")
        self._scheduler = scheduler or AsyncIOScheduler(timezone=tz)
        self._in_flight = False
        self.completed_runs = 0
        self.skipped_ticks = 0

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def configure(self) -> AsyncIOScheduler:
        return configure_jobs(self._scheduler, self.tick, self._trigger)

    def start(self) -> None:
        """Start firing; must be called from inside the running event loop."""

        if self.running:
            return
        self.configure()
        self._scheduler.start()
        LOGGER.info("Broadcast scheduler started (trigger=%s)", self._trigger)

    def stop(self) -> None:
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        LOGGER.info("Broadcast scheduler stopped")

    async def tick(self) -> bool:
        """Run the job once; return ``False`` when skipped due to overlap."""

        if self._in_flight:
            self.skipped_ticks += 1
            LOGGER.warning("Previous broadcast still running; skipping this tick")
            return False
        self._in_flight = True
        try:
            await self._job()
        except Exception:
            LOGGER.exception("Broadcast run failed")
        else:
            self.completed_runs += 1
        finally:
            self._in_flight = False
        return True

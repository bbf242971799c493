"""
Report scheduler.

Enqueues daily and weekly report jobs at their configured local times in
the team timezone. Each scheduled run is claimed in Redis first, so when
several workers run a scheduler only one of them enqueues it.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo

from shiplog.core.dates import ensure_utc, to_iso, utcnow
from shiplog.models.jobs import ReportJob
from shiplog.services.job_factory import report_envelope
from shiplog.services.redis_client import RedisClient
from shiplog.utils.logging import get_logger, log_error_with_context
from shiplog.utils.resilience import TransientError

logger = get_logger(__name__)


@dataclass
class ReportSchedule:
    """A recurring report run at ``time`` (HH:MM, local) on ``weekdays`` (0=Monday)."""

    name: str
    report_type: str
    time: str
    weekdays: Sequence[int]
    next_run: Optional[datetime] = None


def calculate_next_run(schedule: ReportSchedule, from_time: datetime, tz: str) -> datetime:
    """
    Next occurrence of a schedule strictly after ``from_time``.

    Returns:
        Aware datetime in the team timezone
    """
    if not schedule.weekdays:
        raise ValueError(f"Schedule {schedule.name} has no weekdays")

    zone = ZoneInfo(tz)
    local = ensure_utc(from_time).astimezone(zone)
    hour, minute = map(int, schedule.time.split(":"))

    for days_ahead in range(8):
        day = (local + timedelta(days=days_ahead)).date()
        if day.weekday() not in schedule.weekdays:
            continue
        candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
        if candidate > local:
            return candidate

    raise ValueError(f"Could not compute next run for {schedule.name}")


def schedules_from_settings(settings) -> List[ReportSchedule]:
    """Daily and/or weekly schedules depending on ``report_cadence``."""
    cadence = settings.report_cadence.lower()
    if cadence not in ("daily", "weekly", "both"):
        raise ValueError(f"Unknown report cadence: {settings.report_cadence}")

    schedules = []
    if cadence in ("daily", "both"):
        schedules.append(ReportSchedule(
            name="daily-report",
            report_type="daily",
            time=settings.daily_report_time,
            weekdays=settings.daily_report_weekdays,
        ))
    if cadence in ("weekly", "both"):
        schedules.append(ReportSchedule(
            name="weekly-report",
            report_type="weekly",
            time=settings.weekly_report_time,
            weekdays=[settings.weekly_report_weekday],
        ))
    return schedules


class ReportScheduler:
    """Background loop that enqueues report jobs when they fall due."""

    def __init__(
        self,
        redis_client: RedisClient,
        settings=None,
        poll_interval: float = 30.0,
        schedules: Optional[List[ReportSchedule]] = None,
    ):
        if settings is None:
            from shiplog.config import settings
        self._redis = redis_client
        self._settings = settings
        self._tz = settings.team_timezone
        self._poll_interval = poll_interval
        self.schedules = schedules if schedules is not None else schedules_from_settings(settings)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def prime(self, now: Optional[datetime] = None) -> None:
        """Compute the first run of every schedule."""
        now = now or utcnow()
        for schedule in self.schedules:
            schedule.next_run = calculate_next_run(schedule, now, self._tz)
            logger.info(f"Scheduled {schedule.name} for {schedule.next_run.isoformat()}")

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Enqueue every schedule whose run time has passed.

        Returns:
            Names of the schedules enqueued by this process
        """
        now = ensure_utc(now or utcnow())
        enqueued = []

        for schedule in self.schedules:
            if schedule.next_run is None:
                schedule.next_run = calculate_next_run(schedule, now, self._tz)
                continue
            if now < schedule.next_run:
                continue

            slot = to_iso(schedule.next_run)
            claimed = await self._redis.claim_schedule_slot(
                schedule.name, slot, ttl_seconds=2 * 24 * 3600
            )
            if claimed:
                envelope = report_envelope(ReportJob(type=schedule.report_type), self._settings)
                await self._redis.enqueue(envelope)
                enqueued.append(schedule.name)
                logger.info(
                    f"Enqueued {schedule.name} for slot {slot}",
                    extra={"job_id": envelope.id, "job_name": envelope.name},
                )
            else:
                logger.debug(f"Slot {slot} of {schedule.name} already claimed")

            schedule.next_run = calculate_next_run(schedule, now, self._tz)

        return enqueued

    async def _scheduler_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except TransientError as e:
                log_error_with_context(logger, "Scheduler tick failed", e)
            await asyncio.sleep(self._poll_interval)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.prime()
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Report scheduler started with {len(self.schedules)} schedule(s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Report scheduler stopped")

"""
Unit tests for the report scheduler.
"""

import pytest

from shiplog.core.dates import parse_iso as ts
from shiplog.services.redis_client import REPORT_QUEUE
from shiplog.services.scheduler import (
    ReportSchedule,
    ReportScheduler,
    calculate_next_run,
    schedules_from_settings,
)

TZ = "America/New_York"


def daily(weekdays=(0, 1, 2, 3, 4)) -> ReportSchedule:
    return ReportSchedule(name="daily-report", report_type="daily", time="09:00", weekdays=list(weekdays))


class TestCalculateNextRun:
    """Test next-run computation in the team timezone."""

    def test_later_today(self):
        next_run = calculate_next_run(daily(), ts("2025-02-24T12:00:00Z"), TZ)  # 07:00 local

        assert next_run == ts("2025-02-24T14:00:00Z")

    def test_after_todays_slot(self):
        next_run = calculate_next_run(daily(), ts("2025-02-24T14:30:00Z"), TZ)

        assert next_run == ts("2025-02-25T14:00:00Z")

    def test_exact_slot_moves_on(self):
        next_run = calculate_next_run(daily(), ts("2025-02-24T14:00:00Z"), TZ)

        assert next_run == ts("2025-02-25T14:00:00Z")

    def test_skips_weekend(self):
        next_run = calculate_next_run(daily(), ts("2025-02-28T15:00:00Z"), TZ)

        assert next_run == ts("2025-03-03T14:00:00Z")

    def test_daylight_saving_change(self):
        next_run = calculate_next_run(daily(), ts("2025-03-07T15:00:00Z"), TZ)

        assert next_run == ts("2025-03-10T13:00:00Z")

    def test_weekly(self):
        schedule = ReportSchedule(name="weekly-report", report_type="weekly", time="16:00", weekdays=[4])

        next_run = calculate_next_run(schedule, ts("2025-02-24T15:00:00Z"), TZ)

        assert next_run == ts("2025-02-28T21:00:00Z")

    def test_no_weekdays(self):
        with pytest.raises(ValueError):
            calculate_next_run(daily(weekdays=()), ts("2025-02-24T12:00:00Z"), TZ)


class TestSchedulesFromSettings:
    def test_daily(self, test_settings):
        schedules = schedules_from_settings(test_settings)

        assert [s.name for s in schedules] == ["daily-report"]
        assert list(schedules[0].weekdays) == [0, 1, 2, 3, 4]

    def test_both(self, test_settings):
        settings = test_settings.model_copy(update={"report_cadence": "Both", "weekly_report_weekday": 3})

        schedules = schedules_from_settings(settings)

        assert [s.report_type for s in schedules] == ["daily", "weekly"]
        assert list(schedules[1].weekdays) == [3]

    def test_unknown_cadence(self, test_settings):
        settings = test_settings.model_copy(update={"report_cadence": "hourly"})

        with pytest.raises(ValueError):
            schedules_from_settings(settings)


class TestTick:
    """Test enqueueing due schedules."""

    @pytest.mark.asyncio
    async def test_first_tick_only_primes(self, redis_client, test_settings):
        scheduler = ReportScheduler(redis_client, test_settings, schedules=[daily()])

        assert await scheduler.tick(ts("2025-02-24T14:30:00Z")) == []
        assert scheduler.schedules[0].next_run == ts("2025-02-25T14:00:00Z")

    @pytest.mark.asyncio
    async def test_due_schedule_is_enqueued(self, redis_client, test_settings):
        scheduler = ReportScheduler(redis_client, test_settings, schedules=[daily()])
        scheduler.prime(ts("2025-02-24T12:00:00Z"))

        assert await scheduler.tick(ts("2025-02-24T13:59:00Z")) == []
        assert await scheduler.tick(ts("2025-02-24T14:00:05Z")) == ["daily-report"]

        envelope = await redis_client.dequeue(REPORT_QUEUE)
        assert envelope.name == "report"
        assert envelope.payload == {"type": "daily", "date_override": None}
        assert envelope.backoff == "fixed"
        assert envelope.max_attempts == test_settings.report_max_attempts
        assert scheduler.schedules[0].next_run == ts("2025-02-25T14:00:00Z")

    @pytest.mark.asyncio
    async def test_slot_claimed_once_across_schedulers(self, redis_client, test_settings):
        first = ReportScheduler(redis_client, test_settings, schedules=[daily()])
        second = ReportScheduler(redis_client, test_settings, schedules=[daily()])
        first.prime(ts("2025-02-24T12:00:00Z"))
        second.prime(ts("2025-02-24T12:00:00Z"))

        results = [
            await first.tick(ts("2025-02-24T14:00:01Z")),
            await second.tick(ts("2025-02-24T14:00:02Z")),
        ]

        assert sorted(results) == [[], ["daily-report"]]
        assert (await redis_client.get_queue_lengths())[REPORT_QUEUE] == 1
        assert second.schedules[0].next_run == ts("2025-02-25T14:00:00Z")

    @pytest.mark.asyncio
    async def test_start_and_stop(self, redis_client, test_settings):
        scheduler = ReportScheduler(redis_client, test_settings, poll_interval=0.01, schedules=[daily()])

        await scheduler.start()
        assert scheduler.schedules[0].next_run is not None
        await scheduler.stop()

        assert scheduler._task is None

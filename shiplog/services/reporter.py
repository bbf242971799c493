"""
Report job processor.

Generates the daily and weekly reports from resolved activity, delivers
them and advances the watermark. Only one report runs at a time: an
in-process lock serializes jobs inside a worker and a Redis lease
serializes them across workers.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from shiplog.core.blockers import (
    collect_active_blockers,
    detect_stale_reviews,
    group_blockers_by_user,
)
from shiplog.core.dates import (
    age_days,
    ensure_utc,
    format_age,
    midnight_utc,
    utc_date,
    utcnow,
    week_boundary,
)
from shiplog.core.formatting import format_daily_report, format_weekly_report
from shiplog.core.rag import determine_rag_status, thresholds_from_settings
from shiplog.core.watermark import get_watermark, get_weekly_watermark
from shiplog.models.jobs import ReportJob
from shiplog.models.report import (
    ActivityStats,
    BranchSummary,
    DailyReport,
    FeatureSummary,
    ReportOutcome,
    ResolvedPR,
    WeeklyBlocker,
    WeeklyReport,
    WeeklyReportData,
    WeeklyStats,
)
from shiplog.models.summaries import FeatureNarration
from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.delivery import DeliverySink
from shiplog.services.pr_registry import PRRegistry
from shiplog.services.redis_client import RedisClient
from shiplog.services.resolution import ResolutionEngine
from shiplog.services.summarizer import SummarizationService
from shiplog.utils.logging import get_logger, log_error_with_context
from shiplog.utils.metrics import JobMetrics, emit_metric
from shiplog.utils.resilience import (
    CorruptedRecordError,
    ReportInProgressError,
    TransientError,
)

logger = get_logger(__name__)

REPORT_LEASE = "report"


class ReportProcessor:
    """Runs report jobs end to end."""

    def __init__(
        self,
        redis_client: RedisClient,
        resolution: ResolutionEngine,
        registry: PRRegistry,
        commit_log: BranchCommitLog,
        summarizer: SummarizationService,
        sink: DeliverySink,
        settings=None,
    ):
        if settings is None:
            from shiplog.config import settings
        self._redis = redis_client
        self._resolution = resolution
        self._registry = registry
        self._commit_log = commit_log
        self._summarizer = summarizer
        self._sink = sink
        self._settings = settings
        self._lock = asyncio.Lock()

    # ========== Job Entry Point ==========

    async def process(
        self,
        job: ReportJob,
        metrics: Optional[JobMetrics] = None,
        now: Optional[datetime] = None,
    ) -> ReportOutcome:
        """
        Run one report job under the report lease.

        Raises:
            ReportInProgressError: If another worker holds the lease
        """
        now = ensure_utc(now or utcnow())
        token = uuid.uuid4().hex

        async with self._lock:
            acquired = await self._redis.acquire_lease(
                REPORT_LEASE, token, self._settings.report_lease_seconds
            )
            if not acquired:
                raise ReportInProgressError("Another report is being generated")

            try:
                if job.type == "weekly":
                    return await self.run_weekly(job, now, metrics)
                return await self.run_daily(job, now, metrics)
            finally:
                await self._redis.release_lease(REPORT_LEASE, token)

    # ========== Daily ==========

    async def run_daily(
        self,
        job: ReportJob,
        now: datetime,
        metrics: Optional[JobMetrics] = None,
    ) -> ReportOutcome:
        date = job.date_override or utc_date(now)
        log = logger.with_context(report_date=date)

        try:
            since = await self._redis.get_watermark("daily")
        except CorruptedRecordError as e:
            log_error_with_context(log, "Stored daily watermark is corrupted, starting from midnight", e)
            since = None
        if since is None:
            since = midnight_utc(date)

        log.info(f"Generating daily report since {since.isoformat()}")
        report = await self.generate_daily_report(date, since, now, metrics)

        sent = False
        if report.content is None:
            log.info("No content to report")
        else:
            await self._sink.deliver(report.content, "daily", metrics=metrics)
            sent = True

        # Only reached when delivery succeeded or there was nothing to send
        await self._redis.set_watermark(report.watermark, "daily")

        cleaned, swept = await self._housekeeping(now)
        return ReportOutcome(
            type="daily",
            date=date,
            sent=sent,
            watermark=report.watermark,
            cleaned_blockers=cleaned,
            swept_branches=swept,
        )

    async def generate_daily_report(
        self,
        date: str,
        since: Optional[datetime],
        now: datetime,
        metrics: Optional[JobMetrics] = None,
    ) -> DailyReport:
        """
        Build the daily report for ``date``.

        Args:
            date: Report date (YYYY-MM-DD)
            since: Lower bound of the window (None for the single day)
            now: Reference time for blocker ages
            metrics: Job metrics collector

        Returns:
            DailyReport with rendered content and the watermark to persist
        """
        data = await self._resolution.resolve(date, since)
        watermark = get_watermark(data, now)

        open_prs = [data.open_prs[n] for n in sorted(data.open_prs)]
        merged_prs = [data.merged_prs[n] for n in sorted(data.merged_prs)]

        blockers = collect_active_blockers(open_prs)
        groups = group_blockers_by_user(blockers, now)
        stale_reviews = detect_stale_reviews(open_prs, now, self._settings.stale_review_days)
        rag_status = determine_rag_status(
            [age_days(b.detected_at, now) for b in blockers],
            len(stale_reviews),
            thresholds_from_settings(self._settings),
        )

        shipped: List[FeatureSummary] = []
        for pr in merged_prs:
            narration = await self._narrate(pr, metrics)
            shipped.append(FeatureSummary(
                feature_name=narration.feature_name,
                impact=narration.impact,
                pr_number=pr.pr_number,
                authors=pr.meta.sorted_authors,
                commit_count=pr.commit_count,
                repo=pr.meta.repo,
            ))

        progress: List[BranchSummary] = []
        if self._settings.show_in_progress and open_prs:
            narrations = await asyncio.gather(*(self._narrate(pr, metrics) for pr in open_prs))
            for pr, narration in zip(open_prs, narrations):
                progress.append(BranchSummary(
                    branch=pr.meta.branch,
                    users=pr.meta.sorted_authors,
                    commit_count=pr.commit_count,
                    pr_title=pr.meta.title,
                    pr_number=pr.pr_number,
                    has_activity_today=pr.has_activity_today,
                    feature_name=narration.feature_name,
                    impact=narration.impact,
                    repo=pr.meta.repo,
                ))

        stats = ActivityStats(
            prs_merged=len(shipped),
            branches_active=len(progress),
            total_commits=(
                sum(f.commit_count for f in shipped)
                + sum(p.commit_count for p in progress)
                + len(data.direct_commits)
            ),
            blocker_count=len(blockers),
            stale_review_count=len(stale_reviews),
            oldest_blocker_age=(
                format_age(max(g.oldest_age_days for g in groups)) if groups else None
            ),
        )

        has_content = bool(shipped or progress or blockers or stale_reviews)
        if not has_content and self._settings.skip_empty_reports:
            content = None
        else:
            content = format_daily_report(
                date, groups, shipped, progress, stale_reviews, stats,
                stale_review_days=self._settings.stale_review_days,
            )

        logger.info(
            f"Daily report for {date}: {len(shipped)} shipped, {len(progress)} in progress, "
            f"{len(blockers)} blocker(s), status {rag_status.value}",
            extra={"report_date": date},
        )
        emit_metric("report_blockers", len(blockers), report_type="daily", rag=rag_status.value)
        emit_metric("report_prs_merged", len(shipped), report_type="daily")
        return DailyReport(
            date=date,
            content=content,
            watermark=watermark,
            rag_status=rag_status,
            stats=stats,
        )

    async def _narrate(self, pr: ResolvedPR, metrics: Optional[JobMetrics]) -> FeatureNarration:
        """Feature name and impact for a PR, falling back to its title."""
        fallback = FeatureNarration(feature_name=pr.meta.title or f"PR #{pr.pr_number}", impact="")
        translations = [c.summary for c in pr.commits]
        try:
            return await self._summarizer.name_feature(
                pr.meta.title, pr.pr_number, translations, metrics=metrics
            )
        except TransientError as e:
            logger.warning(
                f"Feature naming failed for PR #{pr.pr_number}, using title: {e}",
                extra={"pr_number": pr.pr_number},
            )
            return fallback

    # ========== Weekly ==========

    async def run_weekly(
        self,
        job: ReportJob,
        now: datetime,
        metrics: Optional[JobMetrics] = None,
    ) -> ReportOutcome:
        if job.date_override:
            # Midday keeps the override on the same calendar day in any team timezone
            report_time = midnight_utc(job.date_override) + timedelta(hours=12)
        else:
            report_time = now

        report = await self.generate_weekly_report(report_time, metrics)
        week_of = report.data.week_dates[0] if report.data else job.date_override or utc_date(report_time)

        sent = False
        if report.content is None:
            logger.info("No weekly activity to report", extra={"report_date": week_of})
        else:
            await self._sink.deliver(report.content, "weekly", metrics=metrics)
            sent = True

        await self._redis.set_watermark(report.watermark, "weekly")

        cleaned, swept = await self._housekeeping(now)
        return ReportOutcome(
            type="weekly",
            date=week_of,
            sent=sent,
            watermark=report.watermark,
            cleaned_blockers=cleaned,
            swept_branches=swept,
        )

    async def generate_weekly_report(
        self,
        report_time: datetime,
        metrics: Optional[JobMetrics] = None,
    ) -> WeeklyReport:
        """
        Build the Mon-Fri rollup for the week containing ``report_time``.

        A Monday run covers the previous week.
        """
        week = week_boundary(report_time, self._settings.team_timezone)
        start = ensure_utc(week.start)
        end = ensure_utc(week.end)
        log = logger.with_context(report_date=week.dates[0])

        data = await self._resolution.resolve(utc_date(end), since=start)
        merged: Dict[int, ResolvedPR] = {
            n: pr for n, pr in sorted(data.merged_prs.items())
            if pr.meta.merged_at is not None and pr.meta.merged_at <= end
        }
        open_prs = [data.open_prs[n] for n in sorted(data.open_prs)]

        active = collect_active_blockers(open_prs)
        resolved = [
            entry
            for pr in list(merged.values()) + open_prs
            for entry in pr.blockers.values()
            if entry.resolved_at is not None and start <= entry.resolved_at <= end
        ]
        stale_reviews = detect_stale_reviews(open_prs, report_time, self._settings.stale_review_days)
        watermark = get_weekly_watermark(end, merged.values())

        if not merged and not active and not open_prs:
            log.info("No activity for week")
            return WeeklyReport(data=None, content=None, watermark=watermark)

        def _headline(pr: ResolvedPR) -> str:
            return pr.commits[0].summary if pr.commits else (pr.meta.title or f"PR #{pr.pr_number}")

        shipped_data = [
            {"translation": _headline(pr), "author": pr.meta.primary_author}
            for pr in merged.values()
        ]
        blocker_data = [
            {
                "reason": b.description,
                "age_days": age_days(b.detected_at, report_time),
                "author": b.user,
                "mentioned_users": b.mentioned_users,
            }
            for b in active
        ]
        progress_data = [
            {"translation": _headline(pr), "author": pr.meta.primary_author}
            for pr in open_prs
        ]

        summary = await self._summarizer.summarize_week(
            shipped_data,
            blocker_data,
            [{"reason": entry.description} for entry in resolved],
            progress_data,
            include_next_week=bool(progress_data),
            metrics=metrics,
        )

        rag_status = determine_rag_status(
            [b["age_days"] for b in blocker_data],
            len(stale_reviews),
            thresholds_from_settings(self._settings),
        )

        contributors = set()
        for pr in list(merged.values()) + open_prs:
            contributors |= pr.meta.authors

        report_data = WeeklyReportData(
            week_of=week.start,
            week_dates=week.dates,
            rag_status=rag_status,
            summary=summary,
            stats=WeeklyStats(
                total_merged=len(merged),
                blockers_resolved=len(resolved),
                active_blocker_count=len(active),
                stale_review_count=len(stale_reviews),
                in_progress_count=len(open_prs),
                contributor_count=len(contributors),
            ),
            active_blockers=[
                WeeklyBlocker(description=b["reason"], owner=b["author"], age_days=b["age_days"])
                for b in blocker_data
            ],
        )

        log.info(
            f"Weekly report: {len(merged)} merged, {len(active)} active blocker(s), "
            f"status {rag_status.value}"
        )
        emit_metric("report_blockers", len(active), report_type="weekly", rag=rag_status.value)
        emit_metric("report_prs_merged", len(merged), report_type="weekly")
        return WeeklyReport(
            data=report_data,
            content=format_weekly_report(report_data),
            watermark=watermark,
        )

    # ========== Housekeeping ==========

    async def _housekeeping(self, now: datetime) -> tuple[int, int]:
        """Purge old resolved blockers and stale branch logs. Failures are logged only."""
        cleaned = swept = 0
        try:
            cleaned = await self._registry.cleanup_resolved_blockers(now)

            protected = set()
            for pr_number in await self._registry.get_open_pr_numbers():
                try:
                    meta = await self._registry.get_pr(pr_number)
                except CorruptedRecordError as e:
                    logger.warning(f"Cannot protect branch of corrupted PR #{pr_number}: {e}")
                    continue
                if meta is not None:
                    protected.add((meta.repo, meta.branch))
            swept = await self._commit_log.sweep_stale_branches(now, protected)

        except TransientError as e:
            log_error_with_context(logger, "Post-report cleanup failed", e)

        return cleaned, swept

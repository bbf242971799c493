"""
Read-time resolution engine.

Joins PR metadata with branch commit logs at query time. Because the join
happens here and not at write time, the order in which commits and PR
events arrived never changes the result.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from shiplog.core.dates import date_range, ensure_utc, utc_date
from shiplog.models.commit import BranchCommit
from shiplog.models.pull_request import PRMetadata, PRStatus
from shiplog.models.report import ResolvedActivity, ResolvedPR
from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.pr_registry import PRRegistry
from shiplog.utils.logging import get_logger
from shiplog.utils.resilience import CorruptedRecordError

logger = get_logger(__name__)


def _window_filter(date: str, since: Optional[datetime]) -> Callable[[datetime], bool]:
    if since is None:
        return lambda ts: utc_date(ts) == date
    since = ensure_utc(since)
    return lambda ts: ensure_utc(ts) >= since


class ResolutionEngine:
    """Builds the activity set for one report window."""

    def __init__(self, commit_log: BranchCommitLog, registry: PRRegistry):
        self._commit_log = commit_log
        self._registry = registry

    async def _candidates(self, dates: List[str]) -> tuple[Set[int], Set[int]]:
        open_numbers = await self._registry.get_open_pr_numbers()
        candidates = set(open_numbers)
        for day in dates:
            candidates |= await self._registry.get_merged_for_day(day)
            candidates |= await self._registry.get_prs_for_day(day)
        return candidates, open_numbers

    async def resolve(self, date: str, since: Optional[datetime] = None) -> ResolvedActivity:
        """
        Resolve open and merged PR activity plus direct commits.

        Args:
            date: Report date (YYYY-MM-DD, UTC)
            since: Lower bound of the window. When None only ``date`` itself
                is considered.

        Returns:
            ResolvedActivity
        """
        dates = date_range(since, date) if since is not None else [date]
        in_window = _window_filter(date, since)
        candidates, open_numbers = await self._candidates(dates)

        open_prs: Dict[int, ResolvedPR] = {}
        merged_prs: Dict[int, ResolvedPR] = {}
        corrupted: List[int] = []

        for pr_number in sorted(candidates):
            try:
                meta = await self._registry.get_pr(pr_number)
                if meta is None:
                    if pr_number in open_numbers:
                        await self._registry.remove_from_open_index(pr_number)
                    continue

                if pr_number in open_numbers and meta.status != PRStatus.OPEN:
                    logger.warning(
                        f"Removing {meta.status.value} PR #{pr_number} from the open index",
                        extra={"pr_number": pr_number},
                    )
                    await self._registry.remove_from_open_index(pr_number)

                if meta.status == PRStatus.CLOSED:
                    continue

                commits = await self._commit_log.get_commits(meta.repo, meta.branch)
                blockers = await self._registry.get_blockers(pr_number)

            except CorruptedRecordError as e:
                logger.error(
                    f"Skipping corrupted PR #{pr_number}: {e}",
                    extra={"pr_number": pr_number},
                )
                corrupted.append(pr_number)
                continue

            resolved = self._join(pr_number, meta, commits, blockers, date, in_window)
            if resolved is None:
                continue
            if meta.status == PRStatus.OPEN:
                open_prs[pr_number] = resolved
            else:
                merged_prs[pr_number] = resolved

        direct = [
            c for c in await self._commit_log.get_direct_commits(dates)
            if in_window(c.timestamp)
        ]

        logger.info(
            f"Resolved {len(open_prs)} open, {len(merged_prs)} merged PR(s) and "
            f"{len(direct)} direct commit(s) for {date}",
            extra={"report_date": date},
        )
        return ResolvedActivity(
            open_prs=open_prs,
            merged_prs=merged_prs,
            direct_commits=direct,
            corrupted_prs=corrupted,
        )

    @staticmethod
    def _join(
        pr_number: int,
        meta: PRMetadata,
        commits: List[BranchCommit],
        blockers,
        date: str,
        in_window: Callable[[datetime], bool],
    ) -> Optional[ResolvedPR]:
        has_activity_today = any(utc_date(c.timestamp) == date for c in commits)

        if meta.status == PRStatus.OPEN:
            return ResolvedPR(
                pr_number=pr_number,
                meta=meta,
                commits=[c for c in commits if in_window(c.timestamp)],
                commit_count=len(commits),
                blockers=blockers,
                has_activity_today=has_activity_today,
            )

        if meta.merged_at is None or not in_window(meta.merged_at):
            return None

        # Commits pushed after the merge belong to a later use of the branch
        bounded = [c for c in commits if c.timestamp <= meta.merged_at]
        return ResolvedPR(
            pr_number=pr_number,
            meta=meta,
            commits=bounded,
            commit_count=len(bounded),
            blockers=blockers,
            has_activity_today=has_activity_today,
            blockers_resolved=[
                entry.description for entry in blockers.values() if not entry.is_active
            ],
        )

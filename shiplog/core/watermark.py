"""
Watermark calculation.

The watermark is the latest event timestamp contained in a resolved result
set. The next report queries everything since that instant, so repeated or
overlapping report runs never double-report or skip events.
"""

from datetime import datetime
from typing import Iterable, Optional

from shiplog.core.dates import ensure_utc
from shiplog.models.report import ResolvedActivity, ResolvedPR


def _latest(timestamps: Iterable[datetime]) -> Optional[datetime]:
    latest = None
    for ts in timestamps:
        ts = ensure_utc(ts)
        if latest is None or ts > latest:
            latest = ts
    return latest


def _pr_timestamps(pr: ResolvedPR) -> Iterable[datetime]:
    if pr.meta.merged_at is not None:
        yield pr.meta.merged_at
    for commit in pr.commits:
        yield commit.timestamp


def get_watermark(result: ResolvedActivity, now: datetime) -> datetime:
    """
    Latest merge or surfaced commit timestamp in ``result``.

    Args:
        result: Output of the resolution engine
        now: Value returned when the result holds no timestamps

    Returns:
        Aware UTC datetime
    """
    def _all():
        for pr in result.merged_prs.values():
            yield from _pr_timestamps(pr)
        for pr in result.open_prs.values():
            for commit in pr.commits:
                yield commit.timestamp
        for commit in result.direct_commits:
            yield commit.timestamp

    latest = _latest(_all())
    return latest if latest is not None else ensure_utc(now)


def get_weekly_watermark(week_end: datetime, merged_prs: Iterable[ResolvedPR]) -> datetime:
    """Later of the week's end and the latest merge inside the week."""
    latest = _latest(pr.meta.merged_at for pr in merged_prs if pr.meta.merged_at is not None)
    week_end = ensure_utc(week_end)
    if latest is None or latest < week_end:
        return week_end
    return latest

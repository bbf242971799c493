"""
Report text rendering.

Produces Discord-flavoured markdown. Pure functions over the report view
models.
"""

from datetime import datetime
from typing import List, Sequence

from shiplog.core.dates import parse_date
from shiplog.core.rag import format_rag_status
from shiplog.models.report import (
    ActivityStats,
    BranchSummary,
    FeatureSummary,
    StaleReview,
    UserBlockerGroup,
    WeeklyReportData,
)

DISCORD_MESSAGE_LIMIT = 1900


def pr_url(repo: str, pr_number: int) -> str:
    return f"https://github.com/{repo}/pull/{pr_number}"


def _pr_link(repo, pr_number: int) -> str:
    if repo:
        return f"[PR #{pr_number}]({pr_url(repo, pr_number)})"
    return f"PR #{pr_number}"


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def format_date(day: str) -> str:
    """'2025-02-24' -> 'Monday, February 24, 2025'."""
    d = parse_date(day)
    return f"{d.strftime('%A, %B')} {d.day}, {d.year}"


def daily_header(day: str) -> str:
    return f"🚀 **Daily Engineering Summary: {format_date(day)}**\n\n"


def format_no_activity_report(day: str) -> str:
    return daily_header(day) + "📭 **No engineering activity recorded today**\n"


def format_daily_report(
    day: str,
    blocker_groups: Sequence[UserBlockerGroup],
    shipped: Sequence[FeatureSummary],
    progress: Sequence[BranchSummary],
    stale_reviews: Sequence[StaleReview],
    stats: ActivityStats,
    stale_review_days: int = 3,
) -> str:
    """Render the daily report. Sections: blockers, awaiting review, shipped, in progress, stats."""
    if not (blocker_groups or shipped or progress or stale_reviews):
        return format_no_activity_report(day)

    report = daily_header(day)

    if blocker_groups:
        report += "🔴 **BLOCKERS**\n\n"
        for group in blocker_groups:
            suffix = ""
            if group.blocker_count > 1:
                suffix = f" ({group.blocker_count} blockers, oldest: {group.oldest_age})"
            report += f"• {group.user}{suffix}:\n"
            for b in group.blockers:
                mentions = f" @{', @'.join(b.mentioned_users)}" if b.mentioned_users else ""
                report += f"  → {b.description}{mentions} ({b.age})\n"
                context = b.pr_title or b.branch
                if b.pr_number:
                    report += f"    {_pr_link(b.repo, b.pr_number)}: {context}\n"
                else:
                    report += f"    {context}\n"
            report += "\n"

    if stale_reviews:
        report += f"⏳ **AWAITING REVIEW** ({stale_review_days}+ days, no response)\n\n"
        for sr in stale_reviews:
            days = _plural(sr.days_ago, "day", "days")
            report += (
                f"• {_pr_link(sr.repo, sr.pr_number)}: @{sr.reviewer} "
                f"requested {days} ago: {sr.pr_title}\n"
            )
        report += "\n"

    if shipped:
        report += "🚢 **SHIPPED TODAY**\n\n"
        for f in shipped:
            report += f"• {f.feature_name}\n"
            if f.impact:
                report += f"  → {f.impact}\n"
            report += f"  → {_pr_link(f.repo, f.pr_number)} ({', '.join(f.authors)})\n\n"

    if progress:
        report += "📝 **IN PROGRESS**\n\n"
        for p in progress:
            report += f"• {p.feature_name or p.pr_title or p.branch}\n"
            if p.impact:
                report += f"  → {p.impact}\n"
            indicator = " • awaiting review" if p.has_activity_today is False else ""
            users = ", ".join(p.users)
            if p.pr_number:
                report += f"  → {users} • {_pr_link(p.repo, p.pr_number)}{indicator}\n"
            else:
                report += f"  → {users}{indicator}\n"
            report += "\n"

    parts: List[str] = []
    if stats.prs_merged:
        parts.append(_plural(stats.prs_merged, "PR merged", "PRs merged"))
    if stats.blocker_count:
        oldest = f" (oldest: {stats.oldest_blocker_age})" if stats.oldest_blocker_age else ""
        parts.append(_plural(stats.blocker_count, "blocker", "blockers") + oldest)
    if stats.stale_review_count:
        parts.append(_plural(stats.stale_review_count, "stale review", "stale reviews"))
    if stats.branches_active:
        parts.append(_plural(stats.branches_active, "feature in progress", "features in progress"))
    if parts:
        report += f"📊 {' • '.join(parts)}\n"

    return report


def format_weekly_report(data: WeeklyReportData) -> str:
    """Render the weekly rollup. Status sections always render, with fallback text."""
    week_of = data.week_of
    if isinstance(week_of, datetime):
        week_of = week_of.date()
    summary = data.summary

    report = f"📅 **Weekly Engineering Summary: week of {format_date(week_of.isoformat())}**\n"
    report += f"**Status:** {format_rag_status(data.rag_status)}\n\n"
    report += f"{summary.executive_summary}\n\n"

    if summary.shipped_groups:
        report += "🚢 **SHIPPED**\n\n"
        for group in summary.shipped_groups:
            contributors = f" ({', '.join(group.contributors)})" if group.contributors else ""
            report += f"• **{group.theme}**{contributors}\n  → {group.summary}\n"
        report += "\n"

    report += "🚧 **BLOCKERS & RISKS**\n"
    report += f"{summary.blockers_and_risks or 'None active'}\n"
    for b in sorted(data.active_blockers, key=lambda b: -b.age_days):
        report += f"  → {b.description} ({b.owner}, {_plural(b.age_days, 'day', 'days')})\n"
    report += "\n"

    report += "🙋 **HELP NEEDED**\n"
    report += f"{summary.help_needed or 'None this week'}\n\n"

    if summary.next_week:
        report += f"🔭 **NEXT WEEK**\n{summary.next_week}\n\n"

    s = data.stats
    report += (
        f"📊 {_plural(s.total_merged, 'PR merged', 'PRs merged')} • "
        f"{_plural(s.blockers_resolved, 'blocker resolved', 'blockers resolved')} • "
        f"{_plural(s.active_blocker_count, 'active blocker', 'active blockers')} • "
        f"{_plural(s.stale_review_count, 'stale review', 'stale reviews')} • "
        f"{_plural(s.in_progress_count, 'PR in progress', 'PRs in progress')} • "
        f"{_plural(s.contributor_count, 'contributor', 'contributors')}\n"
    )
    return report


def format_no_activity_weekly_report(week_dates: Sequence[str]) -> str:
    return (
        f"📅 **Weekly Engineering Summary: week of {format_date(week_dates[0])}**\n\n"
        "📭 **No engineering activity recorded this week**\n"
    )


def split_into_chunks(content: str, max_length: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """
    Split a message on newline boundaries so each chunk fits ``max_length``.

    A single line longer than ``max_length`` is hard-wrapped.
    """
    text = (content or "").strip()
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        while len(line) > max_length:
            if current.strip():
                chunks.append(current.strip())
            current = ""
            chunks.append(line[:max_length])
            line = line[max_length:]
        if len(current) + len(line) + 1 > max_length:
            if current.strip():
                chunks.append(current.strip())
            current = line
        else:
            current = f"{current}\n{line}" if current else line

    if current.strip():
        chunks.append(current.strip())
    return chunks

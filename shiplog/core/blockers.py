"""
Blocker detection, aging and grouping.

Detection helpers turn raw signals (commit messages, labels, PR bodies) into
blocker entries. The grouping helpers run at report time over the resolved
open PRs.
"""

import re
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from shiplog.core.dates import age_days, format_age
from shiplog.models.pull_request import (
    REVIEW_WAIT_TYPES,
    BlockerType,
    PRBlockerEntry,
    commit_blocker_key,
)
from shiplog.models.report import (
    AgedBlocker,
    BlockerSummary,
    ResolvedPR,
    StaleReview,
    UserBlockerGroup,
)


class CommitBlockerSignal(BaseModel):
    """Blocker signal found in a commit message."""

    type: str  # wip, todo, blocked, depends
    raw: str
    dependency: Optional[str] = None

    @property
    def key(self) -> str:
        if self.dependency:
            return commit_blocker_key(f"{self.type}:{self.dependency}")
        return commit_blocker_key(self.type)

    @property
    def description(self) -> str:
        if self.type == "depends":
            return f"Depends on #{self.dependency}"
        if self.type == "blocked":
            return "Commit marked BLOCKED"
        if self.type == "todo":
            return "Commit left a TODO"
        return "Work in progress"


_COMMIT_PATTERNS = [
    (re.compile(r"^WIP:\s*", re.IGNORECASE), "wip"),
    (re.compile(r"^TODO:\s*", re.IGNORECASE), "todo"),
    (re.compile(r"^BLOCKED:\s*", re.IGNORECASE), "blocked"),
    (re.compile(r"\bWIP\b", re.IGNORECASE), "wip"),
    (re.compile(r"depends on #(\d+)", re.IGNORECASE), "depends"),
    (re.compile(r"waiting on #(\d+)", re.IGNORECASE), "depends"),
    (re.compile(r"blocked by #(\d+)", re.IGNORECASE), "depends"),
]

_DESCRIPTION_SECTION = re.compile(
    r"##?\s*blockers?:?\s*\n([\s\S]*?)(?=\n##|\n\n\n|$)",
    re.IGNORECASE,
)
_BULLET = re.compile(r"^[-*]\s*")

_PRIORITIES = {
    BlockerType.CHANGES_REQUESTED: 1.0,
    BlockerType.PENDING_REVIEW: 2.0,
    BlockerType.STALE_REVIEW: 2.0,
    BlockerType.COMMENT: 2.5,
    BlockerType.LABEL: 3.0,
    BlockerType.DESCRIPTION: 4.0,
    BlockerType.COMMIT_SIGNAL: 5.0,
}


def parse_commit_blockers(message: str) -> List[CommitBlockerSignal]:
    """Extract blocker signals from a commit message, one per discriminator key."""
    found: Dict[str, CommitBlockerSignal] = {}
    for pattern, signal_type in _COMMIT_PATTERNS:
        match = pattern.search(message)
        if not match:
            continue
        signal = CommitBlockerSignal(
            type=signal_type,
            raw=match.group(0),
            dependency=match.group(1) if match.groups() else None,
        )
        found.setdefault(signal.key, signal)
    return list(found.values())


def is_blocker_label(label: str, blocker_labels: Iterable[str]) -> bool:
    """Case-insensitive substring match against the configured label list."""
    normalized = label.lower()
    return any(
        candidate.strip().lower() in normalized
        for candidate in blocker_labels
        if candidate.strip()
    )


def parse_description_blockers(body: Optional[str]) -> Optional[str]:
    """
    First line of a ``## Blockers`` section in a PR description.

    Returns:
        Blocker text with any list bullet stripped, or None when absent
    """
    if not body:
        return None

    match = _DESCRIPTION_SECTION.search(body)
    if not match:
        return None

    for line in match.group(1).strip().split("\n"):
        if line.strip().startswith("#"):
            break
        if line.strip():
            text = _BULLET.sub("", line.strip()).strip()
            return text or None
    return None


def blocker_priority(blocker_type: BlockerType) -> float:
    """Lower value means more urgent."""
    return _PRIORITIES[BlockerType(blocker_type)]


def collect_active_blockers(open_prs: Iterable[ResolvedPR]) -> List[BlockerSummary]:
    """Flatten unresolved blockers on open PRs into report rows."""
    summaries = []
    for pr in open_prs:
        for entry in pr.blockers.values():
            if not entry.is_active:
                continue
            summaries.append(BlockerSummary(
                user=pr.meta.primary_author,
                description=entry.description,
                type=entry.type.value,
                pr_number=pr.pr_number,
                pr_title=pr.meta.title,
                repo=pr.meta.repo,
                branch=pr.meta.branch,
                detected_at=entry.detected_at,
                mentioned_users=entry.mentioned_users,
            ))
    return summaries


def group_blockers_by_user(
    blockers: Sequence[BlockerSummary],
    now: datetime,
) -> List[UserBlockerGroup]:
    """
    Group blockers by the blocked person.

    Groups are ordered by descending blocker count, ties broken
    alphabetically by user. Blockers inside a group are oldest first.
    """
    by_user: Dict[str, List[AgedBlocker]] = defaultdict(list)
    for blocker in blockers:
        days = age_days(blocker.detected_at, now)
        by_user[blocker.user].append(
            AgedBlocker(**blocker.model_dump(), age_days=days, age=format_age(days))
        )

    groups = []
    for user, aged in by_user.items():
        aged.sort(key=lambda b: (-b.age_days, blocker_priority(BlockerType(b.type))))
        oldest = aged[0].age_days
        groups.append(UserBlockerGroup(
            user=user,
            blockers=aged,
            blocker_count=len(aged),
            oldest_age_days=oldest,
            oldest_age=format_age(oldest),
        ))

    groups.sort(key=lambda g: (-g.blocker_count, g.user))
    return groups


def _reviewer_for(key: str, entry: PRBlockerEntry) -> str:
    if entry.reviewer:
        return entry.reviewer
    return key.split(":", 1)[-1]


def detect_stale_reviews(
    open_prs: Iterable[ResolvedPR],
    now: datetime,
    threshold_days: int = 3,
) -> List[StaleReview]:
    """Unanswered review requests at least ``threshold_days`` old, oldest first."""
    stale = []
    for pr in open_prs:
        for key, entry in pr.blockers.items():
            if entry.type not in REVIEW_WAIT_TYPES or not entry.is_active:
                continue
            days = age_days(entry.detected_at, now)
            if days < threshold_days:
                continue
            stale.append(StaleReview(
                pr_number=pr.pr_number,
                pr_title=pr.meta.title,
                reviewer=_reviewer_for(key, entry),
                days_ago=days,
                repo=pr.meta.repo,
            ))

    stale.sort(key=lambda s: (-s.days_ago, s.pr_number, s.reviewer))
    return stale

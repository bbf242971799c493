"""
Digest and comment job processing.

A digest job turns one pushed commit into a translated ``BranchCommit``
appended to its branch log, plus PR registry updates when the commit can be
tied to a PR. A squash commit on a main branch whose PR is not registered yet
is kept as a direct commit, so no PR is ever bound to a main branch. A
comment job classifies a PR comment and updates the blocker map.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from shiplog.core.blockers import parse_commit_blockers
from shiplog.core.dates import clamp_future, ensure_utc, utc_date, utcnow
from shiplog.models.commit import BranchCommit, DirectCommit
from shiplog.models.jobs import CommentJob, DigestJob
from shiplog.models.pull_request import (
    BlockerType,
    PRBlockerEntry,
    PRMetadata,
    PRUpdate,
    comment_blocker_key,
    commit_blocker_key,
)
from shiplog.models.summaries import CommentAnalysis
from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.github_client import GitHubClient
from shiplog.services.pr_registry import PRRegistry
from shiplog.services.summarizer import SummarizationService
from shiplog.utils.logging import get_logger
from shiplog.utils.metrics import JobMetrics
from shiplog.utils.resilience import TransientError

logger = get_logger(__name__)

_PR_REFERENCE = re.compile(r"\(#(\d+)\)$")


def extract_pr_number(message: str) -> Optional[int]:
    """PR number from a squash/merge subject line such as 'Add login (#42)'."""
    first_line = message.strip().split("\n")[0].strip()
    match = _PR_REFERENCE.search(first_line)
    return int(match.group(1)) if match else None


@dataclass
class DigestResult:
    """Outcome of one digest job."""

    status: str  # stored, direct, skipped
    reason: Optional[str] = None
    pr_number: Optional[int] = None
    commit: Optional[BranchCommit] = None


class DigestProcessor:
    """Processes digest and comment jobs."""

    def __init__(
        self,
        commit_log: BranchCommitLog,
        registry: PRRegistry,
        github: GitHubClient,
        summarizer: SummarizationService,
        settings=None,
    ):
        if settings is None:
            from shiplog.config import settings
        self._commit_log = commit_log
        self._registry = registry
        self._github = github
        self._summarizer = summarizer
        self._settings = settings

    # ========== Digest Jobs ==========

    async def process_digest(
        self,
        job: DigestJob,
        metrics: Optional[JobMetrics] = None,
        now: Optional[datetime] = None,
    ) -> DigestResult:
        """
        Translate and store one commit.

        Args:
            job: Digest job payload
            metrics: Job metrics collector
            now: Current time (defaults to the wall clock)

        Returns:
            DigestResult

        Raises:
            CommitNotFoundError: If GitHub does not know the commit
            DiffTooLargeError: If the diff is over the size limit
            TransientError: On GitHub or summarization failures
        """
        now = ensure_utc(now or utcnow())
        log = logger.with_context(repo=job.repo, branch=job.branch)

        diff = await self._github.get_commit_diff(job.repo, job.sha, metrics=metrics)
        if not diff.strip():
            log.info(f"Skipping {job.sha[:7]}: empty diff")
            return DigestResult(status="skipped", reason="empty_diff")

        translation = await self._summarizer.translate_commit(job.message, diff, metrics=metrics)
        if translation.action == "skip":
            log.info(f"Skipping {job.sha[:7]}: translation marked trivial")
            return DigestResult(status="skipped", reason="trivial")

        timestamp, clamped = clamp_future(job.timestamp, now, self._settings.max_clock_skew_seconds)
        if clamped:
            log.warning(
                f"Clamped future timestamp {job.timestamp.isoformat()} of {job.sha[:7]} to now",
                extra={"commit_sha": job.sha},
            )

        commit = BranchCommit(
            sha=job.sha,
            summary=translation.summary,
            category=translation.category,
            significance=translation.significance,
            author=job.user,
            timestamp=timestamp,
        )

        pr_number = job.pr_number or extract_pr_number(job.message)
        on_main = job.branch in self._settings.main_branches
        existing = await self._registry.get_pr(pr_number) if pr_number is not None else None
        if pr_number is not None and existing is None and on_main:
            # Registering here would bind the PR to main for good
            log.info(
                f"PR #{pr_number} of {job.sha[:7]} is not registered yet, storing as a direct commit",
                extra={"pr_number": pr_number},
            )
            pr_number = None

        if pr_number is not None:
            await self._store_pr_commit(job, pr_number, commit, existing)
        elif on_main:
            await self._commit_log.add_direct_commit(
                None,
                DirectCommit(repo=job.repo, branch=job.branch, **commit.model_dump()),
            )
            log.info(f"Stored direct commit {job.sha[:7]}")
            return DigestResult(status="direct", commit=commit)
        else:
            await self._commit_log.append_commit(job.repo, job.branch, commit)
            pr_number = await self._registry.find_open_pr_for_branch(job.repo, job.branch)
            if pr_number is not None:
                await self._registry.add_pr_to_day(pr_number, utc_date(timestamp))

        if metrics:
            metrics.increment("commits_stored")

        if pr_number is not None:
            await self._apply_commit_signals(pr_number, job.message, timestamp)

        log.info(
            f"Stored {job.sha[:7]} ({translation.category.value if translation.category else 'uncategorized'})",
            extra={"pr_number": pr_number},
        )
        return DigestResult(status="stored", pr_number=pr_number, commit=commit)

    async def _store_pr_commit(
        self,
        job: DigestJob,
        pr_number: int,
        commit: BranchCommit,
        existing: Optional[PRMetadata],
    ) -> None:
        title = f"PR #{pr_number}" if existing is None else None
        meta = await self._registry.upsert_pr(
            pr_number,
            PRUpdate(repo=job.repo, branch=job.branch, title=title, authors={job.user}),
            now=commit.timestamp,
        )

        # The stored branch wins, so a squash commit on main joins its PR's log
        await self._commit_log.append_commit(meta.repo, meta.branch, commit)
        await self._registry.add_pr_to_day(pr_number, utc_date(commit.timestamp))

    async def _apply_commit_signals(self, pr_number: int, message: str, at: datetime) -> None:
        signals = parse_commit_blockers(message)
        if not signals:
            resolved = await self._registry.resolve_all_blockers(
                pr_number, at, prefix=commit_blocker_key("")
            )
            if resolved:
                logger.info(
                    f"Commit cleared {len(resolved)} commit blocker(s) on PR #{pr_number}",
                    extra={"pr_number": pr_number},
                )
            return

        for signal in signals:
            await self._registry.set_blocker(
                pr_number,
                signal.key,
                PRBlockerEntry(
                    type=BlockerType.COMMIT_SIGNAL,
                    description=signal.description,
                    detected_at=at,
                ),
            )

    # ========== Comment Jobs ==========

    async def process_comment(
        self,
        job: CommentJob,
        metrics: Optional[JobMetrics] = None,
        now: Optional[datetime] = None,
    ) -> CommentAnalysis:
        """
        Classify a PR comment and update the blocker map.

        Summarization failures degrade to "no blocker change".
        """
        now = ensure_utc(now or utcnow())

        try:
            analysis = await self._summarizer.analyze_comment(
                job.pr_title, job.pr_number, job.comment_body, metrics=metrics
            )
        except TransientError as e:
            logger.warning(
                f"Comment analysis failed for PR #{job.pr_number}, treating as no change: {e}",
                extra={"pr_number": job.pr_number, "repo": job.repo},
            )
            return CommentAnalysis(action="none")

        if analysis.action == "add_blocker":
            if job.branch:
                await self._registry.upsert_pr(
                    job.pr_number,
                    PRUpdate(repo=job.repo, branch=job.branch, title=job.pr_title),
                    now=now,
                )
            await self._registry.set_blocker(
                job.pr_number,
                comment_blocker_key(job.comment_id),
                PRBlockerEntry(
                    type=BlockerType.COMMENT,
                    description=analysis.description or "Blocker raised in comment",
                    comment_id=job.comment_id,
                    detected_at=now,
                    mentioned_users=analysis.mentioned_users,
                ),
            )
        elif analysis.action == "resolve_blocker":
            resolved = await self._registry.resolve_all_blockers(job.pr_number, now)
            logger.info(
                f"Comment {job.comment_id} resolved {len(resolved)} blocker(s)",
                extra={"pr_number": job.pr_number},
            )

        return analysis

"""
Registry event ingestion.

Applies typed pull request events (opened, edited, closed, reviews, review
requests, labels) to the PR registry. Every handler is idempotent, so
duplicate webhook deliveries leave the registry unchanged.
"""

from datetime import datetime
from typing import Iterable, Optional

from shiplog.core.blockers import is_blocker_label, parse_description_blockers
from shiplog.core.dates import utc_date
from shiplog.models.pull_request import (
    DESCRIPTION_BLOCKER_KEY,
    BlockerType,
    PRBlockerEntry,
    PRUpdate,
    label_blocker_key,
    pending_blocker_key,
    pending_team_blocker_key,
    review_blocker_key,
)
from shiplog.services.pr_registry import PRRegistry
from shiplog.utils.logging import get_logger

logger = get_logger(__name__)


class RegistryIngest:
    """Maps pull request events onto registry writes."""

    def __init__(self, registry: PRRegistry, settings=None):
        if settings is None:
            from shiplog.config import settings
        self._registry = registry
        self._settings = settings

    # ========== Lifecycle ==========

    async def pr_seen(
        self,
        pr_number: int,
        repo: str,
        branch: str,
        title: str,
        author: str,
        at: datetime,
    ) -> None:
        """Make sure a PR referenced by a review or label event is registered."""
        await self._registry.upsert_pr(
            pr_number,
            PRUpdate(repo=repo, branch=branch, title=title, authors={author}),
            now=at,
        )

    async def pr_opened(
        self,
        pr_number: int,
        repo: str,
        branch: str,
        title: str,
        author: str,
        opened_at: datetime,
        body: Optional[str] = None,
        requested_reviewers: Iterable[str] = (),
        requested_teams: Iterable[str] = (),
    ) -> None:
        """Register a PR together with any blockers its opening payload already carries."""
        await self._registry.upsert_pr(
            pr_number,
            PRUpdate(repo=repo, branch=branch, title=title, authors={author}, opened_at=opened_at),
        )
        await self._registry.add_pr_to_day(pr_number, utc_date(opened_at))
        await self._sync_description_blocker(pr_number, body, opened_at)

        for reviewer in requested_reviewers:
            await self.review_requested(pr_number, opened_at, reviewer=reviewer)
        for team in requested_teams:
            await self.review_requested(pr_number, opened_at, team=team)

    async def pr_edited(
        self,
        pr_number: int,
        repo: str,
        branch: str,
        title: str,
        body: Optional[str],
        at: datetime,
    ) -> None:
        await self._registry.upsert_pr(pr_number, PRUpdate(repo=repo, branch=branch, title=title), now=at)
        await self._sync_description_blocker(pr_number, body, at)

    async def pr_closed(
        self,
        pr_number: int,
        repo: str,
        branch: str,
        title: str,
        author: str,
        merged: bool,
        at: datetime,
    ) -> None:
        """
        Close a PR. Merging resolves its remaining blockers first so the
        merged PR reports them as resolved.
        """
        await self._registry.upsert_pr(
            pr_number,
            PRUpdate(repo=repo, branch=branch, title=title, authors={author}),
            now=at,
        )
        if merged:
            resolved = await self._registry.resolve_all_blockers(pr_number, at)
            if resolved:
                logger.info(
                    f"Merge of PR #{pr_number} resolved {len(resolved)} blocker(s)",
                    extra={"pr_number": pr_number},
                )
        await self._registry.close_pr(pr_number, merged=merged, at=at)

    # ========== Reviews ==========

    async def review_submitted(self, pr_number: int, reviewer: str, state: str, at: datetime) -> None:
        """
        Apply a submitted review.

        Any review answers the reviewer's pending request. ``changes_requested``
        opens a review blocker, ``approved`` and ``dismissed`` resolve it.
        """
        state = state.lower()
        await self._registry.resolve_blocker(pr_number, pending_blocker_key(reviewer), at)

        if state == "changes_requested":
            await self._registry.set_blocker(
                pr_number,
                review_blocker_key(reviewer),
                PRBlockerEntry(
                    type=BlockerType.CHANGES_REQUESTED,
                    description=f"Changes requested by {reviewer}",
                    reviewer=reviewer,
                    detected_at=at,
                ),
            )
        elif state in ("approved", "dismissed"):
            await self._registry.resolve_blocker(pr_number, review_blocker_key(reviewer), at)

    async def review_requested(
        self,
        pr_number: int,
        at: datetime,
        reviewer: Optional[str] = None,
        team: Optional[str] = None,
    ) -> None:
        if reviewer:
            key, who, description = pending_blocker_key(reviewer), reviewer, f"Waiting on review from {reviewer}"
        elif team:
            key, who, description = pending_team_blocker_key(team), f"team:{team}", f"Waiting on review from team {team}"
        else:
            return

        existing = (await self._registry.get_blockers(pr_number)).get(key)
        if existing is not None and existing.is_active:
            # Keep the original detection time so the request keeps aging
            return

        await self._registry.set_blocker(
            pr_number,
            key,
            PRBlockerEntry(
                type=BlockerType.PENDING_REVIEW,
                description=description,
                reviewer=who,
                detected_at=at,
            ),
        )

    async def review_request_removed(
        self,
        pr_number: int,
        at: datetime,
        reviewer: Optional[str] = None,
        team: Optional[str] = None,
    ) -> None:
        if reviewer:
            await self._registry.resolve_blocker(pr_number, pending_blocker_key(reviewer), at)
        elif team:
            await self._registry.resolve_blocker(pr_number, pending_team_blocker_key(team), at)

    # ========== Labels & Description ==========

    async def labeled(self, pr_number: int, label: str, at: datetime) -> None:
        if not is_blocker_label(label, self._settings.blocker_labels):
            return
        await self._registry.set_blocker(
            pr_number,
            label_blocker_key(label),
            PRBlockerEntry(
                type=BlockerType.LABEL,
                description=f'PR labeled "{label}"',
                detected_at=at,
            ),
        )

    async def unlabeled(self, pr_number: int, label: str, at: datetime) -> None:
        if not is_blocker_label(label, self._settings.blocker_labels):
            return
        await self._registry.resolve_blocker(pr_number, label_blocker_key(label), at)

    async def _sync_description_blocker(self, pr_number: int, body: Optional[str], at: datetime) -> None:
        text = parse_description_blockers(body)
        if text is None:
            await self._registry.resolve_blocker(pr_number, DESCRIPTION_BLOCKER_KEY, at)
            return

        existing = (await self._registry.get_blockers(pr_number)).get(DESCRIPTION_BLOCKER_KEY)
        if existing is not None and existing.is_active and existing.description == text:
            return

        await self._registry.set_blocker(
            pr_number,
            DESCRIPTION_BLOCKER_KEY,
            PRBlockerEntry(type=BlockerType.DESCRIPTION, description=text, detected_at=at),
        )

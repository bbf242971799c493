"""Pull request registry data models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, field_validator

from shiplog.core.dates import ensure_utc


class PRStatus(str, Enum):
    """Lifecycle status of a pull request."""

    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


class BlockerType(str, Enum):
    """Source of a blocker entry."""

    CHANGES_REQUESTED = "changes_requested"
    PENDING_REVIEW = "pending_review"
    COMMENT = "comment"
    LABEL = "label"
    DESCRIPTION = "description"
    STALE_REVIEW = "stale_review"
    COMMIT_SIGNAL = "commit_signal"


# Blocker types that represent a review the PR is waiting for
REVIEW_WAIT_TYPES = frozenset({BlockerType.PENDING_REVIEW, BlockerType.STALE_REVIEW})


class PRMetadata(BaseModel):
    """Registry record for one pull request."""

    repo: str
    branch: str
    title: str = ""
    authors: Set[str] = set()
    status: PRStatus = PRStatus.OPEN
    opened_at: datetime
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    @field_validator("opened_at", "closed_at", "merged_at")
    @classmethod
    def _utc_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def sorted_authors(self) -> List[str]:
        return sorted(self.authors)

    @property
    def primary_author(self) -> str:
        """Person considered blocked by this PR's blockers."""
        authors = self.sorted_authors
        return authors[0] if authors else "unknown"


class PRUpdate(BaseModel):
    """Partial PR metadata accepted by an upsert."""

    repo: Optional[str] = None
    branch: Optional[str] = None
    title: Optional[str] = None
    authors: Set[str] = set()
    opened_at: Optional[datetime] = None

    @field_validator("opened_at")
    @classmethod
    def _utc_opened_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class PRBlockerEntry(BaseModel):
    """Blocker attached to a pull request, keyed by a discriminator."""

    type: BlockerType
    description: str
    reviewer: Optional[str] = None
    comment_id: Optional[int] = None
    detected_at: datetime
    resolved_at: Optional[datetime] = None
    mentioned_users: List[str] = []

    @field_validator("detected_at", "resolved_at")
    @classmethod
    def _utc_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None


def review_blocker_key(reviewer: str) -> str:
    return f"review:{reviewer}"


def pending_blocker_key(reviewer: str) -> str:
    return f"pending:{reviewer}"


def pending_team_blocker_key(team_slug: str) -> str:
    return f"pending:team:{team_slug}"


def comment_blocker_key(comment_id: int) -> str:
    return f"comment:{comment_id}"


def label_blocker_key(label: str) -> str:
    return f"label:{label}"


def commit_blocker_key(signal: str) -> str:
    return f"commit:{signal}"


DESCRIPTION_BLOCKER_KEY = "description"

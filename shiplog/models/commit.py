"""Commit data models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from shiplog.core.dates import ensure_utc


class CommitCategory(str, Enum):
    """Kind of change a commit delivers."""

    FEATURE = "feature"
    FIX = "fix"
    IMPROVEMENT = "improvement"
    REFACTOR = "refactor"
    DOCS = "docs"
    CHORE = "chore"


class Significance(str, Enum):
    """How visible a change is to users."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BranchCommit(BaseModel):
    """Translated commit appended to a branch log. Immutable once stored."""

    model_config = ConfigDict(frozen=True)

    sha: str
    summary: str
    category: Optional[CommitCategory] = None
    significance: Optional[Significance] = None
    author: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DirectCommit(BaseModel):
    """Translated commit pushed straight to a main branch with no PR."""

    model_config = ConfigDict(frozen=True)

    sha: str
    summary: str
    category: Optional[CommitCategory] = None
    significance: Optional[Significance] = None
    author: str
    repo: str
    branch: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

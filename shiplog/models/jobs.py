"""Queue job payload models."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from shiplog.core.dates import ensure_utc, parse_date


class JobName(str, Enum):
    """Registered job names."""

    DIGEST = "digest"
    COMMENT = "comment"
    REPORT = "report"


class DigestJob(BaseModel):
    """A pushed commit waiting to be translated and stored."""

    repo: str
    user: str
    sha: str
    message: str
    timestamp: datetime
    branch: str
    pr_number: Optional[int] = None

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class CommentJob(BaseModel):
    """A PR conversation comment waiting for blocker classification."""

    repo: str
    pr_number: int
    pr_title: str
    branch: str
    comment_id: int
    comment_body: str
    author: str


class ReportJob(BaseModel):
    """Request to generate and deliver a report."""

    type: Literal["daily", "weekly"] = "daily"
    date_override: Optional[str] = None  # YYYY-MM-DD

    @field_validator("date_override")
    @classmethod
    def _valid_date(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_date(value)
        return value


class JobEnvelope(BaseModel):
    """Wrapper stored on the Redis queues."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    queue: str = "digest"
    payload: Dict[str, Any]
    attempts_made: int = 0
    max_attempts: int = 1
    backoff: Literal["exponential", "fixed"] = "exponential"
    backoff_seconds: float = 0.0
    last_error: Optional[str] = None

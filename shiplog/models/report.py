"""Resolution results and report view models."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel

from shiplog.models.commit import BranchCommit, DirectCommit
from shiplog.models.pull_request import PRBlockerEntry, PRMetadata
from shiplog.models.summaries import WeeklySummary


class ResolvedPR(BaseModel):
    """A pull request joined with its branch log at read time."""

    pr_number: int
    meta: PRMetadata
    commits: List[BranchCommit] = []  # surfaced in the query window
    commit_count: int = 0  # full history, bounded at merge for merged PRs
    blockers: Dict[str, PRBlockerEntry] = {}
    has_activity_today: bool = False
    blockers_resolved: List[str] = []


class ResolvedActivity(BaseModel):
    """Everything the resolution engine found for one report window."""

    open_prs: Dict[int, ResolvedPR] = {}
    merged_prs: Dict[int, ResolvedPR] = {}
    direct_commits: List[DirectCommit] = []
    corrupted_prs: List[int] = []

    @property
    def is_empty(self) -> bool:
        return not (self.open_prs or self.merged_prs or self.direct_commits)


class RAGStatus(str, Enum):
    """Traffic-light health of the team's work."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class RAGThresholds(BaseModel):
    blocker_age_days: int = 7
    blocker_count: int = 3
    stale_review_count: int = 3


class BlockerSummary(BaseModel):
    """An active blocker flattened for reporting."""

    user: str
    description: str
    type: str
    pr_number: Optional[int] = None
    pr_title: Optional[str] = None
    repo: Optional[str] = None
    branch: str = ""
    detected_at: datetime
    mentioned_users: List[str] = []


class AgedBlocker(BlockerSummary):
    age_days: int
    age: str


class UserBlockerGroup(BaseModel):
    """Blockers grouped by the person they block."""

    user: str
    blockers: List[AgedBlocker]
    blocker_count: int
    oldest_age_days: int
    oldest_age: str


class StaleReview(BaseModel):
    """A requested review with no response past the threshold."""

    pr_number: int
    pr_title: str
    reviewer: str
    days_ago: int
    repo: str


class FeatureSummary(BaseModel):
    """One merged PR presented as a shipped feature."""

    feature_name: str
    impact: str
    pr_number: int
    authors: List[str]
    commit_count: int
    repo: str


class BranchSummary(BaseModel):
    """One open PR presented as work in progress."""

    branch: str
    users: List[str]
    commit_count: int
    pr_title: Optional[str] = None
    pr_number: Optional[int] = None
    has_activity_today: Optional[bool] = None
    feature_name: Optional[str] = None
    impact: Optional[str] = None
    repo: Optional[str] = None


class ActivityStats(BaseModel):
    prs_merged: int = 0
    branches_active: int = 0
    total_commits: int = 0
    blocker_count: int = 0
    stale_review_count: int = 0
    oldest_blocker_age: Optional[str] = None


class DailyReport(BaseModel):
    """Rendered daily report plus the watermark it advances to."""

    date: str
    content: Optional[str]
    watermark: datetime
    rag_status: RAGStatus = RAGStatus.GREEN
    stats: ActivityStats = ActivityStats()


class WeeklyStats(BaseModel):
    total_merged: int = 0
    blockers_resolved: int = 0
    active_blocker_count: int = 0
    stale_review_count: int = 0
    in_progress_count: int = 0
    contributor_count: int = 0


class WeeklyBlocker(BaseModel):
    description: str
    owner: str
    age_days: int


class WeeklyReportData(BaseModel):
    """Inputs to the weekly report renderer."""

    week_of: datetime
    week_dates: List[str]
    rag_status: RAGStatus
    summary: WeeklySummary
    stats: WeeklyStats
    active_blockers: List[WeeklyBlocker] = []


class WeeklyReport(BaseModel):
    data: Optional[WeeklyReportData]
    content: Optional[str]
    watermark: datetime


class ReportOutcome(BaseModel):
    """Result of a report job run."""

    type: str
    date: str
    sent: bool
    watermark: datetime
    cleaned_blockers: int = 0
    swept_branches: int = 0

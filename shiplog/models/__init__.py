"""Data models for shiplog."""

from .api_response import (
    HealthResponse,
    ReportEnqueueResponse,
    ReportRequest,
    WebhookResponse,
)
from .commit import BranchCommit, CommitCategory, DirectCommit, Significance
from .jobs import CommentJob, DigestJob, JobEnvelope, JobName, ReportJob
from .pull_request import (
    BlockerType,
    PRBlockerEntry,
    PRMetadata,
    PRStatus,
    PRUpdate,
)
from .report import (
    ActivityStats,
    AgedBlocker,
    BlockerSummary,
    BranchSummary,
    DailyReport,
    FeatureSummary,
    RAGStatus,
    RAGThresholds,
    ReportOutcome,
    ResolvedActivity,
    ResolvedPR,
    StaleReview,
    UserBlockerGroup,
    WeeklyReport,
    WeeklyReportData,
    WeeklyStats,
)
from .summaries import (
    CommentAnalysis,
    CommitTranslation,
    FeatureNarration,
    WeeklySummary,
)

__all__ = [
    # Commit models
    "BranchCommit",
    "CommitCategory",
    "DirectCommit",
    "Significance",
    # PR registry models
    "BlockerType",
    "PRBlockerEntry",
    "PRMetadata",
    "PRStatus",
    "PRUpdate",
    # Job models
    "CommentJob",
    "DigestJob",
    "JobEnvelope",
    "JobName",
    "ReportJob",
    # Summarization contracts
    "CommentAnalysis",
    "CommitTranslation",
    "FeatureNarration",
    "WeeklySummary",
    # Report models
    "ActivityStats",
    "AgedBlocker",
    "BlockerSummary",
    "BranchSummary",
    "DailyReport",
    "FeatureSummary",
    "RAGStatus",
    "RAGThresholds",
    "ReportOutcome",
    "ResolvedActivity",
    "ResolvedPR",
    "StaleReview",
    "UserBlockerGroup",
    "WeeklyReport",
    "WeeklyReportData",
    "WeeklyStats",
    # API response models
    "HealthResponse",
    "ReportEnqueueResponse",
    "ReportRequest",
    "WebhookResponse",
]

"""Request/response contracts of the summarization service."""

from typing import List, Literal, Optional

from pydantic import BaseModel

from shiplog.models.commit import CommitCategory, Significance


class CommitTranslation(BaseModel):
    """Business-value translation of one commit."""

    action: Literal["include", "skip"]
    summary: Optional[str] = None
    category: Optional[CommitCategory] = None
    significance: Optional[Significance] = None


class FeatureNarration(BaseModel):
    """Feature headline and impact for one pull request."""

    feature_name: str
    impact: str


class CommentAnalysis(BaseModel):
    """Blocker classification of a PR comment."""

    action: Literal["add_blocker", "resolve_blocker", "none"] = "none"
    description: Optional[str] = None
    mentioned_users: List[str] = []


class ShippedGroup(BaseModel):
    theme: str
    summary: str
    contributors: List[str] = []


class WeeklySummary(BaseModel):
    """Narrative sections of the weekly report."""

    executive_summary: str
    shipped_groups: List[ShippedGroup] = []
    blockers_and_risks: Optional[str] = None
    help_needed: Optional[str] = None
    next_week: Optional[str] = None

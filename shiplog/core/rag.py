"""
RAG (red/amber/green) status.

A pure function of the active blocker ages and the stale review count.
No transition history is stored.
"""

from typing import Sequence

from shiplog.models.report import RAGStatus, RAGThresholds

_LABELS = {
    RAGStatus.GREEN: "🟢 On Track",
    RAGStatus.YELLOW: "🟡 At Risk",
    RAGStatus.RED: "🔴 Blocked",
}

# Discord embed sidebar colours
RAG_COLORS = {
    RAGStatus.GREEN: 0x2ECC71,
    RAGStatus.YELLOW: 0xF1C40F,
    RAGStatus.RED: 0xE74C3C,
}


def determine_rag_status(
    active_blocker_ages: Sequence[int],
    stale_review_count: int,
    thresholds: RAGThresholds = RAGThresholds(),
) -> RAGStatus:
    """
    Classify team health.

    Red when any active blocker is at least ``blocker_age_days`` old or
    there are at least ``blocker_count`` active blockers. Otherwise yellow
    when any blocker is active or stale reviews reach
    ``stale_review_count``. Otherwise green.

    Args:
        active_blocker_ages: Age in whole days of every active blocker
        stale_review_count: Number of stale review requests
        thresholds: Configured thresholds

    Returns:
        RAGStatus
    """
    if (
        any(age >= thresholds.blocker_age_days for age in active_blocker_ages)
        or len(active_blocker_ages) >= thresholds.blocker_count
    ):
        return RAGStatus.RED

    if active_blocker_ages or stale_review_count >= thresholds.stale_review_count:
        return RAGStatus.YELLOW

    return RAGStatus.GREEN


def format_rag_status(status: RAGStatus) -> str:
    return _LABELS[RAGStatus(status)]


def thresholds_from_settings(settings) -> RAGThresholds:
    """Build thresholds from application settings."""
    return RAGThresholds(
        blocker_age_days=settings.rag_blocker_age_days,
        blocker_count=settings.rag_blocker_count,
        stale_review_count=settings.rag_stale_review_count,
    )

"""
Unit tests for RAG status classification.
"""

from shiplog.config import Settings
from shiplog.core.rag import determine_rag_status, format_rag_status, thresholds_from_settings
from shiplog.models.report import RAGStatus, RAGThresholds


def test_green_when_nothing_is_blocked():
    assert determine_rag_status([], 0) == RAGStatus.GREEN


def test_yellow_on_any_active_blocker():
    assert determine_rag_status([1], 0) == RAGStatus.YELLOW


def test_yellow_on_stale_reviews():
    assert determine_rag_status([], 3) == RAGStatus.YELLOW
    assert determine_rag_status([], 2) == RAGStatus.GREEN


def test_red_on_old_blocker():
    assert determine_rag_status([7], 0) == RAGStatus.RED
    assert determine_rag_status([6], 0) == RAGStatus.YELLOW


def test_red_on_blocker_count():
    assert determine_rag_status([0, 0, 0], 0) == RAGStatus.RED


def test_custom_thresholds():
    thresholds = RAGThresholds(blocker_age_days=2, blocker_count=10, stale_review_count=1)
    assert determine_rag_status([2], 0, thresholds) == RAGStatus.RED
    assert determine_rag_status([], 1, thresholds) == RAGStatus.YELLOW


def test_thresholds_from_settings():
    settings = Settings(_env_file=None, rag_blocker_age_days=5, rag_blocker_count=4, rag_stale_review_count=2)
    thresholds = thresholds_from_settings(settings)
    assert thresholds == RAGThresholds(blocker_age_days=5, blocker_count=4, stale_review_count=2)


def test_labels():
    assert format_rag_status(RAGStatus.GREEN) == "🟢 On Track"
    assert format_rag_status("red") == "🔴 Blocked"

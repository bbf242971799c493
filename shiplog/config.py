"""
Application configuration management.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "shiplog"

    # GitHub
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    webhook_secret: Optional[str] = None

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_key: Optional[str] = None
    azure_openai_deployment: Optional[str] = None
    azure_openai_api_version: str = "2024-02-01"
    project_context: Optional[str] = None

    # Delivery
    discord_webhook_url: Optional[str] = None
    discord_webhook_url_daily: Optional[str] = None
    discord_webhook_url_weekly: Optional[str] = None

    # Reporting
    team_timezone: str = "America/New_York"
    report_cadence: str = "daily"  # daily, weekly or both
    daily_report_time: str = "09:00"
    daily_report_weekdays: List[int] = [0, 1, 2, 3, 4]  # 0=Monday
    weekly_report_time: str = "16:00"
    weekly_report_weekday: int = 4  # 0=Monday
    main_branches: List[str] = ["main", "master"]
    show_in_progress: bool = True
    skip_empty_reports: bool = False

    # Blockers
    blocker_labels: List[str] = ["blocked", "waiting-on-review", "needs-review", "wip"]
    rag_blocker_age_days: int = 7
    rag_blocker_count: int = 3
    rag_stale_review_count: int = 3
    stale_review_days: int = 3

    # Retention (seconds unless noted)
    merged_pr_ttl_seconds: int = 30 * 24 * 3600
    closed_pr_ttl_seconds: int = 7 * 24 * 3600
    day_index_ttl_seconds: int = 35 * 24 * 3600
    direct_commit_ttl_seconds: int = 7 * 24 * 3600
    resolved_blocker_retention_days: int = 7
    branch_retention_days: int = 30

    # Workers and queue
    digest_concurrency: int = 4
    outbound_timeout_seconds: float = 30.0
    delivery_timeout_seconds: float = 10.0
    digest_max_attempts: int = 5
    digest_backoff_seconds: float = 2.0
    report_max_attempts: int = 3
    report_backoff_seconds: float = 300.0
    report_lease_seconds: int = 600
    max_diff_bytes: int = 100_000
    max_clock_skew_seconds: int = 300

    # Application
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()

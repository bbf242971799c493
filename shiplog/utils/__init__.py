"""
Utility modules for shiplog.
"""

from shiplog.utils.logging import (
    get_logger,
    setup_logging,
    job_log_context,
    log_job_event,
    log_api_call,
    log_error_with_context,
)
from shiplog.utils.metrics import (
    JobMetrics,
    track_api_call,
    emit_metric,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "job_log_context",
    "log_job_event",
    "log_api_call",
    "log_error_with_context",
    "JobMetrics",
    "track_api_call",
    "emit_metric",
]

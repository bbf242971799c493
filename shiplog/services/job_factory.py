"""
Job envelope construction.

Attaches the queue, attempt limit and backoff policy of each job type so
every producer (webhooks, the reports API, the scheduler) enqueues jobs
the same way.
"""

from shiplog.models.jobs import CommentJob, DigestJob, JobEnvelope, JobName, ReportJob
from shiplog.services.redis_client import DIGEST_QUEUE, REPORT_QUEUE


def _settings(settings):
    if settings is None:
        from shiplog.config import settings
    return settings


def digest_envelope(job: DigestJob, settings=None) -> JobEnvelope:
    """Digest jobs retry with exponential backoff."""
    settings = _settings(settings)
    return JobEnvelope(
        name=JobName.DIGEST.value,
        queue=DIGEST_QUEUE,
        payload=job.model_dump(mode="json"),
        max_attempts=settings.digest_max_attempts,
        backoff="exponential",
        backoff_seconds=settings.digest_backoff_seconds,
    )


def comment_envelope(job: CommentJob, settings=None) -> JobEnvelope:
    settings = _settings(settings)
    return JobEnvelope(
        name=JobName.COMMENT.value,
        queue=DIGEST_QUEUE,
        payload=job.model_dump(mode="json"),
        max_attempts=settings.digest_max_attempts,
        backoff="exponential",
        backoff_seconds=settings.digest_backoff_seconds,
    )


def report_envelope(job: ReportJob, settings=None) -> JobEnvelope:
    """Report jobs retry on a fixed delay."""
    settings = _settings(settings)
    return JobEnvelope(
        name=JobName.REPORT.value,
        queue=REPORT_QUEUE,
        payload=job.model_dump(mode="json"),
        max_attempts=settings.report_max_attempts,
        backoff="fixed",
        backoff_seconds=settings.report_backoff_seconds,
    )

"""
Manual report trigger.
"""

from fastapi import APIRouter, HTTPException

from shiplog.config import settings
from shiplog.models.api_response import ReportEnqueueResponse, ReportRequest
from shiplog.models.jobs import ReportJob
from shiplog.services.container import get_container
from shiplog.services.job_factory import report_envelope
from shiplog.utils.logging import get_logger, log_error_with_context
from shiplog.utils.resilience import TransientError

logger = get_logger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("", response_model=ReportEnqueueResponse, status_code=202)
async def trigger_report(request: ReportRequest) -> ReportEnqueueResponse:
    """
    Enqueue a daily or weekly report job.

    Raises:
        HTTPException: 422 on an invalid date, 503 when the queue is unavailable
    """
    try:
        job = ReportJob(type=request.type, date_override=request.date_override)
    except ValueError:
        raise HTTPException(status_code=422, detail="date_override must be YYYY-MM-DD")

    envelope = report_envelope(job, settings)
    try:
        await get_container().redis.enqueue(envelope)
    except TransientError as e:
        log_error_with_context(logger, "Failed to enqueue report job", e)
        raise HTTPException(status_code=503, detail="Queue unavailable")

    logger.info(f"Enqueued {job.type} report", extra={"job_id": envelope.id, "job_name": envelope.name})
    return ReportEnqueueResponse(status="queued", job_id=envelope.id, type=job.type)

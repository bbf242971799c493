"""API request and response data models."""

from typing import List, Literal, Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Response from webhook handler."""

    status: str
    message: str
    jobs_enqueued: int = 0


class ReportRequest(BaseModel):
    """Body of a manual report trigger."""

    type: Literal["daily", "weekly"] = "daily"
    date_override: Optional[str] = None


class ReportEnqueueResponse(BaseModel):
    """Result of enqueuing a report job."""

    status: str
    job_id: str
    type: str


class HealthResponse(BaseModel):
    status: str
    version: str
    redis: str
    queues: dict = {}
    errors: List[str] = []

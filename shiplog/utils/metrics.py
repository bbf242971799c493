"""
Metrics collection and emission for observability.

This module provides metrics tracking for:
- Job execution time and outcome
- Outbound call counts and latency (GitHub, LLM, delivery)
- Report contents (PRs shipped, blockers, RAG status)

Metrics are emitted as structured log lines.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from shiplog.utils.logging import get_logger, log_api_call

logger = get_logger(__name__)


class JobMetrics:
    """
    Collects metrics during a single queue job.

    Tracks:
    - Execution start/end time
    - Attempt number and final outcome
    - Outbound call counts and latency
    - Free-form counters (commits stored, blockers set, ...)
    """

    def __init__(self, job_id: str, job_name: str, attempt: int = 1):
        self.job_id = job_id
        self.job_name = job_name
        self.attempt = attempt

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.duration_ms: Optional[int] = None

        self.api_calls: Dict[str, int] = {}
        self.api_latencies: Dict[str, list[float]] = {}
        self.counters: Dict[str, int] = {}

        self.status: str = "pending"
        self.error_message: Optional[str] = None

    def start(self) -> None:
        """Mark job execution start."""
        self.start_time = datetime.now(timezone.utc)
        self.status = "running"

    def complete(self, status: str = "completed", error_message: Optional[str] = None) -> None:
        """
        Mark job execution completion.

        Args:
            status: Final status ('completed', 'retrying', 'failed')
            error_message: Error message if failed
        """
        self.end_time = datetime.now(timezone.utc)
        self.status = status
        self.error_message = error_message

        if self.start_time:
            duration = (self.end_time - self.start_time).total_seconds()
            self.duration_ms = int(duration * 1000)

        logger.info(
            f"Job metrics for {self.job_name} {self.job_id}",
            extra={
                "job_id": self.job_id,
                "job_name": self.job_name,
                "status": self.status,
                "attempt": self.attempt,
                "duration_ms": self.duration_ms,
                "counters": self.counters,
            }
        )

    def increment(self, counter: str, amount: int = 1) -> None:
        """Increment a named counter."""
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def record_api_call(self, service: str, duration_ms: float) -> None:
        """
        Record API call and latency.

        Args:
            service: Service name (e.g., 'github', 'openai')
            duration_ms: Call duration in milliseconds
        """
        self.api_calls[service] = self.api_calls.get(service, 0) + 1
        self.api_latencies.setdefault(service, []).append(duration_ms)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Get summary of collected metrics.

        Returns:
            Dictionary of metrics
        """
        summary = {
            "job_id": self.job_id,
            "job_name": self.job_name,
            "attempt": self.attempt,
            "status": self.status,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "api_calls": self.api_calls,
            "counters": self.counters,
        }

        if self.api_latencies:
            latency_stats = {}
            for service, latencies in self.api_latencies.items():
                if latencies:
                    latency_stats[service] = {
                        "count": len(latencies),
                        "min_ms": round(min(latencies), 2),
                        "max_ms": round(max(latencies), 2),
                        "avg_ms": round(sum(latencies) / len(latencies), 2),
                    }
            summary["api_latencies"] = latency_stats

        if self.error_message:
            summary["error_message"] = self.error_message

        return summary


@asynccontextmanager
async def track_api_call(
    metrics_collector: Optional[JobMetrics],
    service: str,
    logger_adapter,
    endpoint: str = "",
    method: str = "POST"
):
    """
    Context manager to track outbound call timing.

    Usage:
        async with track_api_call(metrics, "github", logger, endpoint=url, method="GET"):
            response = await client.get(url)

    Args:
        metrics_collector: Job metrics (optional)
        service: Service name
        logger_adapter: Logger for logging API calls
        endpoint: Endpoint or operation name
        method: HTTP method
    """
    start_time = time.time()
    error = None

    try:
        yield
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.time() - start_time) * 1000

        if metrics_collector:
            metrics_collector.record_api_call(service, duration_ms)

        log_api_call(
            logger_adapter,
            service=service,
            endpoint=endpoint,
            method=method,
            duration_ms=duration_ms,
            error=str(error) if error else None
        )


def emit_metric(metric_name: str, value: float, **tags: Any) -> None:
    """
    Emit a metric as a structured log line.

    Args:
        metric_name: Metric name
        value: Metric value
        **tags: Metric tags/labels
    """
    logger.info(
        f"Metric: {metric_name}",
        extra={
            "metric_name": metric_name,
            "metric_value": value,
            "metric_tags": tags,
        }
    )

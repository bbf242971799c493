"""
Structured logging utilities with JSON formatting and context injection.

This module provides structured logging capabilities with:
- JSON formatted log output for machine-readable logs
- Context injection (job_id, repo, pr_number) via LoggerAdapter, plus
  per-job fields bound for the duration of a queue job
- Standardized log fields across the ingest, worker and report paths
- Integration with Python's standard logging module
"""

import logging
import json
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional, MutableMapping
from logging import LogRecord


# Fields promoted to the top level of every JSON log line
PROMOTED_FIELDS = ("job_id", "job_name", "repo", "branch", "pr_number", "report_date")

# Client libraries whose INFO output is per-request noise
QUIET_LOGGERS = ("openai", "httpx", "httpcore", "redis", "uvicorn.access")

_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
])


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with standard fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - job_id / repo / pr_number ...: promoted context fields
    - context: any other extra fields
    - error: Error details when exc_info is attached
    """

    def format(self, record: LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in PROMOTED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in PROMOTED_FIELDS:
                extra_fields[key] = value

        if extra_fields:
            log_data["context"] = extra_fields

        if record.exc_info:
            log_data["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stack_trace": "".join(traceback.format_exception(*record.exc_info))
            }

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName
        }

        return json.dumps(log_data, default=str)


# Fields of the job the current task is running. Each consumer task gets its
# own copy, so concurrent jobs never see each other's fields.
_job_fields: ContextVar[Dict[str, Any]] = ContextVar("shiplog_job_fields", default={})


@contextmanager
def job_log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Attach job fields to every log line emitted while the block runs.

    Usage:
        with job_log_context(job_id=envelope.id, job_name="digest"):
            await processor.process_digest(job)  # every log line carries job_id
    """
    merged = {**_job_fields.get(), **fields}
    token = _job_fields.set(merged)
    try:
        yield merged
    finally:
        _job_fields.reset(token)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that injects context fields into all log records.

    Fields come from the running job (see ``job_log_context``), then the
    adapter's bound context, then the call's ``extra``; later ones win.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """
        Process log message and inject context.

        Args:
            msg: Log message
            kwargs: Log kwargs

        Returns:
            Tuple of (message, kwargs) with context injected
        """
        extra = dict(_job_fields.get())
        extra.update(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **context: Any) -> "ContextLoggerAdapter":
        """
        Create a new logger adapter with additional context.

        Args:
            **context: Additional context fields

        Returns:
            New logger adapter with merged context
        """
        new_extra = self.extra.copy()
        new_extra.update(context)
        return ContextLoggerAdapter(self.logger, new_extra)


def setup_logging(log_level: str = "INFO", quiet_loggers: Iterable[str] = QUIET_LOGGERS) -> None:
    """
    Route every logger through one JSON handler on stdout.

    Both the API process and the worker call this once at start-up.

    Args:
        log_level: Level name, case-insensitive (``settings.log_level``)
        quiet_loggers: Client library loggers held at WARNING
    """
    level = log_level.upper()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONFormatter())
    console_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.

    Args:
        name: Logger name (typically __name__)
        **context: Initial context fields (job_id, repo, pr_number, etc.)

    Returns:
        Context logger adapter

    Example:
        logger = get_logger(__name__, repo="acme/api", pr_number=42)
        logger.info("Upserting PR")  # Will include repo and pr_number
    """
    base_logger = logging.getLogger(name)
    return ContextLoggerAdapter(base_logger, context)


def log_job_event(
    logger: logging.LoggerAdapter,
    job_id: str,
    job_name: str,
    outcome: str,
    attempt: int,
    **context: Any
) -> None:
    """
    Log a queue job outcome (started, completed, retrying, failed).

    Args:
        logger: Logger to use
        job_id: Job envelope ID
        job_name: Job name ('digest', 'comment', 'report')
        outcome: Outcome label
        attempt: 1-based attempt number
        **context: Additional context fields
    """
    extra = {
        "job_id": job_id,
        "job_name": job_name,
        "outcome": outcome,
        "attempt": attempt,
    }
    extra.update(context)

    if outcome == "failed":
        logger.error(f"Job {job_name} {outcome}", extra=extra)
    elif outcome == "retrying":
        logger.warning(f"Job {job_name} {outcome}", extra=extra)
    else:
        logger.info(f"Job {job_name} {outcome}", extra=extra)


def log_api_call(
    logger: logging.LoggerAdapter,
    service: str,
    endpoint: str,
    method: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None
) -> None:
    """
    Log an outbound API call with request/response details.

    Args:
        logger: Logger to use
        service: Service name (e.g., 'github', 'openai', 'discord')
        endpoint: API endpoint
        method: HTTP method
        status_code: Response status code (if available)
        duration_ms: Request duration in milliseconds (if available)
        error: Error message (if request failed)
    """
    extra = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
    }

    if status_code is not None:
        extra["status_code"] = status_code
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
    if error is not None:
        extra["error"] = error

    if error:
        logger.error(f"API call failed: {method} {endpoint}", extra=extra)
    else:
        logger.info(f"API call: {method} {endpoint}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any
) -> None:
    """
    Log error with full stack trace and context.

    Args:
        logger: Logger to use
        message: Error message
        error: Exception object
        **context: Additional context fields
    """
    context.setdefault("error_type", type(error).__name__)
    logger.error(
        message,
        extra=context,
        exc_info=(type(error), error, error.__traceback__)
    )

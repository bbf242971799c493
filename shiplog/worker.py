"""
Worker process for the job queues.

Runs ``digest_concurrency`` consumers on the digest queue (digest and
comment jobs), exactly one consumer on the report queue, a promoter that
moves delayed retries back onto their queues and the report scheduler.
Implements graceful shutdown on SIGTERM.
"""

import asyncio
import signal
import sys
import time
from typing import List, Optional

from pydantic import ValidationError

from shiplog.config import settings as app_settings
from shiplog.models.jobs import CommentJob, DigestJob, JobEnvelope, JobName, ReportJob
from shiplog.services.container import ServiceContainer
from shiplog.services.redis_client import DIGEST_QUEUE, REPORT_QUEUE
from shiplog.services.scheduler import ReportScheduler
from shiplog.utils.logging import setup_logging, get_logger, job_log_context, log_job_event
from shiplog.utils.metrics import JobMetrics
from shiplog.utils.resilience import (
    InvalidJobPayloadError,
    UnknownJobError,
    compute_backoff,
    is_transient,
)

logger = get_logger(__name__)


class Worker:
    """Worker process that consumes the digest and report queues."""

    def __init__(
        self,
        container: Optional[ServiceContainer] = None,
        settings=None,
        poll_timeout: int = 5,
        promote_interval: float = 1.0,
        enable_scheduler: bool = True,
    ):
        """Initialize the worker."""
        self.settings = settings or app_settings
        self.container = container or ServiceContainer.build(self.settings)
        self.redis_client = self.container.redis
        self.scheduler = ReportScheduler(self.redis_client, self.settings) if enable_scheduler else None
        self.poll_timeout = poll_timeout
        self.promote_interval = promote_interval
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """
        Start the worker process.

        Initializes connections and runs the consumers until stopped.
        """
        logger.info("Starting worker process...")

        await self.redis_client.initialize()
        logger.info("Redis connection initialized")

        self.running = True
        self._register_signal_handlers()

        if self.scheduler:
            await self.scheduler.start()

        concurrency = max(1, self.settings.digest_concurrency)
        self._tasks = [
            asyncio.create_task(self._consume(DIGEST_QUEUE, f"digest-{i}"))
            for i in range(concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._consume(REPORT_QUEUE, "report-0")))
        self._tasks.append(asyncio.create_task(self._promote_loop()))

        logger.info(f"Worker process started with {concurrency} digest consumer(s)")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """
        Stop the worker process gracefully.

        Consumers finish their current job before exiting.
        """
        if not self.running and not self._tasks:
            return
        logger.info("Stopping worker process...")
        self.running = False

        if self.scheduler:
            await self.scheduler.stop()

        if self._tasks:
            # Consumers notice the flag after their current job or poll timeout
            done, pending = await asyncio.wait(self._tasks, timeout=self.poll_timeout + 30)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks = []

        await self.container.close()
        self._shutdown_event.set()
        logger.info("Worker process stopped")

    # ========== Consumers ==========

    async def _consume(self, queue: str, consumer_id: str) -> None:
        """
        Job processing loop for one consumer.

        Uses a blocking pop with a timeout so the running flag is checked
        periodically.
        """
        logger.info(f"Consumer {consumer_id} polling {queue} queue")

        while self.running:
            try:
                envelope = await self.redis_client.dequeue(queue, timeout=self.poll_timeout)
                if envelope is not None:
                    await self.handle(envelope)

            except asyncio.CancelledError:
                logger.info(f"Consumer {consumer_id} cancelled")
                break

            except Exception as e:
                logger.error(f"Consumer {consumer_id} error: {e}", exc_info=True)
                await asyncio.sleep(1)

        logger.info(f"Consumer {consumer_id} stopped")

    async def _promote_loop(self) -> None:
        while self.running:
            try:
                await self.redis_client.promote_due_jobs(time.time())
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Delayed job promotion failed: {e}", exc_info=True)
            await asyncio.sleep(self.promote_interval)

    # ========== Job Handling ==========

    async def handle(self, envelope: JobEnvelope) -> str:
        """
        Run one job and apply the retry policy.

        Transient failures are re-scheduled with the envelope's backoff until
        ``max_attempts`` is reached. Permanent failures and exhausted jobs go
        to the dead-letter list.

        Returns:
            'completed', 'retrying' or 'failed'
        """
        attempt = envelope.attempts_made + 1
        with job_log_context(job_id=envelope.id, job_name=envelope.name, attempt=attempt):
            return await self._run(envelope, attempt)

    async def _run(self, envelope: JobEnvelope, attempt: int) -> str:
        metrics = JobMetrics(envelope.id, envelope.name, attempt)
        metrics.start()
        log_job_event(logger, envelope.id, envelope.name, "started", attempt)

        try:
            await self._dispatch(envelope, metrics)

        except Exception as e:
            envelope.attempts_made = attempt
            envelope.last_error = f"{type(e).__name__}: {e}"

            if is_transient(e) and attempt < envelope.max_attempts:
                delay = compute_backoff(attempt, envelope.backoff_seconds, envelope.backoff)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = max(delay, retry_after)
                await self.redis_client.schedule_retry(envelope, time.time() + delay)
                metrics.complete("retrying", error_message=envelope.last_error)
                log_job_event(
                    logger, envelope.id, envelope.name, "retrying", attempt,
                    error=envelope.last_error, retry_in_seconds=round(delay, 2),
                )
                return "retrying"

            await self.redis_client.dead_letter(envelope)
            metrics.complete("failed", error_message=envelope.last_error)
            log_job_event(
                logger, envelope.id, envelope.name, "failed", attempt,
                error=envelope.last_error, permanent=not is_transient(e),
            )
            return "failed"

        metrics.complete("completed")
        log_job_event(logger, envelope.id, envelope.name, "completed", attempt)
        return "completed"

    async def _dispatch(self, envelope: JobEnvelope, metrics: JobMetrics) -> None:
        try:
            name = JobName(envelope.name)
        except ValueError:
            raise UnknownJobError(f"Unknown job name: {envelope.name}")

        try:
            if name == JobName.DIGEST:
                job = DigestJob.model_validate(envelope.payload)
            elif name == JobName.COMMENT:
                job = CommentJob.model_validate(envelope.payload)
            else:
                job = ReportJob.model_validate(envelope.payload)
        except ValidationError as e:
            raise InvalidJobPayloadError(f"Invalid {name.value} payload: {e}") from e

        if name == JobName.DIGEST:
            await self.container.digest.process_digest(job, metrics=metrics)
        elif name == JobName.COMMENT:
            await self.container.digest.process_comment(job, metrics=metrics)
        else:
            await self.container.reporter.process(job, metrics=metrics)

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            """Handle shutdown signals."""
            signal_name = signal.Signals(signum).name
            logger.info(f"Received signal {signal_name}, initiating graceful shutdown...")
            asyncio.create_task(self.stop())

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")


async def main():
    """Main entry point for worker process."""
    setup_logging(app_settings.log_level)
    logger.info("Worker process starting...")

    worker = Worker()

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Worker process failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await worker.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()

"""
Redis client wrapper for the event store and job queue.

This service provides Redis operations for:
- Shared connection handling and retry logic used by every store
- Job queues using lists, delayed retries using a sorted set
- Dead-letter list for jobs that exhausted their attempts
- Report watermarks and the single-report lease

Includes connection pooling and retry logic for resilience.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar
from contextlib import asynccontextmanager
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError, ConnectionError, TimeoutError

from shiplog.core.dates import parse_iso, to_iso
from shiplog.models.jobs import JobEnvelope
from shiplog.utils.resilience import CorruptedRecordError, RedisConnectionError, retry_with_backoff


logger = logging.getLogger(__name__)

T = TypeVar("T")

DIGEST_QUEUE = "digest"
REPORT_QUEUE = "report"

_RETRYABLE = (ConnectionError, TimeoutError)


class RedisClient:
    """
    Redis client wrapper with connection pooling and retry logic.

    Stores receive a RedisClient and run their commands through
    ``execute``, which retries connection failures with exponential
    backoff. Tests inject a ``fakeredis.FakeAsyncRedis`` as ``client``.
    """

    # Redis key templates (relative to the prefix)
    QUEUE_KEY = "queue:{name}"
    DELAYED_KEY = "queue:delayed"
    FAILED_KEY = "queue:failed"
    WATERMARK_KEY = "watermark:{kind}"
    LEASE_KEY = "{name}:lease"
    SCHEDULE_KEY = "schedule:{name}:{slot}"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        connection_timeout: int = 5,
        socket_timeout: float = 30.0
    ):
        """
        Initialize Redis client.

        Args:
            redis_url: Redis connection URL. If None, will load from settings.
            key_prefix: Namespace for every key. If None, will load from settings.
            client: Pre-built async Redis client (skips pool creation)
            max_retries: Maximum number of attempts for transient errors
            retry_delay: Base delay between retries (exponential backoff)
            connection_timeout: Connection timeout in seconds
            socket_timeout: Read timeout in seconds. Blocking pops are capped
                below it so an idle poll never looks like a dead connection.
        """
        self._redis_url = redis_url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = client
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._connection_timeout = connection_timeout
        self._socket_timeout = socket_timeout

        if key_prefix is None:
            from shiplog.config import settings
            key_prefix = settings.redis_key_prefix
        self.prefix = key_prefix

    @retry_with_backoff(max_retries=3, base_delay=1.0, exceptions=(RedisConnectionError,))
    async def initialize(self) -> None:
        """
        Initialize Redis connection pool.

        Should be called during application startup. A client injected in
        the constructor is only pinged.

        Raises:
            RedisConnectionError: If connection fails
        """
        try:
            if self._client is None:
                if not self._redis_url:
                    from shiplog.config import settings
                    self._redis_url = settings.redis_url

                self._pool = ConnectionPool.from_url(
                    self._redis_url,
                    max_connections=20,
                    decode_responses=True,
                    socket_timeout=self._socket_timeout,
                    socket_connect_timeout=self._connection_timeout
                )
                self._client = redis.Redis(connection_pool=self._pool)

            await self._client.ping()

            logger.info("Redis connection pool initialized successfully")

        except (RedisError, OSError) as e:
            logger.error(f"Failed to initialize Redis connection pool: {e}")
            raise RedisConnectionError(f"Failed to connect to Redis: {e}") from e

    async def close(self) -> None:
        """
        Close Redis connection pool.

        Should be called during application shutdown.
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        logger.info("Redis connection pool closed")

    @asynccontextmanager
    async def _get_client(self):
        """
        Get Redis client with connection check.

        Yields:
            redis.Redis: Redis client instance

        Raises:
            RuntimeError: If client not initialized
        """
        if not self._client:
            raise RuntimeError("Redis client not initialized. Call initialize() first.")

        yield self._client

    async def _retry_operation(self, operation, *args, retry_on: tuple = _RETRYABLE, **kwargs):
        """
        Execute Redis operation with retry logic.

        Args:
            operation: Async function to execute
            *args: Positional arguments for operation
            retry_on: Connection error types worth retrying
            **kwargs: Keyword arguments for operation

        Returns:
            Operation result

        Raises:
            RedisConnectionError: If operation fails after all retries
        """
        last_error = None

        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)

            except retry_on as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Redis operation failed (attempt {attempt + 1}/{self._max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Redis operation failed after {self._max_retries} attempts: {e}")

            except (ConnectionError, TimeoutError) as e:
                logger.error(f"Redis operation failed without retry: {e}")
                raise RedisConnectionError(f"Redis operation failed: {e}") from e

            except RedisError as e:
                # Non-transient errors, don't retry
                logger.error(f"Redis operation failed with non-transient error: {e}")
                raise

        raise RedisConnectionError(f"Redis operation failed after {self._max_retries} retries: {last_error}")

    async def execute(
        self,
        operation: Callable[[redis.Redis], Awaitable[T]],
        retry_on: tuple = _RETRYABLE,
    ) -> T:
        """
        Run ``operation(client)`` with connection retries.

        Args:
            operation: Async callable receiving the raw Redis client
            retry_on: Connection error types worth retrying

        Returns:
            Whatever the operation returns
        """
        async def _run():
            async with self._get_client() as client:
                return await operation(client)

        return await self._retry_operation(_run, retry_on=retry_on)

    def key(self, template: str, **params) -> str:
        """Build a namespaced key from a template."""
        return f"{self.prefix}:{template.format(**params)}"

    # ========== Job Queue Operations (List) ==========

    def queue_key(self, name: str) -> str:
        return self.key(self.QUEUE_KEY, name=name)

    async def enqueue(self, envelope: JobEnvelope) -> None:
        """
        Append a job to the tail of its queue.

        Args:
            envelope: Job envelope; ``envelope.queue`` selects the list

        Raises:
            RedisConnectionError: If operation fails after retries
        """
        async def _enqueue(client):
            await client.rpush(self.queue_key(envelope.queue), envelope.model_dump_json())
            logger.debug(f"Enqueued {envelope.name} job {envelope.id} on {envelope.queue}")

        await self.execute(_enqueue)

    async def dequeue(self, queue: str, timeout: int = 0) -> Optional[JobEnvelope]:
        """
        Pop the next job from the head of a queue.

        Args:
            queue: Queue name
            timeout: Blocking timeout in seconds (0 for non-blocking). Capped
                one second below the socket read timeout.

        Returns:
            JobEnvelope if available, None if queue is empty. Entries that
            fail to parse are moved to the dead-letter list.
        """
        if timeout > 0 and self._socket_timeout:
            timeout = max(1, min(timeout, int(self._socket_timeout) - 1))

        async def _dequeue(client):
            key = self.queue_key(queue)
            if timeout > 0:
                result = await client.blpop([key], timeout=timeout)
                raw = result[1] if result else None
            else:
                raw = await client.lpop(key)

            if not raw:
                return None

            try:
                return JobEnvelope.model_validate_json(raw)
            except ValueError as e:
                logger.error(f"Dropping unparsable job from {queue}: {e}")
                await client.rpush(self.key(self.FAILED_KEY), raw)
                return None

        # A timed-out blocking pop may already have removed the job server-side
        return await self.execute(_dequeue, retry_on=(ConnectionError,))

    async def schedule_retry(self, envelope: JobEnvelope, run_at: float) -> None:
        """
        Park a job in the delayed set until ``run_at`` (unix seconds).
        """
        async def _schedule(client):
            await client.zadd(self.key(self.DELAYED_KEY), {envelope.model_dump_json(): run_at})

        await self.execute(_schedule)

    async def promote_due_jobs(self, now: float) -> int:
        """
        Move delayed jobs whose time has come back onto their queues.

        Only the caller whose ZREM succeeds re-queues a job, so concurrent
        promoters never duplicate it.

        Returns:
            Number of jobs promoted
        """
        async def _promote(client):
            delayed_key = self.key(self.DELAYED_KEY)
            due = await client.zrangebyscore(delayed_key, min=0, max=now)
            promoted = 0
            for raw in due:
                if not await client.zrem(delayed_key, raw):
                    continue
                try:
                    envelope = JobEnvelope.model_validate_json(raw)
                except ValueError as e:
                    logger.error(f"Dropping unparsable delayed job: {e}")
                    await client.rpush(self.key(self.FAILED_KEY), raw)
                    continue
                await client.rpush(self.queue_key(envelope.queue), raw)
                promoted += 1
            return promoted

        promoted = await self.execute(_promote)
        if promoted:
            logger.info(f"Promoted {promoted} delayed job(s)")
        return promoted

    async def dead_letter(self, envelope: JobEnvelope) -> None:
        """Record a job that failed permanently or exhausted its attempts."""
        async def _fail(client):
            await client.rpush(self.key(self.FAILED_KEY), envelope.model_dump_json())

        await self.execute(_fail)

    async def get_failed_jobs(self, limit: int = 100) -> List[JobEnvelope]:
        async def _get(client):
            return await client.lrange(self.key(self.FAILED_KEY), 0, limit - 1)

        raw_jobs = await self.execute(_get)
        return [JobEnvelope.model_validate_json(raw) for raw in raw_jobs]

    async def get_queue_lengths(self) -> Dict[str, int]:
        """
        Get number of jobs waiting per queue.

        Returns:
            Mapping of queue name to length, plus 'delayed' and 'failed'
        """
        async def _lengths(client):
            return {
                DIGEST_QUEUE: await client.llen(self.queue_key(DIGEST_QUEUE)),
                REPORT_QUEUE: await client.llen(self.queue_key(REPORT_QUEUE)),
                "delayed": await client.zcard(self.key(self.DELAYED_KEY)),
                "failed": await client.llen(self.key(self.FAILED_KEY)),
            }

        return await self.execute(_lengths)

    # ========== Watermark Operations (String) ==========

    async def get_watermark(self, kind: str = "daily") -> Optional[datetime]:
        """
        Read the persisted report watermark.

        Returns:
            Watermark, or None before the first report

        Raises:
            CorruptedRecordError: If the stored value is not a timestamp
        """
        key = self.key(self.WATERMARK_KEY, kind=kind)

        async def _get(client):
            return await client.get(key)

        raw = await self.execute(_get)
        if raw is None:
            return None
        try:
            return parse_iso(raw)
        except ValueError as e:
            raise CorruptedRecordError(key, f"unparsable watermark {raw!r}") from e

    async def set_watermark(self, value: datetime, kind: str = "daily") -> None:
        async def _set(client):
            await client.set(self.key(self.WATERMARK_KEY, kind=kind), to_iso(value))

        await self.execute(_set)
        logger.info(f"Stored {kind} watermark {to_iso(value)}")

    # ========== Lease Operations ==========

    async def acquire_lease(self, name: str, token: str, ttl_seconds: int) -> bool:
        """
        Try to take a named lease with SET NX.

        Returns:
            True if the lease was acquired
        """
        async def _acquire(client):
            return await client.set(
                self.key(self.LEASE_KEY, name=name), token, nx=True, ex=ttl_seconds
            )

        return bool(await self.execute(_acquire))

    async def release_lease(self, name: str, token: str) -> bool:
        """
        Release a lease if it is still held by ``token``.

        Returns:
            True if the lease was released
        """
        key = self.key(self.LEASE_KEY, name=name)

        async def _release(client):
            if await client.get(key) != token:
                return False
            await client.delete(key)
            return True

        released = await self.execute(_release)
        if not released:
            logger.warning(f"Lease {name} was no longer held by {token} at release")
        return released

    async def claim_schedule_slot(self, name: str, slot: str, ttl_seconds: int) -> bool:
        """
        Claim one scheduled run so that only one process enqueues it.
        """
        async def _claim(client):
            return await client.set(
                self.key(self.SCHEDULE_KEY, name=name, slot=slot), "1", nx=True, ex=ttl_seconds
            )

        return bool(await self.execute(_claim))

    # ========== Utility Methods ==========

    async def ping(self) -> bool:
        """
        Test Redis connection.

        Returns:
            True if connection is healthy

        Raises:
            RedisConnectionError: If ping fails
        """
        async def _ping(client):
            return await client.ping()

        return await self.execute(_ping)

    async def clear_all_data(self) -> None:
        """
        Clear all data (for testing purposes only).

        WARNING: This will delete all keys in the Redis database.
        """
        async def _clear(client):
            await client.flushdb()
            logger.warning("Cleared all Redis data")

        await self.execute(_clear)


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """
    Get or create the process-wide Redis client instance.

    Returns:
        RedisClient instance
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client

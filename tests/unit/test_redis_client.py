"""
Unit tests for Redis client wrapper.

Tests Redis operations using fakeredis for isolated testing.
"""

import pytest
import time
from types import SimpleNamespace
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import fakeredis
from redis.exceptions import ConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from shiplog.core.dates import parse_iso
from shiplog.models.jobs import JobEnvelope
from shiplog.services.redis_client import DIGEST_QUEUE, REPORT_QUEUE, RedisClient
from shiplog.utils.resilience import CorruptedRecordError, RedisConnectionError


@pytest.fixture
async def redis_client() -> AsyncGenerator[RedisClient, None]:
    """Create Redis client with fakeredis for testing."""
    client = RedisClient(redis_url="redis://localhost:6379/0", key_prefix="test", retry_delay=0)

    # Replace the real Redis client with fakeredis
    fake_redis = fakeredis.FakeAsyncRedis(decode_responses=True)
    client._client = fake_redis

    yield client

    # Cleanup
    await fake_redis.flushdb()
    await fake_redis.aclose()


def make_envelope(name: str = "digest", queue: str = DIGEST_QUEUE, **payload) -> JobEnvelope:
    return JobEnvelope(name=name, queue=queue, payload=payload or {"sha": "abc123"}, max_attempts=5)


class TestJobQueueOperations:
    """Test job queue operations."""

    @pytest.mark.asyncio
    async def test_enqueue_and_dequeue(self, redis_client: RedisClient):
        """Test enqueuing and dequeuing jobs."""
        envelope = make_envelope()

        await redis_client.enqueue(envelope)
        dequeued = await redis_client.dequeue(DIGEST_QUEUE)

        assert dequeued is not None
        assert dequeued.id == envelope.id
        assert dequeued.payload == {"sha": "abc123"}

    @pytest.mark.asyncio
    async def test_dequeue_empty_queue(self, redis_client: RedisClient):
        """Test dequeuing from empty queue returns None."""
        assert await redis_client.dequeue(DIGEST_QUEUE) is None

    @pytest.mark.asyncio
    async def test_queue_fifo_order(self, redis_client: RedisClient):
        """Test queue maintains FIFO order."""
        envelopes = [make_envelope(sha=f"sha_{i}") for i in range(3)]
        for envelope in envelopes:
            await redis_client.enqueue(envelope)

        dequeued = [await redis_client.dequeue(DIGEST_QUEUE) for _ in range(3)]

        assert [e.payload["sha"] for e in dequeued] == ["sha_0", "sha_1", "sha_2"]

    @pytest.mark.asyncio
    async def test_queues_are_separate(self, redis_client: RedisClient):
        """Test report jobs do not land on the digest queue."""
        await redis_client.enqueue(make_envelope(name="report", queue=REPORT_QUEUE, type="daily"))

        assert await redis_client.dequeue(DIGEST_QUEUE) is None
        assert (await redis_client.dequeue(REPORT_QUEUE)).name == "report"

    @pytest.mark.asyncio
    async def test_unparsable_entry_goes_to_failed_list(self, redis_client: RedisClient):
        """Test garbage on a queue is moved aside instead of crashing consumers."""
        await redis_client._client.rpush(redis_client.queue_key(DIGEST_QUEUE), "not json")

        assert await redis_client.dequeue(DIGEST_QUEUE) is None
        lengths = await redis_client.get_queue_lengths()
        assert lengths["failed"] == 1

    @pytest.mark.asyncio
    async def test_get_queue_lengths(self, redis_client: RedisClient):
        """Test getting queue lengths."""
        await redis_client.enqueue(make_envelope())
        await redis_client.enqueue(make_envelope())
        await redis_client.enqueue(make_envelope(name="report", queue=REPORT_QUEUE))

        lengths = await redis_client.get_queue_lengths()

        assert lengths == {DIGEST_QUEUE: 2, REPORT_QUEUE: 1, "delayed": 0, "failed": 0}


class TestDelayedJobs:
    """Test retry scheduling and promotion."""

    @pytest.mark.asyncio
    async def test_promote_only_due_jobs(self, redis_client: RedisClient):
        now = time.time()
        due = make_envelope(sha="due")
        later = make_envelope(sha="later")

        await redis_client.schedule_retry(due, now - 1)
        await redis_client.schedule_retry(later, now + 600)

        promoted = await redis_client.promote_due_jobs(now)

        assert promoted == 1
        assert (await redis_client.dequeue(DIGEST_QUEUE)).payload["sha"] == "due"
        assert (await redis_client.get_queue_lengths())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_promoted_job_returns_to_its_queue(self, redis_client: RedisClient):
        envelope = make_envelope(name="report", queue=REPORT_QUEUE)
        await redis_client.schedule_retry(envelope, time.time() - 1)

        await redis_client.promote_due_jobs(time.time())

        assert (await redis_client.dequeue(REPORT_QUEUE)).id == envelope.id

    @pytest.mark.asyncio
    async def test_dead_letter(self, redis_client: RedisClient):
        envelope = make_envelope()
        envelope.last_error = "CommitNotFoundError: gone"

        await redis_client.dead_letter(envelope)

        failed = await redis_client.get_failed_jobs()
        assert len(failed) == 1
        assert failed[0].last_error == "CommitNotFoundError: gone"


class TestWatermarks:
    """Test watermark persistence."""

    @pytest.mark.asyncio
    async def test_missing_watermark(self, redis_client: RedisClient):
        assert await redis_client.get_watermark("daily") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, redis_client: RedisClient):
        value = parse_iso("2025-02-24T14:00:00.123Z")

        await redis_client.set_watermark(value, "daily")

        assert await redis_client.get_watermark("daily") == value
        assert await redis_client._client.get("test:watermark:daily") == "2025-02-24T14:00:00.123Z"

    @pytest.mark.asyncio
    async def test_kinds_are_independent(self, redis_client: RedisClient):
        await redis_client.set_watermark(parse_iso("2025-02-24T14:00:00Z"), "daily")
        assert await redis_client.get_watermark("weekly") is None

    @pytest.mark.asyncio
    async def test_corrupted_watermark(self, redis_client: RedisClient):
        await redis_client._client.set("test:watermark:daily", "yesterday-ish")

        with pytest.raises(CorruptedRecordError):
            await redis_client.get_watermark("daily")


class TestLeases:
    """Test the report lease and schedule slots."""

    @pytest.mark.asyncio
    async def test_lease_is_exclusive(self, redis_client: RedisClient):
        assert await redis_client.acquire_lease("report", "token-a", 60)
        assert not await redis_client.acquire_lease("report", "token-b", 60)

        assert await redis_client.release_lease("report", "token-a")
        assert await redis_client.acquire_lease("report", "token-b", 60)

    @pytest.mark.asyncio
    async def test_release_requires_owner(self, redis_client: RedisClient):
        await redis_client.acquire_lease("report", "token-a", 60)

        assert not await redis_client.release_lease("report", "token-b")
        assert await redis_client._client.get("test:report:lease") == "token-a"

    @pytest.mark.asyncio
    async def test_schedule_slot_claimed_once(self, redis_client: RedisClient):
        assert await redis_client.claim_schedule_slot("daily-report", "2025-02-24T14:00:00.000Z", 60)
        assert not await redis_client.claim_schedule_slot("daily-report", "2025-02-24T14:00:00.000Z", 60)
        assert await redis_client.claim_schedule_slot("daily-report", "2025-02-25T14:00:00.000Z", 60)


class TestRetryLogic:
    """Test connection retry handling."""

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, redis_client: RedisClient):
        operation = AsyncMock(side_effect=[ConnectionError("reset"), "PONG"])

        result = await redis_client._retry_operation(operation)

        assert result == "PONG"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, redis_client: RedisClient):
        operation = AsyncMock(side_effect=ConnectionError("down"))

        with pytest.raises(RedisConnectionError):
            await redis_client._retry_operation(operation)

        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_read_timeouts_are_retried(self, redis_client: RedisClient):
        operation = AsyncMock(side_effect=[RedisTimeoutError("slow"), "PONG"])

        assert await redis_client._retry_operation(operation) == "PONG"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_blocking_dequeue_timeout_is_not_retried(self):
        fake = SimpleNamespace(blpop=AsyncMock(side_effect=RedisTimeoutError("Timeout reading from socket")))
        client = RedisClient(client=fake, key_prefix="test", retry_delay=0)

        with pytest.raises(RedisConnectionError):
            await client.dequeue(DIGEST_QUEUE, timeout=5)

        assert fake.blpop.await_count == 1

    @pytest.mark.asyncio
    async def test_blocking_pop_stays_below_socket_timeout(self):
        fake = SimpleNamespace(blpop=AsyncMock(return_value=None))
        client = RedisClient(client=fake, key_prefix="test", socket_timeout=5)

        assert await client.dequeue(DIGEST_QUEUE, timeout=5) is None

        fake.blpop.assert_awaited_once_with(["test:queue:digest"], timeout=4)

    @pytest.mark.asyncio
    async def test_short_blocking_pop_is_unchanged(self):
        fake = SimpleNamespace(blpop=AsyncMock(return_value=None))
        client = RedisClient(client=fake, key_prefix="test")

        await client.dequeue(DIGEST_QUEUE, timeout=5)

        fake.blpop.assert_awaited_once_with(["test:queue:digest"], timeout=5)

    @pytest.mark.asyncio
    async def test_uninitialized_client(self):
        client = RedisClient(redis_url="redis://localhost:6379/0", key_prefix="test")

        with pytest.raises(RuntimeError):
            await client.ping()


class TestUtilityMethods:
    """Test utility methods."""

    @pytest.mark.asyncio
    async def test_ping(self, redis_client: RedisClient):
        """Test Redis ping."""
        assert await redis_client.ping() is True

    def test_key_prefix(self, redis_client: RedisClient):
        assert redis_client.key(RedisClient.WATERMARK_KEY, kind="daily") == "test:watermark:daily"
        assert redis_client.queue_key("digest") == "test:queue:digest"

    @pytest.mark.asyncio
    async def test_clear_all_data(self, redis_client: RedisClient):
        """Test clearing all data."""
        await redis_client.enqueue(make_envelope())

        await redis_client.clear_all_data()

        assert await redis_client.dequeue(DIGEST_QUEUE) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Shared fixtures for the unit tests.

Redis-backed stores run against fakeredis; settings are built without
reading a .env file.
"""

from typing import AsyncGenerator

import fakeredis
import pytest

from shiplog.config import Settings
from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.pr_registry import PRRegistry
from shiplog.services.redis_client import RedisClient
from shiplog.services.resolution import ResolutionEngine


@pytest.fixture
def test_settings() -> Settings:
    """Settings with deterministic values for tests."""
    return Settings(
        _env_file=None,
        redis_key_prefix="test",
        team_timezone="America/New_York",
        main_branches=["main", "master"],
        blocker_labels=["blocked", "waiting-on-review", "needs-review", "wip"],
        webhook_secret=None,
        discord_webhook_url=None,
    )


@pytest.fixture
async def fake_redis() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def redis_client(fake_redis) -> RedisClient:
    """RedisClient wrapper around fakeredis."""
    return RedisClient(client=fake_redis, key_prefix="test", retry_delay=0)


@pytest.fixture
def commit_log(redis_client, test_settings) -> BranchCommitLog:
    return BranchCommitLog(redis_client, test_settings)


@pytest.fixture
def registry(redis_client, test_settings) -> PRRegistry:
    return PRRegistry(redis_client, test_settings)


@pytest.fixture
def resolution(commit_log, registry) -> ResolutionEngine:
    return ResolutionEngine(commit_log, registry)

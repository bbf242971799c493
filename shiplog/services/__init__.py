"""Business logic services package."""

from shiplog.services.redis_client import (
    RedisClient,
    get_redis_client
)
from shiplog.services.commit_log import BranchCommitLog
from shiplog.services.pr_registry import PRRegistry
from shiplog.services.resolution import ResolutionEngine
from shiplog.services.container import (
    ServiceContainer,
    get_container
)

__all__ = [
    'RedisClient',
    'get_redis_client',
    'BranchCommitLog',
    'PRRegistry',
    'ResolutionEngine',
    'ServiceContainer',
    'get_container'
]

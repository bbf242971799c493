"""
Branch-first commit log.

Translated commits are appended to a per-(repo, branch) Redis list. Writes
never consult the PR registry, so a commit may land before or after the PR
that owns its branch; the resolution engine joins the two at read time.
Commits pushed straight to a main branch go to per-day direct lists.
"""

import json
from datetime import datetime, timedelta
from typing import Collection, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from shiplog.core.dates import ensure_utc, utc_date
from shiplog.models.commit import BranchCommit, DirectCommit
from shiplog.services.redis_client import RedisClient
from shiplog.utils.logging import get_logger
from shiplog.utils.resilience import CorruptedRecordError

logger = get_logger(__name__)


class BranchCommitLog:
    """Append-only commit storage keyed by branch."""

    BRANCH_KEY = "branch:{repo}:{branch}:commits"
    BRANCHES_KEY = "branches"
    DIRECT_KEY = "direct:{date}"

    def __init__(self, redis_client: RedisClient, settings=None):
        if settings is None:
            from shiplog.config import settings
        self._redis = redis_client
        self._settings = settings

    def _branch_key(self, repo: str, branch: str) -> str:
        return self._redis.key(self.BRANCH_KEY, repo=repo, branch=branch)

    @staticmethod
    def _branch_member(repo: str, branch: str) -> str:
        return json.dumps([repo, branch])

    @staticmethod
    def _parse_commits(key: str, raw_items: Iterable[str], model):
        commits = []
        for raw in raw_items:
            try:
                commits.append(model.model_validate_json(raw))
            except ValidationError as e:
                raise CorruptedRecordError(key, f"unparsable commit entry: {e}") from e
        return commits

    @staticmethod
    def _dedupe_by_sha(commits):
        """Drop redelivered commits, keeping the first occurrence of each sha."""
        seen = set()
        unique = []
        for commit in commits:
            if commit.sha in seen:
                continue
            seen.add(commit.sha)
            unique.append(commit)
        return unique

    # ========== Branch Logs ==========

    async def append_commit(self, repo: str, branch: str, commit: BranchCommit) -> int:
        """
        Append a commit to a branch log.

        Args:
            repo: Repository in owner/name form
            branch: Branch name
            commit: Translated commit

        Returns:
            Length of the branch log after the append
        """
        key = self._branch_key(repo, branch)

        async def _append(client):
            length = await client.rpush(key, commit.model_dump_json())
            await client.sadd(self._redis.key(self.BRANCHES_KEY), self._branch_member(repo, branch))
            return length

        length = await self._redis.execute(_append)
        logger.debug(
            f"Appended {commit.sha[:7]} to {repo}:{branch}",
            extra={"repo": repo, "branch": branch},
        )
        return length

    async def get_commits(self, repo: str, branch: str) -> List[BranchCommit]:
        """
        Full branch log in append order.

        Appends are at-least-once, so a sha that appears more than once is
        returned only at its first position.

        Raises:
            CorruptedRecordError: If an entry cannot be parsed
        """
        key = self._branch_key(repo, branch)

        async def _get(client):
            return await client.lrange(key, 0, -1)

        return self._dedupe_by_sha(self._parse_commits(key, await self._redis.execute(_get), BranchCommit))

    async def delete_branch(self, repo: str, branch: str) -> None:
        async def _delete(client):
            await client.delete(self._branch_key(repo, branch))
            await client.srem(self._redis.key(self.BRANCHES_KEY), self._branch_member(repo, branch))

        await self._redis.execute(_delete)
        logger.info(f"Deleted branch log {repo}:{branch}", extra={"repo": repo, "branch": branch})

    async def list_branches(self) -> List[Tuple[str, str]]:
        async def _list(client):
            return await client.smembers(self._redis.key(self.BRANCHES_KEY))

        return sorted(tuple(json.loads(member)) for member in await self._redis.execute(_list))

    async def sweep_stale_branches(
        self,
        now: datetime,
        protected: Collection[Tuple[str, str]] = (),
        retention_days: Optional[int] = None,
    ) -> int:
        """
        Delete branch logs whose newest commit is older than the retention window.

        Args:
            now: Reference time
            protected: (repo, branch) pairs still referenced by open PRs
            retention_days: Override of ``branch_retention_days``

        Returns:
            Number of branch logs deleted
        """
        if retention_days is None:
            retention_days = self._settings.branch_retention_days
        cutoff = ensure_utc(now) - timedelta(days=retention_days)
        protected = set(protected)
        deleted = 0

        for repo, branch in await self.list_branches():
            if (repo, branch) in protected:
                continue
            try:
                commits = await self.get_commits(repo, branch)
            except CorruptedRecordError as e:
                logger.error(f"Deleting corrupted branch log: {e}", extra={"repo": repo, "branch": branch})
                commits = []

            newest = max((c.timestamp for c in commits), default=None)
            if newest is None or newest < cutoff:
                await self.delete_branch(repo, branch)
                deleted += 1

        if deleted:
            logger.info(f"Swept {deleted} stale branch log(s)")
        return deleted

    # ========== Direct Commits ==========

    async def add_direct_commit(self, date: Optional[str], commit: DirectCommit) -> None:
        """
        Store a main-branch commit with no PR under a UTC date bucket.

        Args:
            date: YYYY-MM-DD bucket, or None to use the commit's UTC date
            commit: The commit
        """
        key = self._redis.key(self.DIRECT_KEY, date=date or utc_date(commit.timestamp))
        ttl = self._settings.direct_commit_ttl_seconds

        async def _add(client):
            await client.rpush(key, commit.model_dump_json())
            await client.expire(key, ttl)

        await self._redis.execute(_add)

    async def get_direct_commits(self, dates: Iterable[str]) -> List[DirectCommit]:
        commits: List[DirectCommit] = []
        for day in dates:
            key = self._redis.key(self.DIRECT_KEY, date=day)

            async def _get(client, key=key):
                return await client.lrange(key, 0, -1)

            commits.extend(self._parse_commits(key, await self._redis.execute(_get), DirectCommit))
        return self._dedupe_by_sha(commits)

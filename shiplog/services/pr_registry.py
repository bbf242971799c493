"""
Pull request lifecycle registry.

Stores PR metadata, authors, blocker maps and the day/open indexes the
resolution engine walks. Ingestion writes use single-key atomic commands
(HSETNX, HSET, SADD, EXPIRE) so concurrent digest workers never need a lock.
Only the status transition runs as one MULTI/EXEC pipeline.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from pydantic import ValidationError
from redis.exceptions import WatchError

from shiplog.core.dates import ensure_utc, parse_iso, to_iso, utc_date, utcnow
from shiplog.models.pull_request import PRBlockerEntry, PRMetadata, PRStatus, PRUpdate
from shiplog.services.redis_client import RedisClient
from shiplog.utils.logging import get_logger
from shiplog.utils.resilience import CorruptedRecordError, PRValidationError

logger = get_logger(__name__)

_REQUIRED_FIELDS = ("repo", "branch", "status", "opened_at")


class PRRegistry:
    """Redis-backed PR metadata and blocker store."""

    PR_KEY = "pr:{number}"
    AUTHORS_KEY = "pr:{number}:authors"
    BLOCKERS_KEY = "pr:{number}:blockers"
    OPEN_INDEX_KEY = "open-prs"
    BLOCKER_INDEX_KEY = "blockers:index"
    DAY_PRS_KEY = "day:{date}:prs"
    DAY_MERGED_KEY = "day:{date}:merged"

    def __init__(self, redis_client: RedisClient, settings=None):
        if settings is None:
            from shiplog.config import settings
        self._redis = redis_client
        self._settings = settings

    def _pr_key(self, pr_number: int) -> str:
        return self._redis.key(self.PR_KEY, number=pr_number)

    def _authors_key(self, pr_number: int) -> str:
        return self._redis.key(self.AUTHORS_KEY, number=pr_number)

    def _blockers_key(self, pr_number: int) -> str:
        return self._redis.key(self.BLOCKERS_KEY, number=pr_number)

    # ========== PR Metadata ==========

    async def upsert_pr(
        self,
        pr_number: int,
        update: PRUpdate,
        now: Optional[datetime] = None,
    ) -> PRMetadata:
        """
        Create or merge PR metadata.

        ``repo``, ``branch`` and ``opened_at`` are only written when absent,
        authors accumulate and a non-empty title replaces the stored one.
        A stored main branch is the one exception: a head branch from a
        later update replaces it, since a PR never lives on a main branch.
        Status is never changed here.

        Args:
            pr_number: Pull request number
            update: Partial metadata
            now: Fallback ``opened_at`` for new records

        Returns:
            The stored metadata after the merge

        Raises:
            PRValidationError: If neither the update nor the stored record has repo and branch
        """
        key = self._pr_key(pr_number)
        opened_at = update.opened_at or ensure_utc(now or utcnow())

        async def _existing(client):
            return await client.hmget(key, ["repo", "branch"])

        stored_repo, stored_branch = await self._redis.execute(_existing)
        main_branches = set(self._settings.main_branches)
        if not (update.repo or stored_repo) or not (update.branch or stored_branch):
            raise PRValidationError(
                f"PR #{pr_number} has no repo/branch in update or stored record"
            )

        async def _upsert(client):
            if update.repo:
                await client.hsetnx(key, "repo", update.repo)
            if update.branch:
                if stored_branch in main_branches and update.branch not in main_branches:
                    await client.hset(key, "branch", update.branch)
                else:
                    await client.hsetnx(key, "branch", update.branch)
            await client.hsetnx(key, "opened_at", to_iso(opened_at))
            created = await client.hsetnx(key, "status", PRStatus.OPEN.value)
            if update.title:
                await client.hset(key, "title", update.title)
            if update.authors:
                await client.sadd(self._authors_key(pr_number), *sorted(update.authors))
            if created:
                await client.sadd(self._redis.key(self.OPEN_INDEX_KEY), pr_number)
            return created

        created = await self._redis.execute(_upsert)
        if created:
            logger.info(
                f"Registered PR #{pr_number}",
                extra={"pr_number": pr_number, "repo": update.repo or stored_repo},
            )

        meta = await self.get_pr(pr_number)
        if meta is None:
            raise CorruptedRecordError(key, "record vanished during upsert")
        return meta

    async def get_pr(self, pr_number: int) -> Optional[PRMetadata]:
        """
        Load PR metadata.

        Returns:
            PRMetadata, or None when no record exists

        Raises:
            CorruptedRecordError: If the stored hash is partial or unparsable
        """
        key = self._pr_key(pr_number)

        async def _get(client):
            fields = await client.hgetall(key)
            authors = await client.smembers(self._authors_key(pr_number)) if fields else set()
            return fields, authors

        fields, authors = await self._redis.execute(_get)
        if not fields:
            return None

        missing = [f for f in _REQUIRED_FIELDS if not fields.get(f)]
        if missing:
            raise CorruptedRecordError(key, f"missing required fields {missing}")

        try:
            return PRMetadata(
                repo=fields["repo"],
                branch=fields["branch"],
                title=fields.get("title", ""),
                authors=set(authors),
                status=PRStatus(fields["status"]),
                opened_at=parse_iso(fields["opened_at"]),
                closed_at=parse_iso(fields["closed_at"]) if fields.get("closed_at") else None,
                merged_at=parse_iso(fields["merged_at"]) if fields.get("merged_at") else None,
            )
        except (ValueError, ValidationError) as e:
            raise CorruptedRecordError(key, str(e)) from e

    async def set_status(self, pr_number: int, status: PRStatus, at: datetime) -> bool:
        """
        Move an open PR to merged or closed.

        Status fields, TTLs on every PR key and the open-index membership
        are written in one MULTI/EXEC pipeline guarded by WATCH on the PR
        hash, and only while the stored status is still open. Closing
        without a merge also drops the blocker map. A repeat of the stored
        terminal status changes nothing.

        Args:
            pr_number: Pull request number
            status: MERGED or CLOSED
            at: Transition time

        Returns:
            True when the PR is now (or already was) in ``status``; False
            when no record exists or it already holds the other terminal status
        """
        status = PRStatus(status)
        if status == PRStatus.OPEN:
            raise PRValidationError(f"PR #{pr_number} cannot transition back to open")

        at = ensure_utc(at)
        key = self._pr_key(pr_number)
        if status == PRStatus.MERGED:
            ttl = self._settings.merged_pr_ttl_seconds
        else:
            ttl = self._settings.closed_pr_ttl_seconds

        async def _transition(client):
            async with client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        current = await pipe.hget(key, "status")
                        if current != PRStatus.OPEN.value:
                            await pipe.unwatch()
                            return current

                        pipe.multi()
                        fields = {"status": status.value, "closed_at": to_iso(at)}
                        if status == PRStatus.MERGED:
                            fields["merged_at"] = to_iso(at)
                        pipe.hset(key, mapping=fields)
                        pipe.expire(key, ttl)
                        pipe.expire(self._authors_key(pr_number), ttl)
                        if status == PRStatus.CLOSED:
                            pipe.delete(self._blockers_key(pr_number))
                            pipe.srem(self._redis.key(self.BLOCKER_INDEX_KEY), pr_number)
                        else:
                            pipe.expire(self._blockers_key(pr_number), ttl)
                        pipe.srem(self._redis.key(self.OPEN_INDEX_KEY), pr_number)
                        await pipe.execute()
                        return PRStatus.OPEN.value
                    except WatchError:
                        # Another writer touched the record between WATCH and EXEC
                        continue

        previous = await self._redis.execute(_transition)
        log_extra = {"pr_number": pr_number}
        if previous == PRStatus.OPEN.value:
            logger.info(f"PR #{pr_number} is now {status.value}", extra=log_extra)
            return True
        if previous is None:
            logger.warning(f"Ignoring {status.value} for unknown PR #{pr_number}", extra=log_extra)
            return False
        if previous == status.value:
            logger.info(f"PR #{pr_number} is already {status.value}", extra=log_extra)
            return True
        logger.warning(
            f"Ignoring {status.value} for PR #{pr_number}, which is already {previous}",
            extra=log_extra,
        )
        return False

    async def close_pr(self, pr_number: int, merged: bool, at: datetime) -> bool:
        """Close a PR and, when merged, index it under its merge date."""
        status = PRStatus.MERGED if merged else PRStatus.CLOSED
        applied = await self.set_status(pr_number, status, at)
        if applied and merged:
            # A redelivered merge keeps the date of the first one
            meta = await self.get_pr(pr_number)
            merged_at = meta.merged_at if meta and meta.merged_at else at
            await self.record_merged(pr_number, utc_date(merged_at))
        return applied

    async def remove_from_open_index(self, pr_number: int) -> None:
        async def _remove(client):
            await client.srem(self._redis.key(self.OPEN_INDEX_KEY), pr_number)

        await self._redis.execute(_remove)

    async def get_open_pr_numbers(self) -> Set[int]:
        async def _members(client):
            return await client.smembers(self._redis.key(self.OPEN_INDEX_KEY))

        return {int(n) for n in await self._redis.execute(_members)}

    async def find_open_pr_for_branch(self, repo: str, branch: str) -> Optional[int]:
        """Lowest-numbered open PR whose head is ``repo``/``branch``."""
        for pr_number in sorted(await self.get_open_pr_numbers()):
            try:
                meta = await self.get_pr(pr_number)
            except CorruptedRecordError as e:
                logger.error(f"Skipping corrupted PR #{pr_number}: {e}", extra={"pr_number": pr_number})
                continue
            if meta and meta.status == PRStatus.OPEN and meta.repo == repo and meta.branch == branch:
                return pr_number
        return None

    # ========== Blockers ==========

    async def set_blocker(self, pr_number: int, key: str, entry: PRBlockerEntry) -> None:
        """Write a blocker under its discriminator key, replacing any earlier entry."""
        async def _set(client):
            await client.hset(self._blockers_key(pr_number), key, entry.model_dump_json())
            await client.sadd(self._redis.key(self.BLOCKER_INDEX_KEY), pr_number)

        await self._redis.execute(_set)
        logger.info(
            f"Blocker {key} set on PR #{pr_number}: {entry.description}",
            extra={"pr_number": pr_number},
        )

    def _parse_blocker(self, pr_number: int, key: str, raw: str) -> PRBlockerEntry:
        try:
            return PRBlockerEntry.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptedRecordError(
                self._blockers_key(pr_number), f"unparsable blocker {key}: {e}"
            ) from e

    async def get_blockers(self, pr_number: int) -> Dict[str, PRBlockerEntry]:
        """
        Every blocker on a PR, resolved ones included.

        Raises:
            CorruptedRecordError: If an entry cannot be parsed
        """
        async def _get(client):
            return await client.hgetall(self._blockers_key(pr_number))

        raw = await self._redis.execute(_get)
        return {key: self._parse_blocker(pr_number, key, value) for key, value in raw.items()}

    async def resolve_blocker(self, pr_number: int, key: str, at: datetime) -> bool:
        """
        Mark one blocker resolved.

        Returns:
            True if an active blocker was resolved
        """
        blockers_key = self._blockers_key(pr_number)

        async def _get(client):
            return await client.hget(blockers_key, key)

        raw = await self._redis.execute(_get)
        if raw is None:
            return False

        entry = self._parse_blocker(pr_number, key, raw)
        if not entry.is_active:
            return False

        resolved = entry.model_copy(update={"resolved_at": ensure_utc(at)})

        async def _set(client):
            await client.hset(blockers_key, key, resolved.model_dump_json())

        await self._redis.execute(_set)
        logger.info(f"Blocker {key} resolved on PR #{pr_number}", extra={"pr_number": pr_number})
        return True

    async def resolve_all_blockers(
        self,
        pr_number: int,
        at: datetime,
        prefix: Optional[str] = None,
    ) -> List[str]:
        """
        Resolve every active blocker on a PR.

        Args:
            pr_number: Pull request number
            at: Resolution time
            prefix: Only resolve keys starting with this discriminator prefix

        Returns:
            Keys that were resolved
        """
        resolved = []
        for key, entry in (await self.get_blockers(pr_number)).items():
            if prefix and not key.startswith(prefix):
                continue
            if entry.is_active and await self.resolve_blocker(pr_number, key, at):
                resolved.append(key)
        return resolved

    async def cleanup_resolved_blockers(
        self,
        now: datetime,
        retention_days: Optional[int] = None,
    ) -> int:
        """
        Purge blockers resolved longer ago than the retention window.

        Unparsable entries are purged as well.

        Returns:
            Number of entries removed
        """
        if retention_days is None:
            retention_days = self._settings.resolved_blocker_retention_days
        cutoff = ensure_utc(now) - timedelta(days=retention_days)
        index_key = self._redis.key(self.BLOCKER_INDEX_KEY)

        async def _members(client):
            return await client.smembers(index_key)

        removed = 0
        for member in await self._redis.execute(_members):
            pr_number = int(member)
            blockers_key = self._blockers_key(pr_number)

            async def _entries(client, blockers_key=blockers_key):
                return await client.hgetall(blockers_key)

            expired = []
            for key, raw in (await self._redis.execute(_entries)).items():
                try:
                    entry = self._parse_blocker(pr_number, key, raw)
                except CorruptedRecordError as e:
                    logger.error(f"Purging corrupted blocker: {e}", extra={"pr_number": pr_number})
                    expired.append(key)
                    continue
                if entry.resolved_at is not None and entry.resolved_at < cutoff:
                    expired.append(key)

            async def _purge(client, blockers_key=blockers_key, expired=expired, member=member):
                if expired:
                    await client.hdel(blockers_key, *expired)
                if not await client.exists(blockers_key):
                    await client.srem(index_key, member)

            await self._redis.execute(_purge)
            removed += len(expired)

        if removed:
            logger.info(f"Cleaned up {removed} resolved blocker(s)")
        return removed

    # ========== Day Indexes ==========

    async def _add_to_day(self, template: str, pr_number: int, date: str) -> None:
        key = self._redis.key(template, date=date)
        ttl = self._settings.day_index_ttl_seconds

        async def _add(client):
            await client.sadd(key, pr_number)
            await client.expire(key, ttl)

        await self._redis.execute(_add)

    async def _day_members(self, template: str, date: str) -> Set[int]:
        async def _members(client):
            return await client.smembers(self._redis.key(template, date=date))

        return {int(n) for n in await self._redis.execute(_members)}

    async def add_pr_to_day(self, pr_number: int, date: str) -> None:
        """Record activity on a PR for a UTC date."""
        await self._add_to_day(self.DAY_PRS_KEY, pr_number, date)

    async def get_prs_for_day(self, date: str) -> Set[int]:
        return await self._day_members(self.DAY_PRS_KEY, date)

    async def record_merged(self, pr_number: int, date: str) -> None:
        await self._add_to_day(self.DAY_MERGED_KEY, pr_number, date)

    async def get_merged_for_day(self, date: str) -> Set[int]:
        return await self._day_members(self.DAY_MERGED_KEY, date)

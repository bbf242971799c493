"""
Unit tests for the PR registry.
"""

import pytest

from shiplog.core.dates import parse_iso as ts
from shiplog.models.pull_request import BlockerType, PRBlockerEntry, PRStatus, PRUpdate
from shiplog.services.pr_registry import PRRegistry
from shiplog.utils.resilience import CorruptedRecordError, PRValidationError

OPENED = ts("2025-02-20T09:00:00Z")


def blocker(type_=BlockerType.LABEL, detected="2025-02-21T10:00:00Z", description="blocked"):
    return PRBlockerEntry(type=type_, description=description, detected_at=ts(detected))


async def open_pr(registry: PRRegistry, number: int = 42, branch: str = "feature/login", **kwargs):
    update = PRUpdate(
        repo="acme/api", branch=branch, title="Add login", authors={"alice"}, opened_at=OPENED, **kwargs
    )
    return await registry.upsert_pr(number, update)


class TestUpsert:
    """Test PR metadata creation and merging."""

    @pytest.mark.asyncio
    async def test_create(self, registry: PRRegistry):
        meta = await open_pr(registry)

        assert meta.repo == "acme/api"
        assert meta.branch == "feature/login"
        assert meta.title == "Add login"
        assert meta.authors == {"alice"}
        assert meta.status == PRStatus.OPEN
        assert meta.opened_at == OPENED
        assert await registry.get_open_pr_numbers() == {42}

    @pytest.mark.asyncio
    async def test_merge_keeps_first_branch_and_accumulates_authors(self, registry: PRRegistry):
        await open_pr(registry)

        meta = await registry.upsert_pr(42, PRUpdate(
            repo="acme/api", branch="main", title="Add login flow", authors={"bob"},
        ))

        assert meta.branch == "feature/login"
        assert meta.title == "Add login flow"
        assert meta.authors == {"alice", "bob"}
        assert meta.opened_at == OPENED

    @pytest.mark.asyncio
    async def test_head_branch_replaces_stored_main_branch(self, registry: PRRegistry):
        await registry.upsert_pr(7, PRUpdate(repo="acme/api", branch="main", title="PR #7"))

        meta = await registry.upsert_pr(7, PRUpdate(repo="acme/api", branch="feature/login"))

        assert meta.branch == "feature/login"
        assert meta.title == "PR #7"

    @pytest.mark.asyncio
    async def test_empty_title_does_not_overwrite(self, registry: PRRegistry):
        await open_pr(registry)

        meta = await registry.upsert_pr(42, PRUpdate(repo="acme/api", branch="feature/login", title=""))

        assert meta.title == "Add login"

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, registry: PRRegistry):
        first = await open_pr(registry)
        second = await open_pr(registry)

        assert first == second

    @pytest.mark.asyncio
    async def test_missing_repo_and_branch(self, registry: PRRegistry):
        with pytest.raises(PRValidationError):
            await registry.upsert_pr(7, PRUpdate(title="Orphan"))

    @pytest.mark.asyncio
    async def test_partial_update_of_existing_record(self, registry: PRRegistry):
        await open_pr(registry)

        meta = await registry.upsert_pr(42, PRUpdate(authors={"carol"}))

        assert meta.authors == {"alice", "carol"}

    @pytest.mark.asyncio
    async def test_upsert_does_not_reopen(self, registry: PRRegistry):
        await open_pr(registry)
        await registry.close_pr(42, merged=True, at=ts("2025-02-24T10:00:00Z"))

        meta = await open_pr(registry)

        assert meta.status == PRStatus.MERGED
        assert await registry.get_open_pr_numbers() == set()


class TestGetPR:
    """Test reading PR metadata."""

    @pytest.mark.asyncio
    async def test_unknown_pr(self, registry: PRRegistry):
        assert await registry.get_pr(999) is None

    @pytest.mark.asyncio
    async def test_partial_hash_is_corrupted(self, registry: PRRegistry, fake_redis):
        await fake_redis.hset("test:pr:5", mapping={"repo": "acme/api", "status": "open"})

        with pytest.raises(CorruptedRecordError):
            await registry.get_pr(5)

    @pytest.mark.asyncio
    async def test_unparsable_timestamp_is_corrupted(self, registry: PRRegistry, fake_redis):
        await fake_redis.hset("test:pr:5", mapping={
            "repo": "acme/api", "branch": "x", "status": "open", "opened_at": "last tuesday",
        })

        with pytest.raises(CorruptedRecordError):
            await registry.get_pr(5)


class TestStatusTransitions:
    """Test merge and close."""

    @pytest.mark.asyncio
    async def test_merge(self, registry: PRRegistry, fake_redis, test_settings):
        await open_pr(registry)
        merged_at = ts("2025-02-24T15:00:00Z")

        assert await registry.close_pr(42, merged=True, at=merged_at)

        meta = await registry.get_pr(42)
        assert meta.status == PRStatus.MERGED
        assert meta.merged_at == merged_at
        assert meta.closed_at == merged_at
        assert await registry.get_open_pr_numbers() == set()
        assert await registry.get_merged_for_day("2025-02-24") == {42}
        assert 0 < await fake_redis.ttl("test:pr:42") <= test_settings.merged_pr_ttl_seconds

    @pytest.mark.asyncio
    async def test_merge_keeps_blockers_with_ttl(self, registry: PRRegistry, fake_redis):
        await open_pr(registry)
        await registry.set_blocker(42, "label:blocked", blocker())

        await registry.close_pr(42, merged=True, at=ts("2025-02-24T15:00:00Z"))

        assert "label:blocked" in await registry.get_blockers(42)
        assert await fake_redis.ttl("test:pr:42:blockers") > 0

    @pytest.mark.asyncio
    async def test_close_without_merge_drops_blockers(self, registry: PRRegistry, test_settings, fake_redis):
        await open_pr(registry)
        await registry.set_blocker(42, "label:blocked", blocker())

        assert await registry.close_pr(42, merged=False, at=ts("2025-02-24T15:00:00Z"))

        meta = await registry.get_pr(42)
        assert meta.status == PRStatus.CLOSED
        assert meta.merged_at is None
        assert await registry.get_blockers(42) == {}
        assert await registry.get_merged_for_day("2025-02-24") == set()
        assert 0 < await fake_redis.ttl("test:pr:42") <= test_settings.closed_pr_ttl_seconds

    @pytest.mark.asyncio
    async def test_unknown_pr_transition(self, registry: PRRegistry):
        assert not await registry.close_pr(999, merged=True, at=ts("2025-02-24T15:00:00Z"))
        assert await registry.get_merged_for_day("2025-02-24") == set()

    @pytest.mark.asyncio
    async def test_cannot_reopen(self, registry: PRRegistry):
        await open_pr(registry)

        with pytest.raises(PRValidationError):
            await registry.set_status(42, PRStatus.OPEN, ts("2025-02-24T15:00:00Z"))

    @pytest.mark.asyncio
    async def test_merged_pr_cannot_be_closed(self, registry: PRRegistry, fake_redis, test_settings):
        await open_pr(registry)
        await registry.set_blocker(42, "label:blocked", blocker())
        merged_at = ts("2025-02-24T10:00:00Z")
        await registry.close_pr(42, merged=True, at=merged_at)

        assert not await registry.set_status(42, PRStatus.CLOSED, ts("2025-02-24T11:00:00Z"))

        meta = await registry.get_pr(42)
        assert meta.status == PRStatus.MERGED
        assert meta.merged_at == merged_at
        assert meta.closed_at == merged_at
        assert "label:blocked" in await registry.get_blockers(42)
        assert await registry.get_merged_for_day("2025-02-24") == {42}
        assert await fake_redis.ttl("test:pr:42") > test_settings.closed_pr_ttl_seconds

    @pytest.mark.asyncio
    async def test_closed_pr_cannot_be_merged(self, registry: PRRegistry):
        await open_pr(registry)
        await registry.close_pr(42, merged=False, at=ts("2025-02-24T10:00:00Z"))

        assert not await registry.close_pr(42, merged=True, at=ts("2025-02-24T11:00:00Z"))

        meta = await registry.get_pr(42)
        assert meta.status == PRStatus.CLOSED
        assert meta.merged_at is None
        assert await registry.get_merged_for_day("2025-02-24") == set()

    @pytest.mark.asyncio
    async def test_repeated_merge_is_a_no_op(self, registry: PRRegistry):
        await open_pr(registry)
        merged_at = ts("2025-02-24T23:30:00Z")
        await registry.close_pr(42, merged=True, at=merged_at)

        assert await registry.close_pr(42, merged=True, at=ts("2025-02-25T01:00:00Z"))

        assert (await registry.get_pr(42)).merged_at == merged_at
        assert await registry.get_merged_for_day("2025-02-24") == {42}
        assert await registry.get_merged_for_day("2025-02-25") == set()

    @pytest.mark.asyncio
    async def test_find_open_pr_for_branch(self, registry: PRRegistry):
        await open_pr(registry, 42, branch="feature/login")
        await open_pr(registry, 43, branch="feature/search")
        await registry.close_pr(43, merged=True, at=ts("2025-02-24T15:00:00Z"))

        assert await registry.find_open_pr_for_branch("acme/api", "feature/login") == 42
        assert await registry.find_open_pr_for_branch("acme/api", "feature/search") is None
        assert await registry.find_open_pr_for_branch("acme/web", "feature/login") is None


class TestBlockers:
    """Test blocker map operations."""

    @pytest.mark.asyncio
    async def test_set_replaces_by_key(self, registry: PRRegistry):
        await registry.set_blocker(42, "review:bob", blocker(BlockerType.CHANGES_REQUESTED, description="first"))
        await registry.set_blocker(42, "review:bob", blocker(BlockerType.CHANGES_REQUESTED, description="second"))

        blockers = await registry.get_blockers(42)
        assert list(blockers) == ["review:bob"]
        assert blockers["review:bob"].description == "second"

    @pytest.mark.asyncio
    async def test_resolve_keeps_entry_with_timestamp(self, registry: PRRegistry):
        await registry.set_blocker(42, "label:blocked", blocker())
        resolved_at = ts("2025-02-22T10:00:00Z")

        assert await registry.resolve_blocker(42, "label:blocked", resolved_at)
        assert not await registry.resolve_blocker(42, "label:blocked", resolved_at)
        assert not await registry.resolve_blocker(42, "label:missing", resolved_at)

        entry = (await registry.get_blockers(42))["label:blocked"]
        assert entry.resolved_at == resolved_at
        assert not entry.is_active

    @pytest.mark.asyncio
    async def test_resolve_all_with_prefix(self, registry: PRRegistry):
        await registry.set_blocker(42, "commit:wip", blocker(BlockerType.COMMIT_SIGNAL))
        await registry.set_blocker(42, "commit:depends:12", blocker(BlockerType.COMMIT_SIGNAL))
        await registry.set_blocker(42, "label:blocked", blocker())

        resolved = await registry.resolve_all_blockers(42, ts("2025-02-22T10:00:00Z"), prefix="commit:")

        assert sorted(resolved) == ["commit:depends:12", "commit:wip"]
        assert (await registry.get_blockers(42))["label:blocked"].is_active

    @pytest.mark.asyncio
    async def test_corrupted_blocker(self, registry: PRRegistry, fake_redis):
        await fake_redis.hset("test:pr:42:blockers", "label:x", "nope")

        with pytest.raises(CorruptedRecordError):
            await registry.get_blockers(42)

    @pytest.mark.asyncio
    async def test_cleanup_resolved_blockers(self, registry: PRRegistry):
        now = ts("2025-03-10T10:00:00Z")
        await registry.set_blocker(42, "label:old", blocker())
        await registry.set_blocker(42, "label:recent", blocker())
        await registry.set_blocker(42, "label:active", blocker())
        await registry.set_blocker(43, "label:old", blocker())
        await registry.resolve_blocker(42, "label:old", ts("2025-02-22T10:00:00Z"))
        await registry.resolve_blocker(42, "label:recent", ts("2025-03-08T10:00:00Z"))
        await registry.resolve_blocker(43, "label:old", ts("2025-02-22T10:00:00Z"))

        removed = await registry.cleanup_resolved_blockers(now, retention_days=7)

        assert removed == 2
        assert sorted(await registry.get_blockers(42)) == ["label:active", "label:recent"]
        assert await registry.get_blockers(43) == {}

    @pytest.mark.asyncio
    async def test_cleanup_purges_corrupted_entries(self, registry: PRRegistry, fake_redis):
        await registry.set_blocker(42, "label:active", blocker())
        await fake_redis.hset("test:pr:42:blockers", "label:bad", "nope")

        assert await registry.cleanup_resolved_blockers(ts("2025-03-10T10:00:00Z")) == 1
        assert list(await registry.get_blockers(42)) == ["label:active"]


class TestDayIndexes:
    """Test per-day activity indexes."""

    @pytest.mark.asyncio
    async def test_day_index(self, registry: PRRegistry, fake_redis, test_settings):
        await registry.add_pr_to_day(42, "2025-02-24")
        await registry.add_pr_to_day(42, "2025-02-24")
        await registry.add_pr_to_day(43, "2025-02-24")

        assert await registry.get_prs_for_day("2025-02-24") == {42, 43}
        assert await registry.get_prs_for_day("2025-02-25") == set()
        assert 0 < await fake_redis.ttl("test:day:2025-02-24:prs") <= test_settings.day_index_ttl_seconds

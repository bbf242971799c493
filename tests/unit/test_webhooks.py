"""
Unit tests for webhook endpoints.
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from shiplog.api.webhooks import verify_webhook_signature
from shiplog.core.dates import parse_iso as ts
from shiplog.main import app
from shiplog.models.pull_request import PRStatus
from shiplog.services.container import ServiceContainer
from shiplog.services.redis_client import DIGEST_QUEUE

SECRET = "test_secret"
REPOSITORY = {"full_name": "acme/api"}


def generate_signature(payload: bytes, secret: str = SECRET) -> str:
    """Generate webhook signature header value."""
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


@pytest.fixture
def container(redis_client, test_settings) -> ServiceContainer:
    return ServiceContainer.build(
        test_settings,
        redis_client=redis_client,
        github=AsyncMock(),
        summarizer=AsyncMock(),
        sink=AsyncMock(),
    )


@pytest.fixture
def patched(container, test_settings):
    """Route the webhook module to the test container and settings."""
    with patch("shiplog.api.webhooks.get_container", return_value=container), \
            patch("shiplog.api.webhooks.settings", test_settings):
        yield container


@pytest.fixture
async def api(patched):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def deliver(api: httpx.AsyncClient, event: str, payload, signature=None) -> httpx.Response:
    body = json.dumps(payload).encode() if not isinstance(payload, bytes) else payload
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if signature:
        headers["X-Hub-Signature-256"] = signature
    return await api.post("/webhooks/github", content=body, headers=headers)


def pr_payload(action: str, **pr_fields) -> dict:
    pr = {
        "number": 42,
        "title": "Add billing",
        "user": {"login": "alice"},
        "head": {"ref": "feature/billing"},
        "body": None,
        "created_at": "2025-02-24T09:00:00Z",
        "updated_at": "2025-02-24T10:00:00Z",
        "requested_reviewers": [],
        "requested_teams": [],
    }
    pr.update(pr_fields)
    return {"action": action, "pull_request": pr, "repository": REPOSITORY}


class TestSignature:
    """Test HMAC verification."""

    def test_verify_webhook_signature(self):
        body = b'{"zen": "Keep it simple"}'

        assert verify_webhook_signature(body, generate_signature(body), SECRET)
        assert not verify_webhook_signature(body, generate_signature(body, "other"), SECRET)
        assert not verify_webhook_signature(body, None, SECRET)
        assert not verify_webhook_signature(body, "sha1=abc", SECRET)

    def test_invalid_signature_rejected(self, test_settings):
        settings = test_settings.model_copy(update={"webhook_secret": SECRET})

        with patch("shiplog.api.webhooks.settings", settings):
            response = TestClient(app).post(
                "/webhooks/github",
                content=b"{}",
                headers={"X-GitHub-Event": "ping", "X-Hub-Signature-256": "sha256=bad"},
            )

        assert response.status_code == 401
        assert "Invalid webhook signature" in response.json()["detail"]

    def test_valid_signature_accepted(self, test_settings):
        settings = test_settings.model_copy(update={"webhook_secret": SECRET})
        body = b'{"zen": "Keep it simple"}'

        with patch("shiplog.api.webhooks.settings", settings):
            response = TestClient(app).post(
                "/webhooks/github",
                content=body,
                headers={"X-GitHub-Event": "ping", "X-Hub-Signature-256": generate_signature(body)},
            )

        assert response.status_code == 200
        assert response.json()["message"] == "pong"


class TestRouting:
    @pytest.mark.asyncio
    async def test_ping(self, api):
        response = await deliver(api, "ping", {"zen": "hi"})

        assert response.json() == {"status": "ok", "message": "pong", "jobs_enqueued": 0}

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, api):
        response = await deliver(api, "star", {"action": "created"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_invalid_json(self, api):
        response = await deliver(api, "push", b"{not json")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_payload(self, api):
        response = await deliver(api, "push", {"ref": "refs/heads/main", "commits": []})

        assert response.status_code == 400


class TestPush:
    """Test push events become digest jobs."""

    @pytest.mark.asyncio
    async def test_one_job_per_commit(self, api, redis_client):
        payload = {
            "ref": "refs/heads/feature/billing",
            "repository": REPOSITORY,
            "sender": {"login": "alice"},
            "commits": [
                {"id": "a" * 40, "message": "Add invoices", "timestamp": "2025-02-24T10:00:00-05:00",
                 "author": {"username": "alice", "name": "Alice"}},
                {"id": "b" * 40, "message": "Fix totals (#42)", "timestamp": "2025-02-24T11:00:00Z",
                 "author": {"name": "Bob"}},
            ],
        }

        response = await deliver(api, "push", payload)

        assert response.status_code == 200
        assert response.json()["jobs_enqueued"] == 2
        first = await redis_client.dequeue(DIGEST_QUEUE)
        second = await redis_client.dequeue(DIGEST_QUEUE)
        assert first.name == "digest"
        assert first.payload["user"] == "alice"
        assert first.payload["branch"] == "feature/billing"
        assert first.payload["timestamp"] == "2025-02-24T15:00:00Z"
        assert first.payload["pr_number"] is None
        assert second.payload["user"] == "Bob"
        assert second.payload["pr_number"] == 42

    @pytest.mark.asyncio
    async def test_tag_push_is_ignored(self, api, redis_client):
        response = await deliver(api, "push", {"ref": "refs/tags/v1.0", "repository": REPOSITORY, "commits": []})

        assert response.json()["status"] == "ignored"
        assert (await redis_client.get_queue_lengths())[DIGEST_QUEUE] == 0

    @pytest.mark.asyncio
    async def test_branch_deletion_is_ignored(self, api):
        response = await deliver(api, "push", {
            "ref": "refs/heads/feature/old", "deleted": True, "repository": REPOSITORY, "commits": [],
        })

        assert response.json()["status"] == "ignored"


class TestPullRequest:
    """Test pull request events update the registry."""

    @pytest.mark.asyncio
    async def test_opened(self, api, registry):
        payload = pr_payload(
            "opened",
            body="## Blockers\n- Waiting on tax API",
            requested_reviewers=[{"login": "bob"}],
        )

        response = await deliver(api, "pull_request", payload)

        assert response.json()["status"] == "accepted"
        meta = await registry.get_pr(42)
        assert meta.branch == "feature/billing"
        assert meta.opened_at == ts("2025-02-24T09:00:00Z")
        assert sorted(await registry.get_blockers(42)) == ["description", "pending:bob"]

    @pytest.mark.asyncio
    async def test_merged(self, api, registry):
        await deliver(api, "pull_request", pr_payload("opened"))

        await deliver(api, "pull_request", pr_payload("closed", merged=True, merged_at="2025-02-25T12:00:00Z"))

        meta = await registry.get_pr(42)
        assert meta.status == PRStatus.MERGED
        assert meta.merged_at == ts("2025-02-25T12:00:00Z")

    @pytest.mark.asyncio
    async def test_labeled(self, api, registry):
        payload = pr_payload("labeled")
        payload["label"] = {"name": "blocked"}

        await deliver(api, "pull_request", payload)

        assert "label:blocked" in await registry.get_blockers(42)

    @pytest.mark.asyncio
    async def test_review_requested_for_team(self, api, registry):
        payload = pr_payload("review_requested")
        payload["requested_team"] = {"slug": "platform"}

        await deliver(api, "pull_request", payload)

        assert "pending:team:platform" in await registry.get_blockers(42)

    @pytest.mark.asyncio
    async def test_other_actions_are_ignored(self, api, registry):
        response = await deliver(api, "pull_request", pr_payload("synchronize"))

        assert response.json()["status"] == "ignored"
        assert await registry.get_pr(42) is None


class TestReviewsAndComments:
    @pytest.mark.asyncio
    async def test_changes_requested_review(self, api, registry):
        payload = pr_payload("submitted")
        payload["review"] = {
            "user": {"login": "bob"}, "state": "changes_requested", "submitted_at": "2025-02-24T15:00:00Z",
        }

        response = await deliver(api, "pull_request_review", payload)

        assert response.json()["status"] == "accepted"
        assert (await registry.get_blockers(42))["review:bob"].is_active

    @pytest.mark.asyncio
    async def test_pr_comment_is_queued(self, api, redis_client):
        payload = {
            "action": "created",
            "issue": {"number": 42, "title": "Add billing", "pull_request": {"url": "..."}},
            "comment": {"id": 9001, "body": "Blocked on @bob", "user": {"login": "alice", "type": "User"}},
            "repository": REPOSITORY,
        }

        response = await deliver(api, "issue_comment", payload)

        assert response.json()["jobs_enqueued"] == 1
        envelope = await redis_client.dequeue(DIGEST_QUEUE)
        assert envelope.name == "comment"
        assert envelope.payload["comment_id"] == 9001

    @pytest.mark.asyncio
    async def test_bot_comment_is_ignored(self, api):
        payload = {
            "action": "created",
            "issue": {"number": 42, "title": "Add billing", "pull_request": {}},
            "comment": {"id": 1, "body": "Coverage report", "user": {"login": "ci[bot]", "type": "Bot"}},
            "repository": REPOSITORY,
        }

        response = await deliver(api, "issue_comment", payload)

        assert response.json()["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_issue_comment_is_ignored(self, api):
        payload = {
            "action": "created",
            "issue": {"number": 5, "title": "Bug"},
            "comment": {"id": 1, "body": "same here", "user": {"login": "carol"}},
            "repository": REPOSITORY,
        }

        response = await deliver(api, "issue_comment", payload)

        assert response.json()["status"] == "ignored"

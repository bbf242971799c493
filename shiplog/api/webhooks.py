"""
Webhook endpoints for GitHub deliveries.

Push and comment events become queue jobs. Pull request, review and label
events are applied to the PR registry directly since they are plain Redis
writes.
"""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, HTTPException, Request

from shiplog.config import settings
from shiplog.core.dates import parse_iso, utcnow
from shiplog.models.api_response import WebhookResponse
from shiplog.models.jobs import CommentJob, DigestJob
from shiplog.services.container import ServiceContainer, get_container
from shiplog.services.digest import extract_pr_number
from shiplog.services.job_factory import comment_envelope, digest_envelope
from shiplog.utils.logging import get_logger, log_error_with_context
from shiplog.utils.resilience import CorruptedRecordError, PermanentError, TransientError

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_PR_ACTIONS = {
    "opened", "edited", "closed", "labeled", "unlabeled",
    "review_requested", "review_request_removed",
}


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a GitHub ``X-Hub-Signature-256`` header.

    Args:
        payload: Raw request payload
        signature: Header value, ``sha256=<hex>``
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith("sha256="):
        return False

    expected_signature = hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()

    # Compare signatures (constant-time comparison)
    return hmac.compare_digest(signature[len("sha256="):], expected_signature)


def _timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            return parse_iso(value)
        except ValueError:
            logger.warning(f"Unparsable timestamp {value!r} in webhook payload, using now")
    return utcnow()


def _login(user: Optional[Dict[str, Any]]) -> str:
    return (user or {}).get("login") or "unknown"


def _is_bot(user: Optional[Dict[str, Any]]) -> bool:
    user = user or {}
    return user.get("type") == "Bot" or _login(user).endswith("[bot]")


# ========== Event Handlers ==========

async def handle_push(payload: Dict[str, Any], container: ServiceContainer) -> WebhookResponse:
    ref = payload.get("ref", "")
    if not ref.startswith("refs/heads/") or payload.get("deleted"):
        return WebhookResponse(status="ignored", message=f"Push to {ref or 'unknown ref'} not processed")

    repo = payload["repository"]["full_name"]
    branch = ref[len("refs/heads/"):]
    sender = _login(payload.get("sender"))
    enqueued = 0

    for commit in payload.get("commits", []):
        author = commit.get("author") or {}
        job = DigestJob(
            repo=repo,
            user=author.get("username") or author.get("name") or sender,
            sha=commit["id"],
            message=commit.get("message", ""),
            timestamp=_timestamp(commit.get("timestamp")),
            branch=branch,
            pr_number=extract_pr_number(commit.get("message", "")),
        )
        envelope = digest_envelope(job, settings)
        await container.redis.enqueue(envelope)
        enqueued += 1
        logger.debug(
            f"Queued commit {job.sha[:7]} for digestion",
            extra={"job_id": envelope.id, "repo": repo, "branch": branch},
        )

    logger.info(f"Processed push to {repo}:{branch}, queued {enqueued} commit(s)", extra={"repo": repo})
    return WebhookResponse(
        status="accepted",
        message=f"Queued {enqueued} commit(s)",
        jobs_enqueued=enqueued,
    )


async def handle_pull_request(payload: Dict[str, Any], container: ServiceContainer) -> WebhookResponse:
    action = payload.get("action", "")
    if action not in _PR_ACTIONS:
        return WebhookResponse(status="ignored", message=f"pull_request.{action} not processed")

    pr = payload["pull_request"]
    pr_number = pr["number"]
    repo = payload["repository"]["full_name"]
    branch = pr["head"]["ref"]
    title = pr.get("title", "")
    author = _login(pr.get("user"))
    ingest = container.ingest

    if action == "opened":
        await ingest.pr_opened(
            pr_number, repo, branch, title, author,
            opened_at=_timestamp(pr.get("created_at")),
            body=pr.get("body"),
            requested_reviewers=[_login(r) for r in pr.get("requested_reviewers", [])],
            requested_teams=[t["slug"] for t in pr.get("requested_teams", []) if t.get("slug")],
        )
    elif action == "edited":
        await ingest.pr_edited(pr_number, repo, branch, title, pr.get("body"), at=_timestamp(pr.get("updated_at")))
    elif action == "closed":
        merged = bool(pr.get("merged"))
        at = _timestamp(pr.get("merged_at") if merged else pr.get("closed_at"))
        await ingest.pr_closed(pr_number, repo, branch, title, author, merged=merged, at=at)
    else:
        at = _timestamp(pr.get("updated_at"))
        await ingest.pr_seen(pr_number, repo, branch, title, author, at=_timestamp(pr.get("created_at")))
        if action == "labeled":
            await ingest.labeled(pr_number, payload["label"]["name"], at)
        elif action == "unlabeled":
            await ingest.unlabeled(pr_number, payload["label"]["name"], at)
        else:
            reviewer = _login(payload["requested_reviewer"]) if payload.get("requested_reviewer") else None
            team = (payload.get("requested_team") or {}).get("slug")
            if action == "review_requested":
                await ingest.review_requested(pr_number, at, reviewer=reviewer, team=team)
            else:
                await ingest.review_request_removed(pr_number, at, reviewer=reviewer, team=team)

    logger.info(f"Applied pull_request.{action}", extra={"repo": repo, "pr_number": pr_number})
    return WebhookResponse(status="accepted", message=f"pull_request.{action} applied")


async def handle_review(payload: Dict[str, Any], container: ServiceContainer) -> WebhookResponse:
    action = payload.get("action", "")
    if action not in ("submitted", "dismissed"):
        return WebhookResponse(status="ignored", message=f"pull_request_review.{action} not processed")

    pr = payload["pull_request"]
    review = payload["review"]
    pr_number = pr["number"]
    reviewer = _login(review.get("user"))
    state = "dismissed" if action == "dismissed" else review.get("state", "")
    at = _timestamp(review.get("submitted_at"))

    await container.ingest.pr_seen(
        pr_number,
        payload["repository"]["full_name"],
        pr["head"]["ref"],
        pr.get("title", ""),
        _login(pr.get("user")),
        at=_timestamp(pr.get("created_at")),
    )
    await container.ingest.review_submitted(pr_number, reviewer, state, at)

    logger.info(f"Applied {state} review by {reviewer}", extra={"pr_number": pr_number})
    return WebhookResponse(status="accepted", message=f"Review {state.lower()} applied")


async def handle_issue_comment(payload: Dict[str, Any], container: ServiceContainer) -> WebhookResponse:
    issue = payload.get("issue", {})
    comment = payload.get("comment", {})
    if payload.get("action") != "created" or "pull_request" not in issue:
        return WebhookResponse(status="ignored", message="Not a new PR comment")
    if _is_bot(comment.get("user")):
        return WebhookResponse(status="ignored", message="Bot comment skipped")

    pr_number = issue["number"]
    branch = ""
    try:
        meta = await container.registry.get_pr(pr_number)
        if meta is not None:
            branch = meta.branch
    except CorruptedRecordError as e:
        logger.warning(f"Comment on corrupted PR #{pr_number}: {e}", extra={"pr_number": pr_number})

    job = CommentJob(
        repo=payload["repository"]["full_name"],
        pr_number=pr_number,
        pr_title=issue.get("title", ""),
        branch=branch,
        comment_id=comment["id"],
        comment_body=comment.get("body") or "",
        author=_login(comment.get("user")),
    )
    envelope = comment_envelope(job, settings)
    await container.redis.enqueue(envelope)

    logger.info(
        f"Queued comment {job.comment_id} for analysis",
        extra={"job_id": envelope.id, "pr_number": pr_number},
    )
    return WebhookResponse(status="accepted", message="Comment queued", jobs_enqueued=1)


_HANDLERS = {
    "push": handle_push,
    "pull_request": handle_pull_request,
    "pull_request_review": handle_review,
    "issue_comment": handle_issue_comment,
}


@router.post("/github", response_model=WebhookResponse)
async def handle_github_webhook(
    request: Request,
    x_github_event: str = Header(None, alias="X-GitHub-Event"),
    x_hub_signature: str = Header(None, alias="X-Hub-Signature-256")
) -> WebhookResponse:
    """
    Receive a GitHub webhook delivery.

    This endpoint:
    1. Validates the HMAC signature when a webhook secret is configured
    2. Dispatches on the ``X-GitHub-Event`` header
    3. Enqueues digest/comment jobs or applies registry events

    Raises:
        HTTPException: 401 on a bad signature, 400 on a malformed payload,
            422 on an invalid event, 503 when storage is unavailable
    """
    payload = await request.body()

    if settings.webhook_secret and not verify_webhook_signature(payload, x_hub_signature, settings.webhook_secret):
        logger.warning("Invalid webhook signature received")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if x_github_event == "ping":
        return WebhookResponse(status="ok", message="pong")

    handler = _HANDLERS.get(x_github_event)
    if handler is None:
        logger.info(f"Ignoring event type: {x_github_event}")
        return WebhookResponse(status="ignored", message=f"Event type {x_github_event} not processed")

    try:
        payload_json: Dict[str, Any] = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        return await handler(payload_json, get_container())

    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Malformed {x_github_event} payload: {e!r}")
        raise HTTPException(status_code=400, detail=f"Invalid {x_github_event} payload")
    except PermanentError as e:
        log_error_with_context(logger, f"Rejected {x_github_event} event", e)
        raise HTTPException(status_code=422, detail=str(e))
    except TransientError as e:
        log_error_with_context(logger, f"Failed to process {x_github_event} event", e)
        raise HTTPException(status_code=503, detail="Storage unavailable, retry the delivery")

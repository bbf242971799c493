"""
GitHub REST client used by the digest worker to fetch commit diffs.
"""

import asyncio
import time
from typing import Optional

import httpx

from shiplog.utils.logging import get_logger
from shiplog.utils.metrics import JobMetrics, track_api_call
from shiplog.utils.resilience import (
    CircuitBreaker,
    CommitNotFoundError,
    DiffTooLargeError,
    GitHubAPIError,
    create_github_circuit_breaker,
)

logger = get_logger(__name__)

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


class GitHubClient:
    """Fetches commit diffs from the GitHub REST API."""

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        timeout_seconds: float = 30.0,
        max_diff_bytes: int = 100_000,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        headers = {"Accept": DIFF_MEDIA_TYPE, "X-GitHub-Api-Version": "2022-11-28"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._headers = headers
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._max_diff_bytes = max_diff_bytes
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._breaker = circuit_breaker or create_github_circuit_breaker()

    @classmethod
    def from_settings(cls, settings=None) -> "GitHubClient":
        if settings is None:
            from shiplog.config import settings
        return cls(
            token=settings.github_token,
            api_url=settings.github_api_url,
            timeout_seconds=settings.outbound_timeout_seconds,
            max_diff_bytes=settings.max_diff_bytes,
        )

    async def get_commit_diff(
        self,
        repo: str,
        sha: str,
        metrics: Optional[JobMetrics] = None,
    ) -> str:
        """
        Fetch the unified diff of one commit.

        Args:
            repo: Repository in owner/name form
            sha: Commit SHA
            metrics: Job metrics collector

        Returns:
            Diff text

        Raises:
            CommitNotFoundError: If GitHub does not know the commit (404/422)
            DiffTooLargeError: If the diff exceeds ``max_diff_bytes``
            GitHubAPIError: On rate limits, auth failures, 5xx and network errors
        """
        url = f"{self._api_url}/repos/{repo}/commits/{sha}"

        async def _fetch() -> httpx.Response:
            try:
                return await asyncio.wait_for(
                    self._client.get(url, headers=self._headers),
                    timeout=self._timeout,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise GitHubAPIError(f"Timed out fetching {repo}@{sha[:7]}") from e
            except httpx.HTTPError as e:
                raise GitHubAPIError(f"Request for {repo}@{sha[:7]} failed: {e}") from e

        async with track_api_call(metrics, "github", logger, endpoint=f"/repos/{repo}/commits", method="GET"):
            response = await self._breaker.call(_fetch)

        self._raise_for_status(response, repo, sha)

        diff = response.text
        size = len(diff.encode("utf-8"))
        if size > self._max_diff_bytes:
            raise DiffTooLargeError(size, self._max_diff_bytes)
        return diff

    @staticmethod
    def _raise_for_status(response: httpx.Response, repo: str, sha: str) -> None:
        status = response.status_code
        if status < 400:
            return

        if status in (404, 422):
            raise CommitNotFoundError(f"Commit {sha} not found in {repo}")

        if status in (403, 429):
            retry_after = None
            if response.headers.get("x-ratelimit-remaining") == "0":
                reset = response.headers.get("x-ratelimit-reset")
                if reset and reset.isdigit():
                    retry_after = max(int(reset) - time.time(), 0.0)
            elif response.headers.get("retry-after", "").isdigit():
                retry_after = float(response.headers["retry-after"])
            raise GitHubAPIError(
                f"GitHub returned {status} for {repo}@{sha[:7]}", retry_after=retry_after
            )

        raise GitHubAPIError(f"GitHub returned {status} for {repo}@{sha[:7]}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

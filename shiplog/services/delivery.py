"""
Delivery sinks for rendered reports.

The Discord sink posts a report to an incoming webhook, split into chunks
that fit the message limit. When no webhook is configured the log sink
writes the report to the application log instead.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from shiplog.core.formatting import DISCORD_MESSAGE_LIMIT, split_into_chunks
from shiplog.utils.logging import get_logger
from shiplog.utils.metrics import JobMetrics, track_api_call
from shiplog.utils.resilience import (
    CircuitBreaker,
    DeliveryError,
    DeliveryTimeoutError,
    create_delivery_circuit_breaker,
)

logger = get_logger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds to wait from a 429 body or header, None when absent."""
    try:
        value = response.json().get("retry_after")
    except ValueError:
        value = None
    value = value if value is not None else response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class DeliverySink(ABC):
    """Destination for rendered reports."""

    @abstractmethod
    async def deliver(
        self,
        content: str,
        kind: str = "daily",
        metrics: Optional[JobMetrics] = None,
    ) -> None:
        """
        Send a report.

        Args:
            content: Rendered report text
            kind: 'daily' or 'weekly'
            metrics: Job metrics collector

        Raises:
            DeliveryError: If the destination rejected the report
            DeliveryTimeoutError: If sending exceeded the delivery timeout
        """

    async def close(self) -> None:
        pass


class LogDeliverySink(DeliverySink):
    """Writes reports to the log. Used when no webhook is configured."""

    async def deliver(self, content: str, kind: str = "daily", metrics: Optional[JobMetrics] = None) -> None:
        logger.info(f"{kind.capitalize()} report (log delivery):\n{content}")


class DiscordWebhookSink(DeliverySink):
    """Posts reports to Discord incoming webhooks."""

    def __init__(
        self,
        webhook_urls: Dict[str, str],
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        max_length: int = DISCORD_MESSAGE_LIMIT,
    ):
        """
        Args:
            webhook_urls: Webhook URL per report kind, with an optional 'default'
            timeout_seconds: Bound on each webhook call
            http_client: Shared httpx client (created when omitted)
            circuit_breaker: Breaker shared across deliveries
            max_length: Maximum characters per message
        """
        self._urls = {kind: url for kind, url in webhook_urls.items() if url}
        if not self._urls:
            raise ValueError("At least one webhook URL is required")
        self._timeout = timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._breaker = circuit_breaker or create_delivery_circuit_breaker()
        self._max_length = max_length

    def url_for(self, kind: str) -> str:
        url = self._urls.get(kind) or self._urls.get("default")
        if url is None:
            raise DeliveryError(f"No webhook configured for {kind} reports")
        return url

    async def _post(self, url: str, chunk: str) -> None:
        try:
            response = await asyncio.wait_for(
                self._client.post(url, json={"content": chunk}),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise DeliveryTimeoutError(self._timeout) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if response.status_code == 429:
            raise DeliveryError("Webhook rate limited", retry_after=_retry_after(response))

        if response.status_code >= 400:
            raise DeliveryError(
                f"Webhook returned {response.status_code}: {response.text[:200]}"
            )

    async def deliver(self, content: str, kind: str = "daily", metrics: Optional[JobMetrics] = None) -> None:
        url = self.url_for(kind)
        chunks = split_into_chunks(content, self._max_length)

        for index, chunk in enumerate(chunks, start=1):
            async with track_api_call(metrics, "discord", logger, endpoint=f"webhook ({kind})"):
                await self._breaker.call(lambda chunk=chunk: self._post(url, chunk))
            logger.debug(f"Delivered chunk {index}/{len(chunks)} of {kind} report")

        logger.info(f"Delivered {kind} report in {len(chunks)} message(s)")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_delivery_sink(settings=None) -> DeliverySink:
    """Discord sink when any webhook URL is configured, log sink otherwise."""
    if settings is None:
        from shiplog.config import settings

    urls = {
        "default": settings.discord_webhook_url,
        "daily": settings.discord_webhook_url_daily,
        "weekly": settings.discord_webhook_url_weekly,
    }
    if any(urls.values()):
        return DiscordWebhookSink(urls, timeout_seconds=settings.delivery_timeout_seconds)

    logger.warning("No Discord webhook configured, reports will be written to the log")
    return LogDeliverySink()

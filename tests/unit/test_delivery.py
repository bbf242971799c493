"""
Unit tests for report delivery sinks.

Discord calls go through an ``httpx.MockTransport`` so no request leaves
the process.
"""

import json

import httpx
import pytest

from shiplog.services.delivery import (
    DiscordWebhookSink,
    LogDeliverySink,
    create_delivery_sink,
)
from shiplog.utils.resilience import DeliveryError

DEFAULT_URL = "https://discord.test/api/webhooks/default"
WEEKLY_URL = "https://discord.test/api/webhooks/weekly"


class Recorder:
    """Mock transport handler that records posted messages."""

    def __init__(self, *responses: httpx.Response):
        self.requests = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responses:
            return self._responses.pop(0)
        return httpx.Response(204)

    @property
    def contents(self):
        return [json.loads(r.content)["content"] for r in self.requests]


def make_sink(recorder: Recorder, urls=None, **kwargs) -> DiscordWebhookSink:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return DiscordWebhookSink(urls or {"default": DEFAULT_URL}, http_client=client, **kwargs)


class TestDiscordWebhookSink:
    """Test posting to Discord webhooks."""

    @pytest.mark.asyncio
    async def test_single_message(self):
        recorder = Recorder()
        sink = make_sink(recorder)

        await sink.deliver("Daily summary", kind="daily")

        assert recorder.contents == ["Daily summary"]
        assert str(recorder.requests[0].url) == DEFAULT_URL

    @pytest.mark.asyncio
    async def test_long_report_is_chunked(self):
        recorder = Recorder()
        sink = make_sink(recorder, max_length=100)
        lines = [f"line {i:02d} " + "x" * 30 for i in range(10)]

        await sink.deliver("\n".join(lines))

        assert len(recorder.requests) > 1
        assert all(len(c) <= 100 for c in recorder.contents)
        assert "\n".join(recorder.contents).split("\n") == lines

    @pytest.mark.asyncio
    async def test_kind_specific_url(self):
        recorder = Recorder()
        sink = make_sink(recorder, urls={"default": DEFAULT_URL, "weekly": WEEKLY_URL})

        await sink.deliver("weekly", kind="weekly")
        await sink.deliver("daily", kind="daily")

        assert [str(r.url) for r in recorder.requests] == [WEEKLY_URL, DEFAULT_URL]

    def test_missing_url_for_kind(self):
        sink = make_sink(Recorder(), urls={"weekly": WEEKLY_URL})

        with pytest.raises(DeliveryError):
            sink.url_for("daily")

    def test_requires_a_url(self):
        with pytest.raises(ValueError):
            DiscordWebhookSink({"default": None, "daily": ""})

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        recorder = Recorder(httpx.Response(429, json={"retry_after": 2.5}))
        sink = make_sink(recorder)

        with pytest.raises(DeliveryError) as exc_info:
            await sink.deliver("report")

        assert exc_info.value.retry_after == 2.5

    @pytest.mark.asyncio
    async def test_rate_limited_header(self):
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": "7"}, text="slow down"))
        sink = make_sink(recorder)

        with pytest.raises(DeliveryError) as exc_info:
            await sink.deliver("report")

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_server_error(self):
        recorder = Recorder(httpx.Response(500, text="internal"))
        sink = make_sink(recorder)

        with pytest.raises(DeliveryError, match="500"):
            await sink.deliver("report")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = DiscordWebhookSink({"default": DEFAULT_URL}, http_client=client)

        with pytest.raises(DeliveryError):
            await sink.deliver("report")

    @pytest.mark.asyncio
    async def test_stops_after_first_failed_chunk(self):
        recorder = Recorder(httpx.Response(500))
        sink = make_sink(recorder, max_length=10)

        with pytest.raises(DeliveryError):
            await sink.deliver("aaaa\nbbbb\ncccc\ndddd")

        assert len(recorder.requests) == 1


class TestCreateDeliverySink:
    def test_log_sink_without_webhooks(self, test_settings):
        assert isinstance(create_delivery_sink(test_settings), LogDeliverySink)

    def test_discord_sink_with_kind_url(self, test_settings):
        settings = test_settings.model_copy(update={"discord_webhook_url_weekly": WEEKLY_URL})

        sink = create_delivery_sink(settings)

        assert isinstance(sink, DiscordWebhookSink)
        assert sink.url_for("weekly") == WEEKLY_URL

    @pytest.mark.asyncio
    async def test_log_sink_delivers(self):
        await LogDeliverySink().deliver("hello", kind="weekly")

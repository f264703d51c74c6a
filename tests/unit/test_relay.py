# -*- coding: utf-8 -*-

"""
Unit tests for the relay pipeline and billing settlement.
"""

import pytest

from relay_gateway.exceptions import ConfigMissingError, RequestInvalidError, UpstreamError
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest, ImageRequest, Usage
from relay_gateway.pricing import IMAGE_TOKEN_UNITS
from relay_gateway.relay import (
    BillingSink,
    LoggingBillingSink,
    compute_quota,
    encode_body,
    get_billing_sink,
    relay_claude_messages,
    relay_image,
    relay_text,
    set_billing_sink,
)
from relay_gateway.relaymode import RelayMode

RATIOS = {"channel_model_ratio": {"gpt-4o": 2.0}, "channel_completion_ratio": {"gpt-4o": 3.0}}

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "gpt-4o",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
}


class RecordingSink(BillingSink):
    """Keeps every settlement."""

    def __init__(self):
        self.records = []

    async def record(self, meta, usage, quota):
        self.records.append((meta.actual_model_name, usage.model_copy(), quota))


@pytest.fixture
def sink():
    return RecordingSink()


def _chat(**fields) -> GeneralOpenAIRequest:
    fields.setdefault("model", "gpt-4o")
    fields.setdefault("messages", [{"role": "user", "content": "hi"}])
    return GeneralOpenAIRequest.model_validate(fields)


class TestComputeQuota:
    """Tests for compute_quota."""

    def test_channel_overrides(self, meta_factory):
        meta = meta_factory(**RATIOS)
        usage = Usage(prompt_tokens=10, completion_tokens=5)
        # 10 * 2 + 5 * 2 * 3
        assert compute_quota(usage, "gpt-4o", meta, None) == 50

    def test_tools_cost_added(self, meta_factory):
        meta = meta_factory(**RATIOS)
        usage = Usage(prompt_tokens=1, completion_tokens=0, tools_cost=7)
        assert compute_quota(usage, "gpt-4o", meta, None) == 9

    def test_usage_not_modified(self, meta_factory):
        usage = Usage(prompt_tokens=3, completion_tokens=4)
        compute_quota(usage, "gpt-4o", meta_factory(**RATIOS), None)
        assert (usage.prompt_tokens, usage.completion_tokens) == (3, 4)


class TestHelpers:
    """Tests for body encoding and sink installation."""

    def test_encode_body(self):
        assert encode_body(b"raw") == b"raw"
        assert encode_body({"a": "é"}) == '{"a": "é"}'.encode("utf-8")
        assert encode_body(Usage(prompt_tokens=1)).startswith(b"{")

    def test_set_billing_sink(self, sink):
        set_billing_sink(sink)
        try:
            assert get_billing_sink() is sink
        finally:
            set_billing_sink(None)
        assert isinstance(get_billing_sink(), LoggingBillingSink)


class TestRelayText:
    """Tests for relay_text."""

    @pytest.mark.asyncio
    async def test_buffered(self, meta_factory, relay_ctx, mock_upstream, sink):
        mock_upstream.respond_json(COMPLETION)
        meta = meta_factory(**RATIOS)

        result = await relay_text(_chat(), meta, relay_ctx, sink)

        assert not result.is_stream
        assert result.body["choices"][0]["message"]["content"] == "hello"
        assert result.quota == 50
        assert sink.records == [("gpt-4o", result.usage, 50)]
        assert str(mock_upstream.last_request.url) == "https://upstream.test/v1/chat/completions"
        assert meta.prompt_tokens > 0
        assert relay_ctx.converted_response is result.body

    @pytest.mark.asyncio
    async def test_stream_settles_after_consumption(
        self, meta_factory, relay_ctx, mock_upstream, sink, openai_sse, openai_chunk, sse_collect
    ):
        """
        What it does: Relays a stream and reads it to the end.
        Purpose: The sink is called once, after the last frame, with the final usage.
        """
        mock_upstream.respond_bytes(openai_sse([
            openai_chunk(content="hel"),
            openai_chunk(content="lo", finish_reason="stop"),
            openai_chunk(usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}),
        ]))
        meta = meta_factory(**RATIOS)

        result = await relay_text(_chat(stream=True), meta, relay_ctx, sink)
        assert result.is_stream
        assert sink.records == []

        output = await sse_collect(result.stream)

        assert "data: [DONE]" in output
        assert result.quota == 50
        assert len(sink.records) == 1
        assert mock_upstream.last_json()["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_embeddings_never_stream(self, meta_factory, relay_ctx, mock_upstream, sink):
        mock_upstream.respond_json({
            "object": "list",
            "data": [{"object": "embedding", "index": 0, "embedding": [0.1]}],
            "model": "text-embedding-3-small",
            "usage": {"prompt_tokens": 3, "total_tokens": 3},
        })
        meta = meta_factory(model="text-embedding-3-small", mode=RelayMode.EMBEDDINGS)
        request = GeneralOpenAIRequest(model="text-embedding-3-small", input="abc", stream=True)

        result = await relay_text(request, meta, relay_ctx, sink)

        assert not meta.is_stream
        assert result.body["data"][0]["embedding"] == [0.1]
        assert str(mock_upstream.last_request.url).endswith("/v1/embeddings")

    @pytest.mark.asyncio
    async def test_upstream_error_not_billed(self, meta_factory, relay_ctx, mock_upstream, sink):
        mock_upstream.respond_json({"error": {"message": "bad model", "type": "invalid_request_error"}}, 400)

        with pytest.raises(UpstreamError):
            await relay_text(_chat(), meta_factory(), relay_ctx, sink)

        assert sink.records == []

    @pytest.mark.asyncio
    async def test_invalid_api_type(self, meta_factory, relay_ctx, sink):
        with pytest.raises(ConfigMissingError):
            await relay_text(_chat(), meta_factory(api_type=9999), relay_ctx, sink)

    @pytest.mark.asyncio
    async def test_nil_request(self, meta_factory, relay_ctx):
        with pytest.raises(RequestInvalidError):
            await relay_text(None, meta_factory(), relay_ctx)


class TestRelayClaudeMessages:
    """Tests for Claude Messages relayed through an OpenAI channel."""

    @staticmethod
    def _claude_request(**fields) -> ClaudeRequest:
        fields.setdefault("model", "gpt-4o")
        fields.setdefault("max_tokens", 100)
        fields.setdefault("messages", [{"role": "user", "content": "hi"}])
        return ClaudeRequest.model_validate(fields)

    @pytest.mark.asyncio
    async def test_buffered_reelevated(self, meta_factory, relay_ctx, mock_upstream, sink):
        mock_upstream.respond_json(COMPLETION)
        meta = meta_factory(**RATIOS)

        result = await relay_claude_messages(self._claude_request(), meta, relay_ctx, sink)

        assert relay_ctx.claude_messages_conversion
        assert meta.mode == RelayMode.CLAUDE_MESSAGES
        assert str(mock_upstream.last_request.url) == "https://upstream.test/v1/chat/completions"
        assert result.body["type"] == "message"
        assert result.body["content"][0]["type"] == "text"
        assert result.body["content"][0]["text"] == "hello"
        assert result.body["stop_reason"] == "end_turn"
        assert result.quota == 50

    @pytest.mark.asyncio
    async def test_stream_reelevated(
        self, meta_factory, relay_ctx, mock_upstream, sink, openai_sse, openai_chunk, sse_collect, sse_parse
    ):
        mock_upstream.respond_bytes(openai_sse([
            openai_chunk(content="hi"),
            openai_chunk(finish_reason="stop"),
            openai_chunk(usage={"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}),
        ]))
        meta = meta_factory(**RATIOS)

        result = await relay_claude_messages(self._claude_request(stream=True), meta, relay_ctx, sink)
        events = sse_parse(await sse_collect(result.stream))

        names = [e["event"] for e in events]
        assert names[0] == "message_start"
        assert names[-1] == "message_stop"
        assert "content_block_delta" in names
        assert len(sink.records) == 1
        assert sink.records[0][1].completion_tokens == 2


class TestRelayImage:
    """Tests for relay_image."""

    @pytest.mark.asyncio
    async def test_per_image_usage(self, meta_factory, relay_ctx, mock_upstream, sink):
        """
        What it does: Relays a generation that reports no token usage.
        Purpose: Each returned image counts as IMAGE_TOKEN_UNITS prompt units.
        """
        mock_upstream.respond_json({
            "created": 1700000000,
            "data": [{"url": "https://img.test/1.png"}, {"url": "https://img.test/2.png"}],
        })
        meta = meta_factory(model="dall-e-3", channel_model_ratio={"dall-e-3": 0.5})

        result = await relay_image(ImageRequest(model="dall-e-3", prompt="a fox", n=2), meta, relay_ctx, sink)

        assert result.usage.prompt_tokens == 2 * IMAGE_TOKEN_UNITS
        assert result.usage.total_tokens == 2 * IMAGE_TOKEN_UNITS
        assert result.quota == 1000
        assert meta.mode == RelayMode.IMAGES_GENERATIONS
        assert str(mock_upstream.last_request.url).endswith("/v1/images/generations")

    @pytest.mark.asyncio
    async def test_prompt_required(self, meta_factory, relay_ctx):
        with pytest.raises(RequestInvalidError):
            await relay_image(ImageRequest(model="dall-e-3", prompt=""), meta_factory(), relay_ctx)
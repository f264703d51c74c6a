# -*- coding: utf-8 -*-

"""
Unit tests for the AWS Bedrock Claude adaptor.
"""

import base64
import json

import httpx
import pytest

from relay_gateway.adaptors.aws import (
    AWS_MODEL_ID_MAP,
    BEDROCK_ANTHROPIC_VERSION,
    AwsClaudeAdaptor,
    aws_model_id,
    to_bedrock_body,
)
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import ConfigMissingError, ModelUnsupportedError
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest
from relay_gateway.parsers import encode_event_stream_frame
from relay_gateway.relaymode import RelayMode

MODEL = "claude-3-haiku-20240307"
AWS_CONFIG = {"region": "us-east-1", "ak": "AKID", "sk": "SECRET"}


def _chunk_frame(event: dict) -> bytes:
    payload = json.dumps({"bytes": base64.b64encode(json.dumps(event).encode()).decode()}).encode()
    return encode_event_stream_frame(
        {":message-type": "event", ":event-type": "chunk", ":content-type": "application/json"},
        payload,
    )


def _event_stream(events) -> bytes:
    return b"".join(_chunk_frame(event) for event in events)


def _meta(meta_factory, **overrides):
    overrides.setdefault("config", AWS_CONFIG)
    overrides.setdefault("base_url", "")
    return meta_factory(api_type=APIType.AWS_CLAUDE, model=MODEL, **overrides)


STREAM_EVENTS = [
    {"type": "message_start", "message": {"id": "m1", "usage": {"input_tokens": 4, "output_tokens": 1}}},
    {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}},
    {"type": "content_block_stop", "index": 0},
    {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 2}},
    {"type": "message_stop"},
]


class TestModelIds:
    """Tests for the Bedrock model id mapping."""

    def test_known_model(self):
        assert aws_model_id(MODEL) == "anthropic.claude-3-haiku-20240307-v1:0"

    def test_inference_profile_passthrough(self):
        arn = "arn:aws:bedrock:us-east-1:123456789012:inference-profile/us.anthropic.claude-3-5-sonnet"
        assert aws_model_id(arn) == arn

    def test_unknown_model(self):
        with pytest.raises(ModelUnsupportedError):
            aws_model_id("gpt-4o")

    def test_model_list(self):
        assert AwsClaudeAdaptor().get_model_list() == list(AWS_MODEL_ID_MAP.keys())


class TestRequests:
    """Tests for URLs, headers and bodies."""

    def test_urls(self, meta_factory):
        adaptor = AwsClaudeAdaptor()
        assert adaptor.get_request_url(_meta(meta_factory)) == (
            "https://bedrock-runtime.us-east-1.amazonaws.com/model/anthropic.claude-3-haiku-20240307-v1%3A0/invoke"
        )
        assert adaptor.get_request_url(_meta(meta_factory, is_stream=True)).endswith("/invoke-with-response-stream")

    def test_missing_region(self, meta_factory):
        with pytest.raises(ConfigMissingError):
            AwsClaudeAdaptor().get_request_url(_meta(meta_factory, config={"ak": "a", "sk": "b"}))

    def test_stream_accept_header(self, meta_factory):
        headers = {}
        AwsClaudeAdaptor().setup_request_header(headers, _meta(meta_factory, is_stream=True))
        assert headers["Accept"] == "application/vnd.amazon.eventstream"

    def test_bedrock_body(self):
        body = to_bedrock_body({"model": MODEL, "stream": True, "max_tokens": 10, "messages": []})
        assert body == {"max_tokens": 10, "messages": [], "anthropic_version": BEDROCK_ANTHROPIC_VERSION}

    @pytest.mark.asyncio
    async def test_convert_openai_request(self, meta_factory, relay_ctx):
        """
        What it does: Converts an OpenAI chat request for Bedrock.
        Purpose: The Claude body carries anthropic_version and no model or stream field.
        """
        adaptor = AwsClaudeAdaptor()
        meta = _meta(meta_factory)
        adaptor.init(meta)
        request = GeneralOpenAIRequest.model_validate({
            "model": MODEL,
            "stream": True,
            "messages": [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        })

        body = await adaptor.convert_request(request, RelayMode.CHAT_COMPLETIONS, relay_ctx)

        assert body["anthropic_version"] == BEDROCK_ANTHROPIC_VERSION
        assert "model" not in body
        assert "stream" not in body
        assert body["messages"][0]["role"] == "user"
        assert body["max_tokens"] > 0

    @pytest.mark.asyncio
    async def test_convert_claude_request(self, meta_factory, relay_ctx):
        adaptor = AwsClaudeAdaptor()
        adaptor.init(_meta(meta_factory, mode=RelayMode.CLAUDE_MESSAGES))
        request = ClaudeRequest.model_validate({
            "model": MODEL,
            "max_tokens": 64,
            "messages": [{"role": "user", "content": "hi"}],
        })

        body = await adaptor.convert_claude_request(request, relay_ctx)

        assert body["max_tokens"] == 64
        assert "model" not in body
        assert relay_ctx.original_claude_request is request

    @pytest.mark.asyncio
    async def test_do_request_signs(self, meta_factory, relay_ctx, mock_upstream):
        mock_upstream.respond_json({})
        adaptor = AwsClaudeAdaptor()
        meta = _meta(meta_factory, base_url="https://upstream.test")
        adaptor.init(meta)

        response = await adaptor.do_request(meta, b'{"messages": []}', relay_ctx)
        await response.aclose()

        sent = mock_upstream.last_request
        assert sent.url.host == "upstream.test"
        assert str(sent.url).endswith("/invoke")
        assert sent.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKID/")
        assert "/us-east-1/bedrock/aws4_request" in sent.headers["Authorization"]
        assert "X-Amz-Date" in sent.headers

    @pytest.mark.asyncio
    async def test_do_request_requires_keys(self, meta_factory, relay_ctx):
        meta = _meta(meta_factory, config={"region": "us-east-1"})
        with pytest.raises(ConfigMissingError):
            await AwsClaudeAdaptor().do_request(meta, b"{}", relay_ctx)


class TestResponses:
    """Tests for buffered answers and event streams."""

    @pytest.mark.asyncio
    async def test_buffered(self, meta_factory, relay_ctx):
        body = json.dumps({
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": MODEL,
            "content": [{"type": "text", "text": "hello"}],
            "stop_reason": "end_turn",
            "usage": {"input_tokens": 5, "output_tokens": 2},
        }).encode("utf-8")

        result = await AwsClaudeAdaptor().do_response(httpx.Response(200, content=body), _meta(meta_factory), relay_ctx)

        assert result.body["choices"][0]["message"]["content"] == "hello"
        assert result.body["choices"][0]["finish_reason"] == "stop"
        assert result.usage.total_tokens == 7

    @pytest.mark.asyncio
    async def test_event_stream_to_openai(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        """
        What it does: Converts a Bedrock binary event stream.
        Purpose: Each chunk frame is handled as one Claude stream event.
        """
        response = httpx.Response(200, content=_event_stream(STREAM_EVENTS))

        result = await AwsClaudeAdaptor().do_response(response, _meta(meta_factory, is_stream=True), relay_ctx)
        events = sse_parse(await sse_collect(result.stream))

        contents = [
            e["data"]["choices"][0]["delta"].get("content")
            for e in events
            if isinstance(e["data"], dict) and e["data"].get("choices")
        ]
        assert "Hi" in contents
        assert events[-1]["data"] == "[DONE]"
        assert (result.usage.prompt_tokens, result.usage.completion_tokens) == (4, 2)

    @pytest.mark.asyncio
    async def test_event_stream_native(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        meta = _meta(meta_factory, is_stream=True, mode=RelayMode.CLAUDE_MESSAGES)
        response = httpx.Response(200, content=_event_stream(STREAM_EVENTS))

        result = await AwsClaudeAdaptor().do_response(response, meta, relay_ctx)
        events = sse_parse(await sse_collect(result.stream))

        assert [e["event"] for e in events] == [e["type"] for e in STREAM_EVENTS]
        assert result.usage.total_tokens == 6

    @pytest.mark.asyncio
    async def test_exception_frame(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        frame = encode_event_stream_frame(
            {":message-type": "exception", ":exception-type": "throttlingException"},
            json.dumps({"message": "Too many requests"}).encode(),
        )
        response = httpx.Response(200, content=_chunk_frame(STREAM_EVENTS[0]) + frame)

        result = await AwsClaudeAdaptor().do_response(response, _meta(meta_factory, is_stream=True), relay_ctx)
        events = sse_parse(await sse_collect(result.stream))

        error = events[-1]["data"]["error"]
        assert "throttlingException" in error["message"]
        assert "Too many requests" in error["message"]

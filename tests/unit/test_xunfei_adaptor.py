# -*- coding: utf-8 -*-

"""
Unit tests for the Xunfei Spark WebSocket adaptor.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response as HandshakeResponse

from relay_gateway.adaptors.xunfei import (
    XunfeiAdaptor,
    api_version_for,
    convert_request,
    domain_for,
    parse_config,
)
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import (
    ConfigMissingError,
    ModelUnsupportedError,
    UpstreamError,
    UpstreamUnavailableError,
)
from relay_gateway.models import GeneralOpenAIRequest
from relay_gateway.relaymode import RelayMode

XUNFEI_KEY = "app123|apisecret|apikey"

TOOLS = [{"type": "function", "function": {"name": "weather", "parameters": {"type": "object", "properties": {}}}}]


def _meta(meta_factory, **overrides):
    overrides.setdefault("model", "Spark-Lite")
    overrides.setdefault("api_key", XUNFEI_KEY)
    return meta_factory(api_type=APIType.XUNFEI, base_url="", **overrides)


def _request(**fields) -> GeneralOpenAIRequest:
    fields.setdefault("model", "Spark-Lite")
    fields.setdefault("messages", [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}])
    return GeneralOpenAIRequest.model_validate(fields)


def _frame(content="", status=1, usage=None, function_call=None, code=0, message="Success"):
    item = {"content": content, "role": "assistant", "index": 0}
    if function_call is not None:
        item["function_call"] = function_call
    frame = {
        "header": {"code": code, "message": message, "sid": "cht0001", "status": status},
        "payload": {"choices": {"status": status, "seq": 0, "text": [item]}},
    }
    if usage is not None:
        frame["payload"]["usage"] = {"text": usage}
    return frame


def _body(*frames) -> bytes:
    return b"".join(json.dumps(frame).encode("utf-8") + b"\n" for frame in frames)


class FakeConnection:
    """Stands in for a websockets client connection."""

    def __init__(self, frames):
        self.frames = [json.dumps(frame) for frame in frames]
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame


class TestConfig:
    """Tests for the key and the API version."""

    def test_parse(self):
        assert parse_config(XUNFEI_KEY) == ("app123", "apisecret", "apikey")

    def test_wrong_parts(self):
        with pytest.raises(ConfigMissingError):
            parse_config("app123|apisecret")

    @pytest.mark.parametrize("model_name, configured, expected", [
        ("Spark-Lite", "", "v1.1"),
        ("Spark-Max", "", "v3.5"),
        ("Spark-Pro-128K", "", "v3.1-128K"),
        ("spark-v2.1", "", "v2.1"),
        ("sparkdesk", "v3.1", "v3.1"),
        ("sparkdesk", "", "v1.1"),
    ])
    def test_api_version(self, model_name, configured, expected):
        assert api_version_for(model_name, configured) == expected

    def test_domain(self):
        assert domain_for("v1.1") == "lite"
        assert domain_for("v3.5") == "generalv3.5"
        assert domain_for("v4.0") == "4.0Ultra"
        assert domain_for("v9.9") == "generalv9.9"


class TestUrls:
    """Tests for get_request_url."""

    def test_default_chat_path(self, meta_factory):
        assert XunfeiAdaptor().get_request_url(_meta(meta_factory, model="Spark-Max")) == (
            "wss://spark-api.xf-yun.com/v3.5/chat"
        )

    def test_long_context_paths(self, meta_factory):
        adaptor = XunfeiAdaptor()
        assert adaptor.get_request_url(_meta(meta_factory, model="Spark-Pro-128K")) == (
            "wss://spark-api.xf-yun.com/v3.1-128K/pro-128k"
        )
        assert adaptor.get_request_url(_meta(meta_factory, model="Spark-Max-32K")) == (
            "wss://spark-api.xf-yun.com/v3.5-32K/max-32k"
        )


class TestConversion:
    """Tests for the request frame."""

    def test_frame(self):
        """
        What it does: Converts a chat request for Spark Lite.
        Purpose: App id, domain, sampling parameters and messages land in the frame.
        """
        frame = convert_request(_request(temperature=0.5, max_tokens=256, top_k=4), "app123", "lite")

        assert frame["header"] == {"app_id": "app123"}
        assert frame["parameter"]["chat"] == {"domain": "lite", "temperature": 0.5, "top_k": 4, "max_tokens": 256}
        assert frame["payload"]["message"]["text"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]

    def test_functions_only_for_v3_domains(self):
        assert convert_request(_request(tools=TOOLS), "app123", "generalv3.5")["payload"]["functions"]["text"][0]["name"] == "weather"
        assert "functions" not in convert_request(_request(tools=TOOLS), "app123", "lite")["payload"]

    @pytest.mark.asyncio
    async def test_adaptor_uses_model_version(self, meta_factory, relay_ctx):
        adaptor = XunfeiAdaptor()
        adaptor.init(_meta(meta_factory, model="Spark-4.0-Ultra"))

        frame = await adaptor.convert_request(_request(model="Spark-4.0-Ultra"), RelayMode.CHAT_COMPLETIONS, relay_ctx)

        assert frame["parameter"]["chat"]["domain"] == "4.0Ultra"
        assert frame["header"]["app_id"] == "app123"

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self, meta_factory, relay_ctx):
        adaptor = XunfeiAdaptor()
        adaptor.init(_meta(meta_factory, mode=RelayMode.EMBEDDINGS))
        with pytest.raises(ModelUnsupportedError):
            await adaptor.convert_request(_request(), RelayMode.EMBEDDINGS, relay_ctx)

    @pytest.mark.asyncio
    async def test_invalid_key(self, meta_factory, relay_ctx):
        adaptor = XunfeiAdaptor()
        adaptor.init(_meta(meta_factory, api_key="sk-test"))
        with pytest.raises(ConfigMissingError):
            await adaptor.convert_request(_request(), RelayMode.CHAT_COMPLETIONS, relay_ctx)


class TestTransport:
    """Tests for the WebSocket exchange."""

    @pytest.mark.asyncio
    async def test_round_trip(self, meta_factory, relay_ctx):
        """
        What it does: Sends one frame over a fake connection that answers in two frames.
        Purpose: The URL is signed, the frame is sent and the answer is joined into one completion.
        """
        connection = FakeConnection([
            _frame("Hel"),
            _frame("lo", status=2, usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}),
        ])
        meta = _meta(meta_factory)
        adaptor = XunfeiAdaptor()
        adaptor.init(meta)

        with patch("relay_gateway.adaptors.xunfei.connect", AsyncMock(return_value=connection)) as connect:
            response = await adaptor.do_request(meta, b'{"header": {"app_id": "app123"}}', relay_ctx)
            result = await adaptor.do_response(response, meta, relay_ctx)

        signed_url = connect.await_args.args[0]
        assert signed_url.startswith("wss://spark-api.xf-yun.com/v1.1/chat?host=spark-api.xf-yun.com&date=")
        assert "authorization=" in signed_url
        assert connection.sent == ['{"header": {"app_id": "app123"}}']
        assert connection.closed
        assert result.body["choices"][0]["message"]["content"] == "Hello"
        assert result.body["choices"][0]["finish_reason"] == "stop"
        assert result.usage.total_tokens == 7

    @pytest.mark.asyncio
    async def test_handshake_rejected(self, meta_factory, relay_ctx):
        rejected = InvalidStatus(HandshakeResponse(401, "Unauthorized", Headers()))
        meta = _meta(meta_factory)

        with patch("relay_gateway.adaptors.xunfei.connect", AsyncMock(side_effect=rejected)):
            with pytest.raises(UpstreamError) as exc_info:
                await XunfeiAdaptor().do_request(meta, b"{}", relay_ctx)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_connection_refused(self, meta_factory, relay_ctx):
        meta = _meta(meta_factory)

        with patch("relay_gateway.adaptors.xunfei.connect", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(UpstreamUnavailableError):
                await XunfeiAdaptor().do_request(meta, b"{}", relay_ctx)


class TestResponses:
    """Tests for do_response."""

    @pytest.mark.asyncio
    async def test_function_call(self, meta_factory, relay_ctx):
        body = _body(_frame(
            status=2,
            function_call={"name": "weather", "arguments": "{\"city\": \"Hefei\"}"},
            usage={"prompt_tokens": 8, "completion_tokens": 6, "total_tokens": 14},
        ))

        result = await XunfeiAdaptor().do_response(httpx.Response(200, content=body), _meta(meta_factory), relay_ctx)

        choice = result.body["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["tool_calls"][0]["function"]["name"] == "weather"
        assert choice["message"]["tool_calls"][0]["id"]

    @pytest.mark.asyncio
    async def test_error_frame(self, meta_factory, relay_ctx):
        body = _body(_frame(status=2, code=10013, message="input content is illegal"))

        with pytest.raises(UpstreamError) as exc_info:
            await XunfeiAdaptor().do_response(httpx.Response(200, content=body), _meta(meta_factory), relay_ctx)

        assert exc_info.value.message == "input content is illegal"
        assert exc_info.value.code == "10013"

    @pytest.mark.asyncio
    async def test_empty_exchange(self, meta_factory, relay_ctx):
        with pytest.raises(UpstreamError):
            await XunfeiAdaptor().do_response(httpx.Response(200, content=b""), _meta(meta_factory), relay_ctx)

    @pytest.mark.asyncio
    async def test_stream(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        body = _body(
            _frame("Hel"),
            _frame("lo", status=2, usage={"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}),
        )
        meta = _meta(meta_factory, is_stream=True)

        result = await XunfeiAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        events = sse_parse(await sse_collect(result.stream))

        assert [e["data"]["choices"][0]["delta"]["content"] for e in events[:2]] == ["Hel", "lo"]
        assert events[0]["data"]["id"] == events[1]["data"]["id"]
        assert events[0]["data"]["choices"][0]["finish_reason"] is None
        assert events[1]["data"]["choices"][0]["finish_reason"] == "stop"
        assert events[2]["data"] == "[DONE]"
        assert result.usage.total_tokens == 7

    @pytest.mark.asyncio
    async def test_stream_without_usage(self, meta_factory, relay_ctx, sse_collect):
        meta = _meta(meta_factory, is_stream=True, prompt_tokens=6)

        result = await XunfeiAdaptor().do_response(
            httpx.Response(200, content=_body(_frame("Yes", status=2))), meta, relay_ctx
        )
        await sse_collect(result.stream)

        assert result.usage.prompt_tokens == 6
        assert result.usage.completion_tokens == 1

    @pytest.mark.asyncio
    async def test_stream_error_frame(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        body = _body(_frame(status=2, code=11200, message="licence exceeded"))
        meta = _meta(meta_factory, is_stream=True)

        result = await XunfeiAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        events = sse_parse(await sse_collect(result.stream))

        assert events[-1]["data"]["error"]["message"] == "licence exceeded"

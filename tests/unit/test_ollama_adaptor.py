# -*- coding: utf-8 -*-

"""
Unit tests for the Ollama adaptor.
"""

import json

import httpx
import pytest

from relay_gateway.adaptors.ollama import OllamaAdaptor, convert_embedding_request, convert_request
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import UpstreamError
from relay_gateway.models import GeneralOpenAIRequest
from relay_gateway.relaymode import RelayMode


class TestConversion:
    """Tests for the /api/chat and /api/embed bodies."""

    def test_chat_body(self):
        request = GeneralOpenAIRequest.model_validate({
            "model": "llama3",
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": "describe"},
                    {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
                ],
            }],
            "temperature": 0.1,
            "max_tokens": 20,
            "num_ctx": 4096,
        })

        body = convert_request(request, "llama3")

        assert body["messages"] == [{"role": "user", "content": "describe", "images": ["QUJD"]}]
        assert body["options"] == {"temperature": 0.1, "num_predict": 20, "num_ctx": 4096}
        assert body["stream"] is False

    def test_no_options(self):
        request = GeneralOpenAIRequest.model_validate({"model": "llama3", "messages": [{"role": "user", "content": "x"}]})
        assert "options" not in convert_request(request, "llama3")

    def test_embedding_body(self):
        body = convert_embedding_request(GeneralOpenAIRequest(model="nomic", input="text"), "nomic")
        assert body == {"model": "nomic", "input": ["text"]}


class TestAdaptor:
    """Tests for OllamaAdaptor responses."""

    def test_urls(self, meta_factory):
        adaptor = OllamaAdaptor()
        assert adaptor.get_request_url(meta_factory(api_type=APIType.OLLAMA)) == "https://upstream.test/api/chat"
        embed = meta_factory(api_type=APIType.OLLAMA, mode=RelayMode.EMBEDDINGS)
        assert adaptor.get_request_url(embed) == "https://upstream.test/api/embed"

    @pytest.mark.asyncio
    async def test_buffered(self, meta_factory, relay_ctx):
        body = json.dumps({
            "model": "llama3",
            "message": {"role": "assistant", "content": "hi"},
            "done": True,
            "done_reason": "length",
            "prompt_eval_count": 9,
            "eval_count": 3,
        }).encode("utf-8")
        meta = meta_factory(api_type=APIType.OLLAMA, model="llama3")

        result = await OllamaAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)

        assert result.body["choices"][0]["message"]["content"] == "hi"
        assert result.body["choices"][0]["finish_reason"] == "length"
        assert result.usage.total_tokens == 12

    @pytest.mark.asyncio
    async def test_error_body(self, meta_factory, relay_ctx):
        body = json.dumps({"error": "model 'x' not found"}).encode("utf-8")
        with pytest.raises(UpstreamError):
            await OllamaAdaptor().do_response(httpx.Response(200, content=body), meta_factory(), relay_ctx)

    @pytest.mark.asyncio
    async def test_embeddings(self, meta_factory, relay_ctx):
        body = json.dumps({"embeddings": [[0.1, 0.2]], "prompt_eval_count": 2}).encode("utf-8")
        meta = meta_factory(api_type=APIType.OLLAMA, model="nomic", mode=RelayMode.EMBEDDINGS)

        result = await OllamaAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)

        assert result.body["data"][0]["embedding"] == [0.1, 0.2]
        assert result.usage.prompt_tokens == 2

    @pytest.mark.asyncio
    async def test_stream(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        """
        What it does: Converts an Ollama JSON-lines stream.
        Purpose: The done line closes the stream and carries the token counts.
        """
        lines = [
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 5, "eval_count": 1},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode("utf-8") + b"\n"
        meta = meta_factory(api_type=APIType.OLLAMA, model="llama3", is_stream=True)

        result = await OllamaAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        parsed = sse_parse(await sse_collect(result.stream))

        assert parsed[0]["data"]["choices"][0]["delta"]["content"] == "Hi"
        assert parsed[1]["data"]["choices"][0]["finish_reason"] == "stop"
        assert parsed[2]["data"] == "[DONE]"
        assert (result.usage.prompt_tokens, result.usage.completion_tokens) == (5, 1)

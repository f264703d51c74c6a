# -*- coding: utf-8 -*-

"""
Unit tests for the Alibaba DashScope adaptor, including Wanx task polling.
"""

import base64
import json

import httpx
import pytest

from relay_gateway.adaptors.ali import (
    AliAdaptor,
    convert_embedding_request,
    convert_image_request,
    convert_request,
    response_ali_to_openai,
    wait_for_task,
)
from relay_gateway.apitype import APIType
from relay_gateway.config import settings
from relay_gateway.exceptions import UpstreamError
from relay_gateway.models import GeneralOpenAIRequest, ImageRequest
from relay_gateway.relaymode import RelayMode


def _request(**fields) -> GeneralOpenAIRequest:
    fields.setdefault("model", "qwen-turbo")
    fields.setdefault("messages", [{"role": "user", "content": "hi"}])
    return GeneralOpenAIRequest.model_validate(fields)


class TestConversion:
    """Tests for the DashScope request bodies."""

    def test_chat_body(self):
        body = convert_request(_request(top_p=1.0, temperature=0.7, max_tokens=50, seed=3.0, stream=True), "qwen-turbo")

        assert body["model"] == "qwen-turbo"
        assert body["input"]["messages"] == [{"role": "user", "content": "hi"}]
        parameters = body["parameters"]
        assert parameters["result_format"] == "message"
        assert parameters["incremental_output"] is True
        assert parameters["enable_search"] is False
        assert parameters["top_p"] == 0.9999
        assert parameters["seed"] == 3
        assert parameters["max_tokens"] == 50

    def test_internet_suffix_enables_search(self):
        body = convert_request(_request(), "qwen-max-internet")
        assert body["model"] == "qwen-max"
        assert body["parameters"]["enable_search"] is True

    def test_tool_messages(self):
        request = _request(messages=[
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "done"},
        ])

        messages = convert_request(request, "qwen-turbo")["input"]["messages"]

        assert messages[0]["tool_calls"][0]["function"]["name"] == "f"
        assert messages[1] == {"role": "tool", "content": "done", "tool_call_id": "c1"}

    def test_embedding_body(self):
        request = GeneralOpenAIRequest(model="text-embedding-v1", input=["a", "b"])
        body = convert_embedding_request(request, "text-embedding-v1")
        assert body == {
            "model": "text-embedding-v1",
            "input": {"texts": ["a", "b"]},
            "parameters": {"text_type": "query"},
        }

    def test_image_body(self):
        request = ImageRequest(model="wanx-v1", prompt="a cat", n=2, size="1024x768", style="sketch")
        body = convert_image_request(request, "wanx-v1")
        assert body == {
            "model": "wanx-v1",
            "input": {"prompt": "a cat"},
            "parameters": {"n": 2, "size": "1024*768", "style": "<sketch>"},
        }


class TestResponses:
    """Tests for buffered DashScope answers."""

    def test_chat_response(self, meta_factory):
        data = {
            "request_id": "req-1",
            "output": {"choices": [{
                "finish_reason": "stop",
                "message": {"role": "assistant", "content": "hello", "reasoning_content": "thought"},
            }]},
            "usage": {"input_tokens": 6, "output_tokens": 2},
        }

        response = response_ali_to_openai(data, meta_factory(model="qwen-turbo"))

        assert response.id == "req-1"
        assert response.choices[0].message.content == "hello"
        assert response.choices[0].message.reasoning_content == "thought"
        assert response.usage.total_tokens == 8

    def test_error_code(self, meta_factory):
        with pytest.raises(UpstreamError) as exc_info:
            response_ali_to_openai({"code": "InvalidApiKey", "message": "Invalid API-key"}, meta_factory())
        assert exc_info.value.code == "InvalidApiKey"

    @pytest.mark.asyncio
    async def test_embeddings(self, meta_factory, relay_ctx):
        body = json.dumps({
            "output": {"embeddings": [{"text_index": 0, "embedding": [0.1]}]},
            "usage": {"total_tokens": 4},
        }).encode("utf-8")
        meta = meta_factory(api_type=APIType.ALI, model="text-embedding-v1", mode=RelayMode.EMBEDDINGS)

        result = await AliAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)

        assert result.body["data"][0]["embedding"] == [0.1]
        assert result.usage.prompt_tokens == 4


class TestAdaptor:
    """Tests for AliAdaptor URLs, headers and streaming."""

    def test_urls(self, meta_factory):
        adaptor = AliAdaptor()
        chat = meta_factory(api_type=APIType.ALI, model="qwen-turbo")
        image = meta_factory(api_type=APIType.ALI, model="wanx-v1", mode=RelayMode.IMAGES_GENERATIONS)

        assert adaptor.get_request_url(chat) == "https://upstream.test/api/v1/services/aigc/text-generation/generation"
        assert adaptor.get_request_url(image) == "https://upstream.test/api/v1/services/aigc/text2image/image-synthesis"

    def test_headers(self, meta_factory):
        headers = {}
        meta = meta_factory(api_type=APIType.ALI, is_stream=True, config={"plugin": "{\"pdf_extracter\":{}}"})

        AliAdaptor().setup_request_header(headers, meta)

        assert headers["Authorization"] == "Bearer sk-test"
        assert headers["X-DashScope-SSE"] == "enable"
        assert headers["X-DashScope-Plugin"] == "{\"pdf_extracter\":{}}"
        assert "X-DashScope-Async" not in headers

    def test_image_headers_async(self, meta_factory):
        headers = {}
        AliAdaptor().setup_request_header(headers, meta_factory(api_type=APIType.ALI, mode=RelayMode.IMAGES_GENERATIONS))
        assert headers["X-DashScope-Async"] == "enable"

    @pytest.mark.asyncio
    async def test_stream(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        """
        What it does: Converts an incremental DashScope stream.
        Purpose: Each event becomes one delta; "null" finish reasons are dropped.
        """
        events = [
            {"output": {"choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "null"}]}},
            {
                "output": {"choices": [{"message": {"role": "assistant", "content": "!"}, "finish_reason": "stop"}]},
                "usage": {"input_tokens": 3, "output_tokens": 2},
            },
        ]
        body = "".join(f"id:{i}\nevent:result\ndata:{json.dumps(e)}\n\n" for i, e in enumerate(events)).encode("utf-8")
        meta = meta_factory(api_type=APIType.ALI, model="qwen-turbo", is_stream=True)

        result = await AliAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        parsed = sse_parse(await sse_collect(result.stream))

        assert parsed[0]["data"]["choices"][0]["delta"]["content"] == "Hi"
        assert parsed[0]["data"]["choices"][0]["finish_reason"] is None
        assert parsed[1]["data"]["choices"][0]["finish_reason"] == "stop"
        assert parsed[2]["data"] == "[DONE]"
        assert result.usage.total_tokens == 5


class TestWanxTasks:
    """Tests for asynchronous image generation."""

    @pytest.mark.asyncio
    async def test_wait_for_task(self, relay_ctx, mock_upstream):
        answers = iter([
            {"output": {"task_id": "t1", "task_status": "PENDING"}},
            {"output": {"task_id": "t1", "task_status": "RUNNING"}},
            {"output": {"task_id": "t1", "task_status": "SUCCEEDED", "results": [{"url": "https://img.test/1.png"}]}},
        ])
        mock_upstream.handler = lambda request: httpx.Response(200, json=next(answers))

        result = await wait_for_task("https://upstream.test", "t1", "sk", relay_ctx, interval=0, max_polls=5)

        assert result["output"]["task_status"] == "SUCCEEDED"
        assert len(mock_upstream.requests) == 3
        assert str(mock_upstream.last_request.url) == "https://upstream.test/api/v1/tasks/t1"
        assert mock_upstream.last_request.headers["Authorization"] == "Bearer sk"

    @pytest.mark.asyncio
    async def test_task_failed(self, relay_ctx, mock_upstream):
        mock_upstream.respond_json({"output": {"task_status": "FAILED", "code": "DataInspectionFailed", "message": "unsafe"}})

        with pytest.raises(UpstreamError) as exc_info:
            await wait_for_task("https://upstream.test", "t1", "sk", relay_ctx, interval=0, max_polls=5)
        assert exc_info.value.message == "unsafe"

    @pytest.mark.asyncio
    async def test_task_timeout(self, relay_ctx, mock_upstream):
        mock_upstream.respond_json({"output": {"task_status": "RUNNING"}})

        with pytest.raises(UpstreamError) as exc_info:
            await wait_for_task("https://upstream.test", "t1", "sk", relay_ctx, interval=0, max_polls=2)
        assert exc_info.value.status_code == 504
        assert len(mock_upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_image_generation_b64(self, meta_factory, relay_ctx, mock_upstream, monkeypatch):
        """
        What it does: Runs a full Wanx image generation with b64_json output.
        Purpose: The task is polled and the finished image is downloaded and encoded.
        """
        monkeypatch.setattr(settings, "ali_task_poll_interval", 0)

        def upstream(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v1/tasks/t9":
                return httpx.Response(200, json={"output": {
                    "task_status": "SUCCEEDED",
                    "results": [{"url": "https://img.test/cat.png"}],
                }})
            return httpx.Response(200, content=b"\x89PNG")

        mock_upstream.handler = upstream
        adaptor = AliAdaptor()
        meta = meta_factory(api_type=APIType.ALI, model="wanx-v1", mode=RelayMode.IMAGES_GENERATIONS)
        adaptor.init(meta)
        await adaptor.convert_image_request(ImageRequest(model="wanx-v1", prompt="cat", response_format="b64_json"), relay_ctx)
        submit = httpx.Response(200, content=json.dumps({"output": {"task_id": "t9", "task_status": "PENDING"}}).encode())

        result = await adaptor.do_response(submit, meta, relay_ctx)

        assert result.body["data"] == [{"b64_json": base64.b64encode(b"\x89PNG").decode("ascii")}]
        assert result.usage.total_tokens == 0

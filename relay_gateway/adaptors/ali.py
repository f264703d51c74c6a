# -*- coding: utf-8 -*-

# RelayGate
# Based on kiro-openai-gateway by Jwadow (https://github.com/Jwadow/kiro-openai-gateway)
# Original Copyright (C) 2025 Jwadow
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Alibaba DashScope adaptor.

Chat uses the native ``{model, input: {messages}, parameters}`` shape with
``result_format: message``; streams are requested with incremental output
so every SSE event is a delta. Wanx image generation is asynchronous: the
submit call returns a task id which is polled until it finishes.
"""

import asyncio
import base64
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.config import settings
from relay_gateway.exceptions import (
    RelayError,
    RequestInvalidError,
    StreamReadError,
    UpstreamError,
    UpstreamUnavailableError,
    openai_error_chunk,
    upstream_error_from_response,
)
from relay_gateway.http_client import send_request
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    GeneralOpenAIRequest,
    ImageData,
    ImageRequest,
    ImageResponse,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Tool,
    Usage,
)
from relay_gateway.relaymode import RelayMode
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk, strip_data_prefix
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, get_timestamp

# Models with the ``-internet`` suffix run with DashScope web search enabled
INTERNET_SUFFIX = "-internet"
EMBEDDING_TEXT_TYPE = "query"

TASK_SUCCEEDED = "SUCCEEDED"
TASK_FAILED = ("FAILED", "CANCELED", "UNKNOWN")

DEFAULT_IMAGE_SIZE = "1024*1024"


# ==================================================================================================
# Request conversion
# ==================================================================================================

def convert_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    """
    Canonical request -> DashScope text generation body.

    Args:
        request: Canonical request
        model_name: Upstream model (``-internet`` enables search)

    Returns:
        DashScope request dict
    """
    enable_search = False
    if model_name.endswith(INTERNET_SUFFIX):
        enable_search = True
        model_name = model_name[: -len(INTERNET_SUFFIX)]

    messages: List[Dict[str, Any]] = []
    for message in request.messages:
        item: Dict[str, Any] = {"role": message.role, "content": message.string_content()}
        if message.tool_calls:
            item["tool_calls"] = [call.model_dump(exclude_none=True) for call in message.tool_calls]
        if message.tool_call_id:
            item["tool_call_id"] = message.tool_call_id
        if message.name:
            item["name"] = message.name
        messages.append(item)

    parameters: Dict[str, Any] = {
        "result_format": "message",
        "enable_search": enable_search,
        "incremental_output": request.stream,
    }
    if request.max_tokens:
        parameters["max_tokens"] = request.max_tokens
    if request.seed is not None:
        parameters["seed"] = int(request.seed)
    if request.temperature is not None:
        parameters["temperature"] = request.temperature
    if request.top_p is not None:
        # DashScope rejects top_p == 1
        parameters["top_p"] = min(request.top_p, 0.9999)
    if request.top_k is not None:
        parameters["top_k"] = request.top_k
    if request.stop is not None:
        parameters["stop"] = request.stop
    if request.tools:
        parameters["tools"] = [tool.model_dump(exclude_none=True) for tool in request.tools]

    return {"model": model_name, "input": {"messages": messages}, "parameters": parameters}


def convert_embedding_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    return {
        "model": model_name,
        "input": {"texts": request.parse_input()},
        "parameters": {"text_type": EMBEDDING_TEXT_TYPE},
    }


def convert_image_request(request: ImageRequest, model_name: str) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {"n": request.n or 1}
    parameters["size"] = request.size.replace("x", "*") if request.size else DEFAULT_IMAGE_SIZE
    if request.style:
        parameters["style"] = f"<{request.style}>"
    return {"model": model_name, "input": {"prompt": request.prompt}, "parameters": parameters}


# ==================================================================================================
# Response conversion
# ==================================================================================================

def _raise_for_error(data: Dict[str, Any]) -> None:
    if data.get("code"):
        raise UpstreamError(data.get("message") or "dashscope request failed", status_code=500, code=str(data["code"]))


def _usage(data: Dict[str, Any]) -> Optional[Usage]:
    raw = data.get("usage") or {}
    if not raw:
        return None
    return Usage(
        prompt_tokens=raw.get("input_tokens", 0),
        completion_tokens=raw.get("output_tokens", 0),
    ).fill_total()


def _tool_calls(raw: Optional[List[Dict[str, Any]]]) -> Optional[List[Tool]]:
    if not raw:
        return None
    return [Tool.model_validate(call) for call in raw]


def response_ali_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Raises:
        UpstreamError: The answer carries an error code
    """
    _raise_for_error(data)

    choices = []
    for index, choice in enumerate((data.get("output") or {}).get("choices") or []):
        message = choice.get("message") or {}
        choices.append(TextResponseChoice(
            index=index,
            message=Message(
                role=message.get("role") or "assistant",
                content=message.get("content") or "",
                tool_calls=_tool_calls(message.get("tool_calls")),
                reasoning_content=message.get("reasoning_content") or None,
            ),
            finish_reason=choice.get("finish_reason"),
        ))

    usage = _usage(data)
    if usage is None:
        text = "".join(choice.message.string_content() for choice in choices)
        usage = Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text)).fill_total()

    return TextResponse(
        id=data.get("request_id") or generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=choices,
        usage=usage,
    )


def response_embedding_to_openai(data: Dict[str, Any], meta: Meta) -> Dict[str, Any]:
    _raise_for_error(data)
    embeddings = (data.get("output") or {}).get("embeddings") or []
    total = (data.get("usage") or {}).get("total_tokens", 0) or meta.prompt_tokens
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "index": item.get("text_index", index), "embedding": item.get("embedding") or []}
            for index, item in enumerate(embeddings)
        ],
        "model": meta.actual_model_name,
        "usage": {"prompt_tokens": total, "completion_tokens": 0, "total_tokens": total},
    }


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """DashScope incremental SSE -> OpenAI chunks."""
    response_text: List[str] = []
    upstream_usage: Optional[Usage] = None
    completion_id = generate_completion_id()

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            if not line.startswith("data:"):
                continue
            payload = strip_data_prefix(line)
            if not payload:
                continue
            try:
                data = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream data {payload[:200]!r}: {e}")
                continue

            if data.get("code"):
                raise StreamReadError(data.get("message") or "dashscope stream error")

            upstream_usage = _usage(data) or upstream_usage
            choices = []
            for index, choice in enumerate((data.get("output") or {}).get("choices") or []):
                message = choice.get("message") or {}
                content = message.get("content") or ""
                reasoning = message.get("reasoning_content") or ""
                response_text.append(reasoning + content)
                finish_reason = choice.get("finish_reason")
                choices.append(ChatCompletionsStreamResponseChoice(
                    index=index,
                    delta=StreamDelta(
                        role="assistant",
                        content=content or None,
                        reasoning_content=reasoning or None,
                        tool_calls=_tool_calls(message.get("tool_calls")),
                    ),
                    finish_reason=None if finish_reason in (None, "null") else finish_reason,
                ))
            if not choices:
                continue

            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=data.get("request_id") or completion_id,
                created=get_timestamp(),
                model=meta.actual_model_name,
                choices=choices,
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in DashScope stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        if upstream_usage is None:
            upstream_usage = Usage(
                prompt_tokens=meta.prompt_tokens,
                completion_tokens=heuristic_tokens("".join(response_text)),
            ).fill_total()
        usage.update_from(upstream_usage)


# ==================================================================================================
# Wanx task polling
# ==================================================================================================

async def wait_for_task(
    base_url: str,
    task_id: str,
    api_key: str,
    ctx: RelayContext,
    interval: Optional[float] = None,
    max_polls: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Polls ``/api/v1/tasks/{task_id}`` until the task finishes.

    Raises:
        UpstreamError: The task failed or did not finish in time
        UpstreamUnavailableError: The caller went away while waiting
    """
    interval = settings.ali_task_poll_interval if interval is None else interval
    max_polls = settings.ali_task_max_polls if max_polls is None else max_polls
    url = f"{base_url}/api/v1/tasks/{task_id}"
    headers = {"Authorization": f"Bearer {api_key}"}

    for attempt in range(max_polls):
        response = await send_request("GET", url, headers=headers)
        if response.status_code != 200:
            raise upstream_error_from_response(response.status_code, response.content)

        result = read_json(response.content)
        status = (result.get("output") or {}).get("task_status")
        if status == TASK_SUCCEEDED:
            return result
        if status in TASK_FAILED:
            output = result.get("output") or {}
            raise UpstreamError(output.get("message") or f"task {task_id} {status.lower()}", status_code=500, code=output.get("code"))

        logger.debug(f"Ali task {task_id} is {status} (poll {attempt + 1}/{max_polls})")
        if ctx.is_cancelled():
            raise UpstreamUnavailableError("request cancelled while waiting for image generation", status_code=408)
        await asyncio.sleep(interval)

    raise UpstreamError(f"task {task_id} did not finish after {max_polls} polls", status_code=504)


async def task_result_to_openai(result: Dict[str, Any], response_format: Optional[str]) -> ImageResponse:
    """Converts finished task results; ``b64_json`` downloads each image."""
    images: List[ImageData] = []
    for item in (result.get("output") or {}).get("results") or []:
        url = item.get("url")
        if response_format == "b64_json":
            if item.get("b64_image"):
                images.append(ImageData(b64_json=item["b64_image"]))
                continue
            if url:
                download = await send_request("GET", url)
                if download.status_code != 200:
                    raise upstream_error_from_response(download.status_code, download.content)
                images.append(ImageData(b64_json=base64.b64encode(download.content).decode("ascii")))
                continue
        if url:
            images.append(ImageData(url=url))
    return ImageResponse(created=get_timestamp(), data=images)


# ==================================================================================================
# Adaptor
# ==================================================================================================

class AliAdaptor(Adaptor):
    channel_name = "ali"
    pricing_file = "ali"

    def __init__(self):
        super().__init__()
        self.response_format: Optional[str] = None

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{meta.base_url}/api/v1/services/embeddings/text-embedding/text-embedding"
        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            return f"{meta.base_url}/api/v1/services/aigc/text2image/image-synthesis"
        return f"{meta.base_url}/api/v1/services/aigc/text-generation/generation"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        if meta.is_stream:
            headers["Accept"] = "text/event-stream"
            headers["X-DashScope-SSE"] = "enable"
        headers["Authorization"] = f"Bearer {meta.api_key}"
        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            headers["X-DashScope-Async"] = "enable"
        if meta.config.plugin:
            headers["X-DashScope-Plugin"] = meta.config.plugin

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        if mode == RelayMode.EMBEDDINGS:
            return convert_embedding_request(request, model_name)
        return convert_request(request, model_name)

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        self.response_format = request.response_format
        model_name = self.meta.actual_model_name if self.meta else request.model
        return convert_image_request(request, model_name)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        if meta.is_stream and meta.mode in (RelayMode.CHAT_COMPLETIONS, RelayMode.CLAUDE_MESSAGES):
            usage = Usage()
            stream = stream_handler(response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        try:
            raw = await response.aread()
        finally:
            await response.aclose()
        data = read_json(raw)

        if meta.mode == RelayMode.EMBEDDINGS:
            body = response_embedding_to_openai(data, meta)
            usage = Usage(prompt_tokens=body["usage"]["prompt_tokens"]).fill_total()
            return AdaptorResponse(usage=usage, body=body)

        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            _raise_for_error(data)
            task_id = (data.get("output") or {}).get("task_id")
            if not task_id:
                raise UpstreamError("dashscope did not return a task id", status_code=500)
            result = await wait_for_task(meta.base_url, task_id, meta.api_key, ctx)
            image_response = await task_result_to_openai(result, self.response_format)
            return AdaptorResponse(usage=Usage(), body=image_response.model_dump(exclude_none=True))

        text_response = response_ali_to_openai(data, meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

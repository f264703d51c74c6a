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
Ollama adaptor (native ``/api/chat`` and ``/api/embed``).

Streams are JSON lines; the final line has ``done: true`` and the token
counts (``prompt_eval_count`` / ``eval_count``).
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status
from relay_gateway.exceptions import RelayError, RequestInvalidError, StreamReadError, UpstreamError, openai_error_chunk
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    GeneralOpenAIRequest,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Usage,
)
from relay_gateway.relaymode import RelayMode
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, get_timestamp, split_data_url


def _options(request: GeneralOpenAIRequest) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    for name, value in (
        ("seed", int(request.seed) if request.seed is not None else None),
        ("temperature", request.temperature),
        ("top_p", request.top_p),
        ("top_k", request.top_k),
        ("frequency_penalty", request.frequency_penalty),
        ("presence_penalty", request.presence_penalty),
        ("num_predict", request.max_tokens),
        ("num_ctx", request.num_ctx),
    ):
        if value is not None:
            options[name] = value
    return options


def convert_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    """Canonical request -> ``/api/chat`` body; data URL images become base64 ``images``."""
    messages: List[Dict[str, Any]] = []
    for message in request.messages:
        text_parts: List[str] = []
        images: List[str] = []
        for part in message.parse_content():
            if part.type == "text" and part.text:
                text_parts.append(part.text)
            elif part.type == "image_url" and part.image_url is not None:
                parsed = split_data_url(part.image_url.url)
                images.append(parsed[1] if parsed else part.image_url.url)
        item: Dict[str, Any] = {"role": message.role, "content": "".join(text_parts)}
        if images:
            item["images"] = images
        messages.append(item)

    body: Dict[str, Any] = {"model": model_name, "messages": messages, "stream": request.stream}
    options = _options(request)
    if options:
        body["options"] = options
    return body


def convert_embedding_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {"model": model_name, "input": request.parse_input()}
    options = _options(request)
    if options:
        body["options"] = options
    return body


def _usage(data: Dict[str, Any], meta: Meta, text: str) -> Usage:
    prompt_tokens = data.get("prompt_eval_count") or meta.prompt_tokens
    completion_tokens = data.get("eval_count")
    if completion_tokens is None:
        completion_tokens = heuristic_tokens(text)
    return Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens).fill_total()


def _finish_reason(data: Dict[str, Any]) -> Optional[str]:
    if not data.get("done"):
        return None
    return "length" if data.get("done_reason") == "length" else "stop"


def response_ollama_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Raises:
        UpstreamError: Ollama answered with an ``error`` body
    """
    if data.get("error"):
        raise UpstreamError(str(data["error"]), status_code=500)

    message = data.get("message") or {}
    text = message.get("content") or ""
    return TextResponse(
        id=generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=[TextResponseChoice(
            index=0,
            message=Message(role=message.get("role") or "assistant", content=text),
            finish_reason=_finish_reason(data) or "stop",
        )],
        usage=_usage(data, meta, text),
    )


def response_embedding_to_openai(data: Dict[str, Any], meta: Meta) -> Dict[str, Any]:
    if data.get("error"):
        raise UpstreamError(str(data["error"]), status_code=500)
    prompt_tokens = data.get("prompt_eval_count") or meta.prompt_tokens
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "index": index, "embedding": embedding}
            for index, embedding in enumerate(data.get("embeddings") or [])
        ],
        "model": meta.actual_model_name,
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": 0, "total_tokens": prompt_tokens},
    }


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """Ollama JSON lines -> OpenAI chunks."""
    completion_id = generate_completion_id()
    created = get_timestamp()
    response_text: List[str] = []
    final: Optional[Dict[str, Any]] = None

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream data {line[:200]!r}: {e}")
                continue

            if data.get("error"):
                raise StreamReadError(str(data["error"]))

            content = (data.get("message") or {}).get("content") or ""
            response_text.append(content)
            if data.get("done"):
                final = data

            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=completion_id,
                created=created,
                model=meta.actual_model_name,
                choices=[ChatCompletionsStreamResponseChoice(
                    delta=StreamDelta(role="assistant", content=content),
                    finish_reason=_finish_reason(data),
                )],
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Ollama stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        usage.update_from(_usage(final or {}, meta, "".join(response_text)))


class OllamaAdaptor(Adaptor):
    channel_name = "ollama"
    pricing_file = "ollama"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{meta.base_url}/api/embed"
        return f"{meta.base_url}/api/chat"

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        if mode == RelayMode.EMBEDDINGS:
            return convert_embedding_request(request, model_name)
        return convert_request(request, model_name)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        if meta.is_stream and meta.mode != RelayMode.EMBEDDINGS:
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

        text_response = response_ollama_to_openai(data, meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

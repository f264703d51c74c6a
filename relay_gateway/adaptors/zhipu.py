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
Zhipu (BigModel) adaptor.

``glm-*`` models use the OpenAI-compatible v4 API; older models use the
v3 ``invoke`` / ``sse-invoke`` format. Both authenticate with a short
lived HS256 JWT derived from the ``id.secret`` API key.
"""

import json
import threading
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from jose import jwt
from loguru import logger

from relay_gateway.adaptors import openai
from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.exceptions import (
    ConfigMissingError,
    RelayError,
    RequestInvalidError,
    StreamReadError,
    UpstreamError,
    openai_error_chunk,
)
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    GeneralOpenAIRequest,
    ImageRequest,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Usage,
)
from relay_gateway.relaymode import RelayMode
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, get_timestamp

# Token lifetime; tokens are re-signed when less than a minute is left
TOKEN_TTL_SECONDS = 24 * 3600
TOKEN_REFRESH_MARGIN = 60

_token_cache: Dict[str, Tuple[str, float]] = {}
_token_lock = threading.Lock()


def get_token(api_key: str, now: Optional[float] = None) -> str:
    """
    Signs (or returns the cached) JWT for an ``id.secret`` key.

    Raises:
        ConfigMissingError: The key is not of the form ``id.secret``
    """
    current = time.time() if now is None else now
    with _token_lock:
        cached = _token_cache.get(api_key)
        if cached is not None and cached[1] - TOKEN_REFRESH_MARGIN > current:
            return cached[0]

    key_id, sep, secret = api_key.partition(".")
    if not sep or not key_id or not secret:
        raise ConfigMissingError("invalid zhipu key, expected 'id.secret'")

    expires_at = current + TOKEN_TTL_SECONDS
    payload = {
        "api_key": key_id,
        "exp": int(expires_at * 1000),
        "timestamp": int(current * 1000),
    }
    token = jwt.encode(payload, secret, algorithm="HS256", headers={"sign_type": "SIGN"})

    with _token_lock:
        _token_cache[api_key] = (token, expires_at)
    return token


def clamp(value: Optional[float], low: float = 0.0, high: float = 1.0) -> Optional[float]:
    if value is None:
        return None
    return max(low, min(high, value))


def is_v4_model(model_name: str) -> bool:
    return model_name.startswith("glm-")


# ==================================================================================================
# v3 format
# ==================================================================================================

def convert_v3_request(request: GeneralOpenAIRequest) -> Dict[str, Any]:
    """Legacy ``invoke`` body; roles and text only."""
    prompt = [{"role": message.role, "content": message.string_content()} for message in request.messages]
    body: Dict[str, Any] = {"prompt": prompt}
    if request.temperature is not None:
        body["temperature"] = request.temperature
    if request.top_p is not None:
        body["top_p"] = request.top_p
    if request.stream:
        body["incremental"] = False
    return body


def _v3_usage(data: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("prompt_tokens", 0),
        completion_tokens=data.get("completion_tokens", 0),
    ).fill_total()


def response_v3_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Converts a v3 ``invoke`` response.

    Raises:
        UpstreamError: ``success`` is false
    """
    if not data.get("success"):
        raise UpstreamError(data.get("msg") or "zhipu request failed", status_code=500, code=str(data.get("code", "")))

    payload = data.get("data") or {}
    choices = []
    for index, choice in enumerate(payload.get("choices") or []):
        content = (choice.get("content") or "").strip('"')
        choices.append(TextResponseChoice(
            index=index,
            message=Message(role=choice.get("role") or "assistant", content=content),
            finish_reason="stop" if index == len(payload.get("choices")) - 1 else None,
        ))

    usage = _v3_usage(payload.get("usage"))
    if usage is None:
        text = "".join(choice.message.string_content() for choice in choices)
        usage = Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text)).fill_total()

    return TextResponse(
        id=payload.get("task_id") or generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=choices,
        usage=usage,
    )


async def v3_stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """
    ``sse-invoke`` -> OpenAI chunks.

    Events are blocks of ``event:``/``id:``/``data:``/``meta:`` lines;
    consecutive ``data:`` lines belong to one text delta and ``meta:``
    carries the final usage.
    """
    completion_id = generate_completion_id()
    created = get_timestamp()
    data_lines: List[str] = []
    response_text: List[str] = []
    upstream_usage: Optional[Usage] = None

    def chunk(content: Optional[str], finish_reason: Optional[str] = None) -> str:
        return render_stream_chunk(ChatCompletionsStreamResponse(
            id=completion_id,
            created=created,
            model=meta.actual_model_name,
            choices=[ChatCompletionsStreamResponseChoice(
                delta=StreamDelta(role="assistant", content=content),
                finish_reason=finish_reason,
            )],
        ))

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            if line.startswith("data:"):
                data_lines.append(line[len("data:"):])
                continue

            if data_lines:
                text = "\n".join(data_lines)
                data_lines = []
                response_text.append(text)
                yield chunk(text)

            if line.startswith("meta:"):
                try:
                    meta_data = json.loads(line[len("meta:"):])
                except json.JSONDecodeError as e:
                    logger.error(f"Error unmarshalling stream meta: {e}")
                    continue
                upstream_usage = _v3_usage(meta_data.get("usage")) or upstream_usage
                yield chunk(None, "stop")

        if data_lines:
            text = "\n".join(data_lines)
            response_text.append(text)
            yield chunk(text)
        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Zhipu stream: {e.message}")
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
# Adaptor
# ==================================================================================================

class ZhipuAdaptor(Adaptor):
    channel_name = "zhipu"
    pricing_file = "zhipu"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            return f"{meta.base_url}/api/paas/v4/images/generations"
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{meta.base_url}/api/paas/v4/embeddings"
        if is_v4_model(meta.actual_model_name):
            return f"{meta.base_url}/api/paas/v4/chat/completions"
        method = "sse-invoke" if meta.is_stream else "invoke"
        return f"{meta.base_url}/api/paas/v3/model-api/{meta.actual_model_name}/{method}"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        headers["Authorization"] = get_token(meta.api_key)

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model

        if mode == RelayMode.EMBEDDINGS:
            inputs = request.parse_input()
            if len(inputs) != 1:
                raise RequestInvalidError("invalid input length, zhipu only supports one input")
            return {"model": model_name, "input": inputs[0]}

        request = request.model_copy(deep=True)
        request.model = model_name
        request.top_p = clamp(request.top_p)
        request.temperature = clamp(request.temperature)
        request.thinking = None

        if is_v4_model(model_name):
            return openai.dump_request(request)
        return convert_v3_request(request)

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        body: Dict[str, Any] = {
            "model": self.meta.actual_model_name if self.meta else request.model,
            "prompt": request.prompt,
        }
        if request.user:
            body["user_id"] = request.user
        return body

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        if meta.mode == RelayMode.EMBEDDINGS:
            return await openai.embedding_handler(response, meta, ctx)
        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            return await openai.image_handler(response, meta, ctx)

        if is_v4_model(meta.actual_model_name):
            if meta.is_stream:
                usage = Usage()
                stream = openai.stream_handler(response, meta, ctx, usage)
                return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")
            return await openai.handler(response, meta, ctx)

        if meta.is_stream:
            usage = Usage()
            stream = v3_stream_handler(response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        try:
            body = await response.aread()
        finally:
            await response.aclose()
        text_response = response_v3_to_openai(read_json(body), meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

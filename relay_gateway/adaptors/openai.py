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
OpenAI adaptor and the shared OpenAI-dialect response handlers.

The handlers in this module (``stream_handler``, ``handler``,
``embedding_handler``, ``image_handler``) are reused by every backend that
answers in the OpenAI wire format.

Streaming contract:
- upstream ``data:`` lines are forwarded after whitespace normalization
- reasoning text is moved to the field the caller selected
- ``data: [DONE]`` is injected when the backend omits it
- a read failure mid-stream ends the stream with an OpenAI error chunk
- usage falls back to the meta prompt count plus a length heuristic
"""

import json
import math
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import (
    RequestInvalidError,
    StreamReadError,
    UnmarshalError,
    openai_error_chunk,
    upstream_error_from_response,
)
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    EmbeddingResponse,
    GeneralOpenAIRequest,
    ImageRequest,
    ImageResponse,
    StreamOptions,
    TextResponse,
    Usage,
)
from relay_gateway.parsers import ToolCallAccumulator
from relay_gateway.pricing import QUOTA_PER_USD, apply_audio_token_ratio, resolve_model_ratio
from relay_gateway.reasoning import set_reasoning_content
from relay_gateway.relaymode import RelayMode
from relay_gateway.streaming import SSE_DONE, format_sse_data, iter_lines, render_stream_chunk, strip_data_prefix
from relay_gateway.tokenizer import heuristic_tokens

# Request paths used when the inbound path is unknown (Claude conversions, tests)
DEFAULT_REQUEST_PATHS: Dict[RelayMode, str] = {
    RelayMode.CHAT_COMPLETIONS: "/v1/chat/completions",
    RelayMode.CLAUDE_MESSAGES: "/v1/chat/completions",
    RelayMode.COMPLETIONS: "/v1/completions",
    RelayMode.EMBEDDINGS: "/v1/embeddings",
    RelayMode.IMAGES_GENERATIONS: "/v1/images/generations",
}

# Web search tool price in USD per 1000 calls, by search context size
WEB_SEARCH_PRICES: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini-search": {"low": 25, "medium": 27.5, "high": 30},
    "gpt-4o-search": {"low": 30, "medium": 35, "high": 40},
}

# Extra share of completion cost charged for json_schema structured output
STRUCTURED_OUTPUT_COST_RATIO = 0.25

_REASONING_FIELDS = ("reasoning_content", "reasoning", "thinking")


# ==================================================================================================
# URL helpers
# ==================================================================================================

def get_full_request_url(base_url: str, request_path: str, api_type: int = APIType.OPENAI) -> str:
    """
    Joins a base URL and a request path.

    Cloudflare AI Gateway URLs already end in the provider segment, so the
    ``/v1`` prefix of the path is dropped for them.
    """
    if base_url.startswith("https://gateway.ai.cloudflare.com") and api_type == APIType.OPENAI:
        request_path = request_path[len("/v1"):] if request_path.startswith("/v1") else request_path
    return f"{base_url}{request_path}"


def request_path_for(meta: Meta) -> str:
    """Inbound path, or the default path of the relay mode."""
    if meta.request_url_path and meta.request_url_path != "/v1/messages":
        return meta.request_url_path
    return DEFAULT_REQUEST_PATHS.get(meta.mode, "/v1/chat/completions")


# ==================================================================================================
# Request transformations
# ==================================================================================================

def apply_request_transformations(request: GeneralOpenAIRequest, model_name: str) -> None:
    """
    Adjusts a chat request to what OpenAI accepts for the target model.

    - streams always ask for usage
    - o-series models only accept temperature 1, no max_tokens/top_p and no
      system messages; reasoning_effort defaults to ``high``
    - other models do not take reasoning_effort
    - ``*-search`` models reject sampling parameters

    Args:
        request: Request copy, modified in place
        model_name: Actual model name
    """
    if request.stream:
        if request.stream_options is None:
            request.stream_options = StreamOptions()
        request.stream_options.include_usage = True

    if model_name.startswith("o"):
        request.temperature = 1
        request.max_tokens = None
        request.top_p = None
        if request.reasoning_effort is None:
            request.reasoning_effort = "high"
        request.messages = [m for m in request.messages if m.role != "system"]
    else:
        request.reasoning_effort = None

    if model_name.endswith("-search"):
        request.temperature = None
        request.top_p = None
        request.presence_penalty = None
        request.n = None
        request.frequency_penalty = None


def dump_request(request: Any) -> Dict[str, Any]:
    """Serializes a request model, dropping unset optional fields."""
    return request.model_dump(exclude_none=True)


# ==================================================================================================
# Usage helpers
# ==================================================================================================

def _pop_reasoning(target: Any) -> str:
    """Removes every reasoning field of a message or delta and returns the joined text."""
    text = ""
    for name in _REASONING_FIELDS:
        value = getattr(target, name, None)
        if value:
            text += value
        setattr(target, name, None)
    return text


def finalize_stream_usage(upstream: Optional[Usage], meta: Meta, response_text: str) -> Usage:
    """
    Builds the billed usage of a stream.

    Args:
        upstream: Last usage reported in the stream, if any
        meta: Request meta (prompt pre-count, model)
        response_text: Reasoning, content and tool arguments received

    Returns:
        Usage with ``total == prompt + completion``
    """
    if upstream is None or upstream.total_tokens == 0:
        usage = Usage(
            prompt_tokens=meta.prompt_tokens,
            completion_tokens=heuristic_tokens(response_text),
        )
    else:
        usage = upstream.model_copy(deep=True)
        if usage.prompt_tokens == 0:
            # some channels only return total_tokens
            usage.prompt_tokens = meta.prompt_tokens
            usage.completion_tokens = max(usage.total_tokens - meta.prompt_tokens, 0)
        apply_audio_token_ratio(usage, meta.actual_model_name)
    return usage.fill_total()


def text_response_usage(response: TextResponse, meta: Meta) -> Usage:
    """
    Usage of a buffered chat completion, counted locally when missing.
    """
    usage = response.usage.model_copy(deep=True)
    if usage.total_tokens == 0 or (usage.prompt_tokens == 0 and usage.completion_tokens == 0):
        completion_tokens = 0
        for choice in response.choices:
            completion_tokens += heuristic_tokens(choice.message.string_content())
            completion_tokens += heuristic_tokens(choice.message.get_reasoning() or "")
            for tool_call in choice.message.tool_calls or []:
                arguments = tool_call.function.arguments
                if arguments is not None and not isinstance(arguments, str):
                    arguments = json.dumps(arguments, ensure_ascii=False)
                completion_tokens += heuristic_tokens(arguments or "")
        return Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=completion_tokens).fill_total()

    apply_audio_token_ratio(usage, meta.actual_model_name)
    return usage.fill_total()


# ==================================================================================================
# Response handlers
# ==================================================================================================

async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
    on_complete: Optional[Callable[[Usage], None]] = None,
) -> AsyncIterator[str]:
    """
    Forwards an OpenAI-format SSE stream.

    ``usage`` is filled in when the generator finishes, including when the
    caller disconnects and the generator is closed early.

    Args:
        response: Streamed upstream response
        meta: Request meta
        ctx: Request context (reasoning format, cancellation)
        usage: Usage object updated in place at the end
        on_complete: Called with the final usage

    Yields:
        SSE frames for the caller
    """
    reasoning_text: List[str] = []
    response_text: List[str] = []
    tool_calls = ToolCallAccumulator()
    upstream_usage: Optional[Usage] = None
    done_rendered = False

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            payload = strip_data_prefix(line)
            if not payload:
                continue

            if payload.startswith("[DONE]"):
                yield SSE_DONE
                done_rendered = True
                continue

            try:
                chunk = ChatCompletionsStreamResponse.model_validate(json.loads(payload))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.error(f"Error unmarshalling stream data {payload[:200]!r}: {e}")
                yield format_sse_data(payload)
                continue

            # Azure sends chunks without choices (content filter results)
            if not chunk.choices and chunk.usage is None:
                continue

            rewritten = False
            for choice in chunk.choices:
                delta = choice.delta
                reasoning = _pop_reasoning(delta)
                if reasoning:
                    reasoning_text.append(reasoning)
                    set_reasoning_content(delta, ctx.reasoning_format, reasoning)
                    rewritten = True
                if delta.content:
                    response_text.append(delta.content)
                for tool_call in delta.tool_calls or []:
                    tool_calls.add_delta(tool_call)

            if chunk.usage is not None:
                upstream_usage = chunk.usage

            yield render_stream_chunk(chunk) if rewritten else format_sse_data(payload)

        if not done_rendered:
            yield SSE_DONE

    except StreamReadError as e:
        logger.error(f"Error reading upstream stream: {e.message}")
        yield openai_error_chunk(e)

    finally:
        await response.aclose()
        arguments = "".join(call.function.arguments or "" for call in tool_calls.finalize())
        final_usage = finalize_stream_usage(
            upstream_usage,
            meta,
            "".join(reasoning_text) + "".join(response_text) + arguments,
        )
        usage.update_from(final_usage)
        if on_complete is not None:
            on_complete(usage)
        logger.debug(
            f"Stream usage: prompt={usage.prompt_tokens}, completion={usage.completion_tokens}, "
            f"total={usage.total_tokens}"
        )


async def _read_body(response: httpx.Response) -> bytes:
    try:
        return await response.aread()
    finally:
        await response.aclose()


def _raise_for_error_body(data: Any, status_code: int, body: bytes) -> None:
    """Some backends answer 200 with an ``{"error": {...}}`` body."""
    if isinstance(data, dict) and isinstance(data.get("error"), dict) and data["error"].get("type"):
        raise upstream_error_from_response(status_code if status_code >= 400 else 500, body)


async def handler(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """
    Handles a buffered OpenAI-format chat completion.

    Reasoning text is moved to the caller's reasoning field; usage is
    counted locally when the backend did not report it.
    """
    body = await _read_body(response)
    data = read_json(body)
    _raise_for_error_body(data, response.status_code, body)

    try:
        text_response = TextResponse.model_validate(data)
    except ValidationError as e:
        raise UnmarshalError(f"invalid chat completion from upstream: {e}")

    for choice in text_response.choices:
        extra = choice.model_extra or {}
        reasoning = ""
        for name in _REASONING_FIELDS:
            value = extra.pop(name, None)
            if value and not reasoning:
                reasoning = value
        reasoning = _pop_reasoning(choice.message) or reasoning
        if reasoning:
            set_reasoning_content(choice.message, ctx.reasoning_format, reasoning)

    usage = text_response_usage(text_response, meta)
    if text_response.usage.total_tokens == 0:
        text_response.usage = usage.model_copy()

    logger.debug(f"Handler usage: {usage.prompt_tokens}+{usage.completion_tokens} tokens")
    return AdaptorResponse(usage=usage, body=text_response.model_dump(exclude_none=True))


async def embedding_handler(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """Handles an OpenAI-format embeddings response."""
    body = await _read_body(response)
    data = read_json(body)
    _raise_for_error_body(data, response.status_code, body)

    try:
        embedding_response = EmbeddingResponse.model_validate(data)
    except ValidationError as e:
        raise UnmarshalError(f"invalid embedding response from upstream: {e}")

    usage = embedding_response.usage.model_copy()
    if usage.prompt_tokens == 0:
        usage.prompt_tokens = meta.prompt_tokens
    usage.completion_tokens = 0
    usage.fill_total()
    return AdaptorResponse(usage=usage, body=data)


async def image_handler(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """
    Handles an OpenAI-format image response.

    Images are billed per picture by the relay, so the usage is empty
    unless the backend reports token usage (gpt-image-1).
    """
    body = await _read_body(response)
    data = read_json(body)
    _raise_for_error_body(data, response.status_code, body)

    try:
        image_response = ImageResponse.model_validate(data)
    except ValidationError as e:
        raise UnmarshalError(f"invalid image response from upstream: {e}")

    usage = image_response.usage.model_copy() if image_response.usage else Usage()
    return AdaptorResponse(usage=usage.fill_total(), body=data)


# ==================================================================================================
# Tool costs
# ==================================================================================================

def web_search_cost(model_name: str, request: Optional[GeneralOpenAIRequest]) -> int:
    """
    Quota charged for the built-in web search of ``*-search`` models.

    Raises:
        RequestInvalidError: Unknown ``search_context_size``
    """
    prices = None
    # gpt-4o-mini-search must be checked before gpt-4o-search
    for prefix in ("gpt-4o-mini-search", "gpt-4o-search"):
        if model_name.startswith(prefix):
            prices = WEB_SEARCH_PRICES[prefix]
            break
    if prices is None:
        return 0

    size = "medium"
    if request is not None:
        options = (request.model_extra or {}).get("web_search_options") or {}
        size = options.get("search_context_size") or size

    if size not in prices:
        raise RequestInvalidError(f"invalid search context size: {size}")
    return int(math.ceil(prices[size] / 1000 * QUOTA_PER_USD))


def structured_output_cost(
    usage: Usage,
    request: Optional[GeneralOpenAIRequest],
    meta: Meta,
    adaptor: Adaptor,
) -> int:
    """Extra quota for ``response_format.type == json_schema``."""
    if request is None or not request.response_format:
        return 0
    if request.response_format.get("type") != "json_schema" or not request.response_format.get("json_schema"):
        return 0

    model_ratio = resolve_model_ratio(meta.actual_model_name, meta.channel_model_ratio, adaptor)
    cost = int(math.ceil(usage.completion_tokens * STRUCTURED_OUTPUT_COST_RATIO * model_ratio))
    logger.debug(
        f"Applied structured output cost: {cost} (completion tokens: {usage.completion_tokens}, "
        f"model: {meta.actual_model_name})"
    )
    return cost


# ==================================================================================================
# Adaptor
# ==================================================================================================

class OpenAIAdaptor(Adaptor):
    """
    OpenAI Chat Completions, Embeddings and Images.

    Also the base of every OpenAI-compatible backend.
    """

    channel_name = "openai"
    pricing_file = "openai"

    def get_request_url(self, meta: Meta) -> str:
        return get_full_request_url(meta.base_url, request_path_for(meta), meta.api_type)

    def transform_request(self, request: GeneralOpenAIRequest, meta: Meta) -> None:
        """Backend specific edits of the request copy."""
        apply_request_transformations(request, meta.actual_model_name)

    async def convert_request(
        self,
        request: GeneralOpenAIRequest,
        mode: RelayMode,
        ctx: RelayContext,
    ) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")

        meta = self.meta
        request = request.model_copy(deep=True)
        request.model = meta.actual_model_name if meta else request.model

        if mode == RelayMode.EMBEDDINGS:
            body = {"model": request.model, "input": request.input}
            for name in ("encoding_format", "dimensions", "user"):
                value = getattr(request, name)
                if value is not None:
                    body[name] = value
            return body

        self.transform_request(request, meta)
        # thinking is a Claude Messages field
        request.thinking = None
        return dump_request(request)

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        request = request.model_copy()
        if self.meta is not None:
            request.model = self.meta.actual_model_name
        return request.model_dump(exclude_none=True)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        request = ctx.converted_request if isinstance(ctx.converted_request, GeneralOpenAIRequest) else None
        search_cost = web_search_cost(meta.actual_model_name, request)

        if meta.is_stream:
            usage = Usage()

            def add_tools_cost(final: Usage) -> None:
                final.tools_cost = search_cost + structured_output_cost(final, request, meta, self)

            return AdaptorResponse(
                usage=usage,
                stream=stream_handler(response, meta, ctx, usage, on_complete=add_tools_cost),
                media_type="text/event-stream",
            )

        if meta.mode == RelayMode.EMBEDDINGS:
            return await embedding_handler(response, meta, ctx)
        if meta.mode == RelayMode.IMAGES_GENERATIONS:
            return await image_handler(response, meta, ctx)

        result = await handler(response, meta, ctx)
        result.usage.tools_cost = search_cost + structured_output_cost(result.usage, request, meta, self)
        return result

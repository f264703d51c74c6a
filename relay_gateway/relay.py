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
Relay orchestration.

Runs one request through the adaptor pipeline:

    registry -> init -> convert -> do_request -> do_response -> pricing

and hands the final usage and quota to the billing sink. For streams the
sink is called once the caller has consumed the whole stream.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from loguru import logger
from pydantic import BaseModel

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse
from relay_gateway.adaptors.registry import get_adaptor
from relay_gateway.claude_bridge import claude_to_openai_request, openai_response_to_claude, openai_stream_to_claude
from relay_gateway.exceptions import ConfigMissingError, RequestInvalidError
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest, ImageRequest, Usage
from relay_gateway.pricing import (
    IMAGE_TOKEN_UNITS,
    apply_audio_token_ratio,
    calculate_quota,
    resolve_completion_ratio,
    resolve_model_ratio,
)
from relay_gateway.relaymode import RelayMode
from relay_gateway.tokenizer import count_message_tokens, count_tokens, count_tools_tokens


# ==================================================================================================
# Billing sink
# ==================================================================================================

class BillingSink(ABC):
    """Receives the final usage and quota of every relayed request."""

    @abstractmethod
    async def record(self, meta: Meta, usage: Usage, quota: int) -> None:
        """Settles one request."""


class LoggingBillingSink(BillingSink):
    """Default sink: writes the settlement to the log."""

    async def record(self, meta: Meta, usage: Usage, quota: int) -> None:
        logger.info(
            f"Usage: channel={meta.channel_id} token={meta.token_id} model={meta.actual_model_name} "
            f"prompt={usage.prompt_tokens} completion={usage.completion_tokens} quota={quota}"
        )


_billing_sink: BillingSink = LoggingBillingSink()


def get_billing_sink() -> BillingSink:
    return _billing_sink


def set_billing_sink(sink: Optional[BillingSink]) -> None:
    """Installs a sink; None restores the logging sink."""
    global _billing_sink
    _billing_sink = sink or LoggingBillingSink()


# ==================================================================================================
# Result
# ==================================================================================================

@dataclass
class RelayResult:
    """
    Outcome of one relay.

    Exactly one of ``body`` and ``stream`` is set. For streams ``usage`` and
    ``quota`` are final once ``stream`` has been consumed.
    """
    usage: Usage = field(default_factory=Usage)
    quota: int = 0
    status_code: int = 200
    body: Optional[Any] = None
    stream: Optional[AsyncIterator[str]] = None
    media_type: str = "application/json"

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


# ==================================================================================================
# Pricing
# ==================================================================================================

def compute_quota(usage: Usage, model_name: str, meta: Meta, adaptor: Optional[Adaptor]) -> int:
    """
    Prices a request.

    Ratios come from the channel overrides, then the adaptor's price list,
    then the global registry. Audio tokens are weighted before the billing
    formula is applied; ``usage`` itself is not modified.

    Args:
        usage: Final usage of the request
        model_name: Billed (post-mapping) model
        meta: Request meta carrying the channel overrides
        adaptor: Adaptor of the channel

    Returns:
        Quota to charge
    """
    billed = usage.model_copy(deep=True)
    apply_audio_token_ratio(billed, model_name)

    ratio = resolve_model_ratio(model_name, meta.channel_model_ratio, adaptor)
    completion_ratio = resolve_completion_ratio(model_name, meta.channel_completion_ratio, adaptor)
    quota = calculate_quota(
        billed.prompt_tokens,
        billed.completion_tokens,
        ratio,
        completion_ratio,
        tools_cost=usage.tools_cost,
    )
    logger.debug(
        f"Quota for {model_name}: prompt={billed.prompt_tokens} completion={billed.completion_tokens} "
        f"ratio={ratio} completion_ratio={completion_ratio} tools_cost={usage.tools_cost} -> {quota}"
    )
    return quota


# ==================================================================================================
# Pipeline helpers
# ==================================================================================================

def _select_adaptor(meta: Meta) -> Adaptor:
    adaptor = get_adaptor(meta.api_type)
    if adaptor is None:
        raise ConfigMissingError(f"invalid api type: {meta.api_type}")
    adaptor.init(meta)
    return adaptor


def encode_body(converted: Any) -> bytes:
    """Serializes a converted request body."""
    if isinstance(converted, bytes):
        return converted
    if isinstance(converted, BaseModel):
        return converted.model_dump_json(exclude_none=True).encode("utf-8")
    return json.dumps(converted, ensure_ascii=False).encode("utf-8")


def count_request_tokens(request: GeneralOpenAIRequest, mode: RelayMode, model_name: str) -> int:
    """Prompt token estimate used for stream preambles and usage fallbacks."""
    if mode == RelayMode.EMBEDDINGS:
        return sum(count_tokens(text) for text in request.parse_input())
    return count_message_tokens(request.messages, model_name) + count_tools_tokens(request.tools)


async def _billed_stream(
    stream: AsyncIterator[str],
    result: RelayResult,
    meta: Meta,
    adaptor: Adaptor,
    sink: BillingSink,
    on_settled: Optional[Callable[[Usage], None]] = None,
) -> AsyncIterator[str]:
    try:
        async for frame in stream:
            yield frame
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
        if on_settled is not None:
            on_settled(result.usage)
        result.quota = compute_quota(result.usage, meta.actual_model_name, meta, adaptor)
        await sink.record(meta, result.usage, result.quota)


async def _execute(
    adaptor: Adaptor,
    converted: Any,
    meta: Meta,
    ctx: RelayContext,
) -> AdaptorResponse:
    response = await adaptor.do_request(meta, encode_body(converted), ctx)
    return await adaptor.do_response(response, meta, ctx)


async def _settle(
    adaptor: Adaptor,
    adaptor_response: AdaptorResponse,
    meta: Meta,
    sink: Optional[BillingSink],
    on_settled: Optional[Callable[[Usage], None]] = None,
) -> RelayResult:
    sink = sink or get_billing_sink()
    result = RelayResult(
        usage=adaptor_response.usage,
        status_code=adaptor_response.status_code,
        media_type=adaptor_response.media_type,
    )

    if adaptor_response.is_stream:
        result.stream = _billed_stream(adaptor_response.stream, result, meta, adaptor, sink, on_settled)
        return result

    if on_settled is not None:
        on_settled(result.usage)
    result.body = adaptor_response.body
    result.quota = compute_quota(result.usage, meta.actual_model_name, meta, adaptor)
    await sink.record(meta, result.usage, result.quota)
    return result


# ==================================================================================================
# Entry points
# ==================================================================================================

async def relay_text(
    request: GeneralOpenAIRequest,
    meta: Meta,
    ctx: RelayContext,
    sink: Optional[BillingSink] = None,
) -> RelayResult:
    """
    Relays an OpenAI-format request (chat, completions, embeddings, video).

    Args:
        request: Canonical request
        meta: Request meta; ``mode`` selects the endpoint
        ctx: Request context
        sink: Billing sink (defaults to the installed one)

    Returns:
        RelayResult with an OpenAI-format body or stream
    """
    if request is None:
        raise RequestInvalidError("request is nil")

    adaptor = _select_adaptor(meta)
    meta.is_stream = bool(request.stream) and meta.mode != RelayMode.EMBEDDINGS
    meta.prompt_tokens = count_request_tokens(request, meta.mode, meta.actual_model_name)
    ctx.request_model = request.model

    logger.info(
        f"Relaying {meta.mode.name} to {adaptor.get_channel_name()} "
        f"(model={meta.actual_model_name}, stream={meta.is_stream})"
    )

    ctx.converted_request = request
    converted = await adaptor.convert_request(request, meta.mode, ctx)
    adaptor_response = await _execute(adaptor, converted, meta, ctx)
    result = await _settle(adaptor, adaptor_response, meta, sink)
    ctx.converted_response = result.body
    return result


async def relay_claude_messages(
    request: ClaudeRequest,
    meta: Meta,
    ctx: RelayContext,
    sink: Optional[BillingSink] = None,
) -> RelayResult:
    """
    Relays a Claude Messages request.

    Claude-family backends receive it natively. Any other backend gets the
    request lowered to the OpenAI shape, and its answer is re-elevated to a
    Claude Messages response.

    Returns:
        RelayResult with a Claude-format body or event stream
    """
    if request is None:
        raise RequestInvalidError("request is nil")

    adaptor = _select_adaptor(meta)
    meta.mode = RelayMode.CLAUDE_MESSAGES
    meta.is_stream = bool(request.stream)
    lowered = claude_to_openai_request(request)
    meta.prompt_tokens = count_request_tokens(lowered, RelayMode.CHAT_COMPLETIONS, meta.actual_model_name)
    ctx.request_model = request.model

    logger.info(
        f"Relaying Claude Messages to {adaptor.get_channel_name()} "
        f"(model={meta.actual_model_name}, stream={meta.is_stream})"
    )

    ctx.converted_request = request
    converted = await adaptor.convert_claude_request(request, ctx)
    adaptor_response = await _execute(adaptor, converted, meta, ctx)

    if ctx.claude_messages_conversion:
        if adaptor_response.is_stream:
            adaptor_response.stream = openai_stream_to_claude(
                adaptor_response.stream,
                adaptor_response.usage,
                meta.origin_model_name or meta.actual_model_name,
                meta.prompt_tokens,
            )
        else:
            adaptor_response.body = openai_response_to_claude(
                adaptor_response.body,
                meta.origin_model_name or meta.actual_model_name,
            )

    result = await _settle(adaptor, adaptor_response, meta, sink)
    ctx.converted_response = result.body
    return result


async def relay_image(
    request: ImageRequest,
    meta: Meta,
    ctx: RelayContext,
    sink: Optional[BillingSink] = None,
) -> RelayResult:
    """
    Relays an image generation request.

    Backends that report token usage are billed by tokens; otherwise each
    generated image counts IMAGE_TOKEN_UNITS prompt units, which the
    per-image price lists are scaled for.
    """
    if request is None:
        raise RequestInvalidError("request is nil")
    if not request.prompt:
        raise RequestInvalidError("prompt is required")

    adaptor = _select_adaptor(meta)
    meta.mode = RelayMode.IMAGES_GENERATIONS
    meta.is_stream = False
    ctx.request_model = request.model

    logger.info(f"Relaying image generation to {adaptor.get_channel_name()} (model={meta.actual_model_name})")

    ctx.converted_request = request
    converted = await adaptor.convert_image_request(request, ctx)
    adaptor_response = await _execute(adaptor, converted, meta, ctx)

    count = request.n or 1
    if isinstance(adaptor_response.body, dict) and isinstance(adaptor_response.body.get("data"), list):
        count = len(adaptor_response.body["data"]) or count

    def per_image_usage(usage: Usage) -> None:
        if usage.total_tokens == 0:
            usage.prompt_tokens = count * IMAGE_TOKEN_UNITS
            usage.fill_total()

    result = await _settle(adaptor, adaptor_response, meta, sink, on_settled=per_image_usage)
    ctx.converted_response = result.body
    return result

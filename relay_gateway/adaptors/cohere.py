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
Cohere adaptor (``/v1/chat``).

The last user message becomes ``message``, earlier turns go to
``chat_history`` and system prompts to ``preamble``. Streams are
newline-delimited JSON events rather than SSE.
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
from relay_gateway.utils import generate_completion_id, get_timestamp

WEB_SEARCH_SUFFIX = "-internet"

ROLE_MAP = {
    "user": "USER",
    "assistant": "CHATBOT",
    "system": "SYSTEM",
}

FINISH_REASON_MAP = {
    "COMPLETE": "stop",
    "MAX_TOKENS": "length",
    "ERROR_TOXIC": "content_filter",
}


def map_finish_reason(reason: Optional[str]) -> Optional[str]:
    if not reason:
        return None
    return FINISH_REASON_MAP.get(reason, reason.lower())


def convert_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    """Canonical request -> Cohere chat body."""
    body: Dict[str, Any] = {
        "model": model_name,
        "stream": request.stream,
        "chat_history": [],
    }
    if model_name.endswith(WEB_SEARCH_SUFFIX):
        body["model"] = model_name[: -len(WEB_SEARCH_SUFFIX)]
        body["connectors"] = [{"id": "web-search"}]

    for name, value in (
        ("max_tokens", request.max_tokens),
        ("temperature", request.temperature),
        ("p", request.top_p),
        ("k", request.top_k),
        ("frequency_penalty", request.frequency_penalty),
        ("presence_penalty", request.presence_penalty),
    ):
        if value is not None:
            body[name] = value
    if request.seed is not None:
        body["seed"] = int(request.seed)
    if request.stop is not None:
        body["stop_sequences"] = [request.stop] if isinstance(request.stop, str) else request.stop

    preamble: List[str] = []
    message = ""
    for index, item in enumerate(request.messages):
        text = item.string_content()
        if item.role == "system":
            preamble.append(text)
        elif item.role == "user" and index == len(request.messages) - 1:
            message = text
        else:
            body["chat_history"].append({"role": ROLE_MAP.get(item.role, "USER"), "message": text})

    if preamble:
        body["preamble"] = "\n".join(preamble)
    body["message"] = message
    return body


def _usage(meta_data: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not meta_data:
        return None
    tokens = meta_data.get("tokens") or meta_data.get("billed_units") or {}
    if not tokens:
        return None
    return Usage(
        prompt_tokens=int(tokens.get("input_tokens", 0)),
        completion_tokens=int(tokens.get("output_tokens", 0)),
    ).fill_total()


def response_cohere_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Raises:
        UpstreamError: Cohere answered with a ``message`` error body
    """
    if "text" not in data and data.get("message"):
        raise UpstreamError(data["message"], status_code=500)

    text = data.get("text") or ""
    usage = _usage(data.get("meta"))
    if usage is None:
        usage = Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text)).fill_total()

    return TextResponse(
        id=data.get("response_id") or generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=[TextResponseChoice(
            index=0,
            message=Message(role="assistant", content=text),
            finish_reason=map_finish_reason(data.get("finish_reason")),
        )],
        usage=usage,
    )


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """Cohere JSON-lines stream -> OpenAI chunks."""
    completion_id = generate_completion_id()
    created = get_timestamp()
    response_text: List[str] = []
    upstream_usage: Optional[Usage] = None

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream event {line[:200]!r}: {e}")
                continue

            event_type = event.get("event_type")
            if event_type == "stream-start":
                completion_id = event.get("generation_id") or completion_id
                continue

            delta = StreamDelta(role="assistant")
            finish_reason = None
            if event_type == "text-generation":
                delta.content = event.get("text") or ""
                response_text.append(delta.content)
            elif event_type == "stream-end":
                finish_reason = map_finish_reason(event.get("finish_reason"))
                upstream_usage = _usage((event.get("response") or {}).get("meta")) or upstream_usage
            else:
                continue

            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=completion_id,
                created=created,
                model=meta.actual_model_name,
                choices=[ChatCompletionsStreamResponseChoice(delta=delta, finish_reason=finish_reason)],
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Cohere stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        if upstream_usage is None:
            upstream_usage = Usage(
                prompt_tokens=meta.prompt_tokens,
                completion_tokens=heuristic_tokens("".join(response_text)),
            ).fill_total()
        usage.update_from(upstream_usage)


class CohereAdaptor(Adaptor):
    channel_name = "cohere"
    pricing_file = "cohere"

    def get_request_url(self, meta: Meta) -> str:
        return f"{meta.base_url}/v1/chat"

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        if mode not in (RelayMode.CHAT_COMPLETIONS, RelayMode.CLAUDE_MESSAGES):
            raise RequestInvalidError(f"unsupported relay mode {mode.name} for cohere")
        return convert_request(request, self.meta.actual_model_name if self.meta else request.model)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        if meta.is_stream:
            usage = Usage()
            stream = stream_handler(response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        try:
            raw = await response.aread()
        finally:
            await response.aclose()
        text_response = response_cohere_to_openai(read_json(raw), meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

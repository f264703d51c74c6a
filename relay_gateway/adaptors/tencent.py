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
Tencent Hunyuan adaptor.

The API key packs ``appid|secretId|secretKey``. Every request is a POST to
``/`` with the action in ``X-TC-Action`` and a TC3-HMAC-SHA256 signature
computed over the exact body, so signing happens in do_request().
"""

import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from loguru import logger

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status
from relay_gateway.exceptions import (
    ConfigMissingError,
    RelayError,
    RequestInvalidError,
    StreamReadError,
    UpstreamError,
    openai_error_chunk,
)
from relay_gateway.http_client import send_request
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
from relay_gateway.signing import sign_tc3
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk, strip_data_prefix
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import get_timestamp

TENCENT_VERSION = "2023-09-01"
TENCENT_REGION = "ap-guangzhou"
TENCENT_CONTENT_TYPE = "application/json; charset=utf-8"

ACTION_CHAT = "ChatCompletions"
ACTION_EMBEDDING = "GetEmbedding"


def parse_config(api_key: str) -> Tuple[int, str, str]:
    """
    Splits ``appid|secretId|secretKey``.

    Raises:
        ConfigMissingError: Wrong number of parts or a non-numeric app id
    """
    parts = api_key.split("|")
    if len(parts) != 3:
        raise ConfigMissingError("invalid tencent config, expected 'appid|secretId|secretKey'")
    try:
        app_id = int(parts[0])
    except ValueError:
        raise ConfigMissingError("invalid tencent config, appid must be numeric")
    return app_id, parts[1], parts[2]


# ==================================================================================================
# Request conversion
# ==================================================================================================

def convert_request(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    messages = [
        {"Role": message.role, "Content": message.string_content()}
        for message in request.messages
    ]
    body: Dict[str, Any] = {
        "Model": model_name,
        "Messages": messages,
        "Stream": request.stream,
    }
    if request.top_p is not None:
        body["TopP"] = request.top_p
    if request.temperature is not None:
        body["Temperature"] = request.temperature
    return body


def convert_embedding_request(request: GeneralOpenAIRequest) -> Dict[str, Any]:
    return {"InputList": request.parse_input()}


# ==================================================================================================
# Response conversion
# ==================================================================================================

def _raise_for_error(payload: Dict[str, Any]) -> None:
    error = payload.get("Error") or {}
    if error.get("Code"):
        raise UpstreamError(error.get("Message") or "tencent request failed", status_code=500, code=error["Code"])


def response_tencent_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Converts a ``ChatCompletions`` answer (wrapped in ``Response``).

    Raises:
        UpstreamError: The answer carries an ``Error``
    """
    payload = data.get("Response") or {}
    _raise_for_error(payload)

    choices = []
    for index, choice in enumerate(payload.get("Choices") or []):
        message = choice.get("Message") or {}
        choices.append(TextResponseChoice(
            index=index,
            message=Message(role=message.get("Role") or "assistant", content=message.get("Content") or ""),
            finish_reason=choice.get("FinishReason") or "stop",
        ))

    raw_usage = payload.get("Usage") or {}
    usage = Usage(
        prompt_tokens=raw_usage.get("PromptTokens", 0),
        completion_tokens=raw_usage.get("CompletionTokens", 0),
    )
    if usage.prompt_tokens == 0 and usage.completion_tokens == 0:
        text = "".join(choice.message.string_content() for choice in choices)
        usage = Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text))

    return TextResponse(
        id=payload.get("Id") or payload.get("RequestId") or "",
        created=payload.get("Created") or get_timestamp(),
        model=meta.actual_model_name,
        choices=choices,
        usage=usage.fill_total(),
    )


def response_embedding_to_openai(data: Dict[str, Any], meta: Meta) -> Tuple[Dict[str, Any], Usage]:
    payload = data.get("Response") or {}
    _raise_for_error(payload)

    raw_usage = payload.get("Usage") or {}
    usage = Usage(prompt_tokens=raw_usage.get("PromptTokens", 0) or meta.prompt_tokens).fill_total()
    body = {
        "object": "list",
        "data": [
            {"object": "embedding", "index": item.get("Index", index), "embedding": item.get("Embedding") or []}
            for index, item in enumerate(payload.get("Data") or [])
        ],
        "model": meta.actual_model_name,
        "usage": usage.model_dump(exclude_none=True),
    }
    return body, usage


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """Hunyuan SSE (``data: {"Choices":[{"Delta":...}]}``) -> OpenAI chunks."""
    response_text: List[str] = []
    upstream_usage: Optional[Usage] = None

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            payload = strip_data_prefix(line)
            if not payload:
                continue
            try:
                data = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream data {payload[:200]!r}: {e}")
                continue

            if (data.get("Error") or {}).get("Code"):
                raise StreamReadError(data["Error"].get("Message") or "tencent stream error")

            choices = []
            for index, choice in enumerate(data.get("Choices") or []):
                delta = choice.get("Delta") or {}
                content = delta.get("Content") or ""
                response_text.append(content)
                finish_reason = choice.get("FinishReason") or None
                choices.append(ChatCompletionsStreamResponseChoice(
                    index=index,
                    delta=StreamDelta(role=delta.get("Role") or "assistant", content=content),
                    finish_reason=finish_reason,
                ))

            raw_usage = data.get("Usage")
            if raw_usage:
                upstream_usage = Usage(
                    prompt_tokens=raw_usage.get("PromptTokens", 0),
                    completion_tokens=raw_usage.get("CompletionTokens", 0),
                ).fill_total()

            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=data.get("Id") or "",
                created=data.get("Created") or get_timestamp(),
                model=meta.actual_model_name,
                choices=choices,
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Tencent stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        if upstream_usage is None or upstream_usage.total_tokens == 0:
            upstream_usage = Usage(
                prompt_tokens=meta.prompt_tokens,
                completion_tokens=heuristic_tokens("".join(response_text)),
            ).fill_total()
        usage.update_from(upstream_usage)


# ==================================================================================================
# Adaptor
# ==================================================================================================

class TencentAdaptor(Adaptor):
    channel_name = "tencent"
    pricing_file = "tencent"

    def get_request_url(self, meta: Meta) -> str:
        return f"{meta.base_url}/"

    def _action(self, meta: Meta) -> str:
        return ACTION_EMBEDDING if meta.mode == RelayMode.EMBEDDINGS else ACTION_CHAT

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        headers["Content-Type"] = TENCENT_CONTENT_TYPE
        headers["X-TC-Action"] = self._action(meta)
        headers["X-TC-Version"] = TENCENT_VERSION
        headers["X-TC-Region"] = TENCENT_REGION

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        parse_config(self.meta.api_key if self.meta else "")
        model_name = self.meta.actual_model_name if self.meta else request.model

        if mode == RelayMode.EMBEDDINGS:
            return convert_embedding_request(request)
        return convert_request(request, model_name)

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        _, secret_id, secret_key = parse_config(meta.api_key)
        url = self.get_request_url(meta)
        host = urlparse(url).netloc

        headers: Dict[str, str] = {}
        self.setup_request_header(headers, meta)
        timestamp = int(time.time())
        headers["X-TC-Timestamp"] = str(timestamp)
        headers["Authorization"] = sign_tc3(
            secret_id, secret_key, host, headers["X-TC-Action"], body, timestamp, TENCENT_CONTENT_TYPE
        )

        logger.debug(f"[{self.channel_name}] POST {url} ({headers['X-TC-Action']})")
        return await send_request("POST", url, headers=headers, content=body, stream=meta.is_stream)

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
            body, usage = response_embedding_to_openai(data, meta)
            return AdaptorResponse(usage=usage, body=body)

        text_response = response_tencent_to_openai(data, meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

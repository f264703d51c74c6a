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
Xunfei Spark adaptor (v1 WebSocket protocol).

The API key packs ``appid|apiSecret|apiKey``. The API version comes from
the model name (``Spark-Max`` -> ``v3.5``), falling back to the channel's
``api_version`` and then ``v1.1``. One request opens a signed WebSocket,
sends a single JSON frame and reads answer frames until ``status == 2``.

do_request() hands the frames to do_response() as a newline-delimited body
so the translation works on an ordinary httpx.Response.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from loguru import logger
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidStatus, WebSocketException

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.exceptions import (
    ConfigMissingError,
    ModelUnsupportedError,
    RelayError,
    RequestInvalidError,
    StreamReadError,
    UpstreamError,
    UpstreamUnavailableError,
    openai_error_chunk,
)
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    Function,
    GeneralOpenAIRequest,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Tool,
    Usage,
)
from relay_gateway.relaymode import RelayMode
from relay_gateway.signing import sign_xunfei_url
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, generate_tool_call_id, get_timestamp

DEFAULT_API_VERSION = "v1.1"

# Spark closes the exchange with this status
STATUS_LAST_FRAME = 2

HANDSHAKE_TIMEOUT = 5.0

MODEL_API_VERSIONS = {
    "Spark-Lite": "v1.1",
    "Spark-Pro": "v3.1",
    "Spark-Pro-128K": "v3.1-128K",
    "Spark-Max": "v3.5",
    "Spark-Max-32K": "v3.5-32K",
    "Spark-4.0-Ultra": "v4.0",
}

API_VERSION_DOMAINS = {
    "v1.1": "lite",
    "v2.1": "generalv2",
    "v3.1": "generalv3",
    "v3.1-128K": "pro-128k",
    "v3.5": "generalv3.5",
    "v3.5-32K": "max-32k",
    "v4.0": "4.0Ultra",
}

# Versions served on a path other than /chat
API_VERSION_PATHS = {
    "v3.1-128K": "pro-128k",
    "v3.5-32K": "max-32k",
}


def parse_config(api_key: str) -> Tuple[str, str, str]:
    """
    Splits ``appid|apiSecret|apiKey``.

    Raises:
        ConfigMissingError: Wrong number of parts
    """
    parts = api_key.split("|")
    if len(parts) != 3 or not all(parts):
        raise ConfigMissingError("invalid xunfei config, expected 'appid|apiSecret|apiKey'")
    return parts[0], parts[1], parts[2]


def api_version_for(model_name: str, configured: str = "") -> str:
    """
    Resolves the Spark API version of a model.

    Known model names map directly; otherwise the part after the first
    ``-`` is taken as the version (``spark-v3.5`` -> ``v3.5``).
    """
    version = MODEL_API_VERSIONS.get(model_name)
    if version:
        return version
    _, sep, suffix = model_name.partition("-")
    if sep and suffix:
        return suffix
    return configured or DEFAULT_API_VERSION


def domain_for(api_version: str) -> str:
    return API_VERSION_DOMAINS.get(api_version, f"general{api_version}")


def supports_functions(domain: str) -> bool:
    return domain.startswith("generalv3") or domain == "4.0Ultra"


# ==================================================================================================
# Request conversion
# ==================================================================================================

def convert_request(request: GeneralOpenAIRequest, app_id: str, domain: str) -> Dict[str, Any]:
    """Canonical request -> Spark request frame."""
    chat: Dict[str, Any] = {"domain": domain}
    if request.temperature is not None:
        chat["temperature"] = request.temperature
    if request.top_k:
        chat["top_k"] = request.top_k
    if request.max_tokens:
        chat["max_tokens"] = request.max_tokens

    payload: Dict[str, Any] = {
        "message": {
            "text": [{"role": message.role, "content": message.string_content()} for message in request.messages],
        },
    }
    if request.tools and supports_functions(domain):
        payload["functions"] = {
            "text": [tool.function.model_dump(exclude_none=True) for tool in request.tools],
        }

    return {
        "header": {"app_id": app_id},
        "parameter": {"chat": chat},
        "payload": payload,
    }


# ==================================================================================================
# Frames
# ==================================================================================================

def _payload(frame: Dict[str, Any]) -> Dict[str, Any]:
    return frame.get("payload") or {}


def frame_status(frame: Dict[str, Any]) -> int:
    choices = _payload(frame).get("choices") or {}
    return int(choices.get("status", (frame.get("header") or {}).get("status", 0)))


def frame_text(frame: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    items = (_payload(frame).get("choices") or {}).get("text") or []
    return items[0] if items else None


def frame_usage(frame: Dict[str, Any]) -> Optional[Usage]:
    text = (_payload(frame).get("usage") or {}).get("text")
    if not text:
        return None
    return Usage(
        prompt_tokens=int(text.get("prompt_tokens", 0)),
        completion_tokens=int(text.get("completion_tokens", 0)),
        total_tokens=int(text.get("total_tokens", 0)),
    )


def frame_error(frame: Dict[str, Any]) -> Optional[UpstreamError]:
    """UpstreamError for a frame whose header carries a non-zero code."""
    header = frame.get("header") or {}
    code = header.get("code", 0)
    if not code:
        return None
    return UpstreamError(header.get("message") or "xunfei request failed", status_code=500, code=str(code))


def frame_tool_calls(item: Optional[Dict[str, Any]]) -> Optional[List[Tool]]:
    """Spark returns at most one function call per answer."""
    if not item or not item.get("function_call"):
        return None
    call = item["function_call"]
    return [Tool(
        id=generate_tool_call_id(),
        type="function",
        function=Function(name=call.get("name", ""), arguments=call.get("arguments", "")),
    )]


def _accumulate(total: Usage, frame: Dict[str, Any]) -> None:
    usage = frame_usage(frame)
    if usage is not None:
        total.prompt_tokens += usage.prompt_tokens
        total.completion_tokens += usage.completion_tokens
        total.total_tokens += usage.total_tokens


def _fallback_usage(usage: Usage, meta: Meta, text: str) -> Usage:
    if usage.completion_tokens == 0 and usage.prompt_tokens == 0:
        return Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text)).fill_total()
    return usage


async def iter_frames(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Decodes the newline-delimited frames of a Spark exchange."""
    async for line in iter_lines(response):
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(f"Error unmarshalling xunfei frame {line[:200]!r}: {e}")


class SparkFrameStream(httpx.AsyncByteStream):
    """Body made of the frames received on a Spark WebSocket, one per line."""

    def __init__(self, connection):
        self._connection = connection

    async def __aiter__(self):
        try:
            async for message in self._connection:
                if isinstance(message, str):
                    message = message.encode("utf-8")
                yield message + b"\n"
                if _is_last(message):
                    break
        except WebSocketException as e:
            raise StreamReadError(f"xunfei connection lost: {e}")

    async def aclose(self):
        await self._connection.close()


def _is_last(message: bytes) -> bool:
    try:
        frame = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return False
    return frame_status(frame) == STATUS_LAST_FRAME or frame_error(frame) is not None


# ==================================================================================================
# Response conversion
# ==================================================================================================

async def handler(response: httpx.Response, meta: Meta) -> TextResponse:
    """
    Collects a whole Spark exchange into one chat completion.

    Raises:
        UpstreamError: Error frame, or no frame carried an answer
    """
    content: List[str] = []
    last_item: Optional[Dict[str, Any]] = None
    usage = Usage()

    async for frame in iter_frames(response):
        error = frame_error(frame)
        if error is not None:
            raise error
        item = frame_text(frame)
        if item is None:
            continue
        content.append(item.get("content") or "")
        last_item = item
        _accumulate(usage, frame)

    if last_item is None:
        raise UpstreamError("xunfei empty response detected", status_code=500)

    text = "".join(content)
    tool_calls = frame_tool_calls(last_item)
    return TextResponse(
        id=generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=[TextResponseChoice(
            index=0,
            message=Message(role="assistant", content=text, tool_calls=tool_calls),
            finish_reason="tool_calls" if tool_calls else "stop",
        )],
        usage=_fallback_usage(usage, meta, text),
    )


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """Spark frames -> OpenAI chunks."""
    completion_id = generate_completion_id()
    created = get_timestamp()
    response_text: List[str] = []
    total = Usage()

    try:
        async for frame in iter_frames(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing xunfei connection")
                return

            error = frame_error(frame)
            if error is not None:
                raise StreamReadError(error.message, code=error.code)
            _accumulate(total, frame)

            item = frame_text(frame) or {}
            tool_calls = frame_tool_calls(item)
            delta = StreamDelta(role="assistant", content=item.get("content") or "", tool_calls=tool_calls)
            response_text.append(delta.content)

            finish_reason = None
            if frame_status(frame) == STATUS_LAST_FRAME:
                finish_reason = "tool_calls" if tool_calls else "stop"

            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=completion_id,
                created=created,
                model=meta.actual_model_name,
                choices=[ChatCompletionsStreamResponseChoice(delta=delta, finish_reason=finish_reason)],
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in xunfei stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        usage.update_from(_fallback_usage(total, meta, "".join(response_text)))


# ==================================================================================================
# Adaptor
# ==================================================================================================

class XunfeiAdaptor(Adaptor):
    channel_name = "xunfei"
    pricing_file = "xunfei"

    def _api_version(self, meta: Meta) -> str:
        return api_version_for(meta.actual_model_name, meta.config.api_version)

    def get_request_url(self, meta: Meta) -> str:
        version = self._api_version(meta)
        path = API_VERSION_PATHS.get(version, "chat")
        return f"{meta.base_url}/{version}/{path}"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        # Credentials travel in the signed URL
        setup_common_request_header(headers, meta)

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        if mode not in (RelayMode.CHAT_COMPLETIONS, RelayMode.CLAUDE_MESSAGES):
            raise ModelUnsupportedError(f"unsupported relay mode {mode.name} for xunfei")

        meta = self.meta
        app_id, _, _ = parse_config(meta.api_key if meta else "")
        model_name = meta.actual_model_name if meta else request.model
        configured = meta.config.api_version if meta else ""
        return convert_request(request, app_id, domain_for(api_version_for(model_name, configured)))

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        _, api_secret, api_key = parse_config(meta.api_key)
        url = self.get_request_url(meta)
        logger.debug(f"[{self.channel_name}] WebSocket {url}")

        try:
            connection = await connect(sign_xunfei_url(url, api_key, api_secret), open_timeout=HANDSHAKE_TIMEOUT)
        except InvalidStatus as e:
            raise UpstreamError(
                f"xunfei rejected the connection: {e}",
                status_code=e.response.status_code,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise UpstreamUnavailableError(f"failed to connect to xunfei: {e}")

        try:
            await connection.send(body.decode("utf-8"))
        except WebSocketException as e:
            await connection.close()
            raise UpstreamUnavailableError(f"failed to send request to xunfei: {e}")

        return httpx.Response(200, stream=SparkFrameStream(connection), request=httpx.Request("GET", url))

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)

        if meta.is_stream:
            usage = Usage()
            stream = stream_handler(response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        try:
            text_response = await handler(response, meta)
        finally:
            await response.aclose()
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

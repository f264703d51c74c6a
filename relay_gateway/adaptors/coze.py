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
Coze bot adaptor (``/open_api/v2/chat``).

The model name is ``bot-<bot_id>``. Credentials are either a personal
access token or, with ``auth_type: oauth_jwt``, an OAuth app JSON whose
private key signs a JWT exchanged for a short lived access token.
"""

import asyncio
import hashlib
import json
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from jose import jwt
from jose.exceptions import JOSEError
from loguru import logger

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
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk, strip_data_prefix
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, get_timestamp

PERSONAL_ACCESS_TOKEN = "personal_access_token"
OAUTH_JWT = "oauth_jwt"

BOT_PREFIX = "bot-"
DEFAULT_API_BASE = "https://api.coze.com"
OAUTH_TOKEN_PATH = "/api/permission/oauth2/token"
OAUTH_TOKEN_DURATION = 900
JWT_LIFETIME = 600

EVENT_MESSAGE = "message"
EVENT_DONE = "done"
EVENT_ERROR = "error"
MESSAGE_TYPE_ANSWER = "answer"


# ==================================================================================================
# OAuth JWT
# ==================================================================================================

_token_cache: Dict[str, Tuple[str, float]] = {}
_token_lock = asyncio.Lock()


def load_oauth_config(raw: str) -> Dict[str, Any]:
    """
    Parses the OAuth app JSON stored as the channel key.

    Raises:
        ConfigMissingError: Not JSON or a required field is missing
    """
    try:
        config = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigMissingError(f"failed to load OAuth config: {e}")
    missing = [name for name in ("client_id", "private_key", "public_key_id") if not config.get(name)]
    if missing:
        raise ConfigMissingError(f"OAuth config is missing {', '.join(missing)}")
    return config


def build_oauth_assertion(config: Dict[str, Any], now: Optional[int] = None) -> str:
    api_base = config.get("coze_api_base") or DEFAULT_API_BASE
    issued_at = now if now is not None else int(time.time())
    claims = {
        "iss": config["client_id"],
        "aud": api_base.replace("https://", "").replace("http://", "").rstrip("/"),
        "iat": issued_at,
        "exp": issued_at + JWT_LIFETIME,
        "jti": uuid.uuid4().hex,
    }
    try:
        return jwt.encode(claims, config["private_key"], algorithm="RS256", headers={"kid": config["public_key_id"]})
    except JOSEError as e:
        raise ConfigMissingError(f"invalid Coze OAuth private key: {e}")


async def get_oauth_token(raw_config: str) -> str:
    """
    Exchanges the signed JWT for an access token, cached until expiry.

    Raises:
        ConfigMissingError: Invalid OAuth config
        UpstreamError: Token exchange rejected
    """
    config = load_oauth_config(raw_config)
    cache_key = hashlib.sha256(raw_config.encode("utf-8")).hexdigest()[:16]

    async with _token_lock:
        cached = _token_cache.get(cache_key)
        if cached is not None and cached[1] > time.time():
            return cached[0]

        api_base = (config.get("coze_api_base") or DEFAULT_API_BASE).rstrip("/")
        response = await send_request(
            "POST",
            f"{api_base}{OAUTH_TOKEN_PATH}",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {build_oauth_assertion(config)}",
            },
            json_data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "duration_seconds": OAUTH_TOKEN_DURATION,
            },
        )
        await raise_for_upstream_status(response)
        data = read_json(response.content)

        token = data.get("access_token")
        if not token:
            raise UpstreamError("coze token endpoint returned no access_token", status_code=500)
        expires_at = float(data.get("expires_in") or time.time() + OAUTH_TOKEN_DURATION)
        _token_cache[cache_key] = (token, expires_at - 60)
        logger.info("Obtained Coze OAuth access token")
        return token


# ==================================================================================================
# Conversion
# ==================================================================================================

def convert_request(request: GeneralOpenAIRequest, model_name: str, user_id: str) -> Dict[str, Any]:
    """
    Canonical request -> Coze chat body.

    The last message is the query, earlier ones the chat history.
    """
    body: Dict[str, Any] = {
        "bot_id": model_name[len(BOT_PREFIX):] if model_name.startswith(BOT_PREFIX) else model_name,
        "user": user_id or request.user or "relaygate",
        "stream": request.stream,
        "chat_history": [],
        "query": "",
    }
    for index, message in enumerate(request.messages):
        if index == len(request.messages) - 1:
            body["query"] = message.string_content()
            break
        body["chat_history"].append({
            "role": message.role,
            "content": message.string_content(),
            "content_type": "text",
        })
    return body


def _answer_text(messages: List[Dict[str, Any]]) -> str:
    return "".join(
        message.get("content") or ""
        for message in messages
        if message.get("type") == MESSAGE_TYPE_ANSWER and message.get("role") == "assistant"
    )


def response_coze_to_openai(data: Dict[str, Any], meta: Meta) -> TextResponse:
    """
    Raises:
        UpstreamError: Non-zero ``code``
    """
    if data.get("code"):
        raise UpstreamError(data.get("msg") or "coze request failed", status_code=500, code=str(data["code"]))

    text = _answer_text(data.get("messages") or [])
    return TextResponse(
        id=data.get("conversation_id") or generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=[TextResponseChoice(index=0, message=Message(role="assistant", content=text), finish_reason="stop")],
        usage=Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(text)).fill_total(),
    )


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """Coze SSE -> OpenAI chunks; only ``answer`` messages are forwarded."""
    completion_id = generate_completion_id()
    created = get_timestamp()
    response_text: List[str] = []

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
                event = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream data {payload[:200]!r}: {e}")
                continue

            event_type = event.get("event")
            if event_type == EVENT_ERROR:
                info = event.get("error_information") or {}
                raise StreamReadError(info.get("msg") or "coze stream error")

            finish_reason = None
            content = None
            if event_type == EVENT_MESSAGE:
                message = event.get("message") or {}
                if message.get("type") != MESSAGE_TYPE_ANSWER:
                    continue
                content = message.get("content") or ""
                response_text.append(content)
            elif event_type == EVENT_DONE:
                finish_reason = "stop"
            else:
                continue

            completion_id = event.get("conversation_id") or completion_id
            yield render_stream_chunk(ChatCompletionsStreamResponse(
                id=completion_id,
                created=created,
                model=meta.actual_model_name,
                choices=[ChatCompletionsStreamResponseChoice(
                    delta=StreamDelta(role="assistant", content=content),
                    finish_reason=finish_reason,
                )],
            ))

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Coze stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        usage.update_from(Usage(
            prompt_tokens=meta.prompt_tokens,
            completion_tokens=heuristic_tokens("".join(response_text)),
        ).fill_total())


# ==================================================================================================
# Adaptor
# ==================================================================================================

class CozeAdaptor(Adaptor):
    channel_name = "coze"
    pricing_file = "coze"

    def __init__(self):
        super().__init__()
        self.access_token = ""

    def get_request_url(self, meta: Meta) -> str:
        return f"{meta.base_url}/open_api/v2/chat"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        headers["Authorization"] = f"Bearer {self.access_token or meta.api_key}"

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        user_id = self.meta.config.user_id if self.meta else ""
        return convert_request(request, model_name, user_id)

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        if meta.config.auth_type == OAUTH_JWT:
            self.access_token = await get_oauth_token(meta.api_key)
        return await super().do_request(meta, body, ctx)

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
        text_response = response_coze_to_openai(read_json(raw), meta)
        return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))

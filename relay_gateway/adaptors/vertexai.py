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
Google Vertex AI adaptor.

One channel serves several model families, each with its own wire format:

- Claude: ``rawPredict`` / ``streamRawPredict`` with ``vertex-2023-10-16``
- Gemini and Gemma: ``generateContent`` / ``streamGenerateContent``
- Imagen: ``:predict``, images uploaded to object storage
- Veo: ``:predictLongRunning`` then ``:fetchPredictOperation`` polling

Access tokens come from a service account JSON (signed JWT exchanged at
Google's token endpoint) or from a literal bearer token in the channel
config.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from jose import jwt
from jose.exceptions import JOSEError
from loguru import logger

from relay_gateway.adaptors import anthropic, gemini
from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.config import settings
from relay_gateway.exceptions import (
    ConfigMissingError,
    ModelUnsupportedError,
    RequestInvalidError,
    UpstreamError,
    UpstreamUnavailableError,
    upstream_error_from_response,
)
from relay_gateway.http_client import send_request
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    ClaudeRequest,
    GeneralOpenAIRequest,
    ImageData,
    ImageRequest,
    ImageResponse,
    Usage,
)
from relay_gateway.object_storage import upload_base64_images
from relay_gateway.pricing import TOKENS_PER_SEC
from relay_gateway.relaymode import RelayMode
from relay_gateway.utils import get_timestamp

VERTEX_ANTHROPIC_VERSION = "vertex-2023-10-16"

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
TOKEN_LIFETIME = 3600
# Tokens are refreshed this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60

DEFAULT_VIDEO_DURATION = 8

ACTION_PREDICT_LONG_RUNNING = ":predictLongRunning"
ACTION_FETCH_OPERATION = ":fetchPredictOperation"


class VertexModelFamily(str, Enum):
    CLAUDE = "claude"
    GEMINI = "gemini"
    IMAGEN = "imagen"
    VEO = "veo"


def model_family(model_name: str) -> VertexModelFamily:
    """
    Model family served by a Vertex model name.

    Raises:
        ModelUnsupportedError: Not a Vertex AI model
    """
    if model_name.startswith("claude"):
        return VertexModelFamily.CLAUDE
    if model_name.startswith(("gemini", "gemma", "text-embedding", "aqa")):
        return VertexModelFamily.GEMINI
    if model_name.startswith("imagen"):
        return VertexModelFamily.IMAGEN
    if model_name.startswith("veo"):
        return VertexModelFamily.VEO
    raise ModelUnsupportedError(f"cannot find vertex adaptor for model {model_name}")


def is_require_global_endpoint(model_name: str) -> bool:
    return model_name.startswith("gemini-2.5-pro-preview")


# ==================================================================================================
# Access tokens
# ==================================================================================================

@dataclass
class _CachedToken:
    token: str
    expires_at: float


_token_cache: Dict[str, _CachedToken] = {}
_token_lock = asyncio.Lock()


def _parse_credentials(adc: str) -> Optional[Dict[str, Any]]:
    """Service account JSON, or None when the config holds a literal token."""
    try:
        data = json.loads(adc)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict) and data.get("private_key") and data.get("client_email"):
        return data
    return None


def build_service_account_assertion(credentials: Dict[str, Any], now: Optional[int] = None) -> str:
    """
    Signs the RS256 JWT exchanged for an access token.

    Args:
        credentials: Service account JSON
        now: Issue time (defaults to the current time)

    Returns:
        Compact JWT
    """
    issued_at = now if now is not None else int(time.time())
    claims = {
        "iss": credentials["client_email"],
        "scope": CLOUD_PLATFORM_SCOPE,
        "aud": credentials.get("token_uri") or GOOGLE_TOKEN_URI,
        "iat": issued_at,
        "exp": issued_at + TOKEN_LIFETIME,
    }
    headers = {"kid": credentials["private_key_id"]} if credentials.get("private_key_id") else None
    try:
        return jwt.encode(claims, credentials["private_key"], algorithm="RS256", headers=headers)
    except JOSEError as e:
        raise ConfigMissingError(f"invalid Vertex AI service account key: {e}")


async def get_access_token(channel_id: int, adc: str) -> str:
    """
    Returns a bearer token for the channel, cached until shortly before expiry.

    Raises:
        ConfigMissingError: No credentials configured
        UpstreamError: Token exchange rejected
    """
    if not adc:
        raise ConfigMissingError("Vertex AI credentials are not configured")

    credentials = _parse_credentials(adc)
    if credentials is None:
        return adc.strip()

    cache_key = f"{channel_id}:{hashlib.sha256(adc.encode('utf-8')).hexdigest()[:16]}"
    async with _token_lock:
        cached = _token_cache.get(cache_key)
        if cached is not None and cached.expires_at > time.time():
            return cached.token

        token_uri = credentials.get("token_uri") or GOOGLE_TOKEN_URI
        body = urlencode({
            "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
            "assertion": build_service_account_assertion(credentials),
        })
        response = await send_request(
            "POST",
            token_uri,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            content=body,
        )
        await raise_for_upstream_status(response)
        data = read_json(response.content)

        token = data.get("access_token")
        if not token:
            raise UpstreamError("token endpoint returned no access_token", status_code=500)
        expires_in = int(data.get("expires_in", TOKEN_LIFETIME))
        _token_cache[cache_key] = _CachedToken(token, time.time() + expires_in - TOKEN_REFRESH_MARGIN)
        logger.info(f"Obtained Vertex AI access token for channel {channel_id}, expires in {expires_in}s")
        return token


def clear_token_cache() -> None:
    _token_cache.clear()


# ==================================================================================================
# Imagen and Veo
# ==================================================================================================

def convert_imagen_request(request: ImageRequest) -> Dict[str, Any]:
    return {
        "instances": [{"prompt": request.prompt}],
        "parameters": {"sampleCount": request.n if request.n > 0 else 1},
    }


def convert_veo_request(request: GeneralOpenAIRequest) -> Dict[str, Any]:
    """
    Builds a Veo request from the last message.

    Its last text part is the prompt and its last image part the optional
    first frame.

    Raises:
        RequestInvalidError: No messages
    """
    if not request.messages:
        raise RequestInvalidError("messages cannot be empty")

    text_prompt = ""
    image_prompt = ""
    for part in request.messages[-1].parse_content():
        if part.text:
            text_prompt = part.text
        if part.image_url is not None and part.image_url.url:
            image_prompt = part.image_url.url

    instance: Dict[str, Any] = {"prompt": text_prompt}
    if image_prompt:
        instance["image"] = {"bytesBase64Encoded": image_prompt}

    return {
        "instances": [instance],
        "parameters": {
            "sampleCount": request.n if request.n and request.n > 1 else 1,
            "durationSeconds": request.duration if request.duration and request.duration > 0 else DEFAULT_VIDEO_DURATION,
        },
    }


async def poll_video_operation(
    poll_url: str,
    operation_name: str,
    headers: Dict[str, str],
    ctx: RelayContext,
    interval: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Polls ``fetchPredictOperation`` until the operation is done.

    Raises:
        UpstreamError: A poll request failed
        UpstreamUnavailableError: The caller went away while waiting
    """
    interval = settings.video_poll_interval if interval is None else interval
    body = json.dumps({"operationName": operation_name}).encode("utf-8")

    while True:
        response = await send_request("POST", poll_url, headers=headers, content=body)
        if response.status_code != 200:
            raise upstream_error_from_response(response.status_code, response.content)

        result = read_json(response.content)
        if result.get("done"):
            return result

        logger.debug(f"Video operation {operation_name} still running, next poll in {interval}s")
        if ctx.is_cancelled():
            raise UpstreamUnavailableError("request cancelled while waiting for video generation", status_code=408)
        await asyncio.sleep(interval)


def video_response_to_openai(result: Dict[str, Any]) -> ImageResponse:
    error = result.get("error")
    if isinstance(error, dict):
        raise UpstreamError(error.get("message", "video generation failed"), status_code=500)
    samples = (result.get("response") or {}).get("generatedSamples") or []
    return ImageResponse(
        created=get_timestamp(),
        data=[ImageData(url=(sample.get("video") or {}).get("uri")) for sample in samples],
    )


# ==================================================================================================
# Adaptor
# ==================================================================================================

class VertexAIAdaptor(Adaptor):
    """Vertex AI; the model family picks the endpoint, body and response handling."""

    channel_name = "vertexai"
    pricing_file = "vertexai"

    def __init__(self):
        super().__init__()
        self.access_token = ""

    # ----- URLs -----

    def _location_and_host(self, meta: Meta, family: VertexModelFamily) -> Tuple[str, str]:
        region = meta.config.region
        if family == VertexModelFamily.GEMINI and is_require_global_endpoint(meta.actual_model_name):
            return "global", "https://aiplatform.googleapis.com"
        if not region:
            raise ConfigMissingError("Vertex AI region is not configured")
        return region, f"https://{region}-aiplatform.googleapis.com"

    def get_request_url(self, meta: Meta) -> str:
        project_id = meta.config.vertex_ai_project_id
        if not project_id:
            raise ConfigMissingError("Vertex AI project id is not configured")

        family = model_family(meta.actual_model_name)
        location, host = self._location_and_host(meta, family)
        if meta.base_url:
            host = meta.base_url

        if family == VertexModelFamily.CLAUDE:
            publisher = "anthropic"
            action = "streamRawPredict?alt=sse" if meta.is_stream else "rawPredict"
        elif family == VertexModelFamily.GEMINI:
            publisher = "google"
            if meta.mode == RelayMode.EMBEDDINGS:
                action = "predict"
            else:
                action = "streamGenerateContent?alt=sse" if meta.is_stream else "generateContent"
        elif family == VertexModelFamily.IMAGEN:
            publisher = "google"
            action = "predict"
        else:
            publisher = "google"
            action = ACTION_PREDICT_LONG_RUNNING.lstrip(":")

        return (
            f"{host}/v1/projects/{project_id}/locations/{location}"
            f"/publishers/{publisher}/models/{meta.actual_model_name}:{action}"
        )

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        headers["Authorization"] = f"Bearer {self.access_token}"

    # ----- conversion -----

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        family = model_family(model_name)
        ctx.request_model = request.model

        if family == VertexModelFamily.CLAUDE:
            claude_request = await anthropic.convert_request(request, self.meta, ctx)
            return self._claude_body(claude_request)
        if family == VertexModelFamily.VEO:
            body = convert_veo_request(request)
            ctx.converted_request = body
            return body
        if family == VertexModelFamily.IMAGEN:
            raise ModelUnsupportedError(f"{model_name} only supports image generation")
        if mode == RelayMode.EMBEDDINGS:
            return {"instances": [{"content": text} for text in request.parse_input()]}
        return gemini.convert_request(request, model_name)

    async def convert_claude_request(self, request: ClaudeRequest, ctx: RelayContext) -> Any:
        model_name = self.meta.actual_model_name if self.meta else request.model
        if model_family(model_name) != VertexModelFamily.CLAUDE:
            if model_family(model_name) == VertexModelFamily.VEO:
                raise ModelUnsupportedError("Claude Messages API is not supported by Veo models")
            return await super().convert_claude_request(request, ctx)

        native = anthropic.convert_claude_native_request(request, self.meta, ctx)
        ctx.original_claude_request = request
        return self._claude_body(native)

    def _claude_body(self, claude_request: ClaudeRequest) -> Dict[str, Any]:
        body = claude_request.model_dump(exclude_none=True)
        body.pop("model", None)
        body["anthropic_version"] = VERTEX_ANTHROPIC_VERSION
        return body

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        model_name = self.meta.actual_model_name if self.meta else request.model
        if model_family(model_name) != VertexModelFamily.IMAGEN:
            raise ModelUnsupportedError(f"{model_name} does not support image generation")
        ctx.converted_request = request
        return convert_imagen_request(request)

    # ----- transport -----

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        self.access_token = await get_access_token(meta.channel_id, meta.config.vertex_ai_adc)
        return await super().do_request(meta, body, ctx)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        family = model_family(meta.actual_model_name)

        if family == VertexModelFamily.CLAUDE:
            return await self._claude_response(response, meta, ctx)
        if family == VertexModelFamily.IMAGEN:
            return await self._imagen_response(response, meta, ctx)
        if family == VertexModelFamily.VEO:
            return await self._veo_response(response, meta, ctx)
        if meta.mode == RelayMode.EMBEDDINGS:
            return await self._embedding_response(response, meta)
        return await gemini.do_gemini_response(response, meta, ctx)

    async def _claude_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        native = meta.mode == RelayMode.CLAUDE_MESSAGES and not ctx.claude_messages_conversion

        if meta.is_stream:
            usage = Usage()
            events = anthropic.iter_sse_events(response)
            if native:
                stream = anthropic.claude_native_stream(events, response, meta, ctx, usage)
            else:
                stream = anthropic.convert_claude_stream(events, response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        body = await _read_body(response)
        if native:
            return await anthropic.handle_claude_native_body(body, response.status_code, meta)
        return await anthropic.handle_claude_body(body, response.status_code, meta, ctx)

    async def _imagen_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        data = read_json(await _read_body(response))

        image_response = ImageResponse(
            created=get_timestamp(),
            data=[
                ImageData(b64_json=prediction.get("bytesBase64Encoded"))
                for prediction in data.get("predictions") or []
            ],
        )
        request = ctx.converted_request
        if not (isinstance(request, ImageRequest) and request.response_format == "b64_json"):
            await upload_base64_images(image_response)
        return AdaptorResponse(usage=Usage(), body=image_response.model_dump(exclude_none=True))

    async def _veo_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        task = read_json(await _read_body(response))
        operation_name = task.get("name")
        if not operation_name:
            raise UpstreamError("video generation returned no operation name", status_code=500)

        duration = DEFAULT_VIDEO_DURATION
        if isinstance(ctx.converted_request, dict):
            duration = ctx.converted_request.get("parameters", {}).get("durationSeconds") or duration

        poll_url = str(response.request.url).replace(ACTION_PREDICT_LONG_RUNNING, ACTION_FETCH_OPERATION)
        headers: Dict[str, str] = {}
        self.setup_request_header(headers, meta)
        result = await poll_video_operation(poll_url, operation_name, headers, ctx)

        usage = Usage(completion_tokens=duration * TOKENS_PER_SEC).fill_total()
        return AdaptorResponse(usage=usage, body=video_response_to_openai(result).model_dump(exclude_none=True))

    async def _embedding_response(self, response: httpx.Response, meta: Meta) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        data = read_json(await _read_body(response))
        items: List[Dict[str, Any]] = []
        for index, prediction in enumerate(data.get("predictions") or []):
            values = (prediction.get("embeddings") or {}).get("values") or []
            items.append({"object": "embedding", "index": index, "embedding": values})

        usage = Usage(prompt_tokens=meta.prompt_tokens).fill_total()
        body = {"object": "list", "data": items, "model": meta.actual_model_name, "usage": usage.model_dump()}
        return AdaptorResponse(usage=usage, body=body)


async def _read_body(response: httpx.Response) -> bytes:
    try:
        return await response.aread()
    finally:
        await response.aclose()

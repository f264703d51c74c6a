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
Cloudflare Workers AI adaptor.

Chat and embeddings use the OpenAI-compatible endpoints of Workers AI,
either through an AI Gateway base URL or the account API
(``/client/v4/accounts/{account}/ai``). Image models are called through
``/run/{model}`` and the resulting picture is uploaded to R2.
"""

import base64
import binascii
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from relay_gateway.adaptors.base import AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status
from relay_gateway.adaptors.openai_compatible import OpenAICompatibleAdaptor
from relay_gateway.exceptions import ConfigMissingError, RequestInvalidError, UpstreamError
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import ImageData, ImageRequest, ImageResponse, Usage
from relay_gateway.object_storage import ObjectStorage, storage_from_settings
from relay_gateway.relaymode import RelayMode
from relay_gateway.utils import get_timestamp

AI_GATEWAY_PREFIX = "https://gateway.ai.cloudflare.com"
AI_GATEWAY_SUFFIX = "/workers-ai"

# Image models answering JSON ({"result": {"image": <base64>}}) instead of raw bytes
JSON_IMAGE_MODELS = {"@cf/black-forest-labs/flux-1-schnell"}


def is_ai_gateway(base_url: str) -> bool:
    return base_url.startswith(AI_GATEWAY_PREFIX) and base_url.endswith(AI_GATEWAY_SUFFIX)


def convert_image_request(request: ImageRequest, model_name: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {"prompt": request.prompt}
    if request.size and "x" in request.size:
        width, _, height = request.size.partition("x")
        try:
            body["width"], body["height"] = int(width), int(height)
        except ValueError:
            raise RequestInvalidError(f"invalid image size: {request.size}")
    if model_name in JSON_IMAGE_MODELS:
        body["steps"] = 4
    return body


def extract_image(raw: bytes, model_name: str) -> bytes:
    """
    Returns the picture of a ``/run`` image response.

    Raises:
        UpstreamError: Error payload or undecodable image
    """
    if model_name not in JSON_IMAGE_MODELS:
        return raw

    data = read_json(raw)
    errors = data.get("errors") or []
    if errors:
        first = errors[0]
        raise UpstreamError(f"Code: {first.get('code')}, Message: {first.get('message')}", status_code=500)
    image = (data.get("result") or {}).get("image") or data.get("image")
    if not image:
        raise UpstreamError("cloudflare returned no image", status_code=500)
    try:
        return base64.b64decode(image)
    except (binascii.Error, ValueError) as e:
        logger.error(f"Error decoding base64 image: {e}")
        raise UpstreamError(f"invalid base64 image from upstream: {e}", status_code=500)


class CloudflareAdaptor(OpenAICompatibleAdaptor):
    channel_name = "cloudflare"
    pricing_file = "cloudflare"
    supports_images = True

    def __init__(self, storage: Optional[ObjectStorage] = None):
        super().__init__()
        self.storage = storage

    def _url_prefix(self, meta: Meta) -> str:
        if is_ai_gateway(meta.base_url):
            return meta.base_url
        if not meta.config.user_id:
            raise ConfigMissingError("cloudflare account id (user_id) is not configured")
        return f"{meta.base_url}/client/v4/accounts/{meta.config.user_id}/ai"

    def get_request_url(self, meta: Meta) -> str:
        prefix = self._url_prefix(meta)
        if meta.mode == RelayMode.CHAT_COMPLETIONS or meta.mode == RelayMode.CLAUDE_MESSAGES:
            return f"{prefix}/v1/chat/completions"
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{prefix}/v1/embeddings"
        if is_ai_gateway(meta.base_url):
            return f"{prefix}/{meta.actual_model_name}"
        return f"{prefix}/run/{meta.actual_model_name}"

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        return convert_image_request(request, model_name)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        if meta.mode != RelayMode.IMAGES_GENERATIONS:
            return await super().do_response(response, meta, ctx)

        await raise_for_upstream_status(response)
        try:
            raw = await response.aread()
        finally:
            await response.aclose()

        image = extract_image(raw, meta.actual_model_name)
        storage = self.storage or storage_from_settings(meta.config.user_id)
        url = await storage.put(image, "image/png")

        image_response = ImageResponse(created=get_timestamp(), data=[ImageData(url=url)])
        return AdaptorResponse(usage=Usage(), body=image_response.model_dump(exclude_none=True))

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
OpenAI-compatible backends.

These vendors speak the OpenAI wire format; each subclass only declares
its name, price list and the few request or URL edits the vendor needs.
Requests and responses go through the shared handlers of the OpenAI
adaptor.
"""

from typing import Any, Dict

from relay_gateway.adaptors.openai import OpenAIAdaptor, get_full_request_url, request_path_for
from relay_gateway.config import APP_TITLE, settings
from relay_gateway.exceptions import ModelUnsupportedError
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import GeneralOpenAIRequest, ImageRequest
from relay_gateway.relaymode import RelayMode


class OpenAICompatibleAdaptor(OpenAIAdaptor):
    """
    Pass-through adaptor for OpenAI-compatible vendors.

    Unlike OpenAI itself the request is forwarded as sent: no o-series
    rewriting and no forced ``stream_options``.
    """

    channel_name = "openai-compatible"
    pricing_file = ""
    # Whether the vendor serves /v1/images/generations
    supports_images = False
    # Vendors rejecting the reasoning_effort parameter
    strip_reasoning_effort = False

    def transform_request(self, request: GeneralOpenAIRequest, meta: Meta) -> None:
        if self.strip_reasoning_effort:
            request.reasoning_effort = None

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        if not self.supports_images:
            raise ModelUnsupportedError(f"{self.channel_name} does not support image generation")
        return await super().convert_image_request(request, ctx)


class DeepSeekAdaptor(OpenAICompatibleAdaptor):
    channel_name = "deepseek"
    pricing_file = "deepseek"
    strip_reasoning_effort = True


class GroqAdaptor(OpenAICompatibleAdaptor):
    channel_name = "groq"
    pricing_file = "groq"


class MistralAdaptor(OpenAICompatibleAdaptor):
    channel_name = "mistralai"
    pricing_file = "mistral"


class MoonshotAdaptor(OpenAICompatibleAdaptor):
    channel_name = "moonshot"
    pricing_file = "moonshot"


class XAIAdaptor(OpenAICompatibleAdaptor):
    channel_name = "xai"
    pricing_file = "xai"
    strip_reasoning_effort = True


class TogetherAIAdaptor(OpenAICompatibleAdaptor):
    channel_name = "togetherai"
    pricing_file = "togetherai"
    supports_images = True


class OpenRouterAdaptor(OpenAICompatibleAdaptor):
    """OpenRouter; always asks for reasoning and identifies the app."""

    channel_name = "openrouter"
    pricing_file = "openrouter"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        super().setup_request_header(headers, meta)
        if settings.openrouter_referer:
            headers["HTTP-Referer"] = settings.openrouter_referer
        headers["X-Title"] = APP_TITLE

    def transform_request(self, request: GeneralOpenAIRequest, meta: Meta) -> None:
        super().transform_request(request, meta)
        setattr(request, "include_reasoning", True)


class SiliconFlowAdaptor(OpenAICompatibleAdaptor):
    channel_name = "siliconflow"
    pricing_file = "siliconflow"
    supports_images = True


class DoubaoAdaptor(OpenAICompatibleAdaptor):
    """Volcengine Ark: OpenAI shapes under ``/api/v3``."""

    channel_name = "doubao"
    pricing_file = "doubao"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{meta.base_url}/api/v3/embeddings"
        return f"{meta.base_url}/api/v3/chat/completions"


class StepFunAdaptor(OpenAICompatibleAdaptor):
    channel_name = "stepfun"
    pricing_file = "stepfun"


class NovitaAdaptor(OpenAICompatibleAdaptor):
    """Novita; the base URL already carries the ``/v3/openai`` prefix."""

    channel_name = "novita"
    pricing_file = "novita"

    def get_request_url(self, meta: Meta) -> str:
        path = request_path_for(meta)
        if path.startswith("/v1"):
            path = path[len("/v1"):]
        return f"{meta.base_url}{path}"


class AI360Adaptor(OpenAICompatibleAdaptor):
    channel_name = "360"
    pricing_file = "ai360"


class LingYiWanWuAdaptor(OpenAICompatibleAdaptor):
    channel_name = "lingyiwanwu"
    pricing_file = "lingyiwanwu"


class BaichuanAdaptor(OpenAICompatibleAdaptor):
    channel_name = "baichuan"
    pricing_file = "baichuan"


class MinimaxAdaptor(OpenAICompatibleAdaptor):
    """MiniMax chat completions v2."""

    channel_name = "minimax"
    pricing_file = "minimax"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.CHAT_COMPLETIONS or meta.mode == RelayMode.CLAUDE_MESSAGES:
            return f"{meta.base_url}/v1/text/chatcompletion_v2"
        return get_full_request_url(meta.base_url, request_path_for(meta), meta.api_type)


class BaiduAdaptor(OpenAICompatibleAdaptor):
    """Baidu Qianfan v2 (OpenAI shapes under ``/v2``)."""

    channel_name = "baidu"
    pricing_file = "baidu"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.CHAT_COMPLETIONS or meta.mode == RelayMode.CLAUDE_MESSAGES:
            return f"{meta.base_url}/v2/chat/completions"
        if meta.mode == RelayMode.EMBEDDINGS:
            return f"{meta.base_url}/v2/embeddings"
        if meta.mode == RelayMode.RERANK:
            return f"{meta.base_url}/v2/rerankers"
        raise ModelUnsupportedError(f"unsupported relay mode {meta.mode.name} for baidu v2")


class XunfeiV2Adaptor(OpenAICompatibleAdaptor):
    """
    Xunfei Spark through its OpenAI-compatible HTTP endpoint.

    The API key is the APIPassword of the Spark console.
    """

    channel_name = "xunfeiv2"
    pricing_file = "xunfeiv2"

    def get_request_url(self, meta: Meta) -> str:
        if meta.mode == RelayMode.CHAT_COMPLETIONS or meta.mode == RelayMode.CLAUDE_MESSAGES:
            return f"{meta.base_url}/v1/chat/completions"
        raise ModelUnsupportedError(f"unsupported relay mode {meta.mode.name} for xunfei v2")

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
Adaptor contract.

Every backend implements ``Adaptor``:

    init -> get_request_url -> setup_request_header -> convert_* ->
    do_request -> do_response

plus its price list. Adaptors are stateless apart from the ``meta`` set by
``init``; the registry hands out a fresh instance per request.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from relay_gateway.adaptors.common import do_request_helper, setup_common_request_header
from relay_gateway.exceptions import ModelUnsupportedError, RequestInvalidError, UnmarshalError
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest, ImageRequest, Usage
from relay_gateway.pricing import (
    DEFAULT_COMPLETION_RATIO,
    DEFAULT_MODEL_RATIO,
    PRICE_UNITS,
    ModelConfig,
)
from relay_gateway.relaymode import RelayMode

PRICING_DIR = Path(__file__).parent / "pricing"


# ==================================================================================================
# Price lists
# ==================================================================================================

@lru_cache(maxsize=None)
def load_model_pricing(name: str) -> Dict[str, ModelConfig]:
    """
    Loads ``pricing/<name>.json``.

    File format::

        {"unit": "usd", "models": {"gpt-4": {"price": 30, "completion_ratio": 2}}}

    ``price`` is per million tokens (or per image / per second) in the file
    unit, an entry may override the unit. The ratio is ``price`` times the
    unit multiplier of PRICE_UNITS.

    Args:
        name: File stem

    Returns:
        Model name -> ModelConfig (empty when the file is missing)
    """
    path = PRICING_DIR / f"{name}.json"
    if not path.exists():
        logger.warning(f"Pricing file not found: {path.name}")
        return {}

    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)

    default_unit = data.get("unit", "usd")
    pricing: Dict[str, ModelConfig] = {}
    for model_name, entry in data.get("models", {}).items():
        unit = entry.get("unit", default_unit)
        if unit not in PRICE_UNITS:
            logger.error(f"Unknown price unit '{unit}' for {model_name} in {path.name}")
            continue
        pricing[model_name] = ModelConfig(
            ratio=float(entry.get("price", 0)) * PRICE_UNITS[unit],
            completion_ratio=float(entry.get("completion_ratio", 1.0)),
            max_tokens=int(entry.get("max_tokens", 0)),
        )

    logger.debug(f"Loaded {len(pricing)} model prices from {path.name}")
    return pricing


# ==================================================================================================
# Response of do_response
# ==================================================================================================

@dataclass
class AdaptorResponse:
    """
    Translated backend response.

    Exactly one of ``body`` (buffered JSON-able value) and ``stream`` (async
    iterator of SSE frames) is set. For streams ``usage`` is filled in while
    the iterator is consumed and is final once it is exhausted.
    """
    usage: Usage
    body: Optional[Any] = None
    stream: Optional[AsyncIterator[str]] = None
    status_code: int = 200
    media_type: str = "application/json"

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


def read_json(raw: bytes) -> Any:
    """Decodes a buffered backend body, raising UnmarshalError on failure."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise UnmarshalError(f"failed to decode upstream response: {e}")


# ==================================================================================================
# Adaptor
# ==================================================================================================

class Adaptor(ABC):
    """
    Base class of all backend adaptors.

    Subclasses set ``channel_name`` and ``pricing_file`` and implement
    ``get_request_url``, ``convert_request`` and ``do_response``.
    """

    channel_name: str = "unknown"
    pricing_file: str = ""

    def __init__(self):
        self.meta: Optional[Meta] = None

    # ----- lifecycle -----

    def init(self, meta: Meta) -> None:
        """Caches the request meta. Calling it again with the same meta is a no-op."""
        self.meta = meta

    @abstractmethod
    def get_request_url(self, meta: Meta) -> str:
        """Full backend URL for the request."""

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        """Sets common headers and ``Authorization: Bearer <key>``."""
        setup_common_request_header(headers, meta)
        headers["Authorization"] = f"Bearer {meta.api_key}"

    # ----- translation -----

    @abstractmethod
    async def convert_request(
        self,
        request: GeneralOpenAIRequest,
        mode: RelayMode,
        ctx: RelayContext,
    ) -> Any:
        """Canonical request -> backend native body."""

    async def convert_image_request(self, request: ImageRequest, ctx: RelayContext) -> Any:
        raise ModelUnsupportedError(f"image generation is not supported by {self.channel_name}")

    async def convert_claude_request(self, request: ClaudeRequest, ctx: RelayContext) -> Any:
        """
        Claude Messages request -> backend native body.

        The default lowers the request to the canonical OpenAI shape, flags
        the context for re-elevation and delegates to convert_request().
        """
        from relay_gateway.claude_bridge import claude_to_openai_request

        if request is None:
            raise RequestInvalidError("request is nil")

        openai_request = claude_to_openai_request(request)
        ctx.claude_messages_conversion = True
        ctx.original_claude_request = request
        ctx.converted_request = openai_request
        return await self.convert_request(openai_request, RelayMode.CHAT_COMPLETIONS, ctx)

    # ----- transport -----

    async def do_request(self, meta: Meta, body: bytes, ctx: RelayContext) -> httpx.Response:
        return await do_request_helper(self, meta, body)

    @abstractmethod
    async def do_response(
        self,
        response: httpx.Response,
        meta: Meta,
        ctx: RelayContext,
    ) -> AdaptorResponse:
        """Translates the backend response and reports usage."""

    # ----- models & pricing -----

    def get_channel_name(self) -> str:
        return self.channel_name

    def get_default_model_pricing(self) -> Dict[str, ModelConfig]:
        if not self.pricing_file:
            return {}
        return load_model_pricing(self.pricing_file)

    def get_model_list(self) -> List[str]:
        return list(self.get_default_model_pricing().keys())

    def get_model_ratio(self, model_name: str) -> float:
        price = self.get_default_model_pricing().get(model_name)
        if price is not None:
            return price.ratio
        return DEFAULT_MODEL_RATIO

    def get_completion_ratio(self, model_name: str) -> float:
        price = self.get_default_model_pricing().get(model_name)
        if price is not None:
            return price.completion_ratio
        return DEFAULT_COMPLETION_RATIO

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
RelayGate - unified OpenAI & Claude Messages gateway for heterogeneous LLM providers.

Every incoming request is rewritten into the native wire format of the
configured backend, forwarded buffered or streaming, and its answer is
converted back into the caller's format with usage reported for billing.

Supports two API formats:
    - OpenAI API: /v1/chat/completions, /v1/embeddings, /v1/images/generations
    - Anthropic API: /v1/messages

Modules:
    - config: Settings and constants
    - models: OpenAI and Claude Messages Pydantic models
    - meta: Per-request meta and context
    - adaptors: Backend adaptors and their registry
    - claude_bridge: Claude Messages <-> OpenAI conversion
    - pricing: Layered pricing resolver
    - relay: Request orchestration and billing
    - signature_cache: Thinking signature cache
    - streaming: SSE framing helpers
    - parsers: AWS event stream and tool call parsers
    - http_client: HTTP client with retry logic
    - routes: FastAPI routes
    - exceptions: Error hierarchy and exception handlers
"""

# Version comes from config.py
from relay_gateway.config import APP_VERSION as __version__

__author__ = "Based on kiro-openai-gateway by Jwadow"

# Main components for convenient import
from relay_gateway.adaptors.base import Adaptor, AdaptorResponse
from relay_gateway.adaptors.registry import get_adaptor, get_adaptor_by_name
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.relay import RelayResult, compute_quota, relay_claude_messages, relay_image, relay_text
from relay_gateway.routes import router

# Configuration
from relay_gateway.config import (
    settings,
    APP_VERSION,
    APP_TITLE,
    APP_DESCRIPTION,
)

# Converters
from relay_gateway.claude_bridge import (
    claude_to_openai_request,
    openai_response_to_claude,
    openai_stream_to_claude,
)

# Pricing
from relay_gateway.pricing import (
    GlobalPricingManager,
    global_pricing_manager,
    resolve_model_ratio,
    resolve_completion_ratio,
)

# Exceptions
from relay_gateway.exceptions import (
    RelayError,
    relay_exception_handler,
    validation_exception_handler,
)

__all__ = [
    # Version
    "__version__",

    # Main classes
    "Adaptor",
    "AdaptorResponse",
    "get_adaptor",
    "get_adaptor_by_name",
    "Meta",
    "RelayContext",
    "RelayResult",
    "compute_quota",
    "relay_text",
    "relay_claude_messages",
    "relay_image",
    "router",

    # Configuration
    "settings",
    "APP_VERSION",
    "APP_TITLE",
    "APP_DESCRIPTION",

    # Converters
    "claude_to_openai_request",
    "openai_response_to_claude",
    "openai_stream_to_claude",

    # Pricing
    "GlobalPricingManager",
    "global_pricing_manager",
    "resolve_model_ratio",
    "resolve_completion_ratio",

    # Exceptions
    "RelayError",
    "relay_exception_handler",
    "validation_exception_handler",
]

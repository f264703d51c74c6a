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
FastAPI routes for RelayGate.

Contains the OpenAI-compatible endpoints, the Claude Messages endpoint and
the health and pricing endpoints. Every relayed request goes to the single
channel configured through the CHANNEL_* settings.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Security
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import APIKeyHeader
from loguru import logger

from relay_gateway.adaptors.registry import get_adaptor
from relay_gateway.config import APP_VERSION, settings
from relay_gateway.meta import Meta, RelayContext, meta_from_settings
from relay_gateway.models import ClaudeRequest, GeneralOpenAIRequest, ImageRequest, ModelList, OpenAIModel
from relay_gateway.pricing import global_pricing_manager
from relay_gateway.relay import RelayResult, relay_claude_messages, relay_image, relay_text
from relay_gateway.relaymode import RelayMode
from relay_gateway.signature_cache import get_signature_cache

DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
TOKEN_PREFIX = "token_"

router = APIRouter()

# --- Security scheme ---
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


# ==================================================================================================
# Authentication
# ==================================================================================================

def parse_token_id(token: str) -> int:
    """
    Extracts the caller token id from a bearer token.

    ``42`` and ``token_42`` both identify token 42; any other token maps
    to 0, which shares one signature cache namespace.
    """
    token = token.strip()
    if token.startswith(TOKEN_PREFIX):
        token = token[len(TOKEN_PREFIX):]
    return int(token) if token.isdigit() else 0


def _bearer(auth_header: str) -> str:
    if not auth_header:
        return ""
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return auth_header.strip()


async def verify_token(auth_header: str = Security(api_key_header)) -> int:
    """
    Verifies the Authorization header and returns the token id.

    Raises:
        HTTPException: 401 when the header is missing
    """
    token = _bearer(auth_header)
    if not token:
        logger.warning("Access attempt without API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return parse_token_id(token)


async def verify_anthropic_token(
    x_api_key: str = Header(None, alias="x-api-key"),
    auth_header: str = Security(api_key_header),
) -> int:
    """Like verify_token(), also accepting Anthropic's ``x-api-key`` header."""
    token = (x_api_key or "").strip() or _bearer(auth_header)
    if not token:
        logger.warning("Access attempt without API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")
    return parse_token_id(token)


# ==================================================================================================
# Helpers
# ==================================================================================================

def build_context(request: Request, token_id: int) -> RelayContext:
    """Request context from the query parameters (``reasoning_format``, ``thinking``)."""
    query = dict(request.query_params)
    return RelayContext(
        token_id=token_id,
        channel_id=settings.channel_id,
        reasoning_format=query.get("reasoning_format", ""),
        conversation_id=request.headers.get("x-conversation-id", ""),
        query=query,
    )


def build_meta(request: Request, model: str, mode: RelayMode, is_stream: bool, token_id: int) -> Meta:
    return meta_from_settings(
        model,
        mode,
        is_stream,
        token_id=token_id,
        request_url_path=request.url.path,
        headers=dict(request.headers),
    )


def render_result(result: RelayResult):
    """Turns a RelayResult into a FastAPI response."""
    if result.is_stream:
        return StreamingResponse(
            result.stream,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
    return JSONResponse(status_code=result.status_code, content=result.body)


# ==================================================================================================
# Health & info
# ==================================================================================================

@router.get("/health")
async def health(request: Request):
    """
    Health check.

    During shutdown, returns 503 Service Unavailable.
    """
    if getattr(request.app.state, "is_shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "message": "Service is shutting down"},
        )

    adaptor = get_adaptor(settings.channel_type)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "channel": adaptor.get_channel_name() if adaptor else None,
        "signature_cache_size": get_signature_cache().size(),
    }


@router.get("/v1/models", response_model=ModelList)
async def get_models(token_id: int = Depends(verify_token)):
    """
    Returns the models of the configured channel.

    The adaptor's built-in model list plus the names exposed through the
    channel model mapping.
    """
    adaptor = get_adaptor(settings.channel_type)
    if adaptor is None:
        return ModelList(data=[])

    meta = meta_from_settings("", RelayMode.CHAT_COMPLETIONS, False)
    names = list(dict.fromkeys(adaptor.get_model_list() + list(meta.model_mapping.keys())))
    return ModelList(data=[OpenAIModel(id=name, owned_by=adaptor.get_channel_name()) for name in names])


@router.get("/v1/pricing/stats")
async def pricing_stats(token_id: int = Depends(verify_token)):
    """Size of the global pricing registry and its contributors."""
    models, adapters = global_pricing_manager.stats()
    return {
        "models": models,
        "adapters": adapters,
        "contributors": global_pricing_manager.get_contributing_adapters(),
    }


# ==================================================================================================
# Relay endpoints
# ==================================================================================================

@router.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    request_data: GeneralOpenAIRequest,
    token_id: int = Depends(verify_token),
):
    """
    Chat completions endpoint - OpenAI API compatible.

    Returns:
        StreamingResponse for streaming mode
        JSONResponse for non-streaming mode
    """
    logger.info(f"Request to /v1/chat/completions (model={request_data.model}, stream={request_data.stream})")

    ctx = build_context(request, token_id)
    meta = build_meta(request, request_data.model, RelayMode.CHAT_COMPLETIONS, request_data.stream, token_id)
    result = await relay_text(request_data, meta, ctx)
    return render_result(result)


@router.post("/v1/embeddings")
async def embeddings(
    request: Request,
    request_data: GeneralOpenAIRequest,
    token_id: int = Depends(verify_token),
):
    """Embeddings endpoint - OpenAI API compatible."""
    logger.info(f"Request to /v1/embeddings (model={request_data.model})")

    ctx = build_context(request, token_id)
    meta = build_meta(request, request_data.model, RelayMode.EMBEDDINGS, False, token_id)
    result = await relay_text(request_data, meta, ctx)
    return render_result(result)


@router.post("/v1/messages")
async def claude_messages(
    request: Request,
    request_data: ClaudeRequest,
    token_id: int = Depends(verify_anthropic_token),
):
    """
    Anthropic Messages API endpoint - Anthropic SDK compatible.

    Claude-family channels receive the request natively; other channels
    get it translated and their answer converted back.
    """
    logger.info(f"Request to /v1/messages (model={request_data.model}, stream={request_data.stream})")

    ctx = build_context(request, token_id)
    meta = build_meta(request, request_data.model, RelayMode.CLAUDE_MESSAGES, bool(request_data.stream), token_id)
    if not any(name.lower() == "anthropic-version" for name in meta.headers):
        meta.headers["anthropic-version"] = DEFAULT_ANTHROPIC_VERSION

    result = await relay_claude_messages(request_data, meta, ctx)
    return render_result(result)


@router.post("/v1/images/generations")
async def image_generations(
    request: Request,
    request_data: ImageRequest,
    token_id: int = Depends(verify_token),
):
    """Image generation endpoint - OpenAI API compatible."""
    logger.info(f"Request to /v1/images/generations (model={request_data.model}, n={request_data.n})")

    ctx = build_context(request, token_id)
    meta = build_meta(request, request_data.model, RelayMode.IMAGES_GENERATIONS, False, token_id)
    result = await relay_image(request_data, meta, ctx)
    return render_result(result)

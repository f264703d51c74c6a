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
RelayGate errors and exception handlers.

Every failure of the translation pipeline is a ``RelayError`` subclass
carrying its kind and HTTP status. Errors raised before the first byte is
sent become JSON error responses; errors raised mid-stream are rendered as
a protocol-native terminal SSE frame by the stream translators.
"""

import json
from typing import Any, Dict, List, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger


class RelayError(Exception):
    """
    Base class for all relay failures.

    Attributes:
        kind: Error taxonomy kind
        status_code: HTTP status returned to the caller
        message: Human readable message
        error_type: ``type`` field of the rendered error
        code: ``code`` field of the rendered error
    """

    kind = "fatal_internal"
    default_status = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status
        self.error_type = error_type or self.kind
        self.code = code or self.kind

    def to_openai(self) -> Dict[str, Any]:
        """Renders the error in OpenAI format."""
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": None,
                "code": self.code,
            }
        }

    def to_claude(self) -> Dict[str, Any]:
        """Renders the error in Claude Messages format."""
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "message": self.message,
            },
        }


class RequestInvalidError(RelayError):
    kind = "request_invalid"
    default_status = 400


class ModelUnsupportedError(RelayError):
    kind = "model_unsupported"
    default_status = 400


class UpstreamUnavailableError(RelayError):
    kind = "upstream_unavailable"
    default_status = 503


class UpstreamError(RelayError):
    """Backend answered with a 4xx/5xx; the status is surfaced as-is."""
    kind = "upstream_error"
    default_status = 502


class StreamReadError(RelayError):
    kind = "stream_read_failed"
    default_status = 500


class UnmarshalError(RelayError):
    kind = "unmarshal_failed"
    default_status = 500


class ConfigMissingError(RelayError):
    kind = "config_missing"
    default_status = 500


class FatalInternalError(RelayError):
    kind = "fatal_internal"
    default_status = 500


# ==================================================================================================
# Rendering helpers
# ==================================================================================================

def openai_error_chunk(err: RelayError) -> str:
    """Terminal SSE frame for an OpenAI stream."""
    return f"data: {json.dumps(err.to_openai(), ensure_ascii=False)}\n\n"


def claude_error_event(err: RelayError) -> str:
    """Terminal SSE event for a Claude Messages stream."""
    return f"event: error\ndata: {json.dumps(err.to_claude(), ensure_ascii=False)}\n\n"


def upstream_error_from_response(status_code: int, body: bytes) -> UpstreamError:
    """
    Builds an UpstreamError from a failed backend response.

    Understands the OpenAI / Anthropic / Gemini ``{"error": {...}}`` shapes,
    the Tencent ``{"Response": {"Error": {...}}}`` shape and falls back to
    the raw body text.

    Args:
        status_code: Backend HTTP status
        body: Raw response body

    Returns:
        UpstreamError carrying the backend status
    """
    text = body.decode("utf-8", errors="replace")
    message = text[:1000] or f"upstream returned status {status_code}"
    error_type = "upstream_error"
    code = None

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            message = error.get("message") or message
            error_type = error.get("type") or error.get("status") or error_type
            if error.get("code") is not None:
                code = str(error.get("code"))
        elif isinstance(error, str):
            message = error
        elif isinstance(data.get("Response"), dict) and isinstance(data["Response"].get("Error"), dict):
            tencent_error = data["Response"]["Error"]
            message = tencent_error.get("Message") or message
            code = tencent_error.get("Code")
        elif data.get("message"):
            message = data["message"]

    logger.warning(f"Upstream error {status_code}: {message[:200]}")
    return UpstreamError(message, status_code=status_code, error_type=error_type, code=code)


# ==================================================================================================
# FastAPI handlers
# ==================================================================================================

def sanitize_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Converts validation errors into a JSON-serializable form.

    Pydantic may put bytes objects into the 'input' field, which json cannot
    encode; they are decoded to strings here.

    Args:
        errors: Validation errors from Pydantic

    Returns:
        Errors with bytes decoded to strings
    """
    sanitized = []
    for error in errors:
        sanitized_error = {}
        for key, value in error.items():
            if isinstance(value, bytes):
                sanitized_error[key] = value.decode("utf-8", errors="replace")
            elif isinstance(value, (list, tuple)):
                sanitized_error[key] = [
                    v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
                    for v in value
                ]
            elif key == "ctx" and isinstance(value, dict):
                sanitized_error[key] = {k: str(v) for k, v in value.items()}
            else:
                sanitized_error[key] = value
        sanitized.append(sanitized_error)
    return sanitized


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handles Pydantic validation errors.

    Logs the details and answers 422 with the sanitized errors.

    Args:
        request: FastAPI request
        exc: Validation exception

    Returns:
        JSONResponse with status 422
    """
    body = await request.body()
    body_str = body.decode("utf-8", errors="replace")

    sanitized_errors = sanitize_validation_errors(exc.errors())

    logger.error(f"Validation error (422): {sanitized_errors}")
    logger.error(f"Request body: {body_str[:500]}...")

    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors, "body": body_str[:500]},
    )


async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
    """
    Renders a RelayError raised before any bytes were sent.

    Claude Messages endpoints get the Claude error shape, every other path
    the OpenAI one.
    """
    if exc.status_code >= 500:
        logger.error(f"[{exc.kind}] {request.url.path}: {exc.message}")
    else:
        logger.warning(f"[{exc.kind}] {request.url.path}: {exc.message}")

    if request.url.path.startswith("/v1/messages"):
        content = exc.to_claude()
    else:
        content = exc.to_openai()
    return JSONResponse(status_code=exc.status_code, content=content)

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
SSE framing helpers.

Contains:
- A line scanner over an upstream body with a bounded line length
- Formatters for OpenAI ``data:`` frames and Claude ``event:`` frames
- Rendering of stream chunk models
"""

import json
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from relay_gateway.config import STREAM_LINE_MAX_BYTES
from relay_gateway.exceptions import StreamReadError
from relay_gateway.models import ChatCompletionsStreamResponse

SSE_DONE = "data: [DONE]\n\n"

DATA_PREFIX = "data:"
EVENT_PREFIX = "event:"


async def iter_lines(
    response: httpx.Response,
    max_line_bytes: int = STREAM_LINE_MAX_BYTES,
) -> AsyncIterator[str]:
    """
    Splits an upstream body into lines.

    Both ``\\n`` and ``\\r\\n`` terminators are accepted. A line longer than
    ``max_line_bytes`` aborts the stream.

    Args:
        response: Streamed httpx response
        max_line_bytes: Maximum length of one line

    Yields:
        Decoded lines without their terminator

    Raises:
        StreamReadError: Line too long or the body could not be read
    """
    buffer = b""
    try:
        async for chunk in response.aiter_bytes():
            buffer += chunk
            while True:
                newline = buffer.find(b"\n")
                if newline == -1:
                    break
                line, buffer = buffer[:newline], buffer[newline + 1:]
                if len(line) > max_line_bytes:
                    raise StreamReadError(f"stream line exceeds {max_line_bytes} bytes")
                yield line.rstrip(b"\r").decode("utf-8", errors="replace")

            if len(buffer) > max_line_bytes:
                raise StreamReadError(f"stream line exceeds {max_line_bytes} bytes")
    except httpx.HTTPError as e:
        raise StreamReadError(f"failed to read upstream stream: {e}")

    if buffer:
        yield buffer.rstrip(b"\r").decode("utf-8", errors="replace")


def strip_data_prefix(line: str) -> Optional[str]:
    """
    Returns the payload of a ``data:`` line.

    Any amount of whitespace after the colon is dropped; non-data lines
    return None.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


def format_sse_data(payload: Any) -> str:
    """OpenAI style frame: ``data: <json>``."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def format_sse_event(event_type: str, payload: Dict[str, Any]) -> str:
    """Claude style frame: ``event: <type>`` followed by ``data: <json>``."""
    return f"event: {event_type}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def render_stream_chunk(chunk: ChatCompletionsStreamResponse) -> str:
    """
    Renders a chat completion chunk as an SSE frame.

    None fields are dropped, except ``finish_reason`` which OpenAI clients
    expect on every choice.
    """
    data = chunk.model_dump(exclude_none=True)
    for choice, model_choice in zip(data.get("choices", []), chunk.choices):
        choice["finish_reason"] = model_choice.finish_reason
    return format_sse_data(data)

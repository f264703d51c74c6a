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
Token counting.

Prompt tokens are pre-counted with tiktoken (cl100k_base) before a request is
forwarded, so billing has a number even when a backend never reports usage.
Completion tokens that a backend fails to report fall back to the
deterministic ``ceil(len(text) / 4)`` heuristic so the figure is reproducible
and a non-empty reply never counts as zero.

Claude tokenizes roughly 15% more tokens than cl100k_base; the correction
factor is applied when counting prompts for Claude models.
"""

import json
from typing import List, Optional

from loguru import logger

from relay_gateway.models import CONTENT_TYPE_IMAGE_URL, CONTENT_TYPE_TEXT, Message, Tool

# Lazily loaded tiktoken encoding
_encoding = None

CLAUDE_CORRECTION_FACTOR = 1.15

# Flat estimate for one image part
IMAGE_TOKENS = 100


def _get_encoding():
    """
    Lazily initializes the tokenizer.

    Returns:
        tiktoken.Encoding, or None when tiktoken is unusable
    """
    global _encoding
    if _encoding is None:
        try:
            import tiktoken
            _encoding = tiktoken.get_encoding("cl100k_base")
            logger.debug("[Tokenizer] Initialized tiktoken with cl100k_base encoding")
        except Exception as e:
            logger.error(f"[Tokenizer] Failed to initialize tiktoken: {e}")
            _encoding = False
    return _encoding if _encoding else None


def heuristic_tokens(text: str) -> int:
    """Deterministic ~4 chars/token estimate used when a backend omits usage."""
    return (len(text) + 3) // 4


def count_tokens(text: str) -> int:
    """
    Counts tokens in text with cl100k_base.

    Args:
        text: Text to count

    Returns:
        Approximate token count
    """
    if not text:
        return 0

    encoding = _get_encoding()
    if encoding:
        try:
            return len(encoding.encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning(f"[Tokenizer] Error encoding text: {e}")
    return heuristic_tokens(text)


def count_message_tokens(messages: List[Message], model: str = "") -> int:
    """
    Counts prompt tokens of a chat request.

    Accounts for per-message framing (~4 tokens), role, text parts, images,
    tool calls and tool_call_id.

    Args:
        messages: Request messages
        model: Model name; Claude models get the correction factor

    Returns:
        Approximate prompt token count
    """
    if not messages:
        return 0

    total_tokens = 0
    for message in messages:
        total_tokens += 4
        total_tokens += count_tokens(message.role)

        for part in message.parse_content():
            if part.type == CONTENT_TYPE_TEXT:
                total_tokens += count_tokens(part.text or "")
            elif part.type == CONTENT_TYPE_IMAGE_URL:
                total_tokens += IMAGE_TOKENS

        for tool_call in message.tool_calls or []:
            total_tokens += 4
            total_tokens += count_tokens(tool_call.function.name)
            arguments = tool_call.function.arguments
            if arguments is not None and not isinstance(arguments, str):
                arguments = json.dumps(arguments, ensure_ascii=False)
            total_tokens += count_tokens(arguments or "")

        if message.tool_call_id:
            total_tokens += count_tokens(message.tool_call_id)

    total_tokens += 3

    if "claude" in model:
        return int(total_tokens * CLAUDE_CORRECTION_FACTOR)
    return total_tokens


def count_tools_tokens(tools: Optional[List[Tool]]) -> int:
    """Counts tokens of tool definitions."""
    if not tools:
        return 0

    total_tokens = 0
    for tool in tools:
        total_tokens += 4
        total_tokens += count_tokens(tool.function.name)
        total_tokens += count_tokens(tool.function.description or "")
        if tool.function.parameters:
            total_tokens += count_tokens(json.dumps(tool.function.parameters, ensure_ascii=False))
    return total_tokens

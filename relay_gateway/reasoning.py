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
Reasoning-content routing.

A model's chain of thought can be surfaced under three field names; the
caller picks one through the ``reasoning_format`` query parameter and the
text is written into exactly that field.
"""

from typing import Any

from loguru import logger

REASONING_FORMAT_REASONING_CONTENT = "reasoning_content"
REASONING_FORMAT_REASONING = "reasoning"
REASONING_FORMAT_THINKING = "thinking"

_REASONING_FIELDS = (
    REASONING_FORMAT_REASONING_CONTENT,
    REASONING_FORMAT_REASONING,
    REASONING_FORMAT_THINKING,
)


def normalize_reasoning_format(reasoning_format: str) -> str:
    """
    Resolves the field name for a requested reasoning format.

    Unspecified and unknown formats use ``reasoning``; unknown ones are
    logged.

    Args:
        reasoning_format: Raw query parameter value

    Returns:
        One of reasoning_content, reasoning, thinking
    """
    fmt = (reasoning_format or "").strip().lower()
    if fmt in _REASONING_FIELDS:
        return fmt
    if fmt:
        logger.warning(f"Unknown reasoning_format '{reasoning_format}', using 'reasoning'")
    return REASONING_FORMAT_REASONING


def set_reasoning_content(target: Any, reasoning_format: str, text: str) -> None:
    """
    Writes reasoning text into the field selected by the caller.

    Only one field is ever populated; the other two are cleared.

    Args:
        target: Message or StreamDelta
        reasoning_format: Caller requested format
        text: Reasoning text
    """
    field = normalize_reasoning_format(reasoning_format)
    for name in _REASONING_FIELDS:
        setattr(target, name, text if name == field else None)

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
RelayGate helper functions.

ID generators, timestamps and data-URL handling shared by the adaptors.
"""

import mimetypes
import time
import uuid
from typing import Optional, Tuple


def generate_completion_id() -> str:
    """
    Generates a unique chat completion ID.

    Returns:
        ID in the form "chatcmpl-{uuid_hex}"
    """
    return f"chatcmpl-{uuid.uuid4().hex}"


def generate_tool_call_id() -> str:
    """
    Generates a unique tool call ID.

    Returns:
        ID in the form "call_{uuid_hex[:8]}"
    """
    return f"call_{uuid.uuid4().hex[:8]}"


def generate_message_id() -> str:
    """Generates a Claude Messages message ID."""
    return f"msg_{uuid.uuid4().hex[:24]}"


def get_timestamp() -> int:
    return int(time.time())


def is_data_url(url: str) -> bool:
    return url.startswith("data:")


def split_data_url(url: str) -> Optional[Tuple[str, str]]:
    """
    Splits a ``data:<mime>;base64,<payload>`` URL.

    Args:
        url: Image URL

    Returns:
        (mime type, base64 payload), or None when the URL is not a base64
        data URL.

    Example:
        >>> split_data_url("data:image/png;base64,iVBOR")
        ('image/png', 'iVBOR')
    """
    if not is_data_url(url):
        return None
    header, sep, payload = url.partition(",")
    if not sep:
        return None
    header = header[len("data:"):]
    if not header.endswith(";base64"):
        return None
    mime_type = header[: -len(";base64")] or "application/octet-stream"
    return mime_type, payload


def guess_mime_type(url: str, default: str = "image/jpeg") -> str:
    """Guesses the MIME type of a remote resource from its URL path."""
    path = url.split("?", 1)[0]
    mime_type, _ = mimetypes.guess_type(path)
    return mime_type or default

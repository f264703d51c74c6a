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
Transport helpers shared by the adaptors.
"""

from typing import TYPE_CHECKING, Dict

import httpx
from loguru import logger

from relay_gateway.exceptions import upstream_error_from_response
from relay_gateway.http_client import send_request
from relay_gateway.meta import Meta

if TYPE_CHECKING:
    from relay_gateway.adaptors.base import Adaptor

# Inbound headers with this prefix are forwarded to backends
EXTRA_REQUEST_HEADER_PREFIX = "x-"

# Hop-by-hop and credential headers that are never forwarded
_BLOCKED_HEADERS = {"x-api-key", "x-forwarded-for", "x-real-ip", "x-request-id"}


def setup_common_request_header(headers: Dict[str, str], meta: Meta) -> None:
    """
    Sets the headers every backend gets.

    ``Content-Type: application/json``, ``X-*`` headers of the inbound
    request, and ``Accept: text/event-stream`` for streams unless the caller
    sent its own Accept header.
    """
    headers["Content-Type"] = "application/json"

    accept = None
    for name, value in meta.headers.items():
        lowered = name.lower()
        if lowered == "accept":
            accept = value
        elif lowered.startswith(EXTRA_REQUEST_HEADER_PREFIX) and lowered not in _BLOCKED_HEADERS:
            headers[name] = value

    if accept:
        headers["Accept"] = accept
    elif meta.is_stream:
        headers["Accept"] = "text/event-stream"


async def do_request_helper(adaptor: "Adaptor", meta: Meta, body: bytes, method: str = "POST") -> httpx.Response:
    """
    Sends a converted request to the backend.

    Args:
        adaptor: Adaptor providing URL and headers
        meta: Request meta
        body: Serialized request body
        method: HTTP method

    Returns:
        Backend response (streamed when ``meta.is_stream``)
    """
    url = adaptor.get_request_url(meta)
    headers: Dict[str, str] = {}
    adaptor.setup_request_header(headers, meta)

    logger.debug(f"[{adaptor.get_channel_name()}] {method} {url}")
    return await send_request(method, url, headers=headers, content=body, stream=meta.is_stream)


async def raise_for_upstream_status(response: httpx.Response) -> None:
    """
    Turns a 4xx/5xx backend answer into an UpstreamError.

    The body is read and the response closed before raising.
    """
    if response.status_code < 400:
        return
    try:
        body = await response.aread()
    finally:
        await response.aclose()
    raise upstream_error_from_response(response.status_code, body)

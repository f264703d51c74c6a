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
Outbound HTTP client.

One pooled httpx.AsyncClient is shared by every adaptor. Timeouts are set
per request: buffered calls get a read timeout, streaming calls only a
connect timeout so long generations are bounded by the caller instead.
Supports HTTP and SOCKS5 proxies.
"""

import asyncio
from typing import Any, Dict, Optional, Union
from urllib.parse import urlparse

import httpx
from loguru import logger

from relay_gateway.config import BASE_RETRY_DELAY, MAX_RETRIES, settings
from relay_gateway.exceptions import UpstreamUnavailableError


def _build_proxy_url() -> Optional[str]:
    """
    Builds the proxy URL.

    Proxy credentials, when configured, are embedded in the URL.

    Returns:
        Proxy URL or None
    """
    proxy_url = (settings.proxy_url or "").strip()
    if not proxy_url:
        return None

    if settings.proxy_username and settings.proxy_password:
        parsed = urlparse(proxy_url)
        auth = f"{settings.proxy_username}:{settings.proxy_password}"
        if parsed.port:
            proxy_url = f"{parsed.scheme}://{auth}@{parsed.hostname}:{parsed.port}"
        else:
            proxy_url = f"{parsed.scheme}://{auth}@{parsed.hostname}"

    return proxy_url


class GlobalHTTPClientManager:
    """
    Global HTTP client manager.

    Maintains a global connection pool to avoid creating new clients for each request.
    Timeout is configured per-request, not at client level.
    """

    def __init__(self):
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> httpx.AsyncClient:
        """
        Gets or creates the HTTP client.

        Returns:
            HTTP client instance
        """
        async with self._lock:
            if self._client is None or self._client.is_closed:
                limits = httpx.Limits(
                    max_connections=100,
                    max_keepalive_connections=20,
                    keepalive_expiry=60.0,
                )

                proxy_url = _build_proxy_url()
                if proxy_url:
                    logger.info(f"HTTP client uses proxy: {settings.proxy_url}")

                self._client = httpx.AsyncClient(
                    timeout=None,
                    follow_redirects=True,
                    limits=limits,
                    http2=False,
                    proxy=proxy_url,
                )
                logger.debug("Created new global HTTP client with connection pool")

            return self._client

    async def close(self) -> None:
        """Closes the global HTTP client."""
        async with self._lock:
            if self._client and not self._client.is_closed:
                await self._client.aclose()
                logger.debug("Closed global HTTP client")
            self._client = None


global_http_client_manager = GlobalHTTPClientManager()


def _retry_delay(attempt: int) -> float:
    return BASE_RETRY_DELAY * (2 ** attempt)


async def send_request(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    content: Optional[Union[bytes, str]] = None,
    json_data: Optional[Any] = None,
    stream: bool = False,
    max_retries: int = MAX_RETRIES,
) -> httpx.Response:
    """
    Executes an upstream request with retry logic.

    Connection failures, timeouts, 429 and 5xx answers are retried with
    exponential backoff. Once retries are exhausted an error response is
    returned to the caller as-is, while a connection failure raises.

    Args:
        method: HTTP method
        url: Full upstream URL
        headers: Request headers
        content: Raw request body
        json_data: JSON request body (used when content is None)
        stream: Open the response body as a stream
        max_retries: Number of attempts

    Returns:
        HTTP response; streamed responses must be closed by the caller

    Raises:
        UpstreamUnavailableError: The backend could not be reached
    """
    client = await global_http_client_manager.get_client()
    if stream:
        timeout = httpx.Timeout(None, connect=settings.stream_connect_timeout)
    else:
        timeout = httpx.Timeout(settings.request_timeout, connect=settings.stream_connect_timeout)

    attempts = max(1, max_retries)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            request = client.build_request(
                method,
                url,
                headers=headers,
                content=content,
                json=json_data if content is None else None,
                timeout=timeout,
            )
            response = await client.send(request, stream=stream)

            retryable = response.status_code == 429 or 500 <= response.status_code < 600
            if not retryable or attempt == attempts - 1:
                return response

            delay = _retry_delay(attempt)
            logger.warning(
                f"Received {response.status_code} from {urlparse(url).netloc}, "
                f"waiting {delay}s (attempt {attempt + 1}/{attempts})"
            )
            await response.aclose()
            await asyncio.sleep(delay)

        except httpx.TimeoutException as e:
            last_error = e
            logger.warning(f"Timeout calling {urlparse(url).netloc} (attempt {attempt + 1}/{attempts})")
            if attempt < attempts - 1:
                await asyncio.sleep(_retry_delay(attempt))

        except httpx.RequestError as e:
            last_error = e
            logger.warning(f"Request error: {e} (attempt {attempt + 1}/{attempts})")
            if attempt < attempts - 1:
                await asyncio.sleep(_retry_delay(attempt))

    raise UpstreamUnavailableError(f"Upstream unavailable after {attempts} attempts: {last_error}")


async def close_global_http_client():
    """Closes the global HTTP client (called on app shutdown)."""
    await global_http_client_manager.close()

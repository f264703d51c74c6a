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
Redis connection manager.

Owns the optional Redis pool used as the shared thinking-signature backend.
When Redis is unreachable the manager reports itself unavailable and every
caller degrades to its in-process implementation; a reconnect is attempted
every 30 seconds.
"""

import asyncio
from typing import Optional

import redis.asyncio as aioredis
from loguru import logger

RECONNECT_INTERVAL = 30


class RedisManager:
    """
    Redis connection pool manager with graceful degradation.
    """

    def __init__(self):
        self._pool = None
        self._client = None
        self._available: bool = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._url: str = ""
        self._max_connections: int = 50

    async def initialize(self, redis_url: str, max_connections: int = 50) -> None:
        """
        Initializes the connection pool.

        Args:
            redis_url: redis://host:port/db
            max_connections: Pool size
        """
        self._url = redis_url
        self._max_connections = max_connections

        if not redis_url:
            logger.info("REDIS_URL not configured, signatures stay in process memory")
            return

        try:
            self._create_pool()
            await self._client.ping()
            self._available = True
            logger.info(f"Connected to Redis: {self._mask_url(redis_url)}")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}, running in degraded mode")
            self._available = False
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def _create_pool(self) -> None:
        self._pool = aioredis.ConnectionPool.from_url(
            self._url,
            max_connections=self._max_connections,
            decode_responses=True,
        )
        self._client = aioredis.Redis(connection_pool=self._pool)

    async def close(self) -> None:
        """Closes the pool and stops reconnecting."""
        if self._reconnect_task:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

        if self._available:
            logger.info("Redis connection closed")
        self._available = False

    @property
    def is_available(self) -> bool:
        return self._available

    async def get_client(self):
        """
        Returns the Redis client.

        Returns:
            Redis client, or None when Redis is unavailable
        """
        if not self._available or not self._client:
            return None

        try:
            await self._client.ping()
            return self._client
        except Exception:
            self._available = False
            if not self._reconnect_task or self._reconnect_task.done():
                self._reconnect_task = asyncio.create_task(self._reconnect_loop())
            return None

    async def _reconnect_loop(self) -> None:
        """Retries the connection every RECONNECT_INTERVAL seconds."""
        while not self._available:
            await asyncio.sleep(RECONNECT_INTERVAL)
            try:
                if not self._url:
                    break
                if not self._pool:
                    self._create_pool()
                await self._client.ping()
                self._available = True
                logger.info(f"Reconnected to Redis: {self._mask_url(self._url)}")
                break
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"Redis reconnect failed: {e}, retrying in {RECONNECT_INTERVAL}s")

    def _mask_url(self, url: str) -> str:
        """Hides credentials in a Redis URL."""
        if "@" in url:
            return f"redis://***@{url.split('@')[-1]}"
        return url


redis_manager = RedisManager()

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
Thinking signature cache.

Anthropic's extended thinking returns an opaque signature per thinking
block, and the block is only accepted back on a follow-up turn when the
signature comes with it. OpenAI-shaped clients drop the signature, so the
gateway remembers it here, keyed by caller token, conversation prefix and
block position:

    thinking_sig:<token>:<conversation>:<message_index>:<thinking_index>

Entries live in process memory (dict plus a min-heap of expiry times) and
can optionally be mirrored to a shared backend such as Redis. Reads and
writes try the backend first and fall back to memory.
"""

import asyncio
import hashlib
import heapq
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from relay_gateway.config import SIGNATURE_CACHE_CLEANUP_INTERVAL, SIGNATURE_CACHE_TTL
from relay_gateway.models import Message
from relay_gateway.redis_manager import redis_manager

# Characters of each user message that take part in the conversation hash
CONVERSATION_CONTENT_LIMIT = 100


# ==================================================================================================
# Key derivation
# ==================================================================================================

def generate_signature_key(token_id: str, conversation_id: str, message_index: int, thinking_index: int) -> str:
    """
    Builds the cache key of one thinking block.

    Args:
        token_id: Caller token in ``token_<id>`` form
        conversation_id: Result of generate_conversation_id()
        message_index: Position of the assistant message in the upstream request
        thinking_index: Position of the thinking block within that message

    Returns:
        Cache key
    """
    return f"thinking_sig:{token_id}:{conversation_id}:{message_index}:{thinking_index}"


def generate_conversation_id(messages: List[Message]) -> str:
    """
    Derives a deterministic conversation ID from a message sequence.

    Only user message text (first 100 characters) and the number of tool
    calls of assistant messages take part, so the ID survives reasoning text
    being added to earlier turns but changes with every new user input.

    Args:
        messages: Conversation prefix

    Returns:
        ``conv_`` followed by the first 8 bytes of a SHA-256 digest in hex
    """
    parts = []
    for i, message in enumerate(messages):
        if message.role == "user":
            content = message.string_content()[:CONVERSATION_CONTENT_LIMIT]
            parts.append(f"u{i}:{content};")
        elif message.role == "assistant" and message.tool_calls:
            parts.append(f"a{i}:tools:{len(message.tool_calls)};")

    signature = "".join(parts) or "empty_conversation"
    digest = hashlib.sha256(signature.encode("utf-8")).digest()
    return f"conv_{digest[:8].hex()}"


# ==================================================================================================
# Backends
# ==================================================================================================

class SignatureBackend(ABC):
    """Shared store a cache can mirror signatures to."""

    @abstractmethod
    async def store(self, key: str, signature: str, ttl: int) -> None:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...


class RedisSignatureBackend(SignatureBackend):
    """
    Redis backend on top of the global RedisManager.

    Raises ConnectionError while Redis is unavailable so the cache falls
    back to memory.
    """

    async def _client(self):
        client = await redis_manager.get_client()
        if client is None:
            raise ConnectionError("Redis is not available")
        return client

    async def store(self, key: str, signature: str, ttl: int) -> None:
        client = await self._client()
        await client.set(key, signature, ex=ttl)

    async def get(self, key: str) -> Optional[str]:
        client = await self._client()
        return await client.get(key)

    async def delete(self, key: str) -> None:
        client = await self._client()
        await client.delete(key)


# ==================================================================================================
# Cache
# ==================================================================================================

class SignatureCache:
    """
    TTL cache of thinking signatures.

    The in-memory part is guarded by a lock so it can be used from both the
    event loop and worker threads. Expired entries are dropped lazily on read
    and by a periodic sweep.
    """

    def __init__(
        self,
        ttl: int = SIGNATURE_CACHE_TTL,
        backend: Optional[SignatureBackend] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl: Entry lifetime in seconds
            backend: Optional shared backend
            clock: Monotonic time source
        """
        self._ttl = ttl
        self._backend = backend
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._expiry_heap: List[Tuple[float, str]] = []
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def ttl(self) -> int:
        return self._ttl

    def set_backend(self, backend: Optional[SignatureBackend]) -> None:
        self._backend = backend

    # ----- in-memory operations -----

    def store_local(self, key: str, signature: str) -> None:
        expires_at = self._clock() + self._ttl
        with self._lock:
            self._entries[key] = (signature, expires_at)
            heapq.heappush(self._expiry_heap, (expires_at, key))

    def get_local(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            signature, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return signature

    def delete_local(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    # ----- public operations -----

    async def store(self, key: str, signature: str) -> None:
        """
        Stores a signature.

        The backend is tried first; on failure the signature is kept in
        memory instead.
        """
        if self._backend is not None:
            try:
                await self._backend.store(key, signature, self._ttl)
                return
            except Exception as e:
                logger.debug(f"Signature backend store failed, keeping in memory: {e}")
        self.store_local(key, signature)

    async def get(self, key: str) -> Optional[str]:
        """
        Looks up a signature.

        A backend miss or failure falls through to memory.
        """
        if self._backend is not None:
            try:
                signature = await self._backend.get(key)
                if signature is not None:
                    return signature
            except Exception as e:
                logger.debug(f"Signature backend get failed, using memory: {e}")
        return self.get_local(key)

    async def delete(self, key: str) -> None:
        if self._backend is not None:
            try:
                await self._backend.delete(key)
            except Exception as e:
                logger.debug(f"Signature backend delete failed: {e}")
        self.delete_local(key)

    def size(self) -> int:
        """Number of in-memory entries, expired ones included until swept."""
        with self._lock:
            return len(self._entries)

    def cleanup_expired(self) -> int:
        """
        Removes expired in-memory entries.

        Pops heap items until the first one in the future. A heap item whose
        entry was re-stored with a later expiry is discarded without touching
        the entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        with self._lock:
            while self._expiry_heap and self._expiry_heap[0][0] <= now:
                expires_at, key = heapq.heappop(self._expiry_heap)
                entry = self._entries.get(key)
                if entry is not None and entry[1] <= now:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug(f"Signature cache cleanup removed {removed} expired entries")
        return removed

    # ----- background sweeper -----

    async def start_cleanup(self, interval: float = SIGNATURE_CACHE_CLEANUP_INTERVAL) -> None:
        """Starts the periodic sweep task."""
        if self._cleanup_task and not self._cleanup_task.done():
            logger.warning("Signature cache cleanup task is already running")
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))
        logger.info(f"Started signature cache cleanup task (every {interval}s)")

    async def stop_cleanup(self) -> None:
        """Stops the periodic sweep task."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                logger.info("Stopped signature cache cleanup task")
        self._cleanup_task = None

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                self.cleanup_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error in signature cache cleanup: {e}")


_signature_cache: Optional[SignatureCache] = None
_signature_cache_lock = threading.Lock()


def get_signature_cache() -> SignatureCache:
    """Returns the process-wide signature cache, creating it on first use."""
    global _signature_cache
    if _signature_cache is None:
        with _signature_cache_lock:
            if _signature_cache is None:
                _signature_cache = SignatureCache()
    return _signature_cache


def set_signature_cache(cache: Optional[SignatureCache]) -> None:
    """Replaces the process-wide cache (None resets it)."""
    global _signature_cache
    with _signature_cache_lock:
        _signature_cache = cache

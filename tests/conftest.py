# -*- coding: utf-8 -*-

"""
RelayGate test fixtures.

Provides request meta and context factories, an isolated signature cache,
a mocked upstream (httpx MockTransport behind the shared HTTP client),
SSE body builders and an ASGI test client.
"""

import os

# Environment must be set before any application module is imported
os.environ["CHANNEL_TYPE"] = "0"
os.environ["CHANNEL_ID"] = "7"
os.environ["CHANNEL_BASE_URL"] = "https://upstream.test"
os.environ["CHANNEL_API_KEY"] = "sk-test-channel-key"
os.environ["CHANNEL_MODEL_MAPPING"] = '{"gpt-alias": "gpt-4o"}'
os.environ["MAX_RETRIES"] = "1"
os.environ["BASE_RETRY_DELAY"] = "0"
os.environ["REDIS_URL"] = ""
os.environ["LOG_LEVEL"] = "DEBUG"

import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from relay_gateway.apitype import APIType
from relay_gateway.http_client import global_http_client_manager
from relay_gateway.meta import ChannelConfig, Meta, RelayContext
from relay_gateway.relaymode import RelayMode
from relay_gateway.signature_cache import SignatureCache, set_signature_cache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockUpstream:
    """
    Records outbound requests and answers them with ``handler``.

    The default handler answers 200 with an empty JSON object.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(200, json={})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> Any:
        return json.loads(self.last_request.content)

    def respond_json(self, payload: Any, status_code: int = 200) -> None:
        self.handler = lambda request: httpx.Response(status_code, json=payload)

    def respond_bytes(self, body: bytes, status_code: int = 200, content_type: str = "text/event-stream") -> None:
        self.handler = lambda request: httpx.Response(
            status_code, content=body, headers={"Content-Type": content_type}
        )


@pytest.fixture
def meta_factory() -> Callable[..., Meta]:
    """
    Builds a Meta with test defaults.

    Returns:
        Callable accepting any Meta field as keyword argument
    """
    def factory(
        api_type: int = APIType.OPENAI,
        model: str = "gpt-4o",
        mode: RelayMode = RelayMode.CHAT_COMPLETIONS,
        is_stream: bool = False,
        config: Optional[Dict[str, Any]] = None,
        **overrides,
    ) -> Meta:
        values = dict(
            channel_id=7,
            api_type=api_type,
            base_url="https://upstream.test",
            api_key="sk-test",
            config=ChannelConfig(**(config or {})),
            mode=mode,
            origin_model_name=model,
            is_stream=is_stream,
            token_id=1,
        )
        values.update(overrides)
        return Meta(**values)

    return factory


@pytest.fixture
def relay_ctx() -> RelayContext:
    """Request context of token 1 on channel 7."""
    return RelayContext(token_id=1, channel_id=7)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def signature_cache(fake_clock):
    """
    Installs an isolated in-memory signature cache driven by a fake clock.

    Yields:
        SignatureCache with a 60 second TTL
    """
    cache = SignatureCache(ttl=60, clock=fake_clock)
    set_signature_cache(cache)
    yield cache
    set_signature_cache(None)


@pytest_asyncio.fixture
async def mock_upstream():
    """
    Routes the shared HTTP client through an httpx MockTransport.

    Yields:
        MockUpstream recording requests; set ``handler`` or use the
        respond_* helpers to script answers
    """
    upstream = MockUpstream()
    await global_http_client_manager.close()
    global_http_client_manager._client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    yield upstream
    await global_http_client_manager.close()


@pytest.fixture
def openai_sse() -> Callable[..., bytes]:
    """Builds an OpenAI SSE body from chunk dicts, terminated by [DONE]."""
    def build(chunks: List[Dict[str, Any]], done: bool = True) -> bytes:
        body = "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks)
        if done:
            body += "data: [DONE]\n\n"
        return body.encode("utf-8")

    return build


@pytest.fixture
def claude_sse() -> Callable[..., bytes]:
    """Builds a Claude SSE body from event dicts (``event:`` taken from ``type``)."""
    def build(events: List[Dict[str, Any]]) -> bytes:
        return "".join(
            f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
        ).encode("utf-8")

    return build


@pytest.fixture
def openai_chunk() -> Callable[..., Dict[str, Any]]:
    """Builds one chat.completion.chunk dict; extra keyword arguments go into the delta."""
    def build(
        content: Optional[str] = None,
        finish_reason: Optional[str] = None,
        usage: Optional[Dict[str, int]] = None,
        **delta_fields,
    ) -> Dict[str, Any]:
        delta: Dict[str, Any] = dict(delta_fields)
        if content is not None:
            delta["content"] = content
        chunk: Dict[str, Any] = {
            "id": "chatcmpl-test",
            "object": "chat.completion.chunk",
            "created": 1700000000,
            "model": "gpt-4o",
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if usage is not None:
            chunk["usage"] = usage
        return chunk

    return build


async def collect(stream) -> str:
    """Joins every frame of an async SSE iterator."""
    frames = []
    async for frame in stream:
        frames.append(frame)
    return "".join(frames)


def parse_sse(body: str) -> List[Dict[str, Any]]:
    """
    Parses an SSE body into ``{"event": ..., "data": ...}`` dicts.

    ``data`` is decoded JSON, or the raw string for ``[DONE]``.
    """
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event_type = None
        data = None
        for line in block.splitlines():
            if line.startswith("event:"):
                event_type = line[len("event:"):].strip()
            elif line.startswith("data:"):
                raw = line[len("data:"):].strip()
                data = raw if raw == "[DONE]" else json.loads(raw)
        events.append({"event": event_type, "data": data})
    return events


@pytest.fixture
def sse_collect():
    return collect


@pytest.fixture
def sse_parse():
    return parse_sse


@pytest_asyncio.fixture
async def test_client(signature_cache, mock_upstream):
    """
    Provides an AsyncClient bound to the FastAPI app.

    The lifespan is not run; app.state is prepared directly. Upstream
    calls go to ``mock_upstream``.

    Yields:
        AsyncClient
    """
    # Imported lazily so the environment above is applied first
    from main import app

    app.state.is_shutting_down = False
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    return {"Authorization": "Bearer token_42"}

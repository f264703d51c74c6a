# -*- coding: utf-8 -*-

"""
Unit tests for the Coze adaptor, including the OAuth JWT token exchange.
"""

import json
import time

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from relay_gateway.adaptors import coze
from relay_gateway.adaptors.coze import (
    OAUTH_JWT,
    CozeAdaptor,
    build_oauth_assertion,
    convert_request,
    get_oauth_token,
    load_oauth_config,
    response_coze_to_openai,
)
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import ConfigMissingError, UpstreamError
from relay_gateway.models import GeneralOpenAIRequest


@pytest.fixture(scope="module")
def rsa_keys():
    """Returns (private PEM, public PEM) of a throwaway RSA key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


@pytest.fixture
def oauth_config(rsa_keys):
    return {
        "client_id": "client-1",
        "private_key": rsa_keys[0],
        "public_key_id": "kid-1",
        "coze_api_base": "https://upstream.test",
    }


@pytest.fixture(autouse=True)
def clear_token_cache():
    coze._token_cache.clear()
    yield
    coze._token_cache.clear()


class TestConvertRequest:
    """Tests for the Coze chat body."""

    def test_history_and_query(self):
        request = GeneralOpenAIRequest.model_validate({
            "model": "bot-123",
            "messages": [
                {"role": "user", "content": "one"},
                {"role": "assistant", "content": "two"},
                {"role": "user", "content": "three"},
            ],
        })

        body = convert_request(request, "bot-123", "user-9")

        assert body["bot_id"] == "123"
        assert body["user"] == "user-9"
        assert body["query"] == "three"
        assert body["chat_history"] == [
            {"role": "user", "content": "one", "content_type": "text"},
            {"role": "assistant", "content": "two", "content_type": "text"},
        ]

    def test_default_user(self):
        request = GeneralOpenAIRequest.model_validate({"model": "bot-1", "messages": [{"role": "user", "content": "q"}]})
        assert convert_request(request, "bot-1", "")["user"] == "relaygate"


class TestResponses:
    """Tests for Coze answers."""

    def test_buffered_keeps_answers_only(self, meta_factory):
        data = {
            "code": 0,
            "conversation_id": "conv-1",
            "messages": [
                {"role": "assistant", "type": "verbose", "content": "{}"},
                {"role": "assistant", "type": "answer", "content": "hello"},
                {"role": "assistant", "type": "follow_up", "content": "more?"},
            ],
        }

        response = response_coze_to_openai(data, meta_factory(model="bot-1", prompt_tokens=3))

        assert response.id == "conv-1"
        assert response.choices[0].message.content == "hello"
        assert response.usage.prompt_tokens == 3

    def test_error_code(self, meta_factory):
        with pytest.raises(UpstreamError):
            response_coze_to_openai({"code": 4000, "msg": "bot not found"}, meta_factory())

    @pytest.mark.asyncio
    async def test_stream(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        events = [
            {"event": "message", "message": {"role": "assistant", "type": "answer", "content": "Hi"}, "conversation_id": "c1"},
            {"event": "message", "message": {"role": "assistant", "type": "verbose", "content": "{}"}},
            {"event": "done", "conversation_id": "c1"},
        ]
        body = "".join(f"event:{e['event']}\ndata:{json.dumps(e)}\n\n" for e in events).encode("utf-8")
        meta = meta_factory(api_type=APIType.COZE, model="bot-1", is_stream=True)

        result = await CozeAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        parsed = sse_parse(await sse_collect(result.stream))

        assert parsed[0]["data"]["choices"][0]["delta"]["content"] == "Hi"
        assert parsed[0]["data"]["id"] == "c1"
        assert parsed[1]["data"]["choices"][0]["finish_reason"] == "stop"
        assert parsed[2]["data"] == "[DONE]"
        assert result.usage.completion_tokens > 0

    @pytest.mark.asyncio
    async def test_stream_error(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        body = b'data:{"event": "error", "error_information": {"code": 700, "msg": "quota exceeded"}}\n\n'
        meta = meta_factory(api_type=APIType.COZE, is_stream=True)

        result = await CozeAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        parsed = sse_parse(await sse_collect(result.stream))

        assert parsed[-1]["data"]["error"]["message"] == "quota exceeded"


class TestOAuth:
    """Tests for the OAuth JWT flow."""

    def test_load_config_missing_fields(self):
        with pytest.raises(ConfigMissingError):
            load_oauth_config(json.dumps({"client_id": "c"}))
        with pytest.raises(ConfigMissingError):
            load_oauth_config("not json")

    def test_assertion(self, oauth_config, rsa_keys):
        """
        What it does: Signs the OAuth assertion.
        Purpose: RS256 with the key id header and the API host as audience.
        """
        token = build_oauth_assertion(oauth_config, now=1_700_000_000)

        header = jwt.get_unverified_header(token)
        claims = jwt.decode(token, rsa_keys[1], algorithms=["RS256"], audience="upstream.test",
                            options={"verify_exp": False, "verify_iat": False})
        assert header["alg"] == "RS256"
        assert header["kid"] == "kid-1"
        assert claims["iss"] == "client-1"
        assert claims["exp"] - claims["iat"] == coze.JWT_LIFETIME

    def test_invalid_private_key(self, oauth_config):
        oauth_config["private_key"] = "not a key"
        with pytest.raises(ConfigMissingError):
            build_oauth_assertion(oauth_config)

    @pytest.mark.asyncio
    async def test_token_exchange_cached(self, oauth_config, mock_upstream):
        mock_upstream.respond_json({"access_token": "czs_token", "expires_in": int(time.time()) + 900})
        raw = json.dumps(oauth_config)

        first = await get_oauth_token(raw)
        second = await get_oauth_token(raw)

        assert first == second == "czs_token"
        assert len(mock_upstream.requests) == 1
        sent = mock_upstream.last_request
        assert str(sent.url) == "https://upstream.test/api/permission/oauth2/token"
        assert sent.headers["Authorization"].startswith("Bearer ")
        assert mock_upstream.last_json()["grant_type"] == "urn:ietf:params:oauth:grant-type:jwt-bearer"

    @pytest.mark.asyncio
    async def test_token_exchange_rejected(self, oauth_config, mock_upstream):
        mock_upstream.respond_json({"error": {"message": "invalid client"}}, status_code=401)
        with pytest.raises(UpstreamError) as exc_info:
            await get_oauth_token(json.dumps(oauth_config))
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_do_request_uses_access_token(self, oauth_config, meta_factory, relay_ctx, mock_upstream):
        """
        What it does: Sends a chat request on an OAuth channel.
        Purpose: The chat call carries the exchanged access token, not the raw config.
        """
        mock_upstream.respond_json({"access_token": "czs_token", "expires_in": int(time.time()) + 900})
        adaptor = CozeAdaptor()
        meta = meta_factory(api_type=APIType.COZE, api_key=json.dumps(oauth_config), config={"auth_type": OAUTH_JWT})
        adaptor.init(meta)

        response = await adaptor.do_request(meta, b"{}", relay_ctx)
        await response.aclose()

        assert str(mock_upstream.last_request.url) == "https://upstream.test/open_api/v2/chat"
        assert mock_upstream.last_request.headers["Authorization"] == "Bearer czs_token"

# -*- coding: utf-8 -*-

"""
Unit tests for the Cohere adaptor.
"""

import json

import httpx
import pytest

from relay_gateway.adaptors.cohere import CohereAdaptor, convert_request, map_finish_reason, response_cohere_to_openai
from relay_gateway.apitype import APIType
from relay_gateway.exceptions import RequestInvalidError, UpstreamError
from relay_gateway.models import GeneralOpenAIRequest
from relay_gateway.relaymode import RelayMode


def _request(**fields) -> GeneralOpenAIRequest:
    fields.setdefault("model", "command-r")
    fields.setdefault("messages", [{"role": "user", "content": "hi"}])
    return GeneralOpenAIRequest.model_validate(fields)


class TestConvertRequest:
    """Tests for the Cohere chat body."""

    def test_history_preamble_and_message(self):
        """
        What it does: Converts a multi-turn conversation.
        Purpose: The last user turn is the message, system prompts join the preamble.
        """
        request = _request(messages=[
            {"role": "system", "content": "be kind"},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
        ], top_p=0.5, top_k=10, stop="x")

        body = convert_request(request, "command-r")

        assert body["preamble"] == "be kind"
        assert body["message"] == "second"
        assert body["chat_history"] == [
            {"role": "USER", "message": "first"},
            {"role": "CHATBOT", "message": "reply"},
        ]
        assert body["p"] == 0.5
        assert body["k"] == 10
        assert body["stop_sequences"] == ["x"]

    def test_web_search_suffix(self):
        body = convert_request(_request(), "command-r-internet")
        assert body["model"] == "command-r"
        assert body["connectors"] == [{"id": "web-search"}]

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self, meta_factory, relay_ctx):
        adaptor = CohereAdaptor()
        adaptor.init(meta_factory(api_type=APIType.COHERE, model="command-r"))
        with pytest.raises(RequestInvalidError):
            await adaptor.convert_request(_request(), RelayMode.EMBEDDINGS, relay_ctx)


class TestResponses:
    """Tests for Cohere answers."""

    def test_finish_reason(self):
        assert map_finish_reason("COMPLETE") == "stop"
        assert map_finish_reason("MAX_TOKENS") == "length"
        assert map_finish_reason("OTHER") == "other"

    def test_buffered(self, meta_factory):
        data = {
            "response_id": "r1",
            "text": "hello",
            "finish_reason": "COMPLETE",
            "meta": {"tokens": {"input_tokens": 5, "output_tokens": 1}},
        }

        response = response_cohere_to_openai(data, meta_factory(model="command-r"))

        assert response.id == "r1"
        assert response.choices[0].message.content == "hello"
        assert response.choices[0].finish_reason == "stop"
        assert response.usage.total_tokens == 6

    def test_error_body(self, meta_factory):
        with pytest.raises(UpstreamError):
            response_cohere_to_openai({"message": "invalid api token"}, meta_factory())

    @pytest.mark.asyncio
    async def test_stream(self, meta_factory, relay_ctx, sse_collect, sse_parse):
        events = [
            {"event_type": "stream-start", "generation_id": "gen-1"},
            {"event_type": "text-generation", "text": "Hel"},
            {"event_type": "search-results"},
            {"event_type": "text-generation", "text": "lo"},
            {
                "event_type": "stream-end",
                "finish_reason": "COMPLETE",
                "response": {"meta": {"billed_units": {"input_tokens": 4, "output_tokens": 2}}},
            },
        ]
        body = "\n".join(json.dumps(event) for event in events).encode("utf-8") + b"\n"
        meta = meta_factory(api_type=APIType.COHERE, model="command-r", is_stream=True)

        result = await CohereAdaptor().do_response(httpx.Response(200, content=body), meta, relay_ctx)
        parsed = sse_parse(await sse_collect(result.stream))

        assert [event["data"]["choices"][0]["delta"].get("content") for event in parsed[:2]] == ["Hel", "lo"]
        assert parsed[0]["data"]["id"] == "gen-1"
        assert parsed[2]["data"]["choices"][0]["finish_reason"] == "stop"
        assert parsed[3]["data"] == "[DONE]"
        assert result.usage.total_tokens == 6

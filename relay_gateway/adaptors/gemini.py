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
Google Gemini adaptor.

OpenAI requests are rewritten to ``contents[{role, parts}]`` with the
generation config lifted out of the request. The conversion and response
handlers are shared with the Gemini models of the Vertex AI adaptor.
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.config import settings
from relay_gateway.exceptions import RelayError, RequestInvalidError, StreamReadError, UpstreamError, openai_error_chunk
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    CONTENT_TYPE_IMAGE_URL,
    CONTENT_TYPE_TEXT,
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    EmbeddingResponse,
    EmbeddingResponseItem,
    Function,
    GeneralOpenAIRequest,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Tool,
    Usage,
)
from relay_gateway.parsers import ToolCallAccumulator, parse_tool_arguments
from relay_gateway.reasoning import set_reasoning_content
from relay_gateway.relaymode import RelayMode
from relay_gateway.streaming import SSE_DONE, iter_lines, render_stream_chunk, strip_data_prefix
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, generate_tool_call_id, get_timestamp, guess_mime_type, split_data_url

VISION_MAX_IMAGE_NUM = 16

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
    "HARM_CATEGORY_CIVIC_INTEGRITY",
)

# Models accepting a systemInstruction; the others get the system prompt as a user turn
MODELS_SUPPORT_SYSTEM_INSTRUCTION = {
    "gemini-2.0-flash",
    "gemini-2.0-flash-exp",
    "gemini-2.0-flash-thinking-exp-01-21",
    "gemini-2.0-flash-lite",
    "gemini-2.0-pro-exp-02-05",
}

RESPONSE_MIME_TYPES = {
    "json_object": "application/json",
    "text": "text/plain",
}

FINISH_REASON_MAP = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}

_SCHEMA_FIELDS = {
    "anyOf", "enum", "format", "items", "maximum", "maxItems", "minimum", "minItems",
    "nullable", "properties", "propertyOrdering", "required", "type",
}

# Gemini accepts date-time and enum formats only
_FORMAT_MAPPING = {
    "date": "date-time",
    "time": "date-time",
    "date-time": "date-time",
    "duration": "date-time",
    "enum": "enum",
}


def is_model_support_system_instruction(model_name: str) -> bool:
    return model_name in MODELS_SUPPORT_SYSTEM_INSTRUCTION


def get_model_modalities(model_name: str) -> Optional[List[str]]:
    """
    ``responseModalities`` for a model.

    Image generation models answer with text and images; a few model
    families reject the field altogether.
    """
    if "-image-generation" in model_name:
        return ["TEXT", "IMAGE"]
    if model_name == "aqa" or model_name.startswith(("gemini-2.5", "gemma", "text-embed")):
        return None
    return ["TEXT"]


def get_api_version(model_name: str, configured: str = "") -> str:
    """Gemini 1.5, 2.x and Gemma 3 live under v1beta."""
    if configured:
        return configured
    if any(marker in model_name for marker in ("gemini-2", "gemini-1.5", "gemma-3")):
        return "v1beta"
    return settings.gemini_version


# ==================================================================================================
# Schema cleaning
# ==================================================================================================

def clean_json_schema(schema: Any) -> Any:
    """
    Reduces a JSON schema to the subset Gemini's ``responseSchema`` accepts.

    Unsupported keywords are dropped, types are upper-cased and formats
    mapped to the supported ones.
    """
    if isinstance(schema, list):
        return [clean_json_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    cleaned: Dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_FIELDS:
            continue
        if key == "type":
            cleaned[key] = value.upper() if isinstance(value, str) else value
        elif key == "format":
            if isinstance(value, str) and value in _FORMAT_MAPPING:
                cleaned[key] = _FORMAT_MAPPING[value]
        elif key == "properties" and isinstance(value, dict):
            cleaned[key] = {name: clean_json_schema(prop) for name, prop in value.items()}
        else:
            cleaned[key] = clean_json_schema(value)
    return cleaned


def clean_function_parameters(params: Any, top_level: bool = True) -> Any:
    """
    Strips the keywords Gemini rejects in function declarations.

    ``additionalProperties`` goes everywhere, ``description`` and
    ``strict`` only at the top level.
    """
    if isinstance(params, list):
        return [clean_function_parameters(item, False) for item in params]
    if not isinstance(params, dict):
        return params

    cleaned: Dict[str, Any] = {}
    for key, value in params.items():
        if key == "additionalProperties":
            continue
        if top_level and key in ("description", "strict"):
            continue
        if key == "format":
            if isinstance(value, str) and value in _FORMAT_MAPPING:
                cleaned[key] = _FORMAT_MAPPING[value]
            continue
        cleaned[key] = clean_function_parameters(value, False)
    return cleaned


# ==================================================================================================
# Request conversion
# ==================================================================================================

def _image_part(url: str) -> Dict[str, Any]:
    split = split_data_url(url)
    if split is not None:
        mime_type, data = split
        return {"inlineData": {"mimeType": mime_type, "data": data}}
    return {"fileData": {"mimeType": guess_mime_type(url), "fileUri": url}}


def _function_declarations(request: GeneralOpenAIRequest) -> List[Dict[str, Any]]:
    declarations = []
    functions = [tool.function for tool in request.tools or []]
    if not functions and request.functions:
        functions = [Function.model_validate(item) for item in request.functions]

    for function in functions:
        declaration: Dict[str, Any] = {"name": function.name}
        if function.description:
            declaration["description"] = function.description
        if function.parameters:
            declaration["parameters"] = clean_function_parameters(function.parameters)
        declarations.append(declaration)
    return declarations


def _tool_config(tool_choice: Any) -> Optional[Dict[str, Any]]:
    if tool_choice is None:
        return None
    if isinstance(tool_choice, dict):
        name = (tool_choice.get("function") or {}).get("name")
        if name:
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [name]}}
        return None
    mode = {"auto": "AUTO", "required": "ANY", "any": "ANY", "none": "NONE"}.get(str(tool_choice))
    if mode is None:
        return None
    return {"functionCallingConfig": {"mode": mode}}


def _generation_config(request: GeneralOpenAIRequest, model_name: str) -> Dict[str, Any]:
    config: Dict[str, Any] = {}
    if request.temperature is not None:
        config["temperature"] = request.temperature
    if request.top_p is not None and 0 <= request.top_p <= 1:
        config["topP"] = request.top_p
    if request.top_k is not None:
        config["topK"] = request.top_k

    max_tokens = request.max_tokens or request.max_completion_tokens
    if max_tokens:
        config["maxOutputTokens"] = max_tokens
    if request.stop:
        config["stopSequences"] = [request.stop] if isinstance(request.stop, str) else list(request.stop)
    if request.n and request.n > 1:
        config["candidateCount"] = request.n

    modalities = get_model_modalities(model_name)
    if modalities:
        config["responseModalities"] = modalities

    response_format = request.response_format or {}
    mime_type = RESPONSE_MIME_TYPES.get(response_format.get("type", ""))
    if mime_type:
        config["responseMimeType"] = mime_type
    json_schema = response_format.get("json_schema")
    if isinstance(json_schema, dict) and json_schema.get("schema") is not None:
        config["responseSchema"] = clean_json_schema(json_schema["schema"])
        config["responseMimeType"] = RESPONSE_MIME_TYPES["json_object"]

    if request.thinking is not None and request.thinking.type == "enabled":
        thinking_config: Dict[str, Any] = {"includeThoughts": True}
        if request.thinking.budget_tokens:
            thinking_config["thinkingBudget"] = request.thinking.budget_tokens
        config["thinkingConfig"] = thinking_config
    elif request.reasoning_effort and model_name.startswith("gemini-2.5"):
        config["thinkingConfig"] = {"includeThoughts": True}

    return config


def _message_parts(message: Message, tool_names: Dict[str, str]) -> List[Dict[str, Any]]:
    if message.role == "tool":
        name = tool_names.get(message.tool_call_id or "")
        text = message.string_content()
        if name:
            return [{"functionResponse": {"name": name, "response": {"content": text}}}]
        return [{"text": text}] if text else []

    parts: List[Dict[str, Any]] = []
    image_count = 0
    for part in message.parse_content():
        if part.type == CONTENT_TYPE_TEXT and part.text:
            parts.append({"text": part.text})
        elif part.type == CONTENT_TYPE_IMAGE_URL and part.image_url is not None:
            image_count += 1
            if image_count > VISION_MAX_IMAGE_NUM:
                continue
            parts.append(_image_part(part.image_url.url))

    for tool_call in message.tool_calls or []:
        arguments, ok = parse_tool_arguments(tool_call.function.arguments)
        if not ok:
            raise RequestInvalidError(f"unmarshal tool call arguments for tool {tool_call.function.name}")
        if tool_call.id:
            tool_names[tool_call.id] = tool_call.function.name
        parts.append({"functionCall": {"name": tool_call.function.name, "args": arguments}})

    return parts


def convert_request(request: GeneralOpenAIRequest, model_name: str = "") -> Dict[str, Any]:
    """
    Converts a canonical request into a Gemini ``generateContent`` body.

    - assistant becomes ``model``, tool results become ``functionResponse``
      parts of a user turn
    - system messages become ``systemInstruction`` on models supporting it,
      otherwise a user turn followed by a dummy model answer
    - data URL images become ``inlineData``, other URLs ``fileData``
    - every turn has at least one part
    """
    model_name = model_name or request.model
    gemini_request: Dict[str, Any] = {
        "contents": [],
        "safetySettings": [
            {"category": category, "threshold": settings.gemini_safety_setting}
            for category in SAFETY_CATEGORIES
        ],
        "generationConfig": _generation_config(request, model_name),
    }

    declarations = _function_declarations(request)
    if declarations:
        gemini_request["tools"] = [{"functionDeclarations": declarations}]
        tool_config = _tool_config(request.tool_choice)
        if tool_config:
            gemini_request["toolConfig"] = tool_config

    tool_names: Dict[str, str] = {}
    system_parts: List[Dict[str, Any]] = []
    contents: List[Dict[str, Any]] = gemini_request["contents"]

    for message in request.messages:
        parts = _message_parts(message, tool_names)
        if not parts:
            # Gemini rejects turns without parts
            parts = [{"text": " "}]

        if message.role == "system":
            if is_model_support_system_instruction(model_name):
                system_parts.extend(parts)
                continue
            contents.append({"role": "user", "parts": parts})
            contents.append({"role": "model", "parts": [{"text": "Okay"}]})
            continue

        role = "model" if message.role == "assistant" else "user"
        contents.append({"role": role, "parts": parts})

    if system_parts:
        gemini_request["systemInstruction"] = {"parts": system_parts}
    return gemini_request


def convert_embedding_request(request: GeneralOpenAIRequest, model_name: str = "") -> Dict[str, Any]:
    """Builds a ``batchEmbedContents`` body, one request per input."""
    model = f"models/{model_name or request.model}"
    return {
        "requests": [
            {"model": model, "content": {"parts": [{"text": text}]}}
            for text in request.parse_input()
        ]
    }


# ==================================================================================================
# Response conversion
# ==================================================================================================

def map_finish_reason(reason: Optional[str], has_tool_calls: bool = False) -> Optional[str]:
    if has_tool_calls:
        return "tool_calls"
    if not reason:
        return None
    return FINISH_REASON_MAP.get(reason, reason.lower())


def usage_from_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Usage]:
    """Usage of a ``usageMetadata`` object; thought tokens count as completion."""
    if not metadata:
        return None
    prompt_tokens = metadata.get("promptTokenCount", 0) or 0
    completion_tokens = (metadata.get("candidatesTokenCount", 0) or 0) + (metadata.get("thoughtsTokenCount", 0) or 0)
    if prompt_tokens == 0 and completion_tokens == 0:
        return None
    return Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens).fill_total()


def _function_call_tool(call: Dict[str, Any]) -> Tool:
    return Tool(
        id=generate_tool_call_id(),
        type="function",
        function=Function(
            name=call.get("name", ""),
            arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
        ),
    )


def _split_parts(parts: List[Dict[str, Any]]):
    """Returns (text, reasoning, function calls, inline images) of a candidate."""
    text, reasoning, calls, images = [], [], [], []
    for part in parts:
        if part.get("functionCall"):
            calls.append(part["functionCall"])
        elif part.get("inlineData"):
            inline = part["inlineData"]
            if inline.get("mimeType") and inline.get("data"):
                images.append(f"data:{inline['mimeType']};base64,{inline['data']}")
        elif part.get("text"):
            if part.get("thought"):
                reasoning.append(part["text"])
            else:
                text.append(part["text"])
    return "".join(text), "".join(reasoning), calls, images


def response_gemini_to_openai(data: Dict[str, Any], meta: Meta, ctx: RelayContext) -> TextResponse:
    """
    Converts a buffered ``generateContent`` response.

    Raises:
        UpstreamError: No candidates were returned
    """
    candidates = data.get("candidates") or []
    if not candidates:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        message = f"No candidates returned: {block_reason}" if block_reason else "No candidates returned"
        raise UpstreamError(message, status_code=500, error_type="server_error")

    choices = []
    for index, candidate in enumerate(candidates):
        parts = (candidate.get("content") or {}).get("parts") or []
        text, reasoning, calls, images = _split_parts(parts)

        message = Message(role="assistant", content=text)
        if images:
            content = [{"type": CONTENT_TYPE_TEXT, "text": text}] if text else []
            content += [{"type": CONTENT_TYPE_IMAGE_URL, "image_url": {"url": url}} for url in images]
            message = Message.model_validate({"role": "assistant", "content": content})
        if calls:
            message.tool_calls = [_function_call_tool(call) for call in calls]
        if reasoning:
            set_reasoning_content(message, ctx.reasoning_format, reasoning)

        choices.append(TextResponseChoice(
            index=index,
            message=message,
            finish_reason=map_finish_reason(candidate.get("finishReason"), bool(calls)),
        ))

    response = TextResponse(
        id=generate_completion_id(),
        created=get_timestamp(),
        model=meta.actual_model_name,
        choices=choices,
    )

    usage = usage_from_metadata(data.get("usageMetadata"))
    if usage is None:
        completion_text = "".join(
            choice.message.string_content() + (choice.message.get_reasoning() or "") for choice in choices
        )
        usage = Usage(prompt_tokens=meta.prompt_tokens, completion_tokens=heuristic_tokens(completion_text)).fill_total()
    response.usage = usage
    return response


async def _read_body(response: httpx.Response) -> bytes:
    try:
        return await response.aread()
    finally:
        await response.aclose()


async def handler(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """Buffered Gemini chat response -> OpenAI chat completion."""
    data = read_json(await _read_body(response))
    text_response = response_gemini_to_openai(data, meta, ctx)
    return AdaptorResponse(usage=text_response.usage.model_copy(), body=text_response.model_dump(exclude_none=True))


async def embedding_handler(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """``batchEmbedContents`` response -> OpenAI embeddings response."""
    body = await _read_body(response)
    data = read_json(body)

    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        raise UpstreamError(
            error.get("message", "gemini error"),
            status_code=response.status_code if response.status_code >= 400 else 500,
            error_type="gemini_error",
            code=str(error.get("code", "")) or None,
        )

    usage = Usage(prompt_tokens=meta.prompt_tokens).fill_total()
    embedding_response = EmbeddingResponse(
        model=meta.actual_model_name,
        data=[
            EmbeddingResponseItem(index=index, embedding=item.get("values") or [])
            for index, item in enumerate(data.get("embeddings") or [])
        ],
        usage=usage,
    )
    return AdaptorResponse(usage=usage.model_copy(), body=embedding_response.model_dump())


async def stream_handler(
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """
    ``streamGenerateContent?alt=sse`` -> OpenAI chunks.

    Function calls arrive whole; each one gets the next tool call index.
    Usage comes from the last ``usageMetadata`` or is counted locally.
    """
    completion_id = generate_completion_id()
    created = get_timestamp()
    tool_calls = ToolCallAccumulator()
    response_text: List[str] = []
    upstream_usage: Optional[Usage] = None

    try:
        async for line in iter_lines(response):
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            payload = strip_data_prefix(line)
            if not payload:
                continue
            try:
                data = json.loads(payload)
            except json.JSONDecodeError as e:
                logger.error(f"Error unmarshalling stream response: {e}")
                continue

            upstream_usage = usage_from_metadata(data.get("usageMetadata")) or upstream_usage
            candidates = data.get("candidates") or []
            if not candidates:
                continue

            candidate = candidates[0]
            text, reasoning, calls, images = _split_parts((candidate.get("content") or {}).get("parts") or [])

            delta = StreamDelta(role="assistant")
            if text:
                delta.content = text
                response_text.append(text)
            if images:
                delta.content = (delta.content or "") + "".join(f"![image]({url})" for url in images)
            if reasoning:
                response_text.append(reasoning)
                set_reasoning_content(delta, ctx.reasoning_format, reasoning)
            if calls:
                delta.tool_calls = []
                for call in calls:
                    arguments = json.dumps(call.get("args") or {}, ensure_ascii=False)
                    started = tool_calls.start(None, call.get("name", ""), arguments)
                    delta.tool_calls.append(started.model_copy())

            finish_reason = None
            if candidate.get("finishReason"):
                finish_reason = map_finish_reason(candidate["finishReason"], len(tool_calls) > 0)

            if not (text or images or reasoning or calls or finish_reason):
                continue

            chunk = ChatCompletionsStreamResponse(
                id=completion_id,
                created=created,
                model=meta.actual_model_name,
                choices=[ChatCompletionsStreamResponseChoice(index=0, delta=delta, finish_reason=finish_reason)],
            )
            yield render_stream_chunk(chunk)

        yield SSE_DONE

    except RelayError as e:
        logger.error(f"Error in Gemini stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))

    finally:
        await response.aclose()
        if upstream_usage is None:
            arguments = "".join(call.function.arguments or "" for call in tool_calls.calls)
            upstream_usage = Usage(
                prompt_tokens=meta.prompt_tokens,
                completion_tokens=heuristic_tokens("".join(response_text) + arguments),
            ).fill_total()
        usage.update_from(upstream_usage)


async def do_gemini_response(response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """Dispatches a Gemini response by mode and stream flag."""
    await raise_for_upstream_status(response)
    if meta.is_stream:
        usage = Usage()
        return AdaptorResponse(
            usage=usage,
            stream=stream_handler(response, meta, ctx, usage),
            media_type="text/event-stream",
        )
    if meta.mode == RelayMode.EMBEDDINGS:
        return await embedding_handler(response, meta, ctx)
    return await handler(response, meta, ctx)


# ==================================================================================================
# Adaptor
# ==================================================================================================

class GeminiAdaptor(Adaptor):
    """Google AI Studio Gemini API (``generativelanguage.googleapis.com``)."""

    channel_name = "google gemini"
    pricing_file = "gemini"

    def get_request_url(self, meta: Meta) -> str:
        version = get_api_version(meta.actual_model_name, meta.config.api_version)
        if meta.mode == RelayMode.EMBEDDINGS:
            action = "batchEmbedContents"
        elif meta.is_stream:
            action = "streamGenerateContent?alt=sse"
        else:
            action = "generateContent"
        return f"{meta.base_url}/{version}/models/{meta.actual_model_name}:{action}"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        headers["x-goog-api-key"] = meta.api_key

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        if request is None:
            raise RequestInvalidError("request is nil")
        model_name = self.meta.actual_model_name if self.meta else request.model
        if mode == RelayMode.EMBEDDINGS:
            return convert_embedding_request(request, model_name)
        return convert_request(request, model_name)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        return await do_gemini_response(response, meta, ctx)

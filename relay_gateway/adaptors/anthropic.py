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
Anthropic Claude Messages adaptor.

Besides the adaptor this module holds the Claude translation shared with
the Bedrock and Vertex AI Claude adaptors:

- OpenAI request -> Claude request, including thinking signature restore
- Claude stream events -> OpenAI chunks (``ClaudeStreamConverter``)
- buffered Claude response -> OpenAI chat completion
- native pass-through of Claude requests and responses with usage tracking
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from loguru import logger
from pydantic import ValidationError

from relay_gateway.adaptors.base import Adaptor, AdaptorResponse, read_json
from relay_gateway.adaptors.common import raise_for_upstream_status, setup_common_request_header
from relay_gateway.config import DEFAULT_MAX_TOKENS
from relay_gateway.exceptions import (
    RelayError,
    RequestInvalidError,
    StreamReadError,
    UnmarshalError,
    UpstreamError,
    claude_error_event,
    openai_error_chunk,
)
from relay_gateway.meta import Meta, RelayContext
from relay_gateway.models import (
    CONTENT_TYPE_IMAGE_URL,
    CONTENT_TYPE_TEXT,
    ChatCompletionsStreamResponse,
    ChatCompletionsStreamResponseChoice,
    ClaudeContent,
    ClaudeImageSource,
    ClaudeMessage,
    ClaudeRequest,
    ClaudeResponse,
    ClaudeStreamResponse,
    ClaudeTool,
    Function,
    GeneralOpenAIRequest,
    Message,
    StreamDelta,
    TextResponse,
    TextResponseChoice,
    Thinking,
    Tool,
    Usage,
)
from relay_gateway.parsers import ToolCallAccumulator, normalize_tool_arguments, parse_tool_arguments
from relay_gateway.reasoning import set_reasoning_content
from relay_gateway.relaymode import RelayMode
from relay_gateway.signature_cache import generate_conversation_id, generate_signature_key, get_signature_cache
from relay_gateway.streaming import (
    SSE_DONE,
    format_sse_event,
    iter_lines,
    render_stream_chunk,
    strip_data_prefix,
)
from relay_gateway.tokenizer import heuristic_tokens
from relay_gateway.utils import generate_completion_id, get_timestamp, split_data_url

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_BETA_DEFAULT = "messages-2023-12-15"
ANTHROPIC_BETA_OUTPUT_128K = "output-128k-2025-02-19"

# Retired model names and their replacements
MODEL_ALIASES: Dict[str, str] = {
    "claude-instant-1": "claude-instant-1.1",
    "claude-2": "claude-2.1",
}

# Extended thinking needs more output room than this
THINKING_MIN_MAX_TOKENS = 1024
THINKING_DEFAULT_BUDGET = 1024

STOP_REASON_MAP: Dict[str, str] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def stop_reason_claude_to_openai(reason: Optional[str]) -> Optional[str]:
    """Maps an Anthropic stop_reason to an OpenAI finish_reason; unknown values pass through."""
    if not reason:
        return None
    return STOP_REASON_MAP.get(reason, reason)


def is_model_support_thinking(model_name: str) -> bool:
    """Claude 2, Instant and 3.5 models have no extended thinking."""
    for prefix in ("claude-3-5", "claude-2", "claude-instant-1"):
        if prefix in model_name:
            return False
    return True


def resolve_model_alias(model_name: str) -> str:
    return MODEL_ALIASES.get(model_name, model_name)


def thinking_requested(ctx: RelayContext) -> bool:
    """True when the caller passed ``?thinking`` with a truthy value."""
    if "thinking" not in ctx.query:
        return False
    return ctx.query.get("thinking", "").strip().lower() not in ("false", "0", "no")


def apply_thinking_policy(request: ClaudeRequest, ctx: RelayContext) -> None:
    """
    Attaches ``thinking`` on ``?thinking=true`` and validates it.

    Raises:
        RequestInvalidError: Thinking enabled with max_tokens <= 1024
    """
    if not is_model_support_thinking(request.model):
        return

    if thinking_requested(ctx) and request.thinking is None:
        request.thinking = Thinking(
            type="enabled",
            budget_tokens=min(THINKING_DEFAULT_BUDGET, request.max_tokens // 2),
        )

    if request.thinking is not None:
        if request.max_tokens <= THINKING_MIN_MAX_TOKENS:
            raise RequestInvalidError(
                "max_tokens must be greater than 1024 when using extended thinking"
            )
        # top_p must be unset when using extended thinking
        request.top_p = None


# ==================================================================================================
# OpenAI request -> Claude request
# ==================================================================================================

def image_url_to_claude_source(url: str) -> ClaudeImageSource:
    """
    Converts an OpenAI image URL into a Claude image source.

    ``data:`` URLs become base64 sources, anything else a ``url`` source.
    """
    split = split_data_url(url)
    if split is not None:
        mime_type, data = split
        return ClaudeImageSource(type="base64", media_type=mime_type, data=data)
    return ClaudeImageSource(type="url", url=url)


def _tool_use_blocks(message: Message) -> List[ClaudeContent]:
    blocks = []
    for tool_call in message.tool_calls or []:
        arguments, ok = parse_tool_arguments(tool_call.function.arguments)
        if not ok:
            raise RequestInvalidError(
                f"unmarshal tool call arguments for tool {tool_call.function.name}"
            )
        blocks.append(ClaudeContent(
            type="tool_use",
            id=tool_call.id,
            name=tool_call.function.name,
            input=arguments,
        ))
    return blocks


def _content_blocks(message: Message) -> List[ClaudeContent]:
    """Text and image blocks of a user or assistant message; empty text is dropped."""
    blocks = []
    for part in message.parse_content():
        if part.type == CONTENT_TYPE_TEXT:
            if part.text:
                blocks.append(ClaudeContent(type="text", text=part.text))
        elif part.type == CONTENT_TYPE_IMAGE_URL and part.image_url is not None:
            blocks.append(ClaudeContent(type="image", source=image_url_to_claude_source(part.image_url.url)))
    return blocks


def _convert_tools(tools: Optional[List[Tool]]) -> List[ClaudeTool]:
    claude_tools = []
    for tool in tools or []:
        schema = dict(tool.function.parameters or {})
        schema.setdefault("type", "object")
        claude_tools.append(ClaudeTool(
            name=tool.function.name,
            description=tool.function.description,
            input_schema=schema,
        ))
    return claude_tools


def _convert_tool_choice(tool_choice: Any) -> Dict[str, Any]:
    """OpenAI tool_choice -> Claude tool_choice (default ``auto``)."""
    if isinstance(tool_choice, dict):
        function = tool_choice.get("function")
        if isinstance(function, dict) and function.get("name"):
            return {"type": "tool", "name": function["name"]}
    elif isinstance(tool_choice, str):
        if tool_choice in ("any", "required"):
            return {"type": "any"}
        if tool_choice == "none":
            return {"type": "none"}
    return {"type": "auto"}


async def _restore_thinking(
    blocks: List[ClaudeContent],
    reasoning: str,
    key: str,
) -> Tuple[List[ClaudeContent], bool]:
    """
    Puts the reasoning of an assistant message back in front of its blocks.

    With a cached signature the reasoning becomes a signed thinking block;
    without one it is inlined as a ``<think>`` prefix of the first text
    block.

    Returns:
        (new blocks, whether the signature was restored)
    """
    signature = await get_signature_cache().get(key)
    if signature:
        thinking = ClaudeContent(type="thinking", thinking=reasoning, signature=signature)
        return [thinking] + blocks, True

    prefix = f"<think>{reasoning}</think>\n\n"
    for block in blocks:
        if block.type == "text":
            block.text = prefix + (block.text or "")
            return blocks, False
    return [ClaudeContent(type="text", text=prefix)] + blocks, False


async def convert_request(request: GeneralOpenAIRequest, meta: Optional[Meta], ctx: RelayContext) -> ClaudeRequest:
    """
    Converts a canonical request into a Claude Messages request.

    - system messages become the ``system`` prompt
    - tool calls become ``tool_use`` blocks, tool messages ``tool_result``
      blocks inside one user message
    - reasoning of earlier assistant turns is restored as signed thinking
      blocks, or inlined as ``<think>`` text with thinking disabled when a
      signature is missing
    - every message must end up with at least one content block

    The request is not modified.

    Raises:
        RequestInvalidError: Invalid tool arguments, empty message or a
            thinking request with too few max_tokens
    """
    if request is None:
        raise RequestInvalidError("request is nil")

    model_name = resolve_model_alias(meta.actual_model_name if meta else request.model)
    claude_request = ClaudeRequest(
        model=model_name,
        max_tokens=request.max_tokens or request.max_completion_tokens or 0,
        temperature=request.temperature,
        top_p=request.top_p,
        top_k=request.top_k,
        stream=request.stream or None,
        thinking=request.thinking.model_copy() if request.thinking else None,
    )
    if request.stop:
        claude_request.stop_sequences = [request.stop] if isinstance(request.stop, str) else list(request.stop)

    apply_thinking_policy(claude_request, ctx)

    tools = _convert_tools(request.tools)
    if tools:
        claude_request.tools = tools
        claude_request.tool_choice = _convert_tool_choice(request.tool_choice)

    if claude_request.max_tokens == 0:
        claude_request.max_tokens = DEFAULT_MAX_TOKENS

    system_parts: List[str] = []
    messages: List[ClaudeMessage] = []
    use_fallback = False

    for index, message in enumerate(request.messages):
        if message.role == "system":
            text = message.string_content()
            if text:
                system_parts.append(text)
            continue

        if message.role == "tool":
            result = ClaudeContent(
                type="tool_result",
                tool_use_id=message.tool_call_id,
                content=message.string_content(),
            )
            previous = messages[-1] if messages else None
            if previous is not None and previous.role == "user" and isinstance(previous.content, list) and all(
                block.type == "tool_result" for block in previous.content
            ):
                previous.content.append(result)
            else:
                messages.append(ClaudeMessage(role="user", content=[result]))
            continue

        blocks = _content_blocks(message) + _tool_use_blocks(message)

        reasoning = message.get_reasoning()
        if message.role == "assistant" and reasoning and claude_request.thinking is not None:
            conversation_id = generate_conversation_id(request.messages[:index])
            key = generate_signature_key(ctx.token_key, conversation_id, len(messages), 0)
            blocks, restored = await _restore_thinking(blocks, reasoning, key)
            if not restored:
                use_fallback = True
                logger.debug(f"No thinking signature for message {index}, inlining reasoning")

        if not blocks:
            raise RequestInvalidError(f"message {index} must have at least one content block")

        messages.append(ClaudeMessage(role=message.role, content=blocks))

    if use_fallback:
        # unsigned thinking is rejected upstream, so every block of this request is inlined
        for claude_message in messages:
            if claude_message.role == "assistant" and isinstance(claude_message.content, list):
                claude_message.content = _inline_thinking_blocks(claude_message.content)
        claude_request.thinking = None

    claude_request.messages = messages
    if system_parts:
        claude_request.system = "\n".join(system_parts)

    # Write path of the signature cache: the answer lands at this position
    ctx.conversation_id = generate_conversation_id(request.messages)
    ctx.message_index = len(messages)
    return claude_request


def _inline_thinking_blocks(blocks: List[ClaudeContent]) -> List[ClaudeContent]:
    thinking = [block for block in blocks if block.type == "thinking"]
    if not thinking:
        return blocks
    rest = [block for block in blocks if block.type != "thinking"]
    prefix = "".join(f"<think>{block.thinking or ''}</think>\n\n" for block in thinking)
    for block in rest:
        if block.type == "text":
            block.text = prefix + (block.text or "")
            return rest
    return [ClaudeContent(type="text", text=prefix)] + rest


def convert_claude_native_request(request: ClaudeRequest, meta: Optional[Meta], ctx: RelayContext) -> ClaudeRequest:
    """
    Prepares a Claude Messages request for native pass-through.

    Applies model mapping and aliases, the default max_tokens and the
    thinking policy. The inbound request is not modified.
    """
    if request is None:
        raise RequestInvalidError("request is nil")

    native = request.model_copy(deep=True)
    native.model = resolve_model_alias(meta.actual_model_name if meta else request.model)
    apply_thinking_policy(native, ctx)
    if native.max_tokens == 0:
        native.max_tokens = DEFAULT_MAX_TOKENS
    return native


# ==================================================================================================
# Signature cache writes
# ==================================================================================================

async def store_thinking_signatures(ctx: RelayContext, signatures: List[Tuple[int, str]]) -> None:
    """Stores the signatures of the thinking blocks of one response."""
    if not signatures:
        return
    if not ctx.conversation_id:
        logger.debug("No conversation id in context, skipping thinking signature cache")
        return

    cache = get_signature_cache()
    for thinking_index, signature in signatures:
        key = generate_signature_key(ctx.token_key, ctx.conversation_id, ctx.message_index, thinking_index)
        await cache.store(key, signature)
    logger.debug(f"Cached {len(signatures)} thinking signature(s) for {ctx.conversation_id}")


# ==================================================================================================
# Claude stream -> OpenAI stream
# ==================================================================================================

class ClaudeStreamConverter:
    """
    State machine turning Claude stream events into OpenAI chunks.

    Tool calls get ``index = len(tool_calls)`` on ``content_block_start``
    and every ``input_json_delta`` extends the last tool call. Thinking
    signatures are collected for the cache and never emitted.

    Example:
        >>> converter = ClaudeStreamConverter(meta, ctx)
        >>> for event in events:
        ...     for chunk in converter.process(event):
        ...         send(chunk)
    """

    def __init__(self, meta: Meta, ctx: RelayContext):
        self.meta = meta
        self.ctx = ctx
        self.id = generate_completion_id()
        self.model = meta.actual_model_name
        self.created = get_timestamp()
        self.tool_calls = ToolCallAccumulator()
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.finish_reason: Optional[str] = None
        self.signatures: List[Tuple[int, str]] = []
        self.text_parts: List[str] = []
        self._thinking_index = -1

    def _chunk(
        self,
        content: Optional[str] = None,
        reasoning: Optional[str] = None,
        tool_calls: Optional[List[Tool]] = None,
        finish_reason: Optional[str] = None,
    ) -> ChatCompletionsStreamResponse:
        delta = StreamDelta(role="assistant", content=content)
        if reasoning:
            set_reasoning_content(delta, self.ctx.reasoning_format, reasoning)
        if tool_calls:
            # some OpenAI derived clients break on content next to tool_calls
            delta.content = None
            delta.tool_calls = tool_calls
        return ChatCompletionsStreamResponse(
            id=self.id,
            created=self.created,
            model=self.model,
            choices=[ChatCompletionsStreamResponseChoice(index=0, delta=delta, finish_reason=finish_reason)],
        )

    def _add_signature(self, signature: Optional[str]) -> None:
        if signature:
            self.signatures.append((max(self._thinking_index, 0), signature))

    def _tool_delta(self, call: Tool, arguments: str, with_header: bool = False) -> Tool:
        if with_header:
            return Tool(
                id=call.id,
                type="function",
                function=Function(name=call.function.name, arguments=arguments),
                index=call.index,
            )
        return Tool(type="function", function=Function(arguments=arguments), index=call.index)

    def process(self, event: Dict[str, Any]) -> List[ChatCompletionsStreamResponse]:
        """
        Consumes one Claude stream event.

        Returns:
            OpenAI chunks to emit (possibly none)

        Raises:
            StreamReadError: The backend sent an ``error`` event
        """
        try:
            claude_event = ClaudeStreamResponse.model_validate(event)
        except ValidationError as e:
            logger.error(f"Error unmarshalling stream event: {e}")
            return []

        event_type = claude_event.type

        if event_type == "message_start":
            message = claude_event.message
            if message is not None:
                if message.id:
                    self.id = f"chatcmpl-{message.id}"
                if message.model:
                    self.model = message.model
                self.prompt_tokens = message.usage.input_tokens
                self.completion_tokens = message.usage.output_tokens
            return []

        if event_type == "content_block_start":
            block = claude_event.content_block
            if block is None:
                return []
            if block.type == "tool_use":
                call = self.tool_calls.start(block.id, block.name or "")
                return [self._chunk(tool_calls=[self._tool_delta(call, "", with_header=True)])]
            if block.type in ("thinking", "redacted_thinking"):
                self._thinking_index += 1
                self._add_signature(block.signature)
                if block.thinking:
                    self.text_parts.append(block.thinking)
                    return [self._chunk(reasoning=block.thinking)]
                return []
            if block.text:
                self.text_parts.append(block.text)
                return [self._chunk(content=block.text)]
            return []

        if event_type in ("content_block_delta", "thinking_delta", "signature_delta"):
            delta = claude_event.delta
            if delta is None:
                return []
            if delta.type == "signature_delta" or event_type == "signature_delta":
                self._add_signature(delta.signature)
                return []
            if delta.type == "input_json_delta":
                fragment = delta.partial_json or ""
                if not len(self.tool_calls):
                    call = self.tool_calls.start(None, "", fragment)
                else:
                    self.tool_calls.append_arguments(fragment)
                    call = self.tool_calls.calls[-1]
                return [self._chunk(tool_calls=[self._tool_delta(call, fragment)])]
            if delta.thinking:
                self.text_parts.append(delta.thinking)
                return [self._chunk(reasoning=delta.thinking)]
            if delta.text:
                self.text_parts.append(delta.text)
                return [self._chunk(content=delta.text)]
            return []

        if event_type == "message_delta":
            usage = claude_event.usage
            if usage is not None:
                if usage.input_tokens:
                    self.prompt_tokens = usage.input_tokens
                self.completion_tokens = usage.output_tokens or self.completion_tokens
            if claude_event.delta is not None and claude_event.delta.stop_reason:
                self.finish_reason = stop_reason_claude_to_openai(claude_event.delta.stop_reason)

            tool_calls = None
            if len(self.tool_calls):
                last = self.tool_calls.calls[-1]
                if not last.function.arguments:
                    # OpenAI sends an empty object when a tool takes no arguments
                    last.function.arguments = "{}"
                    tool_calls = [self._tool_delta(last, "{}")]

            chunk = self._chunk(tool_calls=tool_calls, finish_reason=self.finish_reason)
            chunk.usage = self.usage()
            return [chunk]

        if event_type == "error":
            error = claude_event.error
            message = error.message if error else "unknown upstream stream error"
            raise StreamReadError(f"{error.type if error else 'error'}: {message}")

        if event_type in ("ping", "message_stop", "content_block_stop"):
            return []

        logger.error(f"Unknown stream response type {event_type!r}")
        return []

    def usage(self) -> Usage:
        """Usage received so far; counted locally when the backend sent none."""
        if self.prompt_tokens == 0 and self.completion_tokens == 0:
            arguments = "".join(call.function.arguments or "" for call in self.tool_calls.calls)
            return Usage(
                prompt_tokens=self.meta.prompt_tokens,
                completion_tokens=heuristic_tokens("".join(self.text_parts) + arguments),
            ).fill_total()
        return Usage(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens).fill_total()


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """
    Decodes the ``data:`` payloads of a Claude SSE body.

    Undecodable payloads are logged and skipped.
    """
    async for line in iter_lines(response):
        payload = strip_data_prefix(line)
        if not payload or payload == "[DONE]":
            continue
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.error(f"Error unmarshalling stream response: {e}")
            continue
        if isinstance(event, dict):
            yield event


async def convert_claude_stream(
    events: AsyncIterator[Dict[str, Any]],
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """
    Streams Claude events to the caller as OpenAI chunks.

    Args:
        events: Decoded Claude events (SSE or AWS event stream)
        response: Upstream response, closed at the end
        meta: Request meta
        ctx: Request context
        usage: Filled in when the stream ends

    Yields:
        OpenAI SSE frames, terminated by ``data: [DONE]``
    """
    converter = ClaudeStreamConverter(meta, ctx)
    try:
        async for event in events:
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return
            for chunk in converter.process(event):
                yield render_stream_chunk(chunk)
        yield SSE_DONE
    except RelayError as e:
        logger.error(f"Error in Claude stream: {e.message}")
        yield openai_error_chunk(e if isinstance(e, StreamReadError) else StreamReadError(e.message))
    finally:
        await response.aclose()
        usage.update_from(converter.usage())
        await store_thinking_signatures(ctx, converter.signatures)


async def claude_native_stream(
    events: AsyncIterator[Dict[str, Any]],
    response: httpx.Response,
    meta: Meta,
    ctx: RelayContext,
    usage: Usage,
) -> AsyncIterator[str]:
    """
    Forwards Claude events unchanged while accumulating usage.

    ``message_start`` carries the input tokens, ``message_delta`` the
    cumulative output tokens.
    """
    prompt_tokens = 0
    completion_tokens = 0
    try:
        async for event in events:
            if ctx.is_cancelled():
                logger.info("Client disconnected, closing upstream stream")
                return

            event_type = event.get("type", "")
            if event_type == "error":
                error = event.get("error") or {}
                raise StreamReadError(f"{error.get('type', 'error')}: {error.get('message', '')}")

            if event_type == "message_start":
                message_usage = (event.get("message") or {}).get("usage") or {}
                prompt_tokens = message_usage.get("input_tokens", 0) or 0
                completion_tokens = message_usage.get("output_tokens", 0) or 0
            elif event_type == "message_delta":
                delta_usage = event.get("usage") or {}
                prompt_tokens = delta_usage.get("input_tokens") or prompt_tokens
                completion_tokens = delta_usage.get("output_tokens") or completion_tokens

            yield format_sse_event(event_type, event)

    except RelayError as e:
        logger.error(f"Error in Claude native stream: {e.message}")
        yield claude_error_event(e)
    finally:
        await response.aclose()
        if prompt_tokens == 0 and completion_tokens == 0:
            prompt_tokens = meta.prompt_tokens
        usage.update_from(Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens).fill_total())


# ==================================================================================================
# Buffered responses
# ==================================================================================================

def parse_claude_response(body: bytes, status_code: int) -> ClaudeResponse:
    """
    Decodes a buffered Claude response.

    Raises:
        UpstreamError: The body is a Claude error object
        UnmarshalError: The body is not a Claude response
    """
    data = read_json(body)
    if isinstance(data, dict) and data.get("type") == "error" or (
        isinstance(data, dict) and isinstance(data.get("error"), dict) and data["error"].get("type")
    ):
        error = data.get("error") or {}
        raise UpstreamError(
            error.get("message", "upstream error"),
            status_code=status_code if status_code >= 400 else 500,
            error_type=error.get("type"),
            code=error.get("type"),
        )
    try:
        return ClaudeResponse.model_validate(data)
    except ValidationError as e:
        raise UnmarshalError(f"invalid Claude response from upstream: {e}")


def response_claude_to_openai(
    claude_response: ClaudeResponse,
    ctx: RelayContext,
) -> Tuple[TextResponse, List[Tuple[int, str]]]:
    """
    Converts a buffered Claude response into an OpenAI chat completion.

    Returns:
        (chat completion, thinking signatures by thinking block index)
    """
    text_parts: List[str] = []
    reasoning_parts: List[str] = []
    tool_calls: List[Tool] = []
    signatures: List[Tuple[int, str]] = []
    thinking_index = 0

    for block in claude_response.content:
        if block.type in ("thinking", "redacted_thinking"):
            if block.thinking is not None:
                reasoning_parts.append(block.thinking)
            else:
                logger.error("thinking is nil in response")
            if block.signature:
                signatures.append((thinking_index, block.signature))
            thinking_index += 1
        elif block.type == "text":
            text_parts.append(block.text or "")
        elif block.type == "tool_use":
            tool_calls.append(Tool(
                id=block.id,
                type="function",
                function=Function(
                    name=block.name or "",
                    arguments=normalize_tool_arguments(block.input, block.name or ""),
                ),
            ))
        else:
            logger.warning(f"Unknown response type {block.type!r}")

    message = Message(role="assistant", content="".join(text_parts), tool_calls=tool_calls or None)
    reasoning = "".join(reasoning_parts)
    if reasoning:
        set_reasoning_content(message, ctx.reasoning_format, reasoning)

    usage = Usage(
        prompt_tokens=claude_response.usage.input_tokens,
        completion_tokens=claude_response.usage.output_tokens,
    ).fill_total()

    text_response = TextResponse(
        id=f"chatcmpl-{claude_response.id}",
        model=claude_response.model,
        created=get_timestamp(),
        choices=[TextResponseChoice(
            index=0,
            message=message,
            finish_reason=stop_reason_claude_to_openai(claude_response.stop_reason),
        )],
        usage=usage,
    )
    return text_response, signatures


async def handle_claude_body(body: bytes, status_code: int, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
    """Buffered Claude response -> OpenAI chat completion, caching signatures."""
    claude_response = parse_claude_response(body, status_code)
    text_response, signatures = response_claude_to_openai(claude_response, ctx)
    text_response.model = meta.actual_model_name
    await store_thinking_signatures(ctx, signatures)

    usage = text_response.usage.model_copy()
    if usage.total_tokens == 0:
        completion = text_response.choices[0].message
        usage = Usage(
            prompt_tokens=meta.prompt_tokens,
            completion_tokens=heuristic_tokens(completion.string_content() + (completion.get_reasoning() or "")),
        ).fill_total()
        text_response.usage = usage.model_copy()
    return AdaptorResponse(usage=usage, body=text_response.model_dump(exclude_none=True))


async def handle_claude_native_body(body: bytes, status_code: int, meta: Meta) -> AdaptorResponse:
    """Buffered Claude response returned as-is, with usage extracted."""
    claude_response = parse_claude_response(body, status_code)
    claude_response.model = meta.actual_model_name
    usage = Usage(
        prompt_tokens=claude_response.usage.input_tokens,
        completion_tokens=claude_response.usage.output_tokens,
    ).fill_total()
    return AdaptorResponse(usage=usage, body=claude_response.model_dump(exclude_none=True))


async def _read_body(response: httpx.Response) -> bytes:
    try:
        return await response.aread()
    finally:
        await response.aclose()


# ==================================================================================================
# Adaptor
# ==================================================================================================

class AnthropicAdaptor(Adaptor):
    """
    Anthropic Messages API.

    OpenAI requests are converted to Claude requests; Claude Messages
    requests are forwarded natively.
    """

    channel_name = "anthropic"
    pricing_file = "anthropic"

    def get_request_url(self, meta: Meta) -> str:
        return f"{meta.base_url}/v1/messages"

    def setup_request_header(self, headers: Dict[str, str], meta: Meta) -> None:
        setup_common_request_header(headers, meta)
        headers["x-api-key"] = meta.api_key

        anthropic_version = ""
        for name, value in meta.headers.items():
            if name.lower() == "anthropic-version":
                anthropic_version = value
        headers["anthropic-version"] = anthropic_version or ANTHROPIC_VERSION

        if meta.actual_model_name.startswith("claude-3-7-sonnet"):
            headers["anthropic-beta"] = ANTHROPIC_BETA_OUTPUT_128K
        else:
            headers["anthropic-beta"] = ANTHROPIC_BETA_DEFAULT

    async def convert_request(self, request: GeneralOpenAIRequest, mode: RelayMode, ctx: RelayContext) -> Any:
        ctx.request_model = request.model if request is not None else ""
        claude_request = await convert_request(request, self.meta, ctx)
        return claude_request.model_dump(exclude_none=True)

    async def convert_claude_request(self, request: ClaudeRequest, ctx: RelayContext) -> Any:
        native = convert_claude_native_request(request, self.meta, ctx)
        ctx.original_claude_request = request
        return native.model_dump(exclude_none=True)

    async def do_response(self, response: httpx.Response, meta: Meta, ctx: RelayContext) -> AdaptorResponse:
        await raise_for_upstream_status(response)
        native = meta.mode == RelayMode.CLAUDE_MESSAGES and not ctx.claude_messages_conversion

        if meta.is_stream:
            usage = Usage()
            events = iter_sse_events(response)
            if native:
                stream = claude_native_stream(events, response, meta, ctx, usage)
            else:
                stream = convert_claude_stream(events, response, meta, ctx, usage)
            return AdaptorResponse(usage=usage, stream=stream, media_type="text/event-stream")

        body = await _read_body(response)
        if native:
            return await handle_claude_native_body(body, response.status_code, meta)
        return await handle_claude_body(body, response.status_code, meta, ctx)

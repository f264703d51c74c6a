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
Bridge between Claude Messages and the canonical OpenAI shape.

Backends without a native Claude endpoint receive Claude Messages requests
lowered to the OpenAI shape; their OpenAI-shaped responses are then
re-elevated to Claude Messages responses, both buffered and streamed.

Contains:
- claude_to_openai_request: Claude request -> GeneralOpenAIRequest
- openai_response_to_claude: chat completion -> Claude message
- openai_stream_to_claude: OpenAI SSE frames -> Claude SSE events
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from relay_gateway.exceptions import RelayError, StreamReadError, UnmarshalError, claude_error_event
from relay_gateway.models import (
    ChatCompletionsStreamResponse,
    ClaudeContent,
    ClaudeMessage,
    ClaudeRequest,
    ClaudeResponse,
    ClaudeTool,
    ClaudeUsage,
    Function,
    GeneralOpenAIRequest,
    ImageURL,
    Message,
    MessageContent,
    TextResponse,
    Tool,
    Usage,
)
from relay_gateway.parsers import parse_tool_arguments
from relay_gateway.streaming import format_sse_event, strip_data_prefix
from relay_gateway.utils import generate_message_id, generate_tool_call_id

STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}


def map_finish_reason(finish_reason: Optional[str], has_tool_use: bool = False) -> str:
    """OpenAI finish_reason -> Claude stop_reason."""
    if not finish_reason:
        return "tool_use" if has_tool_use else "end_turn"
    return STOP_REASON_MAP.get(finish_reason, "end_turn")


# ==================================================================================================
# Claude request -> OpenAI request
# ==================================================================================================

def _image_url(block: ClaudeContent) -> Optional[str]:
    source = block.source
    if source is None:
        return None
    if source.type == "url":
        return source.url
    if not source.data:
        return None
    return f"data:{source.media_type or 'image/jpeg'};base64,{source.data}"


def _tool_result_text(content: Any) -> str:
    """Extracts the text of a tool_result ``content`` (string or list of blocks)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text", ""))
            elif isinstance(item, ClaudeContent) and item.type == "text":
                parts.append(item.text or "")
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return json.dumps(content, ensure_ascii=False)


def _system_message(system: Any) -> Optional[Message]:
    if not system:
        return None
    if isinstance(system, str):
        return Message(role="system", content=system)
    text = "\n".join(block.text or "" for block in system if block.type == "text")
    return Message(role="system", content=text) if text else None


def _convert_message(message: ClaudeMessage) -> List[Message]:
    """
    Lowers one Claude message.

    tool_result blocks become separate ``tool`` messages placed before the
    remaining user content; tool_use blocks become ``tool_calls`` of the
    assistant message. Thinking blocks are not forwarded.
    """
    if isinstance(message.content, str):
        return [Message(role=message.role, content=message.content)]

    result: List[Message] = []
    parts: List[MessageContent] = []
    tool_calls: List[Tool] = []

    for block in message.content:
        if block.type == "text":
            parts.append(MessageContent(type="text", text=block.text or ""))
        elif block.type == "image":
            url = _image_url(block)
            if url:
                parts.append(MessageContent(type="image_url", image_url=ImageURL(url=url)))
        elif block.type == "tool_use":
            tool_calls.append(Tool(
                id=block.id or generate_tool_call_id(),
                type="function",
                function=Function(
                    name=block.name or "",
                    arguments=json.dumps(block.input if block.input is not None else {}, ensure_ascii=False),
                ),
            ))
        elif block.type == "tool_result":
            result.append(Message(
                role="tool",
                tool_call_id=block.tool_use_id or "",
                content=_tool_result_text(block.content),
            ))
        elif block.type in ("thinking", "redacted_thinking"):
            continue
        else:
            logger.warning(f"Unsupported Claude content block {block.type!r}, skipping")

    if parts or tool_calls:
        if all(part.type == "text" for part in parts):
            content: Any = "".join(part.text or "" for part in parts)
        else:
            content = parts
        result.append(Message(role=message.role, content=content, tool_calls=tool_calls or None))
    return result


def _convert_tools(tools: Optional[List[ClaudeTool]]) -> Optional[List[Tool]]:
    if not tools:
        return None
    converted = []
    for tool in tools:
        if tool.type and tool.type != "custom":
            logger.warning(f"Server tool '{tool.name}' ({tool.type}) is not supported by this channel, skipping")
            continue
        converted.append(Tool(
            type="function",
            function=Function(
                name=tool.name,
                description=tool.description,
                parameters=tool.input_schema or {"type": "object", "properties": {}},
            ),
        ))
    return converted or None


def _convert_tool_choice(tool_choice: Any) -> Any:
    if not isinstance(tool_choice, dict):
        return tool_choice
    choice_type = tool_choice.get("type")
    if choice_type == "auto":
        return "auto"
    if choice_type == "any":
        return "required"
    if choice_type == "none":
        return "none"
    if choice_type == "tool" and tool_choice.get("name"):
        return {"type": "function", "function": {"name": tool_choice["name"]}}
    return None


def claude_to_openai_request(request: ClaudeRequest) -> GeneralOpenAIRequest:
    """
    Lowers a Claude Messages request to the canonical OpenAI shape.

    Args:
        request: Inbound Claude request

    Returns:
        Equivalent GeneralOpenAIRequest
    """
    messages: List[Message] = []
    system = _system_message(request.system)
    if system is not None:
        messages.append(system)
    for message in request.messages:
        messages.extend(_convert_message(message))

    openai_request = GeneralOpenAIRequest(
        model=request.model,
        messages=messages,
        max_tokens=request.max_tokens or None,
        temperature=request.temperature,
        top_p=request.top_p,
        top_k=request.top_k,
        stop=request.stop_sequences or None,
        stream=bool(request.stream),
        tools=_convert_tools(request.tools),
        tool_choice=_convert_tool_choice(request.tool_choice),
        thinking=request.thinking,
    )
    if request.metadata and request.metadata.get("user_id"):
        openai_request.user = str(request.metadata["user_id"])

    logger.debug(f"Converted Claude request: {len(request.messages)} message(s) -> {len(messages)} OpenAI message(s)")
    return openai_request


# ==================================================================================================
# Buffered re-elevation
# ==================================================================================================

def openai_response_to_claude(body: Any, model: str = "") -> Dict[str, Any]:
    """
    Converts a buffered chat completion into a Claude Messages response.

    Args:
        body: Chat completion as produced by an adaptor
        model: Model name reported to the caller (defaults to the body's)

    Returns:
        Claude response as a JSON-able dict

    Raises:
        UnmarshalError: The body is not a chat completion
    """
    try:
        text_response = TextResponse.model_validate(body)
    except ValidationError as e:
        raise UnmarshalError(f"invalid chat completion for Claude conversion: {e}")

    content: List[ClaudeContent] = []
    finish_reason = None
    if text_response.choices:
        choice = text_response.choices[0]
        finish_reason = choice.finish_reason
        message = choice.message

        reasoning = message.get_reasoning()
        if reasoning:
            content.append(ClaudeContent(type="thinking", thinking=reasoning, signature=""))

        text = message.string_content()
        if text:
            content.append(ClaudeContent(type="text", text=text))

        for call in message.tool_calls or []:
            arguments, ok = parse_tool_arguments(call.function.arguments)
            if not ok:
                logger.warning(f"Tool '{call.function.name}' returned invalid JSON arguments, using {{}}")
            content.append(ClaudeContent(
                type="tool_use",
                id=call.id or generate_tool_call_id(),
                name=call.function.name,
                input=arguments,
            ))

    if not content:
        content.append(ClaudeContent(type="text", text=""))

    has_tool_use = any(block.type == "tool_use" for block in content)
    claude_response = ClaudeResponse(
        id=generate_message_id(),
        content=content,
        model=model or text_response.model,
        stop_reason=map_finish_reason(finish_reason, has_tool_use),
        usage=ClaudeUsage(
            input_tokens=text_response.usage.prompt_tokens,
            output_tokens=text_response.usage.completion_tokens,
        ),
    )
    return claude_response.model_dump(exclude_none=True)


# ==================================================================================================
# Streaming re-elevation
# ==================================================================================================

class ClaudeEventEmitter:
    """
    Turns OpenAI chunk deltas into Claude content block events.

    At most one content block is open at a time. Thinking, text and each
    tool call get their own block; a change of kind closes the open block.
    """

    def __init__(self, message_id: str, model: str, input_tokens: int):
        self.message_id = message_id
        self.model = model
        self.input_tokens = input_tokens
        self.block_index = 0
        self.open_block: Optional[str] = None
        self.open_tool_index: Optional[int] = None
        self.tool_blocks: Dict[int, str] = {}
        self.finish_reason: Optional[str] = None

    @property
    def has_tool_use(self) -> bool:
        return bool(self.tool_blocks)

    def message_start(self) -> str:
        return format_sse_event("message_start", {
            "type": "message_start",
            "message": {
                "id": self.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": self.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": self.input_tokens, "output_tokens": 0},
            },
        })

    def _start_block(self, kind: str, content_block: Dict[str, Any]) -> List[str]:
        events = self.close_block()
        self.open_block = kind
        events.append(format_sse_event("content_block_start", {
            "type": "content_block_start",
            "index": self.block_index,
            "content_block": content_block,
        }))
        return events

    def _delta(self, delta: Dict[str, Any]) -> str:
        return format_sse_event("content_block_delta", {
            "type": "content_block_delta",
            "index": self.block_index,
            "delta": delta,
        })

    def close_block(self) -> List[str]:
        if self.open_block is None:
            return []
        event = format_sse_event("content_block_stop", {"type": "content_block_stop", "index": self.block_index})
        self.block_index += 1
        self.open_block = None
        self.open_tool_index = None
        return [event]

    def thinking(self, text: str) -> List[str]:
        events = [] if self.open_block == "thinking" else self._start_block(
            "thinking", {"type": "thinking", "thinking": ""}
        )
        events.append(self._delta({"type": "thinking_delta", "thinking": text}))
        return events

    def text(self, text: str) -> List[str]:
        events = [] if self.open_block == "text" else self._start_block("text", {"type": "text", "text": ""})
        events.append(self._delta({"type": "text_delta", "text": text}))
        return events

    def tool_call(self, call: Tool) -> List[str]:
        index = call.index if call.index is not None else (self.open_tool_index or 0)
        arguments = call.function.arguments or ""
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)

        events: List[str] = []
        if index not in self.tool_blocks:
            tool_id = call.id or generate_tool_call_id()
            self.tool_blocks[index] = tool_id
            events.extend(self._start_block("tool_use", {
                "type": "tool_use",
                "id": tool_id,
                "name": call.function.name or "",
                "input": {},
            }))
            self.open_tool_index = index
        elif self.open_tool_index != index:
            logger.warning(f"Argument fragment for closed tool call #{index} dropped")
            return events

        if arguments:
            events.append(self._delta({"type": "input_json_delta", "partial_json": arguments}))
        return events

    def process(self, chunk: ChatCompletionsStreamResponse) -> List[str]:
        events: List[str] = []
        for choice in chunk.choices:
            delta = choice.delta
            reasoning = delta.reasoning_content or delta.reasoning or delta.thinking
            if reasoning:
                events.extend(self.thinking(reasoning))
            if delta.content:
                events.extend(self.text(delta.content))
            for call in delta.tool_calls or []:
                events.extend(self.tool_call(call))
            if choice.finish_reason:
                self.finish_reason = choice.finish_reason
        return events

    def finish(self, output_tokens: int) -> List[str]:
        events = self.close_block()
        events.append(format_sse_event("message_delta", {
            "type": "message_delta",
            "delta": {
                "stop_reason": map_finish_reason(self.finish_reason, self.has_tool_use),
                "stop_sequence": None,
            },
            "usage": {"output_tokens": output_tokens},
        }))
        events.append(format_sse_event("message_stop", {"type": "message_stop"}))
        return events


def _frame_payloads(frame: str) -> List[str]:
    payloads = []
    for line in frame.splitlines():
        if line.startswith("data:"):
            payload = strip_data_prefix(line)
            if payload:
                payloads.append(payload)
    return payloads


async def openai_stream_to_claude(
    stream: AsyncIterator[str],
    usage: Usage,
    model: str,
    input_tokens: int = 0,
) -> AsyncIterator[str]:
    """
    Re-elevates an adaptor's OpenAI SSE stream to Claude Messages events.

    ``usage`` is the object the adaptor fills in while its stream is
    consumed; it is final once ``stream`` is exhausted and supplies the
    output token count of ``message_delta``.

    Args:
        stream: OpenAI ``data:`` frames produced by an adaptor
        usage: Usage accumulated by the adaptor stream
        model: Model name reported to the caller
        input_tokens: Prompt token estimate for ``message_start``

    Yields:
        Claude ``event:`` frames from message_start to message_stop
    """
    emitter = ClaudeEventEmitter(generate_message_id(), model, input_tokens)
    yield emitter.message_start()

    try:
        async for frame in stream:
            for payload in _frame_payloads(frame):
                if payload == "[DONE]":
                    continue
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError as e:
                    logger.error(f"Error unmarshalling stream chunk {payload[:200]!r}: {e}")
                    continue

                if isinstance(data, dict) and isinstance(data.get("error"), dict):
                    raise StreamReadError(data["error"].get("message") or "upstream stream error")

                try:
                    chunk = ChatCompletionsStreamResponse.model_validate(data)
                except ValidationError as e:
                    logger.error(f"Invalid stream chunk {payload[:200]!r}: {e}")
                    continue
                for event in emitter.process(chunk):
                    yield event

        for event in emitter.finish(usage.completion_tokens):
            yield event

    except RelayError as e:
        logger.error(f"Error in Claude re-elevation stream: {e.message}")
        for event in emitter.close_block():
            yield event
        yield claude_error_event(e)

    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

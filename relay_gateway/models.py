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
Canonical wire models.

Pydantic models for the three dialects the gateway speaks: the OpenAI
Chat Completions superset used as the internal hub format, the Anthropic
Claude Messages format, and the shared usage accounting types.

Message content is heterogeneously string-or-list in every dialect, so the
content fields are modelled as ``Union[str, List[Part]]`` and the helpers on
``Message`` accept both shapes.
"""

import time
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ==================================================================================================
# Content parts
# ==================================================================================================

CONTENT_TYPE_TEXT = "text"
CONTENT_TYPE_IMAGE_URL = "image_url"
CONTENT_TYPE_INPUT_AUDIO = "input_audio"
CONTENT_TYPE_THINKING = "thinking"


class ImageURL(BaseModel):
    """Image reference: an external URI or a ``data:<mime>;base64,<payload>`` blob."""
    url: str = ""
    detail: Optional[str] = None


class InputAudio(BaseModel):
    """Base64 encoded audio input."""
    data: str = ""
    format: str = ""


class MessageContent(BaseModel):
    """
    One tagged content part of an OpenAI message.

    Attributes:
        type: text, image_url, input_audio or thinking
        text: Text for ``text`` parts
        image_url: Image for ``image_url`` parts
        input_audio: Audio for ``input_audio`` parts
        thinking: Reasoning text for ``thinking`` parts
        signature: Opaque provider signature attached to a thinking part
    """
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    image_url: Optional[ImageURL] = None
    input_audio: Optional[InputAudio] = None
    thinking: Optional[str] = None
    signature: Optional[str] = None


# ==================================================================================================
# Tools
# ==================================================================================================

class Function(BaseModel):
    """Function definition (in requests) or function call (in responses)."""
    model_config = ConfigDict(extra="allow")

    name: str = ""
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    # JSON string in OpenAI dialect; some backends return an object
    arguments: Optional[Any] = None
    strict: Optional[bool] = None


class Tool(BaseModel):
    """
    Tool definition or tool call.

    In streamed deltas ``index`` identifies which concurrent tool call a
    fragment belongs to; it is absent in buffered responses.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: Optional[str] = "function"
    function: Function = Field(default_factory=Function)
    index: Optional[int] = None


# ==================================================================================================
# Messages
# ==================================================================================================

class Message(BaseModel):
    """
    OpenAI-style chat message.

    Attributes:
        role: system, user, assistant or tool
        content: String or ordered list of content parts
        name: Optional author name
        tool_calls: Tool calls made by an assistant message
        tool_call_id: ID of the call a ``tool`` message answers
        reasoning_content: DeepSeek-style reasoning field
        reasoning: OpenRouter-style reasoning field
        thinking: Anthropic-style reasoning field
    """
    model_config = ConfigDict(extra="allow")

    role: str
    content: Optional[Union[str, List[MessageContent]]] = None
    name: Optional[str] = None
    tool_calls: Optional[List[Tool]] = None
    tool_call_id: Optional[str] = None
    reasoning_content: Optional[str] = None
    reasoning: Optional[str] = None
    thinking: Optional[str] = None

    def is_string_content(self) -> bool:
        return isinstance(self.content, str)

    def string_content(self) -> str:
        """Returns the message text, joining text parts of list content."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text or "" for part in self.content if part.type == CONTENT_TYPE_TEXT)

    def parse_content(self) -> List[MessageContent]:
        """Returns the content as a list of parts regardless of its wire shape."""
        if self.content is None:
            return []
        if isinstance(self.content, str):
            return [MessageContent(type=CONTENT_TYPE_TEXT, text=self.content)]
        return list(self.content)

    def get_reasoning(self) -> Optional[str]:
        """Returns the first non-empty reasoning field, whichever surface carries it."""
        for value in (self.reasoning_content, self.reasoning, self.thinking):
            if value:
                return value
        return None


class StreamDelta(BaseModel):
    """Delta of a streamed chat completion choice."""
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    reasoning: Optional[str] = None
    thinking: Optional[str] = None
    tool_calls: Optional[List[Tool]] = None


# ==================================================================================================
# Requests
# ==================================================================================================

class Thinking(BaseModel):
    """Extended thinking configuration."""
    type: str = "enabled"
    budget_tokens: Optional[int] = None


class StreamOptions(BaseModel):
    include_usage: bool = False


class GeneralOpenAIRequest(BaseModel):
    """
    Canonical request: a superset of OpenAI Chat Completions.

    Also carries the embedding, image and video fields so a single model can
    travel through every adaptor's ``convert_request``.
    """
    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: List[Message] = Field(default_factory=list)

    # Sampling
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    logit_bias: Optional[Dict[str, Any]] = None
    logprobs: Optional[bool] = None
    top_logprobs: Optional[int] = None
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    n: Optional[int] = None
    seed: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None

    # Output control
    modalities: Optional[List[str]] = None
    audio: Optional[Dict[str, Any]] = None
    prediction: Optional[Dict[str, Any]] = None
    response_format: Optional[Dict[str, Any]] = None
    stream: bool = False
    stream_options: Optional[StreamOptions] = None

    # Tools
    tools: Optional[List[Tool]] = None
    tool_choice: Optional[Any] = None
    parallel_tool_calls: Optional[bool] = None
    functions: Optional[Any] = None
    function_call: Optional[Any] = None

    # Reasoning
    reasoning_effort: Optional[str] = None
    thinking: Optional[Thinking] = None

    # Vendor routing hints
    provider: Optional[Dict[str, Any]] = None

    user: Optional[str] = None
    service_tier: Optional[str] = None
    store: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None

    # Embeddings / images / video
    input: Optional[Any] = None
    encoding_format: Optional[str] = None
    dimensions: Optional[int] = None
    instruction: Optional[str] = None
    prompt: Optional[Any] = None
    size: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None
    duration: Optional[int] = None

    # Ollama
    num_ctx: Optional[int] = None

    def parse_input(self) -> List[str]:
        """Normalizes the embeddings ``input`` field to a list of strings."""
        if self.input is None:
            return []
        if isinstance(self.input, str):
            return [self.input]
        if isinstance(self.input, list):
            return [item for item in self.input if isinstance(item, str)]
        return []


class ImageRequest(BaseModel):
    """OpenAI image generation request."""
    model_config = ConfigDict(extra="allow")

    model: str = ""
    prompt: str = ""
    n: int = 1
    size: Optional[str] = None
    quality: Optional[str] = None
    response_format: Optional[str] = None
    style: Optional[str] = None
    user: Optional[str] = None


# ==================================================================================================
# Usage
# ==================================================================================================

class PromptTokensDetails(BaseModel):
    cached_tokens: int = 0
    audio_tokens: int = 0
    text_tokens: int = 0
    image_tokens: int = 0


class CompletionTokensDetails(BaseModel):
    reasoning_tokens: int = 0
    audio_tokens: int = 0
    accepted_prediction_tokens: int = 0
    rejected_prediction_tokens: int = 0
    text_tokens: int = 0


class Usage(BaseModel):
    """
    Token usage of one request.

    ``tools_cost`` is quota charged for server-side tools; it is internal and
    never serialized to callers. Detail objects are present only when the
    backend reports them.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    tools_cost: int = Field(default=0, exclude=True)
    prompt_tokens_details: Optional[PromptTokensDetails] = None
    completion_tokens_details: Optional[CompletionTokensDetails] = None

    def fill_total(self) -> "Usage":
        """Enforces ``total_tokens == prompt_tokens + completion_tokens``."""
        self.total_tokens = self.prompt_tokens + self.completion_tokens
        return self

    def update_from(self, other: "Usage") -> "Usage":
        """Copies every field of ``other`` into this instance."""
        for name in type(self).model_fields:
            setattr(self, name, getattr(other, name))
        return self


# ==================================================================================================
# OpenAI responses
# ==================================================================================================

class TextResponseChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: Message
    finish_reason: Optional[str] = None


class TextResponse(BaseModel):
    """Buffered chat completion."""
    model_config = ConfigDict(extra="allow")

    id: str = ""
    object: str = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: List[TextResponseChoice] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)


class ChatCompletionsStreamResponseChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: StreamDelta = Field(default_factory=StreamDelta)
    finish_reason: Optional[str] = None


class ChatCompletionsStreamResponse(BaseModel):
    """One chunk of a streamed chat completion."""
    model_config = ConfigDict(extra="allow")

    id: str = ""
    object: str = "chat.completion.chunk"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str = ""
    choices: List[ChatCompletionsStreamResponseChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None


class ImageData(BaseModel):
    url: Optional[str] = None
    b64_json: Optional[str] = None
    revised_prompt: Optional[str] = None


class ImageResponse(BaseModel):
    created: int = Field(default_factory=lambda: int(time.time()))
    data: List[ImageData] = Field(default_factory=list)
    usage: Optional[Usage] = None


class EmbeddingResponseItem(BaseModel):
    object: str = "embedding"
    index: int = 0
    embedding: List[float] = Field(default_factory=list)


class EmbeddingResponse(BaseModel):
    object: str = "list"
    data: List[EmbeddingResponseItem] = Field(default_factory=list)
    model: str = ""
    usage: Usage = Field(default_factory=Usage)


# ==================================================================================================
# Claude Messages
# ==================================================================================================

class ClaudeImageSource(BaseModel):
    type: str = "base64"
    media_type: Optional[str] = None
    data: Optional[str] = None
    url: Optional[str] = None


class ClaudeContent(BaseModel):
    """
    One Claude content block.

    Covers text, image, tool_use, tool_result, thinking and
    redacted_thinking blocks; unused fields stay None and are omitted on the
    wire.
    """
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    source: Optional[ClaudeImageSource] = None
    # tool_use
    id: Optional[str] = None
    name: Optional[str] = None
    input: Optional[Any] = None
    # tool_result
    tool_use_id: Optional[str] = None
    content: Optional[Any] = None
    is_error: Optional[bool] = None
    # thinking / redacted_thinking
    thinking: Optional[str] = None
    signature: Optional[str] = None
    data: Optional[str] = None
    cache_control: Optional[Dict[str, Any]] = None


class ClaudeMessage(BaseModel):
    role: str
    content: Union[str, List[ClaudeContent]]


class ClaudeTool(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None
    type: Optional[str] = None


class ClaudeRequest(BaseModel):
    """
    Claude Messages request.

    Used both as the inbound ``/v1/messages`` body and as the outbound body
    the Anthropic family of adaptors sends upstream.
    """
    model_config = ConfigDict(extra="allow")

    model: str = ""
    messages: List[ClaudeMessage] = Field(default_factory=list)
    system: Optional[Union[str, List[ClaudeContent]]] = None
    max_tokens: int = 0
    stop_sequences: Optional[List[str]] = None
    stream: Optional[bool] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    tools: Optional[List[ClaudeTool]] = None
    tool_choice: Optional[Any] = None
    thinking: Optional[Thinking] = None
    metadata: Optional[Dict[str, Any]] = None


class ClaudeUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None


class ClaudeError(BaseModel):
    type: str = ""
    message: str = ""


class ClaudeResponse(BaseModel):
    """Buffered Claude Messages response."""
    model_config = ConfigDict(extra="allow")

    id: str = ""
    type: str = "message"
    role: str = "assistant"
    content: List[ClaudeContent] = Field(default_factory=list)
    model: str = ""
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None
    usage: ClaudeUsage = Field(default_factory=ClaudeUsage)
    error: Optional[ClaudeError] = None


class ClaudeDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    text: Optional[str] = None
    partial_json: Optional[str] = None
    thinking: Optional[str] = None
    signature: Optional[str] = None
    stop_reason: Optional[str] = None
    stop_sequence: Optional[str] = None


class ClaudeStreamResponse(BaseModel):
    """One Claude SSE event payload."""
    model_config = ConfigDict(extra="allow")

    type: str
    message: Optional[ClaudeResponse] = None
    index: int = 0
    content_block: Optional[ClaudeContent] = None
    delta: Optional[ClaudeDelta] = None
    usage: Optional[ClaudeUsage] = None
    error: Optional[ClaudeError] = None


# ==================================================================================================
# /v1/models
# ==================================================================================================

class OpenAIModel(BaseModel):
    """Model entry for GET /v1/models."""
    id: str
    object: str = "model"
    created: int = Field(default_factory=lambda: int(time.time()))
    owned_by: str = ""


class ModelList(BaseModel):
    object: str = "list"
    data: List[OpenAIModel]

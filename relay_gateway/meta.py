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
Per-request metadata and context.

``Meta`` is what the frontend knows about the selected channel and the
request; ``RelayContext`` is the mutable side channel between the frontend
and the core (token id, reasoning format, Claude conversion flags).
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from relay_gateway.apitype import APIType
from relay_gateway.config import get_default_base_url, parse_json_setting, settings
from relay_gateway.relaymode import RelayMode


class ChannelConfig(BaseModel):
    """
    Channel specific configuration.

    Attributes:
        region: Cloud region (AWS, Vertex AI)
        sk: Secret key (AWS)
        ak: Access key (AWS)
        user_id: Account or user id (Cloudflare account, Coze user)
        vertex_ai_project_id: Google Cloud project
        vertex_ai_adc: Service account JSON or a literal access token
        api_version: Vendor API version override
        library_id: Knowledge library id
        plugin: DashScope plugin header value
        auth_type: Credential type (Coze: personal_access_token / oauth_jwt)
    """
    model_config = ConfigDict(extra="allow")

    region: str = ""
    sk: str = ""
    ak: str = ""
    user_id: str = ""
    vertex_ai_project_id: str = ""
    vertex_ai_adc: str = ""
    api_version: str = ""
    library_id: str = ""
    plugin: str = ""
    auth_type: str = ""


@dataclass
class Meta:
    """
    Immutable description of one relayed request.

    ``api_key`` is opaque; multi-credential backends pack several values
    into it (``appid|secretId|secretKey`` for Tencent, ``id.secret`` for Zhipu).
    """
    channel_id: int = 0
    api_type: int = APIType.OPENAI
    base_url: str = ""
    api_key: str = ""
    config: ChannelConfig = field(default_factory=ChannelConfig)
    mode: RelayMode = RelayMode.CHAT_COMPLETIONS
    origin_model_name: str = ""
    actual_model_name: str = ""
    prompt_tokens: int = 0
    is_stream: bool = False
    request_url_path: str = ""
    token_id: int = 0
    model_mapping: Dict[str, str] = field(default_factory=dict)
    channel_model_ratio: Dict[str, float] = field(default_factory=dict)
    channel_completion_ratio: Dict[str, float] = field(default_factory=dict)
    # Inbound headers forwarded to backends (X-* passthrough, Accept)
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.base_url:
            self.base_url = get_default_base_url(self.api_type)
        self.base_url = self.base_url.rstrip("/")
        if not self.actual_model_name:
            self.actual_model_name = self.map_model(self.origin_model_name)

    def map_model(self, model_name: str) -> str:
        """Applies the channel model mapping."""
        return self.model_mapping.get(model_name, model_name)


@dataclass
class RelayContext:
    """
    Context keys shared between the frontend and the core for one request.

    Set by the frontend: ``token_id``, ``channel_id``, ``reasoning_format``,
    ``conversation_id`` and the parsed ``query`` parameters. Set by the core:
    ``claude_messages_conversion``, ``original_claude_request``,
    ``converted_request`` and ``converted_response``.
    """
    token_id: int = 0
    channel_id: int = 0
    reasoning_format: str = ""
    conversation_id: str = ""
    # Position of the answer in the upstream message list (signature cache writes)
    message_index: int = 0
    query: Dict[str, str] = field(default_factory=dict)

    claude_messages_conversion: bool = False
    original_claude_request: Optional[Any] = None
    converted_request: Optional[Any] = None
    converted_response: Optional[Any] = None
    request_model: str = ""

    # Returns True once the caller went away
    is_cancelled: Callable[[], bool] = lambda: False

    @property
    def token_key(self) -> str:
        """Token component of signature cache keys."""
        return f"token_{self.token_id}"


def meta_from_settings(model_name: str, mode: RelayMode, is_stream: bool, **overrides) -> Meta:
    """
    Builds a Meta for the channel configured through environment settings.

    Args:
        model_name: Requested model
        mode: Relay mode
        is_stream: Whether the caller asked for streaming
        **overrides: Any Meta field to override

    Returns:
        Meta instance
    """
    values = dict(
        channel_id=settings.channel_id,
        api_type=settings.channel_type,
        base_url=settings.channel_base_url,
        api_key=settings.channel_api_key,
        config=ChannelConfig(**parse_json_setting(settings.channel_config, "CHANNEL_CONFIG")),
        mode=mode,
        origin_model_name=model_name,
        is_stream=is_stream,
        model_mapping=parse_json_setting(settings.channel_model_mapping, "CHANNEL_MODEL_MAPPING"),
        channel_model_ratio=parse_json_setting(settings.channel_model_ratio, "CHANNEL_MODEL_RATIO"),
        channel_completion_ratio=parse_json_setting(settings.channel_completion_ratio, "CHANNEL_COMPLETION_RATIO"),
    )
    values.update(overrides)
    return Meta(**values)

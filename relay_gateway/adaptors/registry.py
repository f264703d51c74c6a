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
Adaptor registry.

A single table maps each APIType to its adaptor class. Adding a backend
means implementing Adaptor, reserving an APIType code and adding one
entry here.
"""

from typing import Dict, Optional, Type

from relay_gateway.adaptors.ali import AliAdaptor
from relay_gateway.adaptors.anthropic import AnthropicAdaptor
from relay_gateway.adaptors.aws import AwsClaudeAdaptor
from relay_gateway.adaptors.base import Adaptor
from relay_gateway.adaptors.cloudflare import CloudflareAdaptor
from relay_gateway.adaptors.cohere import CohereAdaptor
from relay_gateway.adaptors.coze import CozeAdaptor
from relay_gateway.adaptors.gemini import GeminiAdaptor
from relay_gateway.adaptors.ollama import OllamaAdaptor
from relay_gateway.adaptors.openai import OpenAIAdaptor
from relay_gateway.adaptors.openai_compatible import (
    AI360Adaptor,
    BaichuanAdaptor,
    BaiduAdaptor,
    DeepSeekAdaptor,
    DoubaoAdaptor,
    GroqAdaptor,
    LingYiWanWuAdaptor,
    MinimaxAdaptor,
    MistralAdaptor,
    MoonshotAdaptor,
    NovitaAdaptor,
    OpenRouterAdaptor,
    SiliconFlowAdaptor,
    StepFunAdaptor,
    TogetherAIAdaptor,
    XAIAdaptor,
    XunfeiV2Adaptor,
)
from relay_gateway.adaptors.tencent import TencentAdaptor
from relay_gateway.adaptors.vertexai import VertexAIAdaptor
from relay_gateway.adaptors.xunfei import XunfeiAdaptor
from relay_gateway.adaptors.zhipu import ZhipuAdaptor
from relay_gateway.apitype import APIType

# PaLM, AIProxy library, DeepL, Proxy and Replicate keep their codes but have no adaptor
ADAPTORS: Dict[int, Type[Adaptor]] = {
    APIType.OPENAI: OpenAIAdaptor,
    APIType.ANTHROPIC: AnthropicAdaptor,
    APIType.BAIDU: BaiduAdaptor,
    APIType.ZHIPU: ZhipuAdaptor,
    APIType.ALI: AliAdaptor,
    APIType.XUNFEI: XunfeiAdaptor,
    APIType.TENCENT: TencentAdaptor,
    APIType.GEMINI: GeminiAdaptor,
    APIType.OLLAMA: OllamaAdaptor,
    APIType.AWS_CLAUDE: AwsClaudeAdaptor,
    APIType.COZE: CozeAdaptor,
    APIType.COHERE: CohereAdaptor,
    APIType.CLOUDFLARE: CloudflareAdaptor,
    APIType.VERTEX_AI: VertexAIAdaptor,
    APIType.DEEPSEEK: DeepSeekAdaptor,
    APIType.GROQ: GroqAdaptor,
    APIType.MISTRAL: MistralAdaptor,
    APIType.MOONSHOT: MoonshotAdaptor,
    APIType.XAI: XAIAdaptor,
    APIType.TOGETHER_AI: TogetherAIAdaptor,
    APIType.OPENROUTER: OpenRouterAdaptor,
    APIType.SILICONFLOW: SiliconFlowAdaptor,
    APIType.DOUBAO: DoubaoAdaptor,
    APIType.STEPFUN: StepFunAdaptor,
    APIType.NOVITA: NovitaAdaptor,
    APIType.AI360: AI360Adaptor,
    APIType.LINGYIWANWU: LingYiWanWuAdaptor,
    APIType.BAICHUAN: BaichuanAdaptor,
    APIType.MINIMAX: MinimaxAdaptor,
    APIType.XUNFEI_V2: XunfeiV2Adaptor,
}

# Names accepted in GLOBAL_PRICING_ADAPTERS besides the APIType member names
_NAME_ALIASES: Dict[str, int] = {
    "claude": APIType.ANTHROPIC,
    "aws": APIType.AWS_CLAUDE,
    "google": APIType.GEMINI,
    "vertex": APIType.VERTEX_AI,
    "together": APIType.TOGETHER_AI,
    "360": APIType.AI360,
    "zeroone": APIType.LINGYIWANWU,
}


def get_adaptor(api_type: int) -> Optional[Adaptor]:
    """
    Returns a fresh adaptor for an API type.

    Args:
        api_type: APIType code

    Returns:
        Adaptor instance, or None for unknown or unsupported types
    """
    adaptor_class = ADAPTORS.get(api_type)
    if adaptor_class is None:
        return None
    return adaptor_class()


def api_type_by_name(name: str) -> Optional[int]:
    """Resolves ``openai``, ``vertexai``, ``together_ai`` and the aliases to an APIType."""
    key = name.strip().lower().replace("-", "_")
    if key in _NAME_ALIASES:
        return _NAME_ALIASES[key]
    for member in APIType:
        if member.name.lower() == key or member.name.lower().replace("_", "") == key:
            return member
    return None


def get_adaptor_by_name(name: str) -> Optional[Adaptor]:
    """
    Returns a fresh adaptor for a channel or contributor name.

    Args:
        name: Adaptor name such as ``openai`` or ``anthropic``

    Returns:
        Adaptor instance, or None when the name is unknown
    """
    api_type = api_type_by_name(name)
    if api_type is None:
        return None
    return get_adaptor(api_type)

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
RelayGate configuration.

All settings are loaded from the environment (and an optional .env file)
through Pydantic Settings. Module-level constants mirror the most used
values so hot paths do not go through the settings object.
"""

import json
from typing import Any, Dict, List

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relay_gateway.apitype import APIType


class Settings(BaseSettings):
    """
    Application settings.

    Every field can be overridden by the environment variable named in its alias.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ==================================================================================================
    # Logging
    # ==================================================================================================

    # TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # ==================================================================================================
    # Outbound HTTP
    # ==================================================================================================

    # HTTP or SOCKS5 proxy, e.g. http://127.0.0.1:7890 or socks5://127.0.0.1:1080
    proxy_url: str = Field(default="", alias="PROXY_URL")
    proxy_username: str = Field(default="", alias="PROXY_USERNAME")
    proxy_password: str = Field(default="", alias="PROXY_PASSWORD")

    # Connection-level retries; delay = base_retry_delay * (2 ** attempt)
    max_retries: int = Field(default=3, alias="MAX_RETRIES")
    base_retry_delay: float = Field(default=1.0, alias="BASE_RETRY_DELAY")

    # Read timeout for buffered requests (seconds)
    request_timeout: float = Field(default=600.0, alias="REQUEST_TIMEOUT")

    # Connect timeout for streaming requests; reads are unbounded and follow the caller
    stream_connect_timeout: float = Field(default=60.0, alias="STREAM_CONNECT_TIMEOUT")

    # Maximum length of one upstream SSE line (bytes)
    stream_line_max_bytes: int = Field(default=1024 * 1024, alias="STREAM_LINE_MAX_BYTES")

    # ==================================================================================================
    # Thinking signature cache
    # ==================================================================================================

    signature_cache_ttl: int = Field(default=24 * 3600, alias="SIGNATURE_CACHE_TTL")
    signature_cache_cleanup_interval: int = Field(default=3600, alias="SIGNATURE_CACHE_CLEANUP_INTERVAL")

    # Optional shared backend for signatures (redis://host:port/db)
    redis_url: str = Field(default="", alias="REDIS_URL")

    # ==================================================================================================
    # Pricing
    # ==================================================================================================

    # Ordered contributors of the global pricing registry; first registered wins on conflict
    global_pricing_adapters: str = Field(
        default="openai,anthropic,gemini,ali,baidu,zhipu,deepseek,groq,mistral,moonshot,cohere,tencent,xunfei",
        alias="GLOBAL_PRICING_ADAPTERS",
    )

    # ==================================================================================================
    # Vendor defaults
    # ==================================================================================================

    # OpenRouter app attribution; HTTP-Referer is only sent when set
    openrouter_referer: str = Field(default="", alias="OPENROUTER_HTTP_REFERER")

    gemini_version: str = Field(default="v1", alias="GEMINI_VERSION")
    gemini_safety_setting: str = Field(default="BLOCK_NONE", alias="GEMINI_SAFETY_SETTING")

    # Long-running video generation polling interval (seconds)
    video_poll_interval: float = Field(default=5.0, alias="VIDEO_POLL_INTERVAL")

    # Ali Wanx image task polling
    ali_task_poll_interval: float = Field(default=2.0, alias="ALI_TASK_POLL_INTERVAL")
    ali_task_max_polls: int = Field(default=60, alias="ALI_TASK_MAX_POLLS")

    # ==================================================================================================
    # Object storage for generated images (S3 compatible, e.g. Cloudflare R2)
    # ==================================================================================================

    r2_account_id: str = Field(default="", alias="CLOUDFLARE_R2_ACCOUNT_ID")
    r2_access_key_id: str = Field(default="", alias="CLOUDFLARE_R2_ACCESS_KEY_ID")
    r2_secret_access_key: str = Field(default="", alias="CLOUDFLARE_R2_SECRET_ACCESS_KEY")
    r2_bucket: str = Field(default="", alias="CLOUDFLARE_R2_BUCKET")
    r2_public_url: str = Field(default="", alias="CLOUDFLARE_R2_PUBLIC_URL")

    # ==================================================================================================
    # Channel served by the bundled HTTP surface
    # ==================================================================================================

    channel_id: int = Field(default=1, alias="CHANNEL_ID")
    channel_type: int = Field(default=int(APIType.OPENAI), alias="CHANNEL_TYPE")
    channel_base_url: str = Field(default="", alias="CHANNEL_BASE_URL")
    channel_api_key: str = Field(default="", alias="CHANNEL_API_KEY")

    # JSON objects
    channel_config: str = Field(default="", alias="CHANNEL_CONFIG")
    channel_model_ratio: str = Field(default="", alias="CHANNEL_MODEL_RATIO")
    channel_completion_ratio: str = Field(default="", alias="CHANNEL_COMPLETION_RATIO")
    channel_model_mapping: str = Field(default="", alias="CHANNEL_MODEL_MAPPING")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalizes and validates the log level."""
        valid_levels = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(valid_levels)}")
        return v


settings = Settings()


# ==================================================================================================
# Module-level constants
# ==================================================================================================

APP_TITLE: str = "RelayGate"
APP_VERSION: str = "1.0.0"
APP_DESCRIPTION: str = (
    "Unified OpenAI / Claude Messages gateway in front of heterogeneous LLM providers."
)

LOG_LEVEL: str = settings.log_level
MAX_RETRIES: int = settings.max_retries
BASE_RETRY_DELAY: float = settings.base_retry_delay
STREAM_LINE_MAX_BYTES: int = settings.stream_line_max_bytes
SIGNATURE_CACHE_TTL: int = settings.signature_cache_ttl
SIGNATURE_CACHE_CLEANUP_INTERVAL: int = settings.signature_cache_cleanup_interval

# Used by the Anthropic family when the caller leaves max_tokens unset
DEFAULT_MAX_TOKENS: int = 500

# Base URLs used when a channel does not configure one, indexed by APIType
DEFAULT_BASE_URLS: Dict[int, str] = {
    APIType.OPENAI: "https://api.openai.com",
    APIType.ANTHROPIC: "https://api.anthropic.com",
    APIType.BAIDU: "https://qianfan.baidubce.com",
    APIType.ZHIPU: "https://open.bigmodel.cn",
    APIType.ALI: "https://dashscope.aliyuncs.com",
    APIType.XUNFEI: "wss://spark-api.xf-yun.com",
    APIType.XUNFEI_V2: "https://spark-api-open.xf-yun.com",
    APIType.TENCENT: "https://hunyuan.tencentcloudapi.com",
    APIType.GEMINI: "https://generativelanguage.googleapis.com",
    APIType.OLLAMA: "http://localhost:11434",
    APIType.COZE: "https://api.coze.com",
    APIType.COHERE: "https://api.cohere.ai",
    APIType.CLOUDFLARE: "https://api.cloudflare.com",
    APIType.DEEPSEEK: "https://api.deepseek.com",
    APIType.GROQ: "https://api.groq.com/openai",
    APIType.MISTRAL: "https://api.mistral.ai",
    APIType.MOONSHOT: "https://api.moonshot.cn",
    APIType.XAI: "https://api.x.ai",
    APIType.TOGETHER_AI: "https://api.together.xyz",
    APIType.OPENROUTER: "https://openrouter.ai/api",
    APIType.SILICONFLOW: "https://api.siliconflow.cn",
    APIType.DOUBAO: "https://ark.cn-beijing.volces.com",
    APIType.STEPFUN: "https://api.stepfun.com",
    APIType.NOVITA: "https://api.novita.ai/v3/openai",
    APIType.AI360: "https://ai.360.cn",
    APIType.LINGYIWANWU: "https://api.lingyiwanwu.com",
    APIType.BAICHUAN: "https://api.baichuan-ai.com",
    APIType.MINIMAX: "https://api.minimax.chat",
}


def get_default_base_url(api_type: int) -> str:
    """
    Returns the vendor base URL for an API type.

    Args:
        api_type: APIType code

    Returns:
        Base URL without trailing slash, or an empty string when the
        backend has no public default (AWS, Vertex AI).
    """
    return DEFAULT_BASE_URLS.get(api_type, "")


def get_global_pricing_adapters() -> List[str]:
    """Returns the ordered list of global pricing contributors."""
    return [name.strip().lower() for name in settings.global_pricing_adapters.split(",") if name.strip()]


def parse_json_setting(raw: str, name: str) -> Dict[str, Any]:
    """
    Parses a JSON object stored in a setting.

    Malformed values are logged and treated as empty so a typo in an
    optional override never prevents startup.

    Args:
        raw: Raw setting value
        name: Setting name (for logging)

    Returns:
        Parsed dictionary (empty when unset or invalid)
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed {name}: {e}")
        return {}
    if not isinstance(value, dict):
        logger.warning(f"Ignoring {name}: expected a JSON object")
        return {}
    return value

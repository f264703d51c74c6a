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
Layered pricing resolver.

Quota is the internal billing unit (1 USD = 500,000 quota). A model's
``ratio`` is the quota charged per prompt token and its
``completion_ratio`` multiplies ``ratio`` for completion tokens.

Ratios are resolved in layers:

1. channel override (the operator's custom pricing)
2. the adaptor's built-in price list
3. the global registry merged from the contributing adaptors
4. a fixed default, logged as a warning
"""

import math
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from relay_gateway.config import get_global_pricing_adapters

# ==================================================================================================
# Units
# ==================================================================================================

USD2RMB = 7.3
QUOTA_PER_USD = 500000
# Quota per token for a price given in USD per million tokens
MILLI_TOKENS_USD = 0.5
# Quota per token for a price given in RMB per million tokens
MILLI_TOKENS_RMB = 3.5
# Quota per image unit for a price given in USD / RMB per image
IMAGE_USD_PER_PIC = QUOTA_PER_USD / 1000
IMAGE_RMB_PER_PIC = IMAGE_USD_PER_PIC / USD2RMB
# Generated video is billed as TOKENS_PER_SEC completion tokens per second
TOKENS_PER_SEC = 1000
VIDEO_USD_PER_SEC = QUOTA_PER_USD / TOKENS_PER_SEC

# Each generated image counts as this many token units
IMAGE_TOKEN_UNITS = 1000

DEFAULT_MODEL_RATIO = 2.5 * MILLI_TOKENS_USD
DEFAULT_COMPLETION_RATIO = 1.0

# Price-list unit names and the multiplier turning a price into a ratio
PRICE_UNITS: Dict[str, float] = {
    "usd": MILLI_TOKENS_USD,
    "rmb": MILLI_TOKENS_RMB,
    "image_usd": IMAGE_USD_PER_PIC,
    "image_rmb": IMAGE_RMB_PER_PIC,
    "video": VIDEO_USD_PER_SEC,
    "quota": 1.0,
}

# Audio tokens cost this many times the text ratio (default 16)
AUDIO_RATIO: Dict[str, float] = {
    "gpt-4o-audio-preview": 16,
    "gpt-4o-audio-preview-2024-12-17": 16,
    "gpt-4o-audio-preview-2024-10-01": 40,
    "gpt-4o-mini-audio-preview": 10 / 0.15,
    "gpt-4o-mini-audio-preview-2024-12-17": 10 / 0.15,
    "gpt-4o-transcribe": 6 / 2.5,
    "gpt-4o-mini-transcribe": 3 / 1.25,
}
DEFAULT_AUDIO_RATIO = 16.0

# Completion audio tokens cost this many times the prompt audio ratio (default 2)
AUDIO_COMPLETION_RATIO: Dict[str, float] = {
    "whisper-1": 0,
    "gpt-4o-audio-preview": 2,
    "gpt-4o-audio-preview-2024-12-17": 2,
    "gpt-4o-audio-preview-2024-10-01": 2,
    "gpt-4o-mini-audio-preview": 2,
    "gpt-4o-mini-audio-preview-2024-12-17": 2,
}
DEFAULT_AUDIO_COMPLETION_RATIO = 2.0


@dataclass(frozen=True)
class ModelConfig:
    """
    Price list entry.

    Attributes:
        ratio: Quota per prompt token (or per image / video unit)
        completion_ratio: Output price relative to ``ratio``
        max_tokens: Token limit on this channel, 0 means unlimited
    """
    ratio: float
    completion_ratio: float = 1.0
    max_tokens: int = 0


def get_audio_prompt_ratio(model_name: str) -> float:
    return AUDIO_RATIO.get(model_name, DEFAULT_AUDIO_RATIO)


def get_audio_completion_ratio(model_name: str) -> float:
    return AUDIO_COMPLETION_RATIO.get(model_name, DEFAULT_AUDIO_COMPLETION_RATIO)


# ==================================================================================================
# Global registry
# ==================================================================================================

class GlobalPricingManager:
    """
    Process-wide price list merged from the contributing adaptors.

    Built lazily on first read with a double-checked lock; afterwards reads
    go to an immutable snapshot without locking. On a model name present in
    several contributors the first registered price wins and the conflict is
    logged.
    """

    def __init__(
        self,
        get_adaptor_func: Optional[Callable[[str], object]] = None,
        contributing_adapters: Optional[List[str]] = None,
    ):
        """
        Args:
            get_adaptor_func: Resolves a contributor name to an adaptor (or None)
            contributing_adapters: Ordered contributor names; defaults to
                GLOBAL_PRICING_ADAPTERS
        """
        self._lock = threading.Lock()
        self._get_adaptor_func = get_adaptor_func
        self._contributing_adapters: Optional[List[str]] = (
            list(contributing_adapters) if contributing_adapters is not None else None
        )
        self._pricing: Dict[str, ModelConfig] = {}
        self._initialized = False

    def set_adaptor_getter(self, get_adaptor_func: Callable[[str], object]) -> None:
        with self._lock:
            self._get_adaptor_func = get_adaptor_func
            self._initialized = False

    def set_contributing_adapters(self, names: List[str]) -> None:
        """Replaces the contributor list; the registry is rebuilt on next read."""
        with self._lock:
            self._contributing_adapters = [name.lower() for name in names]
            self._initialized = False
        logger.info(f"Global pricing adapters updated: {names}, will reload on next access")

    def get_contributing_adapters(self) -> List[str]:
        with self._lock:
            return list(self._contributors())

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _contributors(self) -> List[str]:
        if self._contributing_adapters is None:
            self._contributing_adapters = get_global_pricing_adapters()
        return self._contributing_adapters

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._build()

    def _build(self) -> None:
        """Merges contributor price lists. Caller holds the lock."""
        get_adaptor = self._get_adaptor_func
        if get_adaptor is None:
            from relay_gateway.adaptors.registry import get_adaptor_by_name
            get_adaptor = self._get_adaptor_func = get_adaptor_by_name

        contributors = self._contributors()
        logger.info("Initializing global model pricing from contributing adapters...")

        merged: Dict[str, ModelConfig] = {}
        success_count = 0
        for name in contributors:
            adaptor = get_adaptor(name)
            if adaptor is None:
                logger.warning(f"No adaptor found for global pricing contributor '{name}'")
                continue

            pricing = adaptor.get_default_model_pricing()
            if not pricing:
                logger.warning(f"Adaptor '{name}' returned empty pricing")
                continue

            merged_count = 0
            conflict_count = 0
            for model_name, price in pricing.items():
                existing = merged.get(model_name)
                if existing is not None:
                    logger.warning(
                        f"Model {model_name} pricing conflict: existing={existing.ratio:.9f}, "
                        f"new={price.ratio:.9f} from '{name}' (keeping existing)"
                    )
                    conflict_count += 1
                    continue
                merged[model_name] = price
                merged_count += 1

            success_count += 1
            logger.debug(f"Merged {merged_count} models from '{name}' ({conflict_count} conflicts)")

        self._pricing = merged
        self._initialized = True
        logger.info(
            f"Global model pricing initialized with {len(merged)} models "
            f"from {success_count}/{len(contributors)} adapters"
        )

    def reload(self) -> None:
        """Rebuilds the registry from the contributors."""
        with self._lock:
            self._initialized = False
            self._build()

    def get(self, model_name: str) -> Optional[ModelConfig]:
        self._ensure_initialized()
        return self._pricing.get(model_name)

    def get_model_ratio(self, model_name: str) -> float:
        """Global ratio of a model, 0 when unknown."""
        price = self.get(model_name)
        return price.ratio if price else 0.0

    def get_completion_ratio(self, model_name: str) -> float:
        """Global completion ratio of a model, 0 when unknown."""
        price = self.get(model_name)
        return price.completion_ratio if price else 0.0

    def get_all(self) -> Dict[str, ModelConfig]:
        """Copy of the merged price list."""
        self._ensure_initialized()
        return dict(self._pricing)

    def stats(self) -> Tuple[int, int]:
        """Returns (model count, contributing adapter count)."""
        self._ensure_initialized()
        return len(self._pricing), len(self._contributors())


global_pricing_manager = GlobalPricingManager()


# ==================================================================================================
# Layered resolution
# ==================================================================================================

def resolve_model_ratio(
    model_name: str,
    channel_overrides: Optional[Mapping[str, float]],
    adaptor,
    manager: Optional[GlobalPricingManager] = None,
) -> float:
    """
    Resolves the prompt ratio of a model.

    Args:
        model_name: Actual (post-mapping) model name
        channel_overrides: Channel's per-model ratio overrides
        adaptor: Adaptor of the channel, may be None
        manager: Global registry (defaults to the process-wide one)

    Returns:
        Ratio in quota per token
    """
    if channel_overrides and model_name in channel_overrides:
        return float(channel_overrides[model_name])

    if adaptor is not None and model_name in adaptor.get_default_model_pricing():
        return adaptor.get_model_ratio(model_name)

    manager = manager or global_pricing_manager
    global_ratio = manager.get_model_ratio(model_name)
    if global_ratio > 0:
        return global_ratio

    logger.warning(f"No pricing found for model {model_name}, using default ratio {DEFAULT_MODEL_RATIO}")
    return DEFAULT_MODEL_RATIO


def resolve_completion_ratio(
    model_name: str,
    channel_overrides: Optional[Mapping[str, float]],
    adaptor,
    manager: Optional[GlobalPricingManager] = None,
) -> float:
    """
    Resolves the completion ratio of a model, same layers as resolve_model_ratio().
    """
    if channel_overrides and model_name in channel_overrides:
        return float(channel_overrides[model_name])

    if adaptor is not None and model_name in adaptor.get_default_model_pricing():
        return adaptor.get_completion_ratio(model_name)

    manager = manager or global_pricing_manager
    global_ratio = manager.get_completion_ratio(model_name)
    if global_ratio > 0:
        return global_ratio

    logger.warning(
        f"No completion pricing found for model {model_name}, using default {DEFAULT_COMPLETION_RATIO}"
    )
    return DEFAULT_COMPLETION_RATIO


def calculate_quota(
    prompt_tokens: int,
    completion_tokens: int,
    ratio: float,
    completion_ratio: float,
    tools_cost: int = 0,
) -> int:
    """
    Billing formula.

    ``quota = prompt * ratio + completion * ratio * completion_ratio + tools_cost``,
    rounded up so a non-free request never costs 0.
    """
    quota = prompt_tokens * ratio + completion_tokens * ratio * completion_ratio
    return int(math.ceil(quota)) + tools_cost


def apply_audio_token_ratio(usage, model_name: str) -> None:
    """
    Folds audio tokens into text-equivalent token counts.

    Prompt audio tokens count ``AUDIO_RATIO[model]`` text tokens each,
    completion audio tokens a further ``AUDIO_COMPLETION_RATIO[model]`` on
    top, so the regular billing formula prices them. Only applies when the
    backend reported audio details.

    Args:
        usage: Usage, modified in place
        model_name: Billed model
    """
    prompt_details = usage.prompt_tokens_details
    completion_details = usage.completion_tokens_details
    has_audio = (prompt_details is not None and prompt_details.audio_tokens > 0) or (
        completion_details is not None and completion_details.audio_tokens > 0
    )
    if not has_audio:
        return

    audio_ratio = get_audio_prompt_ratio(model_name)
    if prompt_details is not None:
        usage.prompt_tokens = prompt_details.text_tokens + int(
            math.ceil(prompt_details.audio_tokens * audio_ratio)
        )
    if completion_details is not None:
        usage.completion_tokens = completion_details.text_tokens + int(
            math.ceil(completion_details.audio_tokens * audio_ratio * get_audio_completion_ratio(model_name))
        )
    usage.fill_total()

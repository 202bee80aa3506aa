"""
Token counting and model pricing.

Counting uses tiktoken encodings.  Models unknown to tiktoken use the
`cl100k_base` encoding; if no encoding can be loaded at all (for
example the BPE files cannot be fetched on an offline machine) the
counter degrades to the 4-characters-per-token heuristic.

Prices are approximate USD rates per million tokens.  Unknown models use
`DEFAULT_PRICING`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import tiktoken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float
    max_context_tokens: int

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_per_million / 1_000_000
            + output_tokens * self.output_per_million / 1_000_000
        )


DEFAULT_PRICING = ModelPricing(1.0, 3.0, 32_000)

MODEL_PRICING: Dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(5.0, 15.0, 128_000),
    "gpt-4o-mini": ModelPricing(0.15, 0.6, 128_000),
    "gpt-4.1": ModelPricing(2.0, 8.0, 1_000_000),
    "gpt-4.1-mini": ModelPricing(0.4, 1.6, 1_000_000),
    "o3-mini": ModelPricing(1.1, 4.4, 200_000),
    "gemini-pro": ModelPricing(0.5, 1.5, 32_000),
    "gemini-1.5-pro": ModelPricing(1.25, 5.0, 2_000_000),
    "gemini-1.5-flash": ModelPricing(0.075, 0.3, 1_000_000),
    "gemini-2.0-flash": ModelPricing(0.1, 0.4, 1_000_000),
    "gemini-2.5-pro": ModelPricing(1.25, 10.0, 1_000_000),
    "gemini-2.5-flash": ModelPricing(0.3, 2.5, 1_000_000),
    "anthropic/claude-3.5-sonnet": ModelPricing(3.0, 15.0, 200_000),
    "anthropic/claude-sonnet-4": ModelPricing(3.0, 15.0, 200_000),
    "openai/gpt-4o": ModelPricing(5.0, 15.0, 128_000),
    "openai/gpt-4o-mini": ModelPricing(0.15, 0.6, 128_000),
    "google/gemini-2.0-flash-001": ModelPricing(0.1, 0.4, 1_000_000),
    "deepseek/deepseek-chat": ModelPricing(0.27, 1.1, 64_000),
}


def get_pricing(model: str) -> ModelPricing:
    """Look up pricing; `vendor/model` ids fall back to the bare model name."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    bare = model.rsplit("/", 1)[-1]
    return MODEL_PRICING.get(bare, DEFAULT_PRICING)


def heuristic_tokens(text: str) -> int:
    """`ceil(len / 4)`, the estimate used for context budgeting."""
    return math.ceil(len(text) / 4)


class TokenCounter:
    """Counts tokens for a model, caching the loaded encoding."""

    def __init__(self, model: str = "gpt-4o") -> None:
        self.model = model
        self._encoding: Optional[Any] = None
        self._loaded = False

    def _get_encoding(self) -> Optional[Any]:
        if self._loaded:
            return self._encoding
        self._loaded = True
        try:
            self._encoding = tiktoken.encoding_for_model(self.model)
        except KeyError:
            # Unknown model name (Gemini, OpenRouter ids, ...)
            self._encoding = self._base_encoding()
        except Exception as exc:
            logger.warning("Could not load tiktoken encoding for %s (%s); using heuristic.", self.model, exc)
            self._encoding = None
        return self._encoding

    @staticmethod
    def _base_encoding() -> Optional[Any]:
        try:
            return tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            logger.warning("Could not load cl100k_base encoding (%s); using heuristic.", exc)
            return None

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            return heuristic_tokens(text)
        return len(encoding.encode(text, disallowed_special=()))

"""Model pricing table and cost calculation."""

from __future__ import annotations

import logging
import re
import warnings
from collections.abc import Mapping
from dataclasses import dataclass

from ccstats.errors import UnknownModelWarning

logger = logging.getLogger(__name__)

_TOKENS_PER_UNIT = 1_000_000


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """USD per million tokens for each token category."""

    input: float
    output: float
    cache_write: float
    cache_read: float


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_write_cost: float = 0.0
    cache_read_cost: float = 0.0

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.cache_write_cost + self.cache_read_cost


_OPUS = ModelPricing(input=15.0, output=75.0, cache_write=18.75, cache_read=1.5)
_SONNET = ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.3)

# Prices per million tokens (USD), Anthropic and Google public pricing.
MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-4-opus": _OPUS,
    "claude-4-sonnet": _SONNET,
    "claude-4-haiku": ModelPricing(input=1.0, output=5.0, cache_write=1.25, cache_read=0.1),
    "claude-3-5-sonnet": _SONNET,
    "claude-3-opus": _OPUS,
    "claude-3-sonnet": _SONNET,
    "claude-3-haiku": ModelPricing(input=0.25, output=1.25, cache_write=0.3, cache_read=0.03),
    "gemini-2.5-pro": ModelPricing(input=1.25, output=10.0, cache_write=0.31, cache_read=0.25),
}

# Squashed spellings (lowercase, punctuation removed) -> pricing key.
MODEL_ALIASES: dict[str, str] = {
    "claude4opus": "claude-4-opus",
    "claude4sonnet": "claude-4-sonnet",
    "claude4haiku": "claude-4-haiku",
    "claudeopus4": "claude-4-opus",
    "claudesonnet4": "claude-4-sonnet",
    "claudehaiku4": "claude-4-haiku",
    "opus4": "claude-4-opus",
    "sonnet4": "claude-4-sonnet",
    "haiku4": "claude-4-haiku",
    "claude35sonnet": "claude-3-5-sonnet",
    "claude3sonnet35": "claude-3-5-sonnet",
    "claudesonnet35": "claude-3-5-sonnet",
    "claude3opus": "claude-3-opus",
    "claude3sonnet": "claude-3-sonnet",
    "claude3haiku": "claude-3-haiku",
    "claudeopus3": "claude-3-opus",
    "claudesonnet3": "claude-3-sonnet",
    "claudehaiku3": "claude-3-haiku",
    "gemini25pro": "gemini-2.5-pro",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_DATE_SUFFIX = re.compile(r"(\d{8})$")


def squash_model_name(model: str) -> str:
    """Lowercase and strip punctuation: 'Claude-3.5-Sonnet' -> 'claude35sonnet'."""
    return _NON_ALNUM.sub("", model.lower())


class PricingTable:
    """Maps model identifiers to per-category rates and prices token usage.

    Unknown models are priced at zero; each unknown name is reported once
    through ``UnknownModelWarning`` and the module logger.
    """

    def __init__(
        self,
        pricing: Mapping[str, ModelPricing] | None = None,
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._pricing = dict(MODEL_PRICING if pricing is None else pricing)
        self._aliases = dict(MODEL_ALIASES if aliases is None else aliases)
        self._by_squashed = {squash_model_name(key): key for key in self._pricing}
        self.unknown_models: set[str] = set()

    @property
    def supported_models(self) -> list[str]:
        return sorted(self._pricing)

    def normalize_model_name(self, model: str) -> str | None:
        """Resolve a raw model identifier to a pricing key, or ``None``."""
        if model in self._pricing:
            return model
        squashed = squash_model_name(model)
        if not squashed:
            return None
        candidates = [squashed]
        undated = _DATE_SUFFIX.sub("", squashed)
        if undated != squashed:
            candidates.append(undated)
        for candidate in candidates:
            if candidate in self._aliases:
                return self._aliases[candidate]
            if candidate in self._by_squashed:
                return self._by_squashed[candidate]
        return self._match_family(undated)

    def _match_family(self, squashed: str) -> str | None:
        match squashed:
            case s if "opus" in s:
                key = "claude-4-opus" if "4" in s else "claude-3-opus" if "3" in s else None
            case s if "sonnet" in s:
                if "35" in s:
                    key = "claude-3-5-sonnet"
                elif "4" in s:
                    key = "claude-4-sonnet"
                elif "3" in s:
                    key = "claude-3-sonnet"
                else:
                    key = None
            case s if "haiku" in s:
                key = "claude-4-haiku" if "4" in s else "claude-3-haiku" if "3" in s else None
            case _:
                key = None
        return key if key in self._pricing else None

    def get_pricing(self, model: str) -> ModelPricing | None:
        key = self.normalize_model_name(model)
        return self._pricing.get(key) if key else None

    def cost_breakdown(
        self,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> CostBreakdown:
        """Price each token category separately. Unknown models yield zeros."""
        pricing = self.get_pricing(model)
        if pricing is None:
            self._report_unknown(
                model, input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens
            )
            return CostBreakdown()
        return CostBreakdown(
            input_cost=input_tokens / _TOKENS_PER_UNIT * pricing.input,
            output_cost=output_tokens / _TOKENS_PER_UNIT * pricing.output,
            cache_write_cost=cache_creation_tokens / _TOKENS_PER_UNIT * pricing.cache_write,
            cache_read_cost=cache_read_tokens / _TOKENS_PER_UNIT * pricing.cache_read,
        )

    def calculate_cost(
        self,
        model: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float:
        return self.cost_breakdown(
            model, input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens
        ).total_cost

    def _report_unknown(self, model: str, total_tokens: int) -> None:
        if model in self.unknown_models:
            return
        self.unknown_models.add(model)
        logger.warning("Unknown model pricing for %r (tokens=%d); cost counted as 0", model, total_tokens)
        warnings.warn(
            f"No pricing for model {model!r}; cost counted as 0",
            UnknownModelWarning,
            stacklevel=3,
        )

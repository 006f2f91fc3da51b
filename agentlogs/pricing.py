"""Model pricing lookup and token cost computation.

Converters receive a caller-supplied pricing table (model id -> ``ModelPricing``)
and price each model's usage with :func:`calculate_cost`. Models missing from
the table cost zero. :class:`LiteLLMPricingFetcher` builds such a table from
the LiteLLM price list.
"""
from __future__ import annotations

import logging
import math
from typing import Any, Callable, Mapping, Optional

import requests
from pydantic import BaseModel, ValidationError

from agentlogs import config
from agentlogs.model_identity import bare_model_name
from agentlogs.models import TokenUsage

logger = logging.getLogger("agentlogs.pricing")

DEFAULT_TIERED_THRESHOLD = 200_000

DEFAULT_PROVIDER_PREFIXES = (
    "anthropic/",
    "claude-3-5-",
    "claude-3-",
    "claude-",
    "openai/",
    "azure/",
    "openrouter/openai/",
)


class ModelPricing(BaseModel):
    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None
    max_tokens: Optional[float] = None
    max_input_tokens: Optional[float] = None
    max_output_tokens: Optional[float] = None
    input_cost_per_token_above_200k_tokens: Optional[float] = None
    output_cost_per_token_above_200k_tokens: Optional[float] = None
    cache_creation_input_token_cost_above_200k_tokens: Optional[float] = None
    cache_read_input_token_cost_above_200k_tokens: Optional[float] = None
    input_cost_per_token_above_128k_tokens: Optional[float] = None
    output_cost_per_token_above_128k_tokens: Optional[float] = None


PricingTable = Mapping[str, Any]


def coerce_pricing(value: Any) -> ModelPricing | None:
    if isinstance(value, ModelPricing):
        return value
    if not isinstance(value, Mapping):
        return None
    try:
        return ModelPricing.model_validate(dict(value))
    except ValidationError:
        return None


def _tiered_cost(
    total_tokens: int | None,
    base_price: float | None,
    tiered_price: float | None,
    threshold: int = DEFAULT_TIERED_THRESHOLD,
) -> float:
    if not total_tokens or total_tokens <= 0:
        return 0.0
    if total_tokens > threshold and tiered_price is not None:
        below = min(total_tokens, threshold)
        above = max(0, total_tokens - threshold)
        cost = above * tiered_price
        if base_price is not None:
            cost += below * base_price
        return cost
    if base_price is not None:
        return total_tokens * base_price
    return 0.0


def calculate_cost_from_pricing(tokens: Mapping[str, int], pricing: ModelPricing) -> float:
    """Price a LiteLLM-style token breakdown.

    ``tokens`` uses ``input_tokens`` (uncached input only), ``output_tokens``,
    ``cache_creation_input_tokens`` and ``cache_read_input_tokens``.
    """
    return (
        _tiered_cost(
            tokens.get("input_tokens"),
            pricing.input_cost_per_token,
            pricing.input_cost_per_token_above_200k_tokens,
        )
        + _tiered_cost(
            tokens.get("output_tokens"),
            pricing.output_cost_per_token,
            pricing.output_cost_per_token_above_200k_tokens,
        )
        + _tiered_cost(
            tokens.get("cache_creation_input_tokens"),
            pricing.cache_creation_input_token_cost,
            pricing.cache_creation_input_token_cost_above_200k_tokens,
        )
        + _tiered_cost(
            tokens.get("cache_read_input_tokens"),
            pricing.cache_read_input_token_cost,
            pricing.cache_read_input_token_cost_above_200k_tokens,
        )
    )


def usage_cost_tokens(usage: TokenUsage, cache_creation_tokens: int = 0) -> dict[str, int]:
    """Split canonical usage (input includes cached) into priced buckets."""
    uncached = usage.inputTokens - usage.cachedInputTokens - cache_creation_tokens
    return {
        "input_tokens": max(0, uncached),
        "output_tokens": max(0, usage.outputTokens),
        "cache_creation_input_tokens": max(0, cache_creation_tokens),
        "cache_read_input_tokens": max(0, usage.cachedInputTokens),
    }


def lookup_pricing(
    pricing_table: PricingTable | None,
    model: str | None,
    prefixes: tuple[str, ...] = DEFAULT_PROVIDER_PREFIXES,
) -> ModelPricing | None:
    """Find a table entry by exact id, bare id, or provider-prefixed id."""
    if not pricing_table or not model:
        return None
    bare = bare_model_name(model)
    candidates = [model, bare, *(f"{prefix}{bare}" for prefix in prefixes)]
    for candidate in candidates:
        if candidate in pricing_table:
            pricing = coerce_pricing(pricing_table[candidate])
            if pricing is not None:
                return pricing
    return None


def calculate_cost(
    usage: TokenUsage,
    pricing_table: PricingTable | None,
    model: str | None,
    cache_creation_tokens: int = 0,
) -> float:
    """Cost of ``usage`` under ``model``'s entry; unknown models cost zero."""
    pricing = lookup_pricing(pricing_table, model)
    if pricing is None:
        if model and pricing_table:
            logger.debug("No pricing entry for model %s", model)
        return 0.0
    return calculate_cost_from_pricing(usage_cost_tokens(usage, cache_creation_tokens), pricing)


def format_usd(value: float) -> str:
    if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
        return "$0.00"
    if value < 0.01:
        return f"${value:,.4f}"
    return f"${value:,.2f}"


class LiteLLMPricingFetcher:
    """Load and cache the LiteLLM model price list."""

    def __init__(
        self,
        offline: bool | None = None,
        offline_loader: Callable[[], Mapping[str, Any]] | None = None,
        url: str | None = None,
        provider_prefixes: tuple[str, ...] = DEFAULT_PROVIDER_PREFIXES,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.offline = config.PRICING_OFFLINE if offline is None else offline
        self.offline_loader = offline_loader
        self.url = url or config.PRICING_URL
        self.provider_prefixes = provider_prefixes
        self.timeout = timeout if timeout is not None else config.PRICING_TIMEOUT_SECONDS
        self._session = session
        self._cache: dict[str, ModelPricing] | None = None

    def clear_cache(self) -> None:
        self._cache = None

    @staticmethod
    def _parse_table(raw: Any) -> dict[str, ModelPricing]:
        table: dict[str, ModelPricing] = {}
        if not isinstance(raw, Mapping):
            return table
        for model_name, model_data in raw.items():
            pricing = coerce_pricing(model_data)
            if pricing is not None:
                table[str(model_name)] = pricing
        return table

    def _load_offline(self) -> dict[str, ModelPricing]:
        if self.offline_loader is None:
            logger.warning("Offline pricing requested without a loader; using an empty table")
            return {}
        self._cache = self._parse_table(self.offline_loader())
        return self._cache

    def _fetch_remote(self) -> dict[str, ModelPricing]:
        logger.info("Fetching latest model pricing from %s", self.url)
        http = self._session or requests
        response = http.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        self._cache = self._parse_table(response.json())
        logger.info("Loaded pricing for %d models", len(self._cache))
        return self._cache

    def fetch_model_pricing(self) -> dict[str, ModelPricing]:
        if self._cache is not None:
            return self._cache
        if self.offline:
            return self._load_offline()
        try:
            return self._fetch_remote()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Failed to fetch model pricing (%s); falling back to offline loader", exc)
            if self.offline_loader is not None:
                return self._load_offline()
            return {}

    def get_model_pricing(self, model_name: str) -> ModelPricing | None:
        table = self.fetch_model_pricing()
        direct = lookup_pricing(table, model_name, self.provider_prefixes)
        if direct is not None:
            return direct
        lowered = bare_model_name(model_name).lower()
        if not lowered:
            return None
        for key, value in table.items():
            comparison = key.lower()
            if comparison in lowered or lowered in comparison:
                return value
        return None

    def get_model_context_limit(self, model_name: str) -> int | None:
        pricing = self.get_model_pricing(model_name)
        if pricing is None or pricing.max_input_tokens is None:
            return None
        return int(pricing.max_input_tokens)

    def calculate_cost_from_tokens(self, tokens: Mapping[str, int], model_name: str | None) -> float:
        """Strict variant: raises ``LookupError`` when the model has no pricing."""
        if not model_name:
            return 0.0
        pricing = self.get_model_pricing(model_name)
        if pricing is None:
            raise LookupError(f"Model pricing not found for {model_name}")
        return calculate_cost_from_pricing(tokens, pricing)

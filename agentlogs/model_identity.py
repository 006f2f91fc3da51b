"""Model identifier normalization across agent sources."""
from __future__ import annotations

from typing import Any


def standardize_model_name(raw_model: Any, provider: str) -> str | None:
    """Prefix a bare model id with its provider, e.g. ``gpt-5`` -> ``openai/gpt-5``."""
    if not isinstance(raw_model, str):
        return None
    raw = raw_model.strip()
    if not raw:
        return None
    if "/" in raw:
        return raw
    return f"{provider}/{raw}"


def join_provider_model(provider: Any, model: Any) -> str | None:
    """Combine a provider id and model id; model ids that already carry a provider win."""
    model_token = model.strip() if isinstance(model, str) else ""
    provider_token = provider.strip() if isinstance(provider, str) else ""
    if not model_token:
        return None
    if "/" in model_token or not provider_token:
        return model_token
    return f"{provider_token}/{model_token}"


def bare_model_name(model: str | None) -> str:
    """Strip a provider prefix, e.g. ``anthropic/claude-sonnet-4`` -> ``claude-sonnet-4``."""
    token = (model or "").strip()
    if "/" in token:
        return token.rsplit("/", 1)[-1]
    return token

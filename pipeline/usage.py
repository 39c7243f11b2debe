"""Usage accounting — one record shape for every provider.

Providers report tokens under different names (``prompt_tokens`` on
OpenAI-compatible chat endpoints, ``prompt_token_count`` /
``promptTokenCount`` on Gemini). ``normalize`` maps them onto
``UsageRecord`` and attaches an estimated cost string.

Everything here is a pure function: nothing is accumulated between calls.
"""

from __future__ import annotations

import logging
from typing import Any

from schemas.cinematic import UsageRecord

logger = logging.getLogger(__name__)

# Pricing per 1M tokens: { family: (input_$/1M, output_$/1M) }
# Families are matched by substring on the model id, first match wins.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "pro":         (2.50, 5.00),
}

# Economy ("flash") tier, used for every other model id.
_DEFAULT_PRICING = (0.075, 0.30)

# Providers that publish no per-token price for what we call.
UNPRICED_PROVIDERS = frozenset({"doubao"})

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "input_tokens": ("prompt_tokens", "prompt_token_count", "promptTokenCount", "input_tokens", "inputTokens"),
    "output_tokens": (
        "completion_tokens",
        "candidates_token_count",
        "candidatesTokenCount",
        "output_tokens",
        "outputTokens",
    ),
    "total_tokens": ("total_tokens", "total_token_count", "totalTokenCount", "totalTokens"),
}


def get_model_pricing(model: str) -> tuple[float, float]:
    """Return ($/1M input, $/1M output) for a model id."""
    model_id = (model or "").lower()
    for family, pricing in MODEL_PRICING.items():
        if family in model_id:
            return pricing
    return _DEFAULT_PRICING


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> str:
    in_price, out_price = get_model_pricing(model)
    cost = (input_tokens * in_price + output_tokens * out_price) / 1_000_000
    return f"${cost:.6f}"


def _read_field(raw: Any, names: tuple[str, ...]) -> int:
    for name in names:
        if isinstance(raw, dict):
            value = raw.get(name)
        else:
            value = getattr(raw, name, None)
        if value is None:
            continue
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            continue
    return 0


def normalize(provider: str, raw_usage: Any, model: str = "") -> UsageRecord:
    """Map a provider usage block (dict, SDK object or None) onto a UsageRecord.

    Missing fields are 0. ``total_tokens`` is taken as reported, never derived.
    """
    raw = raw_usage if raw_usage is not None else {}
    input_tokens = _read_field(raw, _FIELD_ALIASES["input_tokens"])
    output_tokens = _read_field(raw, _FIELD_ALIASES["output_tokens"])
    total_tokens = _read_field(raw, _FIELD_ALIASES["total_tokens"])

    if provider in UNPRICED_PROVIDERS:
        cost = "$0.000000"
    else:
        cost = estimate_cost(model, input_tokens, output_tokens)

    record = UsageRecord(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        estimated_cost=cost,
    )
    logger.info(
        "Token usage: %s/%s: in=%d out=%d total=%d cost=%s",
        provider, model or "-", input_tokens, output_tokens, total_tokens, cost,
    )
    return record


def zero_usage() -> UsageRecord:
    return UsageRecord(input_tokens=0, output_tokens=0, total_tokens=0, estimated_cost="$0.000000")

"""
Approximate model pricing.

Used for budget spend tracking only. Prices are USD per 1M tokens and are
not billing-grade.
"""
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import NormalizedUsage

logger = logging.getLogger(__name__)

# (input, output, cached input) per 1M tokens, matched by longest prefix
MODEL_PRICING: Dict[str, Tuple[float, float, float]] = {
    "gpt-4o-mini": (0.15, 0.60, 0.075),
    "gpt-4o": (2.50, 10.00, 1.25),
    "gpt-4.1-nano": (0.10, 0.40, 0.025),
    "gpt-4.1-mini": (0.40, 1.60, 0.10),
    "gpt-4.1": (2.00, 8.00, 0.50),
    "o3-mini": (1.10, 4.40, 0.55),
    "o3": (2.00, 8.00, 0.50),
    "o4-mini": (1.10, 4.40, 0.275),
    "claude-3-5-haiku": (0.80, 4.00, 0.08),
    "claude-3-haiku": (0.25, 1.25, 0.03),
    "claude-3-5-sonnet": (3.00, 15.00, 0.30),
    "claude-sonnet-4": (3.00, 15.00, 0.30),
    "claude-opus-4": (15.00, 75.00, 1.50),
    "gemini-2.0-flash": (0.10, 0.40, 0.025),
    "gemini-2.5-flash": (0.30, 2.50, 0.075),
    "gemini-2.5-pro": (1.25, 10.00, 0.31),
}

DEFAULT_PRICING = MODEL_PRICING["gpt-4o"]

# Rough chars-per-token ratio for pre-flight estimates
CHARS_PER_TOKEN = 4
DEFAULT_MAX_OUTPUT_TOKENS = 1024


def get_pricing(model: str) -> Tuple[float, float, float]:
    """Return (input, output, cached) prices for a model."""
    best: Optional[str] = None
    for prefix in MODEL_PRICING:
        if model.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        logger.debug(f"No pricing for model {model}, using default")
        return DEFAULT_PRICING
    return MODEL_PRICING[best]


def estimate_cost(model: str, usage: Optional[NormalizedUsage]) -> float:
    """Cost in dollars of a completed call. Unknown usage costs 0."""
    if usage is None:
        return 0.0
    input_price, output_price, cached_price = get_pricing(model)
    cached = min(usage.cached_tokens, usage.input_tokens)
    uncached = usage.input_tokens - cached
    return (
        uncached * input_price
        + cached * cached_price
        + usage.output_tokens * output_price
    ) / 1_000_000


def _text_length(value: Any) -> int:
    """Characters of text in a prompt value (string, messages or parts)."""
    if value is None:
        return 0
    if isinstance(value, str):
        return len(value)
    if isinstance(value, Mapping):
        if "text" in value:
            return _text_length(value["text"])
        return _text_length(value.get("content")) + _text_length(value.get("parts"))
    if isinstance(value, (list, tuple)):
        return sum(_text_length(item) for item in value)
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(str(value))


def estimate_request_cost(params: Mapping[str, Any], model: Optional[str] = None) -> float:
    """
    Pre-flight cost estimate from request parameters.

    Input tokens are estimated from the prompt length, output tokens from
    the requested maximum.
    """
    model = model or params.get("model") or ""
    prompt_chars = sum(
        _text_length(params.get(key))
        for key in ("messages", "input", "contents", "system", "instructions")
    )
    input_tokens = prompt_chars // CHARS_PER_TOKEN
    output_tokens = (
        params.get("max_tokens")
        or params.get("max_output_tokens")
        or params.get("max_completion_tokens")
        or DEFAULT_MAX_OUTPUT_TOKENS
    )
    usage = NormalizedUsage(
        input_tokens=input_tokens,
        output_tokens=int(output_tokens),
        total_tokens=input_tokens + int(output_tokens),
    )
    return estimate_cost(model, usage)

"""
Usage normalization.

Maps the usage payloads of the supported providers onto NormalizedUsage:
- OpenAI Responses API: input_tokens / output_tokens + *_tokens_details
- OpenAI Chat Completions: prompt_tokens / completion_tokens + details
- Anthropic Messages: input_tokens / output_tokens / cache_read_input_tokens
- Gemini: promptTokenCount / candidatesTokenCount (camel or snake case)

Payloads may be plain mappings or SDK objects (pydantic models or
attribute objects).
"""
from dataclasses import fields
from typing import Any, Mapping, Optional

from .models import NormalizedUsage

_NORMALIZED_FIELDS = tuple(f.name for f in fields(NormalizedUsage))

# Top-level keys no provider payload carries next to input_tokens
_NORMALIZED_MARKERS = ("cached_tokens", "reasoning_tokens", "accepted_prediction_tokens")


def as_mapping(payload: Any) -> Optional[Mapping[str, Any]]:
    """Coerce an SDK object or mapping into a mapping, or None."""
    if payload is None:
        return None
    if isinstance(payload, Mapping):
        return payload
    if hasattr(payload, "model_dump"):
        dumped = payload.model_dump()
        return dumped if isinstance(dumped, Mapping) else None
    if hasattr(payload, "__dict__"):
        return {k: v for k, v in vars(payload).items() if not k.startswith("_")}
    return None


def _int(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _details(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    return as_mapping(data.get(key)) or {}


def _build(
    input_tokens: int,
    output_tokens: int,
    total_tokens: Any = None,
    **extra: int,
) -> NormalizedUsage:
    total = _int(total_tokens) if total_tokens is not None else input_tokens + output_tokens
    return NormalizedUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total,
        **extra,
    )


def _is_normalized(data: Mapping[str, Any]) -> bool:
    return "input_tokens" in data and any(key in data for key in _NORMALIZED_MARKERS)


def _from_responses(data: Mapping[str, Any]) -> NormalizedUsage:
    input_details = _details(data, "input_tokens_details")
    output_details = _details(data, "output_tokens_details")
    return _build(
        _int(data.get("input_tokens")),
        _int(data.get("output_tokens")),
        data.get("total_tokens"),
        cached_tokens=_int(input_details.get("cached_tokens")),
        reasoning_tokens=_int(output_details.get("reasoning_tokens")),
    )


def _from_chat(data: Mapping[str, Any]) -> NormalizedUsage:
    prompt_details = _details(data, "prompt_tokens_details")
    completion_details = _details(data, "completion_tokens_details")
    return _build(
        _int(data.get("prompt_tokens")),
        _int(data.get("completion_tokens")),
        data.get("total_tokens"),
        cached_tokens=_int(prompt_details.get("cached_tokens")),
        reasoning_tokens=_int(completion_details.get("reasoning_tokens")),
        accepted_prediction_tokens=_int(
            completion_details.get("accepted_prediction_tokens")
        ),
        rejected_prediction_tokens=_int(
            completion_details.get("rejected_prediction_tokens")
        ),
    )


def _from_anthropic(data: Mapping[str, Any]) -> NormalizedUsage:
    return _build(
        _int(data.get("input_tokens")),
        _int(data.get("output_tokens")),
        cached_tokens=_int(data.get("cache_read_input_tokens")),
    )


def _from_gemini(data: Mapping[str, Any]) -> NormalizedUsage:
    return _build(
        _int(_first(data, "promptTokenCount", "prompt_token_count")),
        _int(_first(data, "candidatesTokenCount", "candidates_token_count")),
        _first(data, "totalTokenCount", "total_token_count"),
        cached_tokens=_int(
            _first(data, "cachedContentTokenCount", "cached_content_token_count")
        ),
        reasoning_tokens=_int(
            _first(data, "thoughtsTokenCount", "thoughts_token_count")
        ),
    )


_GEMINI_KEYS = (
    "promptTokenCount",
    "prompt_token_count",
    "candidatesTokenCount",
    "candidates_token_count",
)


def normalize_usage(
    payload: Any, provider: Optional[str] = None
) -> Optional[NormalizedUsage]:
    """
    Normalize a provider usage payload.

    Args:
        payload: Usage object from a response or terminal stream event
        provider: Optional provider hint; the shape is detected otherwise

    Returns:
        NormalizedUsage, or None when the payload is absent or unrecognized
    """
    if isinstance(payload, NormalizedUsage):
        return payload

    data = as_mapping(payload)
    if data is None:
        return None

    if _is_normalized(data):
        return _build(
            _int(data.get("input_tokens")),
            _int(data.get("output_tokens")),
            data.get("total_tokens"),
            **{k: _int(data.get(k)) for k in _NORMALIZED_FIELDS[3:]},
        )

    if provider == "gemini" or any(key in data for key in _GEMINI_KEYS):
        return _from_gemini(data)
    if "prompt_tokens" in data or "completion_tokens" in data:
        return _from_chat(data)
    if provider == "anthropic" or "cache_read_input_tokens" in data:
        return _from_anthropic(data)
    if "input_tokens" in data or "output_tokens" in data:
        return _from_responses(data)
    return None


def empty_usage() -> NormalizedUsage:
    return NormalizedUsage()


def merge_usage(a: Optional[NormalizedUsage], b: Optional[NormalizedUsage]) -> Optional[NormalizedUsage]:
    """Sum two usage records for aggregation across calls.

    None is treated as unknown: merging with None returns the other side.
    """
    if a is None:
        return b
    if b is None:
        return a
    return NormalizedUsage(
        **{name: getattr(a, name) + getattr(b, name) for name in _NORMALIZED_FIELDS}
    )

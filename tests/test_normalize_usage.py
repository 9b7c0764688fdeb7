"""
Tests for usage normalization.
"""
from types import SimpleNamespace

import pytest

from llm_meter.models import NormalizedUsage
from llm_meter.normalize import empty_usage, merge_usage, normalize_usage


class TestOpenAIShapes:
    """Tests for OpenAI Responses and Chat Completions usage."""

    def test_responses_api(self):
        """input/output tokens with details objects."""
        usage = normalize_usage({
            "input_tokens": 100,
            "output_tokens": 40,
            "total_tokens": 140,
            "input_tokens_details": {"cached_tokens": 30},
            "output_tokens_details": {"reasoning_tokens": 12},
        })
        assert usage == NormalizedUsage(
            input_tokens=100,
            output_tokens=40,
            total_tokens=140,
            cached_tokens=30,
            reasoning_tokens=12,
        )

    def test_chat_completions(self):
        """prompt/completion tokens with prediction details."""
        usage = normalize_usage({
            "prompt_tokens": 50,
            "completion_tokens": 20,
            "prompt_tokens_details": {"cached_tokens": 10},
            "completion_tokens_details": {
                "reasoning_tokens": 5,
                "accepted_prediction_tokens": 3,
                "rejected_prediction_tokens": 2,
            },
        })
        assert usage.input_tokens == 50
        assert usage.output_tokens == 20
        assert usage.total_tokens == 70
        assert usage.cached_tokens == 10
        assert usage.reasoning_tokens == 5
        assert usage.accepted_prediction_tokens == 3
        assert usage.rejected_prediction_tokens == 2

    def test_missing_details_default_to_zero(self):
        """Absent sub-fields are 0 when the usage object is present."""
        usage = normalize_usage({"prompt_tokens": 7, "completion_tokens": 3})
        assert usage.cached_tokens == 0
        assert usage.reasoning_tokens == 0
        assert usage.total_tokens == 10

    def test_explicit_total_is_kept(self):
        """A reported total wins over input + output."""
        usage = normalize_usage({"input_tokens": 5, "output_tokens": 5, "total_tokens": 12})
        assert usage.total_tokens == 12

    def test_sdk_object(self):
        """Attribute objects are read like mappings."""
        payload = SimpleNamespace(
            prompt_tokens=4,
            completion_tokens=6,
            total_tokens=10,
            prompt_tokens_details=SimpleNamespace(cached_tokens=2),
            completion_tokens_details=None,
        )
        usage = normalize_usage(payload)
        assert usage.input_tokens == 4
        assert usage.cached_tokens == 2


class TestOtherProviders:
    """Tests for Anthropic and Gemini usage."""

    def test_anthropic(self):
        usage = normalize_usage(
            {"input_tokens": 20, "output_tokens": 10, "cache_read_input_tokens": 15},
            provider="anthropic",
        )
        assert usage.cached_tokens == 15
        assert usage.total_tokens == 30

    def test_gemini_camel_case(self):
        usage = normalize_usage({
            "promptTokenCount": 11,
            "candidatesTokenCount": 9,
            "totalTokenCount": 25,
            "cachedContentTokenCount": 4,
            "thoughtsTokenCount": 5,
        })
        assert usage == NormalizedUsage(
            input_tokens=11,
            output_tokens=9,
            total_tokens=25,
            cached_tokens=4,
            reasoning_tokens=5,
        )

    def test_gemini_snake_case(self):
        usage = normalize_usage(
            {"prompt_token_count": 3, "candidates_token_count": 2}, provider="gemini"
        )
        assert usage.total_tokens == 5


class TestEdgeCases:
    """Tests for absent payloads and idempotence."""

    @pytest.mark.parametrize("payload", [None, 42, "usage", []])
    def test_absent_or_invalid_payload(self, payload):
        """Nothing usable yields None, never a zeroed record."""
        assert normalize_usage(payload) is None

    def test_unrecognized_mapping(self):
        assert normalize_usage({"foo": 1}) is None

    def test_idempotent_on_normalized_usage(self):
        usage = normalize_usage({"prompt_tokens": 1, "completion_tokens": 2})
        assert normalize_usage(usage) == usage

    def test_idempotent_on_dict_form(self):
        usage = normalize_usage({
            "input_tokens": 8,
            "output_tokens": 2,
            "input_tokens_details": {"cached_tokens": 1},
        })
        assert normalize_usage(usage.to_dict()) == usage

    def test_five_field_form_keeps_counters(self):
        usage = normalize_usage({
            "input_tokens": 10,
            "output_tokens": 5,
            "total_tokens": 15,
            "cached_tokens": 3,
            "reasoning_tokens": 2,
        })
        assert usage == NormalizedUsage(
            input_tokens=10, output_tokens=5, total_tokens=15, cached_tokens=3, reasoning_tokens=2
        )

    def test_record_export_is_normalized(self):
        usage = NormalizedUsage(input_tokens=4, output_tokens=6, total_tokens=10, cached_tokens=1)
        exported = {"provider": "openai", "usage_known": True, **usage.to_dict()}
        assert normalize_usage(exported) == usage

    def test_negative_counts_clamped(self):
        usage = normalize_usage({"prompt_tokens": -5, "completion_tokens": 3})
        assert usage.input_tokens == 0


class TestHelpers:
    """Tests for empty_usage and merge_usage."""

    def test_empty_usage(self):
        assert empty_usage() == NormalizedUsage()

    def test_merge_usage(self):
        a = NormalizedUsage(input_tokens=1, output_tokens=2, total_tokens=3)
        b = NormalizedUsage(input_tokens=10, output_tokens=20, total_tokens=30, cached_tokens=5)
        merged = merge_usage(a, b)
        assert merged.input_tokens == 11
        assert merged.total_tokens == 33
        assert merged.cached_tokens == 5

    def test_merge_with_unknown(self):
        a = NormalizedUsage(input_tokens=1)
        assert merge_usage(a, None) is a
        assert merge_usage(None, a) is a
        assert merge_usage(None, None) is None

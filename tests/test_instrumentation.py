"""
Tests for client proxies and SDK class patching.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from llm_meter.instrument import (
    detect_provider,
    instrument,
    instrument_method,
    is_instrumented,
    is_metered,
    meter_client,
    uninstrument_all,
    uninstrument_method,
)
from llm_meter.interceptor import MeterOptions, OpenAIAdapter


def fake_openai_client(response):
    return SimpleNamespace(
        api_key="sk-test",
        chat=SimpleNamespace(completions=SimpleNamespace(
            create=AsyncMock(return_value=response),
            list=AsyncMock(return_value=[]),
        )),
        responses=SimpleNamespace(create=AsyncMock(return_value=response)),
    )


# =============================================================================
# meter_client
# =============================================================================

class TestMeterClient:
    """Tests for the explicit client proxy."""

    async def test_create_is_metered(self, sink, chat_response):
        raw = fake_openai_client(chat_response)
        client = meter_client(raw, MeterOptions(emitters=sink))

        response = await client.chat.completions.create(model="gpt-4o", messages=[])

        assert response is chat_response
        raw.chat.completions.create.assert_awaited_once_with(model="gpt-4o", messages=[])
        assert len(sink.records) == 1
        assert sink.records[0].provider == "openai"

    async def test_other_attributes_pass_through(self, sink, chat_response):
        raw = fake_openai_client(chat_response)
        client = meter_client(raw, MeterOptions(emitters=sink))

        assert client.api_key == "sk-test"
        await client.chat.completions.list()
        assert sink.records == []
        assert client.unwrap() is raw

    def test_idempotent(self, chat_response):
        client = meter_client(fake_openai_client(chat_response))
        assert is_metered(client)
        assert meter_client(client) is client
        assert not is_metered(client.unwrap())

    async def test_gemini_aio_surface(self, sink):
        response = {"response_id": "gem-1", "usage_metadata": {"prompt_token_count": 2, "candidates_token_count": 3}}
        raw = SimpleNamespace(
            models=SimpleNamespace(generate_content=lambda **kwargs: response),
            aio=SimpleNamespace(models=SimpleNamespace(
                generate_content=AsyncMock(return_value=response),
                generate_content_stream=AsyncMock(),
            )),
        )
        client = meter_client(raw, MeterOptions(emitters=sink), provider="gemini")

        await client.aio.models.generate_content(model="gemini-2.5-flash", contents="hi")

        record = sink.records[0]
        assert record.provider == "gemini"
        assert record.request_id == "gem-1"
        assert record.usage.total_tokens == 5
        assert record.stream is False

    def test_detect_provider_by_shape(self, chat_response):
        assert detect_provider(fake_openai_client(chat_response)) == "openai"
        anthropic_like = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock()))
        assert detect_provider(anthropic_like) == "anthropic"
        with pytest.raises(ValueError):
            detect_provider(SimpleNamespace())


# =============================================================================
# Class patching
# =============================================================================

class FakeCompletions:
    def __init__(self, response):
        self.response = response

    async def create(self, **kwargs):
        return self.response


class SubCompletions(FakeCompletions):
    pass


class TestInstrumentMethod:
    """Tests for reversible in-place patching."""

    async def test_patch_and_restore(self, sink, chat_response):
        original = FakeCompletions.create

        assert instrument_method(FakeCompletions, "create", OpenAIAdapter(), MeterOptions(emitters=sink))
        assert is_instrumented(FakeCompletions, "create")

        response = await FakeCompletions(chat_response).create(model="gpt-4o")
        assert response is chat_response
        assert len(sink.records) == 1

        assert uninstrument_method(FakeCompletions, "create")
        assert FakeCompletions.create is original
        await FakeCompletions(chat_response).create(model="gpt-4o")
        assert len(sink.records) == 1

    def test_second_install_is_noop(self):
        assert instrument_method(FakeCompletions, "create", OpenAIAdapter())
        assert not instrument_method(FakeCompletions, "create", OpenAIAdapter())
        assert uninstrument_all() == 1
        assert not uninstrument_method(FakeCompletions, "create")

    def test_inherited_method_is_removed_on_restore(self):
        instrument_method(SubCompletions, "create", OpenAIAdapter())
        assert "create" in SubCompletions.__dict__

        uninstrument_method(SubCompletions, "create")
        assert "create" not in SubCompletions.__dict__
        assert SubCompletions.create is FakeCompletions.create

    def test_instrument_skips_missing_sdks(self):
        results = instrument(providers=["gemini"])
        assert set(results) == {"gemini"}

"""
Tests for call-site capture and agent inference.
"""
from unittest.mock import AsyncMock

from llm_meter import enrichment
from llm_meter.interceptor import CallInterceptor, MeterOptions, OpenAIAdapter


class ResearchAgent:
    def run(self):
        return enrichment.infer_agents()

    async def ask(self, metered):
        return await metered(model="gpt-4o")


def handle_request():
    return ResearchAgent().run()


class TestEnrichment:
    def test_capture_call_site(self):
        site = enrichment.capture_call_site()
        assert site.file == __file__
        assert site.function == "test_capture_call_site"

    def test_capture_call_stack(self):
        stack = enrichment.capture_call_stack(max_frames=2)
        assert len(stack) <= 2
        assert stack[0].endswith(":test_capture_call_stack")

    def test_infer_agents_outermost_first(self):
        assert handle_request()[-2:] == ["handle_request", "ResearchAgent"]

    async def test_interceptor_attaches_call_site(self, sink, chat_response):
        interceptor = CallInterceptor(
            OpenAIAdapter(), MeterOptions(emitters=sink, capture_call_site=True)
        )
        metered = interceptor.wrap(AsyncMock(return_value=chat_response))

        await ResearchAgent().ask(metered)

        record = sink.records[0]
        assert record.call_site.function == "ask"
        assert "ResearchAgent" in record.agent_stack
        assert record.to_dict()["call_site_function"] == "ask"

    async def test_disabled_by_default(self, sink, chat_response):
        metered = CallInterceptor(OpenAIAdapter(), MeterOptions(emitters=sink)).wrap(
            AsyncMock(return_value=chat_response)
        )
        await metered(model="gpt-4o")
        assert sink.records[0].call_site is None

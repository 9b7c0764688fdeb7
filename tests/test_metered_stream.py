"""
Tests for metered streams.

Tests cover:
1. Completed, aborted and failed streams each emit exactly one record
2. Usage and tool calls captured from stream events
3. Proxying of the underlying stream
"""
import gc
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from llm_meter.interceptor import (
    AnthropicAdapter,
    CallInterceptor,
    MeteredStream,
    MeterOptions,
    OpenAIAdapter,
    StreamState,
)
from llm_meter.interceptor import stream as stream_module
from llm_meter.interceptor.wrapper import STREAM_ABORTED


def chat_chunks():
    return [
        SimpleNamespace(
            id="chatcmpl-1",
            choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel", tool_calls=None))],
            usage=None,
        ),
        SimpleNamespace(
            id="chatcmpl-1",
            choices=[SimpleNamespace(delta=SimpleNamespace(content="lo", tool_calls=None))],
            usage=None,
        ),
        SimpleNamespace(
            id="chatcmpl-1",
            choices=[],
            usage={"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11},
        ),
    ]


async def open_stream(sink, chunks, adapter=None, error=None, make_stream=None):
    interceptor = CallInterceptor(adapter or OpenAIAdapter(), MeterOptions(emitters=sink))
    create = AsyncMock(return_value=make_stream(chunks, error))
    return await interceptor.wrap(create)(model="gpt-4o", stream=True)


class FakeSdkStream:
    """Stands in for an SDK stream object with extra attributes."""

    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.response = SimpleNamespace(headers={"x-request-id": "req-1"})
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def aclose(self):
        self.closed = True


# =============================================================================
# Terminal states
# =============================================================================

class TestTerminalStates:
    """One record per stream, however it ends."""

    async def test_completed(self, sink, make_stream):
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)
        assert isinstance(stream, MeteredStream)
        assert sink.records == []

        received = [chunk async for chunk in stream]

        assert len(received) == 3
        assert stream.state == StreamState.COMPLETED
        assert len(sink.records) == 1
        record = sink.records[0]
        assert record.stream is True
        assert record.error is None
        assert record.request_id == "chatcmpl-1"
        assert record.usage.input_tokens == 9
        assert record.usage.total_tokens == 11

    async def test_consumer_break(self, sink, make_stream, drain):
        """Breaking out of async for finalizes the stream as aborted."""
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)

        async for _ in stream:
            break
        await drain(20)

        assert stream.state == StreamState.ABORTED
        assert len(sink.records) == 1
        record = sink.records[0]
        assert record.error == STREAM_ABORTED
        assert record.usage is None

    async def test_aclose_before_iteration(self, sink, make_stream):
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)
        await stream.aclose()

        assert stream.state == StreamState.ABORTED
        assert sink.records[0].error == STREAM_ABORTED

    async def test_abandoned_before_iteration(self, sink, make_stream, drain):
        """A stream dropped unread is still reported, once, as aborted."""
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)
        del stream
        gc.collect()
        await drain(20)

        assert len(sink.records) == 1
        assert sink.records[0].error == STREAM_ABORTED
        assert not stream_module._abort_tasks

    async def test_async_with_exit_after_partial_read(self, sink, make_stream):
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)

        async with stream as s:
            first = await s.__anext__()

        assert first.id == "chatcmpl-1"
        assert stream.state == StreamState.ABORTED
        assert len(sink.records) == 1
        assert sink.records[0].request_id == "chatcmpl-1"

    async def test_iterator_error(self, sink, make_stream):
        error = ConnectionError("connection reset")
        stream = await open_stream(sink, chat_chunks()[:1], error=error, make_stream=make_stream)

        with pytest.raises(ConnectionError) as exc_info:
            async for _ in stream:
                pass

        assert exc_info.value is error
        assert stream.state == StreamState.FAILED
        record = sink.records[0]
        assert record.error == "connection reset"
        assert record.usage is None

    async def test_no_second_record(self, sink, make_stream):
        stream = await open_stream(sink, chat_chunks(), make_stream=make_stream)
        async for _ in stream:
            pass
        await stream.aclose()
        async with stream:
            pass

        assert len(sink.records) == 1
        assert sink.records[0].error is None


# =============================================================================
# Stream events
# =============================================================================

class TestStreamEvents:
    """Usage and tool calls captured along the way."""

    async def test_anthropic_usage_merge(self, sink, make_stream):
        events = [
            {"type": "message_start", "message": {
                "id": "msg_1",
                "usage": {"input_tokens": 25, "output_tokens": 1, "cache_read_input_tokens": 5},
            }},
            {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "get_weather"}},
            {"type": "content_block_delta", "delta": {"type": "input_json_delta"}},
            {"type": "message_delta", "usage": {"output_tokens": 15}},
            {"type": "message_stop"},
        ]
        stream = await open_stream(sink, events, adapter=AnthropicAdapter(), make_stream=make_stream)
        async for _ in stream:
            pass

        record = sink.records[0]
        assert record.provider == "anthropic"
        assert record.request_id == "msg_1"
        assert record.usage.input_tokens == 25
        assert record.usage.output_tokens == 15
        assert record.usage.cached_tokens == 5
        assert record.usage.total_tokens == 40
        assert record.tool_names == ["get_weather"]

    async def test_openai_responses_events(self, sink, make_stream):
        events = [
            {"type": "response.created", "response": {"id": "resp_1"}},
            {"type": "response.output_item.added", "item": {"type": "web_search_call"}},
            {"type": "response.output_item.added", "item": {"type": "function_call", "name": "lookup"}},
            {"type": "response.output_text.delta", "delta": "Hi"},
            {"type": "response.completed", "response": {
                "id": "resp_1",
                "usage": {"input_tokens": 30, "output_tokens": 10, "total_tokens": 40},
            }},
        ]
        stream = await open_stream(sink, events, make_stream=make_stream)
        async for _ in stream:
            pass

        record = sink.records[0]
        assert record.request_id == "resp_1"
        assert record.usage.total_tokens == 40
        assert [(t.type, t.name) for t in record.tool_calls] == [
            ("web_search", None),
            ("function", "lookup"),
        ]

    async def test_partial_usage_on_abort(self, sink, make_stream, drain):
        events = [
            {"type": "message_start", "message": {"id": "msg_2", "usage": {"input_tokens": 50, "output_tokens": 0}}},
            {"type": "content_block_delta", "delta": {"text": "..."}},
        ]
        stream = await open_stream(sink, events, adapter=AnthropicAdapter(), make_stream=make_stream)

        async for event in stream:
            if event["type"] == "content_block_delta":
                break
        await drain(20)

        record = sink.records[0]
        assert record.error == STREAM_ABORTED
        assert record.usage.input_tokens == 50


# =============================================================================
# Proxying
# =============================================================================

class TestProxying:
    """The wrapper behaves like the SDK stream object."""

    async def test_attribute_passthrough_and_close(self, sink):
        finished = []

        async def on_finish(stream, state, error):
            finished.append(state)

        raw = FakeSdkStream(chat_chunks())
        stream = MeteredStream(raw, OpenAIAdapter(), on_finish)

        assert stream.response.headers["x-request-id"] == "req-1"
        with pytest.raises(AttributeError):
            stream.does_not_exist

        await stream.aclose()
        assert raw.closed is True
        assert finished == [StreamState.ABORTED]

    async def test_on_finish_failure_is_contained(self):
        async def on_finish(stream, state, error):
            raise RuntimeError("emit failed")

        stream = MeteredStream(FakeSdkStream(chat_chunks()), OpenAIAdapter(), on_finish)
        chunks = [chunk async for chunk in stream]
        assert len(chunks) == 3
        assert stream.state == StreamState.COMPLETED

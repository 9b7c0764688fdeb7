"""
Metered streams.

MeteredStream wraps the async iterator returned by a streaming provider
call. It forwards every chunk unchanged and watches for the request id,
usage snapshots and tool-call announcements along the way. When the stream
ends, however it ends, exactly one metric record is emitted:

- exhausted: COMPLETED, with the captured usage (possibly None)
- aclose() / async with exit / abandoned by the consumer: ABORTED, with
  the partial usage and tool calls seen so far
- the underlying iterator raised: FAILED, with the error and no usage

Iteration runs through a native async generator so that a consumer
breaking out of `async for` still finalizes the stream through the event
loop's async generator hooks.
"""
import asyncio
import logging
import weakref
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set

from ..models import NormalizedUsage, ToolCallMetric
from .adapters import ProviderAdapter

logger = logging.getLogger(__name__)

# Abort emissions of abandoned streams, held until they complete
_abort_tasks: Set[asyncio.Task] = set()


def _schedule_abort(loop: asyncio.AbstractEventLoop, coro: Awaitable[None]) -> None:
    task = loop.create_task(coro)
    _abort_tasks.add(task)
    task.add_done_callback(_abort_tasks.discard)


class StreamState(Enum):
    OPEN = "open"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


StreamFinish = Callable[
    ["MeteredStream", StreamState, Optional[BaseException]], Awaitable[None]
]


class MeteredStream:
    """
    Async iterator proxy that emits one metric record per stream.

    Args:
        stream: Async iterable returned by the provider SDK
        adapter: Adapter that understands the stream's events
        on_finish: Coroutine called exactly once with the terminal state
        track_tool_calls: Collect tool-call announcements
    """

    def __init__(
        self,
        stream: Any,
        adapter: ProviderAdapter,
        on_finish: StreamFinish,
        track_tool_calls: bool = True,
    ):
        self._stream = stream
        self._adapter = adapter
        self._on_finish = on_finish
        self._track_tool_calls = track_tool_calls
        self._iterator: Optional[AsyncIterator[Any]] = None
        self._generator_ref: Optional[weakref.ref] = None
        self._manual = None
        self._started = False
        self._loop = asyncio.get_running_loop()

        self.state = StreamState.OPEN
        self.usage: Optional[NormalizedUsage] = None
        self.request_id: Optional[str] = None
        self.tool_calls: List[ToolCallMetric] = []
        self.chunk_count = 0

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def __aiter__(self):
        # Weak, so that dropping the consumer loop finalizes the generator
        generator = self._generator_ref() if self._generator_ref else None
        if generator is None:
            generator = self._iterate()
            self._generator_ref = weakref.ref(generator)
        return generator

    async def __anext__(self) -> Any:
        if self._manual is None:
            self._manual = self.__aiter__()
        return await self._manual.__anext__()

    async def _iterate(self):
        self._started = True
        self._iterator = self._stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await self._iterator.__anext__()
                except StopAsyncIteration:
                    await self._finish(StreamState.COMPLETED)
                    return
                self._observe(chunk)
                yield chunk
        except GeneratorExit:
            await self._finish(StreamState.ABORTED)
            await self._close_underlying()
            raise
        except asyncio.CancelledError:
            await self._finish(StreamState.ABORTED)
            raise
        except Exception as e:
            await self._finish(StreamState.FAILED, e)
            raise

    def _observe(self, chunk: Any) -> None:
        self.chunk_count += 1
        try:
            if self.request_id is None:
                self.request_id = self._adapter.chunk_request_id(chunk)
            snapshot = self._adapter.chunk_usage(chunk, self.usage)
            if snapshot is not None:
                self.usage = snapshot
            if self._track_tool_calls:
                self.tool_calls.extend(self._adapter.chunk_tool_calls(chunk))
        except Exception:
            logger.debug(
                f"Could not read {self._adapter.provider} stream event", exc_info=True
            )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _finish(
        self, state: StreamState, error: Optional[BaseException] = None
    ) -> None:
        if self.state is not StreamState.OPEN:
            return
        self.state = state
        try:
            await self._on_finish(self, state, error)
        except Exception:
            logger.warning("Failed to emit stream metric", exc_info=True)

    async def _close_underlying(self) -> None:
        aclose = getattr(self._iterator, "aclose", None) or getattr(
            self._stream, "aclose", None
        )
        if aclose is None:
            close = getattr(self._stream, "close", None)
            if close is None:
                return
            aclose = close
        try:
            result = aclose()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.debug("Error closing underlying stream", exc_info=True)

    async def aclose(self) -> None:
        """Stop consuming the stream early."""
        generator = self._generator_ref() if self._generator_ref else None
        if self._started and generator is not None:
            await generator.aclose()
            return
        await self._finish(StreamState.ABORTED)
        await self._close_underlying()

    async def __aenter__(self) -> "MeteredStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __del__(self):
        # Abandoned before the first chunk: the generator hooks never see it
        if self.__dict__.get("state") is not StreamState.OPEN or self.__dict__.get("_started"):
            return
        loop = self.__dict__.get("_loop")
        if loop is None or loop.is_closed():
            return
        coro = self._finish(StreamState.ABORTED)
        try:
            loop.call_soon_threadsafe(_schedule_abort, loop, coro)
        except RuntimeError:
            coro.close()

    # ------------------------------------------------------------------
    # Proxying
    # ------------------------------------------------------------------

    def __getattr__(self, name: str) -> Any:
        # Only called for attributes not found on the proxy itself
        stream = self.__dict__.get("_stream")
        if stream is None or name.startswith("__"):
            raise AttributeError(name)
        return getattr(stream, name)

"""
Metric emission.

MetricEmissionGateway fans a MetricRecord out to every configured sink.
A sink is either a callable `emit(record)` or an object with an `emit`
method; either may return an awaitable and either may raise. Failures are
logged and contained, so a broken sink never affects the provider call or
the other sinks.
"""
import asyncio
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

from .models import MetricRecord

logger = logging.getLogger(__name__)

MetricEmitter = Callable[[MetricRecord], Union[None, Awaitable[None]]]


def _as_callable(emitter: Any) -> MetricEmitter:
    if callable(emitter):
        return emitter
    return emitter.emit


class MetricEmissionGateway:
    """
    Error-contained fan-out of metric records.

    Args:
        emitters: One emitter or a list of emitters
    """

    def __init__(self, emitters: Union[None, Any, Iterable[Any]] = None):
        if emitters is None:
            items: List[Any] = []
        elif callable(emitters) or hasattr(emitters, "emit"):
            items = [emitters]
        else:
            items = list(emitters)
        self._emitters: List[MetricEmitter] = [_as_callable(e) for e in items]

    def add(self, emitter: Any) -> None:
        self._emitters.append(_as_callable(emitter))

    def __len__(self) -> int:
        return len(self._emitters)

    async def emit(self, record: MetricRecord) -> None:
        """Deliver a record to every sink. Never raises."""
        if not self._emitters:
            return
        await asyncio.gather(*(self._deliver(e, record) for e in self._emitters))

    async def _deliver(self, emitter: MetricEmitter, record: MetricRecord) -> None:
        try:
            result = emitter(record)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning(
                f"Metric emitter {getattr(emitter, '__qualname__', emitter)!r} failed "
                f"for span {record.span_id}",
                exc_info=True,
            )


# ============================================================================
# Sinks
# ============================================================================

class MemoryEmitter:
    """Keeps records in a list. Useful in tests."""

    def __init__(self):
        self.records: List[MetricRecord] = []

    def emit(self, record: MetricRecord) -> None:
        self.records.append(record)

    def clear(self) -> None:
        self.records.clear()

    def __len__(self) -> int:
        return len(self.records)


class LoggingEmitter:
    """Writes a one-line summary of each record to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO):
        self.log = log or logger
        self.level = level

    def emit(self, record: MetricRecord) -> None:
        usage = record.usage
        tokens = f"{usage.input_tokens}/{usage.output_tokens}" if usage else "unknown"
        status = f"error={record.error}" if record.error else "ok"
        self.log.log(
            self.level,
            f"[{record.provider}] {record.model} tokens={tokens} "
            f"latency={record.latency_ms:.0f}ms seq={record.call_sequence} {status}",
        )


class JsonlFileEmitter:
    """Appends the flat form of each record to a JSON Lines file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, record: MetricRecord) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict(), default=str) + "\n")


class BatchEmitter:
    """
    Buffers records and hands them to a flush callback in batches.

    Args:
        flush: Callable receiving a list of records (may be async)
        batch_size: Flush automatically once this many records are buffered
    """

    def __init__(
        self,
        flush: Callable[[List[MetricRecord]], Union[None, Awaitable[None]]],
        batch_size: int = 50,
    ):
        self._flush = flush
        self.batch_size = batch_size
        self._buffer: List[MetricRecord] = []

    async def emit(self, record: MetricRecord) -> None:
        self._buffer.append(record)
        if len(self._buffer) >= self.batch_size:
            await self.flush()

    async def flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        result = self._flush(batch)
        if inspect.isawaitable(result):
            await result

    @property
    def pending(self) -> int:
        return len(self._buffer)


def filtered_emitter(
    emitter: Any, predicate: Callable[[MetricRecord], bool]
) -> MetricEmitter:
    """Wrap an emitter so that it only receives records matching predicate."""
    target = _as_callable(emitter)

    def emit(record: MetricRecord):
        if predicate(record):
            return target(record)
        return None

    return emit

"""
Call context propagation.

A CallContext ties related provider calls into one trace. The current
context lives in a ContextVar, so every asyncio task sees the context of
the scope it was started in. Tasks copy the contextvars mapping but share
the CallContext object, so sibling tasks in one scope share the trace id
and the sequence counter.

Without an explicit scope a process-wide fallback context is created
lazily, so zero-configuration usage still produces a coherent trace.

Usage:
    from llm_meter import context

    async with context.scope(metadata={"user_id": "u-1"}):
        async with context.agent("ResearchAgent"):
            await client.chat.completions.create(...)
"""
import logging
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CallContext:
    """
    Mutable state of one logical call chain.

    Attributes:
        trace_id: Shared by every call in the chain
        sequence: Number of calls recorded so far
        parent_span_id: Span of the most recently dispatched call
        agent_stack: Names of the agents currently executing
        metadata: Caller-supplied key/value pairs
    """
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    sequence: int = 0
    parent_span_id: Optional[str] = None
    agent_stack: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallRelationship:
    """Snapshot of a CallContext taken for a single call."""
    trace_id: str
    sequence: int
    parent_span_id: Optional[str]
    agent_stack: Tuple[str, ...] = ()


_current_context: ContextVar[Optional[CallContext]] = ContextVar(
    "llm_meter_call_context", default=None
)

# Process-wide fallback used when no scope is active
_global_context: Optional[CallContext] = None


def _get_global_context() -> CallContext:
    global _global_context
    if _global_context is None:
        _global_context = CallContext()
        logger.debug(f"Created fallback call context {_global_context.trace_id}")
    return _global_context


def reset_global_context() -> None:
    """Drop the fallback context. Intended for test isolation."""
    global _global_context
    _global_context = None


def current() -> CallContext:
    """Return the context bound to the calling task, or the fallback."""
    ctx = _current_context.get()
    if ctx is not None:
        return ctx
    return _get_global_context()


def has_context() -> bool:
    """True when an explicit scope is active for the calling task."""
    return _current_context.get() is not None


def enter_scope(
    trace_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[CallContext, Token]:
    """
    Create a new context and bind it for the calling task.

    Child tasks created afterwards inherit it. Pass the returned token to
    exit_scope() to restore the previous binding.

    Args:
        trace_id: Explicit trace id (generated when omitted)
        metadata: Initial metadata for the trace

    Returns:
        Tuple of (context, token)
    """
    ctx = CallContext(metadata=dict(metadata or {}))
    if trace_id:
        ctx.trace_id = trace_id
    token = _current_context.set(ctx)
    return ctx, token


def exit_scope(token: Token) -> None:
    _current_context.reset(token)


class scope:
    """
    Context manager that enters a fresh call context and always exits it.

    Works with both `with` and `async with`.
    """

    def __init__(
        self,
        trace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self._trace_id = trace_id
        self._metadata = metadata
        self._token: Optional[Token] = None

    def __enter__(self) -> CallContext:
        ctx, self._token = enter_scope(self._trace_id, self._metadata)
        return ctx

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._token is not None:
            exit_scope(self._token)
            self._token = None

    async def __aenter__(self) -> CallContext:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.__exit__(exc_type, exc, tb)


def record_call_relationship(span_id: str) -> CallRelationship:
    """
    Register a new call in the current context.

    Increments the sequence, snapshots the context, then makes span_id the
    parent of whatever call comes next. This never suspends, so the parent
    pointer is updated before any nested call can be issued.

    Args:
        span_id: Span id of the call being registered

    Returns:
        The relationship snapshot taken before the parent pointer moved
    """
    ctx = current()
    ctx.sequence += 1
    relationship = CallRelationship(
        trace_id=ctx.trace_id,
        sequence=ctx.sequence,
        parent_span_id=ctx.parent_span_id,
        agent_stack=tuple(ctx.agent_stack),
    )
    ctx.parent_span_id = span_id
    return relationship


def push_agent(name: str) -> None:
    current().agent_stack.append(name)


def pop_agent() -> Optional[str]:
    stack = current().agent_stack
    return stack.pop() if stack else None


def get_agent_stack() -> List[str]:
    return list(current().agent_stack)


class agent:
    """
    Push an agent name for the duration of a block.

    The name is popped even when the block raises.
    """

    def __init__(self, name: str):
        self.name = name

    def __enter__(self) -> "agent":
        push_agent(self.name)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        pop_agent()

    async def __aenter__(self) -> "agent":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.__exit__(exc_type, exc, tb)


def set_metadata(key: str, value: Any) -> None:
    current().metadata[key] = value


def get_metadata(key: str, default: Any = None) -> Any:
    return current().metadata.get(key, default)

"""
Data models for the call interceptor.

Defines the pre-flight hook types, the per-call bookkeeping record and the
runtime options object.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from ..context import CallContext, CallRelationship
from ..models import CallSite

if TYPE_CHECKING:
    from ..control.client import ControlDecisionClient
    from ..control.models import AlertEvent


class BeforeRequestAction(str, Enum):
    """Outcome of the pre-flight hook."""
    PROCEED = "proceed"
    THROTTLE = "throttle"
    CANCEL = "cancel"
    DEGRADE = "degrade"
    ALERT = "alert"


@dataclass(frozen=True)
class BeforeRequestResult:
    """
    Result returned by a pre-flight hook.

    Attributes:
        action: What to do with the call
        delay_ms: Sleep before continuing (throttle, degrade, alert)
        reason: Why the call was cancelled, degraded or flagged
        to_model: Substitute model (degrade only)
        level: Alert level (alert only)
    """
    action: BeforeRequestAction
    delay_ms: int = 0
    reason: Optional[str] = None
    to_model: Optional[str] = None
    level: Optional[str] = None

    @classmethod
    def proceed(cls) -> "BeforeRequestResult":
        return cls(BeforeRequestAction.PROCEED)

    @classmethod
    def throttle(cls, delay_ms: int) -> "BeforeRequestResult":
        return cls(BeforeRequestAction.THROTTLE, delay_ms=delay_ms)

    @classmethod
    def cancel(cls, reason: str) -> "BeforeRequestResult":
        return cls(BeforeRequestAction.CANCEL, reason=reason)

    @classmethod
    def degrade(
        cls, to_model: str, reason: Optional[str] = None, delay_ms: int = 0
    ) -> "BeforeRequestResult":
        return cls(
            BeforeRequestAction.DEGRADE, delay_ms=delay_ms, reason=reason, to_model=to_model
        )

    @classmethod
    def alert(
        cls, reason: str, level: str = "warning", delay_ms: int = 0
    ) -> "BeforeRequestResult":
        return cls(BeforeRequestAction.ALERT, delay_ms=delay_ms, reason=reason, level=level)


@dataclass(frozen=True)
class BeforeRequestContext:
    """What the pre-flight hook gets to see about the call."""
    model: str
    stream: bool
    span_id: str
    trace_id: str
    timestamp: str
    metadata: Dict[str, Any] = field(default_factory=dict)


BeforeRequestHook = Callable[
    [Dict[str, Any], BeforeRequestContext],
    Union[BeforeRequestResult, Awaitable[BeforeRequestResult]],
]


@dataclass
class PendingCall:
    """
    Bookkeeping for one call between interception and its metric record.

    Attributes:
        span_id: Fresh id for this call
        provider: Provider name from the adapter
        model: Model to dispatch (changes when degraded)
        is_streaming: Whether the caller asked for a stream
        context: CallContext current at interception
        relationship: Snapshot taken before dispatch (None when disabled)
        original_model: Requested model, set once the call is degraded
        control_action: Control action applied before dispatch
        start_time: Wall clock at interception (ISO-8601 UTC)
        started_at: Monotonic time of dispatch
    """
    span_id: str
    provider: str
    model: str
    is_streaming: bool
    context: CallContext
    relationship: Optional[CallRelationship] = None
    original_model: Optional[str] = None
    control_action: Optional[str] = None
    context_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    call_site: Optional[CallSite] = None
    inferred_agents: tuple = ()
    start_time: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    started_at: Optional[float] = None
    emitted: bool = False

    @property
    def trace_id(self) -> str:
        if self.relationship is not None:
            return self.relationship.trace_id
        return self.span_id

    def mark_dispatched(self) -> None:
        self.started_at = time.monotonic()

    def elapsed_ms(self) -> float:
        if self.started_at is None:
            return 0.0
        return (time.monotonic() - self.started_at) * 1000


def _new_span_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MeterOptions:
    """
    Runtime options for metered clients.

    Attributes:
        emitters: Metric sink or list of sinks
        before_request: Optional pre-flight hook
        control: Optional ControlDecisionClient consulted before dispatch
        get_context_id: Returns the caller id used for budgets and rate limits
        generate_span_id: Span id factory (uuid4 by default)
        request_metadata: Extra metadata merged into every record
        track_tool_calls: Extract tool calls from responses and streams
        track_call_relationships: Record trace/sequence/parent per call
        capture_call_site: Attach best-effort call site and inferred agents
        on_alert: Called with an AlertEvent when a call is flagged
        cost_estimator: Returns an estimated cost for a call from its params
    """
    emitters: Union[None, Any, Iterable[Any]] = None
    before_request: Optional[BeforeRequestHook] = None
    control: Optional["ControlDecisionClient"] = None
    get_context_id: Optional[Callable[[], Optional[str]]] = None
    generate_span_id: Callable[[], str] = _new_span_id
    request_metadata: Dict[str, Any] = field(default_factory=dict)
    track_tool_calls: bool = True
    track_call_relationships: bool = True
    capture_call_site: bool = False
    on_alert: Optional[Callable[["AlertEvent"], Any]] = None
    cost_estimator: Optional[Callable[[Dict[str, Any]], Optional[float]]] = None

    @classmethod
    def from_config(cls, config=None, emitters=None, **overrides: Any) -> "MeterOptions":
        """Build options from a MeterConfig (the global one by default)."""
        from ..config import build_options
        return build_options(config, emitters=emitters, **overrides)

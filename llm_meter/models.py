"""
Core data models for llm-meter.

These are the records that flow out of the interceptor:
- NormalizedUsage: provider-agnostic token counts
- ToolCallMetric: one tool invocation announced by the model
- MetricRecord: the terminal artifact of one intercepted call
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class NormalizedUsage:
    """
    Token usage in a provider-agnostic shape.

    Attributes:
        input_tokens: Prompt / input tokens
        output_tokens: Completion / output tokens
        total_tokens: Reported total, or input + output when not reported
        cached_tokens: Input tokens served from the provider's prompt cache
        reasoning_tokens: Hidden reasoning tokens (o-series, thinking models)
        accepted_prediction_tokens: Predicted output tokens that were used
        rejected_prediction_tokens: Predicted output tokens that were discarded
    """
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    accepted_prediction_tokens: int = 0
    rejected_prediction_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ToolCallMetric:
    """A tool call announced in a response or stream."""
    type: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.name:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class CallSite:
    """Best-effort location of the application code that issued a call."""
    file: str
    line: int
    function: Optional[str] = None


@dataclass(frozen=True)
class MetricRecord:
    """
    Terminal record of one intercepted provider call.

    Exactly one is produced per call. Unknown usage is None, not zeroed;
    an error and partial usage may coexist for aborted streams.

    Attributes:
        trace_id: Trace this call belongs to
        span_id: Unique id of this call
        parent_span_id: Span of the most recently dispatched call in the trace
        provider: Provider name (openai, anthropic, gemini, ...)
        model: Model actually dispatched (the substitute when degraded)
        stream: Whether the call was streaming
        timestamp: ISO-8601 UTC timestamp of the call start
        latency_ms: Dispatch-to-settle latency (0 when never dispatched)
        usage: Normalized usage, or None when unknown
        error: Error message when the call failed or was rejected
        request_id: Provider request id, when available
        tool_calls: Tool calls announced by the model
        call_sequence: Position of this call within its trace
        agent_stack: Agent names active when the call was made
        metadata: Context metadata merged with request metadata
        original_model: Requested model when the call was degraded
        control_action: Control action applied before dispatch
        call_site: Best-effort call site of the application code
    """
    trace_id: str
    span_id: str
    provider: str
    model: str
    stream: bool
    timestamp: str
    latency_ms: float
    parent_span_id: Optional[str] = None
    usage: Optional[NormalizedUsage] = None
    error: Optional[str] = None
    request_id: Optional[str] = None
    tool_calls: Tuple[ToolCallMetric, ...] = ()
    call_sequence: Optional[int] = None
    agent_stack: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    original_model: Optional[str] = None
    control_action: Optional[str] = None
    call_site: Optional[CallSite] = None

    @property
    def usage_known(self) -> bool:
        return self.usage is not None

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_calls)

    @property
    def tool_names(self) -> List[str]:
        return [tc.name for tc in self.tool_calls if tc.name]

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the cross-provider export shape.

        Usage fields default to 0 here; `usage_known` keeps the
        distinction between zero and unknown.
        """
        usage = self.usage or NormalizedUsage()
        data: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "request_id": self.request_id,
            "provider": self.provider,
            "model": self.model,
            "stream": self.stream,
            "timestamp": self.timestamp,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "usage_known": self.usage_known,
            **usage.to_dict(),
            "tool_call_count": self.tool_call_count,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "call_sequence": self.call_sequence,
            "agent_stack": list(self.agent_stack),
            "metadata": dict(self.metadata),
        }
        if self.original_model:
            data["original_model"] = self.original_model
        if self.control_action:
            data["control_action"] = self.control_action
        if self.call_site:
            data["call_site_file"] = self.call_site.file
            data["call_site_line"] = self.call_site.line
            data["call_site_function"] = self.call_site.function
        return data

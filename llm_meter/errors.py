"""
Error types for llm-meter.

Provider errors are never wrapped: they reach the caller unchanged.
Only policy-originated rejections are translated into these types.
"""
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .control.models import ControlDecision
    from .interceptor.models import BeforeRequestContext


class MeterError(Exception):
    """Base exception for llm-meter errors."""
    pass


class ConfigError(MeterError):
    """Raised when a config or policy file is invalid."""
    pass


class RequestCancelledError(MeterError):
    """Raised when the pre-flight hook cancels a request."""

    def __init__(
        self,
        reason: str,
        context: Optional["BeforeRequestContext"] = None,
        message: Optional[str] = None,
    ):
        self.reason = reason
        self.context = context
        self.message = message or f"Request cancelled: {reason}"
        super().__init__(self.message)


class RequestBlockedError(RequestCancelledError):
    """Raised when the control policy blocks a request before dispatch."""

    def __init__(
        self,
        reason: str,
        decision: Optional["ControlDecision"] = None,
        context: Optional["BeforeRequestContext"] = None,
    ):
        self.decision = decision
        super().__init__(
            reason,
            context=context,
            message=f"Request blocked: {reason}",
        )


class ControlUnavailableError(MeterError):
    """Raised by an oracle when no decision can be obtained.

    Never escapes ControlDecisionClient.decide(); it is resolved into
    allow or block according to the fail-open setting.
    """
    pass

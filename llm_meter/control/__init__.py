"""
Policy control for intercepted calls.

Usage:
    from llm_meter.control import (
        ControlDecisionClient, LocalPolicyEvaluator, ControlPolicy, BudgetRule,
    )

    evaluator = LocalPolicyEvaluator(ControlPolicy(budgets=[
        BudgetRule(id="daily", limit=5.0, limit_action="kill"),
    ]))
    control = ControlDecisionClient(evaluator, fail_open=True, timeout_s=2.0)
"""
from .client import (
    CONTROL_UNAVAILABLE,
    ControlDecisionClient,
    DecisionOracle,
    RemoteDecisionOracle,
)
from .evaluator import LocalPolicyEvaluator, load_policy
from .models import (
    AlertEvent,
    AlertLevel,
    AlertRule,
    BlockRule,
    BudgetRule,
    BudgetType,
    ControlAction,
    ControlDecision,
    ControlEvent,
    ControlPolicy,
    ControlRequest,
    DegradeRule,
    DegradeTrigger,
    LimitAction,
    ThrottleRule,
)
from .schema import DecisionResponse

__all__ = [
    # Client and oracles
    "CONTROL_UNAVAILABLE",
    "ControlDecisionClient",
    "DecisionOracle",
    "RemoteDecisionOracle",
    "LocalPolicyEvaluator",
    "load_policy",
    # Models
    "AlertEvent",
    "AlertLevel",
    "AlertRule",
    "BlockRule",
    "BudgetRule",
    "BudgetType",
    "ControlAction",
    "ControlDecision",
    "ControlEvent",
    "ControlPolicy",
    "ControlRequest",
    "DegradeRule",
    "DegradeTrigger",
    "LimitAction",
    "ThrottleRule",
    "DecisionResponse",
]

"""
Control data models.

Decisions are closed sum types: a ControlAction tag plus the payload fields
that tag uses. Policies are pydantic models so that YAML files and remote
responses are validated on load.
"""
import fnmatch
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ControlAction(str, Enum):
    """Action applied to a call before dispatch."""
    ALLOW = "allow"
    BLOCK = "block"
    THROTTLE = "throttle"
    DEGRADE = "degrade"
    ALERT = "alert"


class LimitAction(str, Enum):
    """What a budget does once it would be exceeded."""
    KILL = "kill"
    THROTTLE = "throttle"
    DEGRADE = "degrade"


class BudgetType(str, Enum):
    """Scope a budget applies to."""
    GLOBAL = "global"
    AGENT = "agent"
    TENANT = "tenant"
    CUSTOMER = "customer"
    FEATURE = "feature"
    TAG = "tag"


class DegradeTrigger(str, Enum):
    BUDGET_THRESHOLD = "budget_threshold"
    RATE_LIMIT = "rate_limit"
    ALWAYS = "always"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================================================
# Decisions
# ============================================================================

@dataclass(frozen=True)
class ControlDecision:
    """
    Decision for a single call.

    Attributes:
        action: What to do with the call
        reason: Human-readable reason
        throttle_delay_ms: Delay before dispatch (throttle, or paired with
            degrade/alert)
        degrade_to_model: Substitute model (degrade only)
        alert_level: Severity (alert only)
    """
    action: ControlAction
    reason: Optional[str] = None
    throttle_delay_ms: int = 0
    degrade_to_model: Optional[str] = None
    alert_level: Optional[AlertLevel] = None

    @classmethod
    def allow(cls) -> "ControlDecision":
        return cls(ControlAction.ALLOW)

    @classmethod
    def block(cls, reason: str) -> "ControlDecision":
        return cls(ControlAction.BLOCK, reason=reason)

    @classmethod
    def throttle(cls, delay_ms: int, reason: Optional[str] = None) -> "ControlDecision":
        return cls(ControlAction.THROTTLE, reason=reason, throttle_delay_ms=delay_ms)

    @classmethod
    def degrade(
        cls, to_model: str, reason: Optional[str] = None, delay_ms: int = 0
    ) -> "ControlDecision":
        return cls(
            ControlAction.DEGRADE,
            reason=reason,
            degrade_to_model=to_model,
            throttle_delay_ms=delay_ms,
        )

    @classmethod
    def alert(
        cls,
        reason: str,
        level: AlertLevel = AlertLevel.WARNING,
        delay_ms: int = 0,
    ) -> "ControlDecision":
        return cls(
            ControlAction.ALERT,
            reason=reason,
            alert_level=level,
            throttle_delay_ms=delay_ms,
        )

    @property
    def proceeds(self) -> bool:
        return self.action != ControlAction.BLOCK


@dataclass
class ControlRequest:
    """Input to a decision oracle."""
    context_id: Optional[str]
    provider: str
    model: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    estimated_cost: Optional[float] = None
    span_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_id": self.context_id,
            "provider": self.provider,
            "model": self.model,
            "metadata": self.metadata,
            "estimated_cost": self.estimated_cost,
        }


@dataclass
class ControlEvent:
    """Audit record of a decision that was applied to a call."""
    provider: str
    original_model: str
    action: ControlAction
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    context_id: Optional[str] = None
    reason: Optional[str] = None
    degraded_to: Optional[str] = None
    throttle_delay_ms: Optional[int] = None
    estimated_cost: Optional[float] = None
    event_id: str = field(default_factory=lambda: f"ctl_{uuid.uuid4().hex[:12]}")
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "context_id": self.context_id,
            "provider": self.provider,
            "original_model": self.original_model,
            "action": self.action.value,
            "reason": self.reason,
            "degraded_to": self.degraded_to,
            "throttle_delay_ms": self.throttle_delay_ms,
            "estimated_cost": self.estimated_cost,
        }


@dataclass(frozen=True)
class AlertEvent:
    """Passed to on_alert callbacks."""
    level: AlertLevel
    message: str
    reason: str
    provider: str
    model: str
    context_id: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


# ============================================================================
# Policy rules
# ============================================================================

class _Rule(BaseModel):
    """Common rule keys. An unset key matches everything."""
    context_id: Optional[str] = None
    provider: Optional[str] = None
    model_pattern: Optional[str] = None

    def matches(self, context_id: Optional[str], provider: str, model: str) -> bool:
        if self.context_id and self.context_id != context_id:
            return False
        if self.provider and self.provider != provider:
            return False
        if self.model_pattern and not fnmatch.fnmatchcase(model, self.model_pattern):
            return False
        return True


class BlockRule(_Rule):
    reason: str = "Blocked by policy"


class BudgetRule(BaseModel):
    """
    Spend limit in dollars.

    A customer budget applies when its id names the calling context or
    metadata customer_id, or its context_id is the calling context. Agent,
    tenant and feature budgets match the agent_id, tenant_id and feature
    metadata values; tag budgets match request tags.
    """
    id: str
    name: str = ""
    type: BudgetType = BudgetType.GLOBAL
    context_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    limit: float = Field(ge=0)
    spent: float = Field(default=0.0, ge=0)
    limit_action: LimitAction = LimitAction.KILL
    degrade_to_model: Optional[str] = None
    throttle_delay_ms: int = Field(default=1000, ge=0)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def usage_percent(self) -> float:
        if self.limit <= 0:
            return 100.0
        return self.spent / self.limit * 100


class ThrottleRule(_Rule):
    requests_per_minute: Optional[int] = Field(default=None, ge=0)
    delay_ms: int = Field(default=1000, ge=0)


class DegradeRule(BaseModel):
    from_model: str
    to_model: str
    trigger: DegradeTrigger = DegradeTrigger.BUDGET_THRESHOLD
    threshold_percent: Optional[float] = Field(default=None, ge=0)
    context_id: Optional[str] = None

    def matches(self, context_id: Optional[str], model: str) -> bool:
        if self.context_id and self.context_id != context_id:
            return False
        return fnmatch.fnmatchcase(model, self.from_model)


class AlertRule(_Rule):
    trigger: str = "budget_threshold"
    threshold_percent: Optional[float] = Field(default=None, ge=0)
    level: AlertLevel = AlertLevel.WARNING
    message: str = "Alert triggered"

    @field_validator("trigger")
    @classmethod
    def validate_trigger(cls, v: str) -> str:
        allowed = {"budget_threshold", "model_usage", "always"}
        if v not in allowed:
            raise ValueError(f"trigger must be one of {sorted(allowed)}")
        return v


class ControlPolicy(BaseModel):
    """Ordered rule collections evaluated per call."""
    version: str = "1"
    updated_at: Optional[str] = None
    blocks: List[BlockRule] = Field(default_factory=list)
    budgets: List[BudgetRule] = Field(default_factory=list)
    throttles: List[ThrottleRule] = Field(default_factory=list)
    degradations: List[DegradeRule] = Field(default_factory=list)
    alerts: List[AlertRule] = Field(default_factory=list)

"""
Wire schema for the remote control API.

Responses are validated before they are turned into a ControlDecision;
anything that does not validate is treated as an unavailable oracle.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .models import AlertLevel, ControlAction, ControlDecision


class DecisionResponse(BaseModel):
    """Body of POST /v1/control/decision."""
    action: Literal["allow", "block", "throttle", "degrade", "alert"]
    reason: Optional[str] = None
    delay_ms: Optional[int] = Field(default=None, ge=0)
    to_model: Optional[str] = None
    level: Optional[AlertLevel] = None

    @model_validator(mode="after")
    def check_payload(self) -> "DecisionResponse":
        if self.action == "degrade" and not self.to_model:
            raise ValueError("degrade decision requires to_model")
        if self.action == "throttle" and self.delay_ms is None:
            raise ValueError("throttle decision requires delay_ms")
        return self

    def to_decision(self) -> ControlDecision:
        action = ControlAction(self.action)
        delay = self.delay_ms or 0
        if action == ControlAction.BLOCK:
            return ControlDecision.block(self.reason or "Blocked by policy")
        if action == ControlAction.THROTTLE:
            return ControlDecision.throttle(delay, self.reason)
        if action == ControlAction.DEGRADE:
            return ControlDecision.degrade(self.to_model, self.reason, delay)
        if action == ControlAction.ALERT:
            return ControlDecision.alert(
                self.reason or "Alert triggered",
                self.level or AlertLevel.WARNING,
                delay,
            )
        return ControlDecision.allow()

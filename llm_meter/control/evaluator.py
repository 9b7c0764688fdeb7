"""
In-process policy evaluation.

LocalPolicyEvaluator implements the decision oracle contract without a
remote server. Per call it evaluates, in order:

1. Block rules (first match wins)
2. Budget rules: limit action when spent + estimate > limit, otherwise
   budget-threshold degradations
3. Always-on degradations
4. Alert rules (never stop the call)
5. Throttle rules over a rolling 60 second window

Every call that passes the block rules is counted in the throttle windows.
A throttle delay is attached to degrade and alert decisions as well.

Spend is tracked with reservations: an allowed call reserves its estimated
cost against every applicable budget, and the reservation is committed with
the actual cost (or rolled back on failure) when the call's metric record
is reported.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..models import MetricRecord
from ..pricing import estimate_cost
from .models import (
    BudgetRule,
    BudgetType,
    ControlDecision,
    ControlEvent,
    ControlPolicy,
    ControlRequest,
    DegradeTrigger,
    LimitAction,
)

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0

_METADATA_ID_KEYS = {
    BudgetType.AGENT: "agent_id",
    BudgetType.TENANT: "tenant_id",
    BudgetType.FEATURE: "feature",
}


@dataclass
class Reservation:
    """Estimated spend held against budgets until the call settles."""
    span_id: str
    budget_ids: List[str]
    amount: float


def load_policy(path: Union[str, Path]) -> ControlPolicy:
    """
    Load a ControlPolicy from a YAML file.

    Raises:
        ConfigError: If the file is missing or does not validate
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read policy file {path}: {e}") from e
    try:
        return ControlPolicy.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid policy file {path}: {e}") from e


class LocalPolicyEvaluator:
    """
    Reference decision oracle evaluated in process.

    Shared counters are only touched in synchronous code, so no lock is
    needed under asyncio; the lock makes the evaluator safe to share
    between threads as well.

    Args:
        policy: Policy to evaluate (empty policy allows everything)
        clock: Monotonic clock in seconds, injectable for tests
    """

    def __init__(
        self,
        policy: Optional[ControlPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], Deque[float]] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._spent: Dict[str, float] = {}
        self.events: List[ControlEvent] = []
        self.update_policy(policy or ControlPolicy())

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "LocalPolicyEvaluator":
        return cls(load_policy(path), **kwargs)

    @property
    def policy(self) -> ControlPolicy:
        return self._policy

    def update_policy(self, policy: ControlPolicy) -> None:
        """Replace the policy. Spend restarts from the policy's values."""
        with self._lock:
            self._policy = policy
            self._spent = {b.id: b.spent for b in policy.budgets}
            self._reservations.clear()
        for rule in policy.degradations:
            if rule.trigger == DegradeTrigger.RATE_LIMIT:
                logger.warning(
                    f"Degradation {rule.from_model} -> {rule.to_model} uses the "
                    "rate_limit trigger, which is not evaluated locally; rule ignored"
                )
        logger.debug(
            f"Policy {policy.version} loaded: {len(policy.blocks)} blocks, "
            f"{len(policy.budgets)} budgets, {len(policy.throttles)} throttles"
        )

    def get_spent(self, budget_id: str) -> float:
        return self._spent.get(budget_id, 0.0)

    # ------------------------------------------------------------------
    # Oracle contract
    # ------------------------------------------------------------------

    async def get_decision(self, request: ControlRequest) -> ControlDecision:
        return self.evaluate(request)

    async def report_event(self, event: ControlEvent) -> None:
        self.events.append(event)

    async def report_metric(self, record: MetricRecord) -> None:
        self.settle(record)

    async def close(self) -> None:
        pass

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, request: ControlRequest) -> ControlDecision:
        """Decide for one call and reserve its estimated cost if it proceeds."""
        with self._lock:
            decision = self._evaluate(request)
            if decision.proceeds and request.estimated_cost:
                self._reserve(request)
        if decision.reason:
            logger.debug(
                f"Control decision {decision.action.value} for "
                f"{request.provider}/{request.model}: {decision.reason}"
            )
        return decision

    def _evaluate(self, request: ControlRequest) -> ControlDecision:
        policy = self._policy
        context_id, provider, model = request.context_id, request.provider, request.model

        # 1. Blocks
        for rule in policy.blocks:
            if rule.matches(context_id, provider, model):
                return ControlDecision.block(rule.reason)

        # Every call that gets past the blocks counts against the rate
        # windows; the delay rides on degrade and alert decisions
        throttle = self._check_throttles(request)
        delay_ms = throttle.throttle_delay_ms if throttle else 0

        # 2. Budgets and threshold degradations
        budgets = self._applicable_budgets(request)
        estimate = request.estimated_cost or 0.0
        for budget in budgets:
            spent = self._spent.get(budget.id, 0.0)
            projected = spent + estimate
            if projected > budget.limit:
                reason = (
                    f'Budget "{budget.display_name}" exceeded: '
                    f"${projected:.4f} > ${budget.limit}"
                )
                return self._limit_decision(budget, reason, delay_ms)

        for rule in policy.degradations:
            if rule.trigger != DegradeTrigger.BUDGET_THRESHOLD or rule.threshold_percent is None:
                continue
            if not rule.matches(context_id, model):
                continue
            for budget in budgets:
                percent = self._usage_percent(budget)
                if percent >= rule.threshold_percent:
                    return ControlDecision.degrade(
                        rule.to_model,
                        f'Budget "{budget.display_name}" at {percent:.1f}% '
                        f"(threshold {rule.threshold_percent}%)",
                        delay_ms=delay_ms,
                    )

        # 3. Always-on degradations
        for rule in policy.degradations:
            if rule.trigger == DegradeTrigger.ALWAYS and rule.matches(context_id, model):
                return ControlDecision.degrade(
                    rule.to_model, "Model degradation rule", delay_ms=delay_ms
                )

        # 4. Alerts
        for rule in policy.alerts:
            if self._alert_fires(rule, request, budgets):
                return ControlDecision.alert(rule.message, rule.level, delay_ms=delay_ms)

        # 5. Throttles
        return throttle or ControlDecision.allow()

    def _limit_decision(
        self, budget: BudgetRule, reason: str, delay_ms: int = 0
    ) -> ControlDecision:
        if budget.limit_action == LimitAction.THROTTLE:
            return ControlDecision.throttle(budget.throttle_delay_ms, reason)
        if budget.limit_action == LimitAction.DEGRADE:
            if budget.degrade_to_model:
                return ControlDecision.degrade(budget.degrade_to_model, reason, delay_ms=delay_ms)
            logger.warning(
                f"Budget {budget.id} degrades without degrade_to_model, blocking"
            )
        return ControlDecision.block(reason)

    def _usage_percent(self, budget: BudgetRule) -> float:
        if budget.limit <= 0:
            return 100.0
        return self._spent.get(budget.id, 0.0) / budget.limit * 100

    def _applicable_budgets(self, request: ControlRequest) -> List[BudgetRule]:
        return [b for b in self._policy.budgets if self._budget_applies(b, request)]

    @staticmethod
    def _budget_applies(budget: BudgetRule, request: ControlRequest) -> bool:
        context_id = request.context_id
        metadata = request.metadata or {}

        if budget.context_id and budget.context_id != context_id:
            return False

        if budget.type == BudgetType.GLOBAL:
            return True
        if budget.type == BudgetType.CUSTOMER:
            customer_id = metadata.get("customer_id")
            if customer_id and str(customer_id) in budget.id:
                return True
            return bool(
                context_id
                and (budget.context_id == context_id or context_id in budget.id)
            )
        if budget.type in _METADATA_ID_KEYS:
            value = metadata.get(_METADATA_ID_KEYS[budget.type])
            return bool(value) and str(value) in budget.id
        if budget.type == BudgetType.TAG:
            tags = metadata.get("tags") or []
            return any(tag in budget.tags for tag in tags)
        return False

    def _check_throttles(self, request: ControlRequest) -> Optional[ControlDecision]:
        now = self._clock()
        for rule in self._policy.throttles:
            if not rule.matches(request.context_id, request.provider, request.model):
                continue

            if rule.requests_per_minute is None:
                return ControlDecision.throttle(rule.delay_ms, "Throttled by policy")

            key = (request.context_id or "global", rule.provider or "all")
            window = self._windows.setdefault(key, deque())
            while window and now - window[0] >= RATE_WINDOW_SECONDS:
                window.popleft()
            exceeded = len(window) >= rule.requests_per_minute
            window.append(now)
            if exceeded:
                return ControlDecision.throttle(
                    rule.delay_ms,
                    f"Rate limit exceeded: {rule.requests_per_minute} requests/min",
                )
        return None

    def _alert_fires(self, rule, request: ControlRequest, budgets: List[BudgetRule]) -> bool:
        if not rule.matches(request.context_id, request.provider, request.model):
            return False
        if rule.trigger == "budget_threshold":
            if rule.threshold_percent is None:
                return False
            return any(self._usage_percent(b) >= rule.threshold_percent for b in budgets)
        return True

    # ------------------------------------------------------------------
    # Spend tracking
    # ------------------------------------------------------------------

    def _reserve(self, request: ControlRequest) -> None:
        budget_ids = [b.id for b in self._applicable_budgets(request)]
        amount = request.estimated_cost or 0.0
        for budget_id in budget_ids:
            self._spent[budget_id] = self._spent.get(budget_id, 0.0) + amount
        if request.span_id and budget_ids:
            self._reservations[request.span_id] = Reservation(
                span_id=request.span_id, budget_ids=budget_ids, amount=amount
            )

    def settle(self, record: MetricRecord) -> None:
        """
        Settle spend for a finished call.

        A reserved call is committed with its actual cost when usage is
        known, rolled back when it failed without usage, and otherwise kept
        at the estimate. Calls without a reservation add their actual cost.
        """
        actual = estimate_cost(record.model, record.usage)
        with self._lock:
            reservation = self._reservations.pop(record.span_id, None)
            if reservation is not None:
                if record.usage is not None:
                    delta = actual - reservation.amount
                elif record.error:
                    delta = -reservation.amount
                else:
                    delta = 0.0
                for budget_id in reservation.budget_ids:
                    spent = self._spent.get(budget_id, 0.0) + delta
                    self._spent[budget_id] = max(spent, 0.0)
                return

            if actual <= 0:
                return
            request = ControlRequest(
                context_id=record.metadata.get("context_id"),
                provider=record.provider,
                model=record.model,
                metadata=dict(record.metadata),
            )
            for budget in self._applicable_budgets(request):
                self._spent[budget.id] = self._spent.get(budget.id, 0.0) + actual

    def record_spend(
        self,
        context_id: Optional[str],
        amount: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Add spend directly to every budget applicable to context_id."""
        request = ControlRequest(
            context_id=context_id, provider="", model="", metadata=dict(metadata or {})
        )
        with self._lock:
            for budget in self._applicable_budgets(request):
                self._spent[budget.id] = self._spent.get(budget.id, 0.0) + amount

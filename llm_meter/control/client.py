"""
Control decision client.

ControlDecisionClient puts a latency bound and a failure policy around a
DecisionOracle. Whatever the oracle does (hang, raise, return garbage),
decide() returns a ControlDecision within timeout_s: allow when fail-open,
block("control unavailable") when fail-closed.

Oracles:
- LocalPolicyEvaluator (control/evaluator.py): in-process rules
- RemoteDecisionOracle: the remote control API over httpx
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

import httpx
from pydantic import ValidationError

from ..errors import ControlUnavailableError
from ..models import MetricRecord
from .models import ControlDecision, ControlEvent, ControlRequest
from .schema import DecisionResponse

logger = logging.getLogger(__name__)

CONTROL_UNAVAILABLE = "control unavailable"


class DecisionOracle(ABC):
    """Anything that can decide on a call and receive its audit trail."""

    @abstractmethod
    async def get_decision(self, request: ControlRequest) -> ControlDecision:
        pass

    async def report_event(self, event: ControlEvent) -> None:
        pass

    async def report_metric(self, record: MetricRecord) -> None:
        pass

    async def close(self) -> None:
        pass


class ControlDecisionClient:
    """
    Bounded-latency access to a decision oracle.

    Args:
        oracle: Object implementing get_decision / report_event / report_metric
        fail_open: Allow calls when no decision can be obtained (default)
        timeout_s: Upper bound for every oracle round trip
    """

    def __init__(self, oracle: Any, fail_open: bool = True, timeout_s: float = 2.0):
        self.oracle = oracle
        self.fail_open = fail_open
        self.timeout_s = timeout_s
        self._pending: Set[asyncio.Task] = set()

    def _fallback(self, cause: str) -> ControlDecision:
        if self.fail_open:
            logger.warning(f"Control decision unavailable ({cause}), allowing call")
            return ControlDecision.allow()
        logger.warning(f"Control decision unavailable ({cause}), blocking call")
        return ControlDecision.block(CONTROL_UNAVAILABLE)

    async def decide(
        self,
        context_id: Optional[str],
        provider: str,
        model: str,
        metadata: Optional[Dict[str, Any]] = None,
        estimated_cost: Optional[float] = None,
        span_id: Optional[str] = None,
    ) -> ControlDecision:
        """
        Get a decision for one call. Never raises, never exceeds timeout_s.
        """
        request = ControlRequest(
            context_id=context_id,
            provider=provider,
            model=model,
            metadata=dict(metadata or {}),
            estimated_cost=estimated_cost,
            span_id=span_id,
        )
        try:
            decision = await asyncio.wait_for(
                self.oracle.get_decision(request), timeout=self.timeout_s
            )
        except asyncio.TimeoutError:
            return self._fallback(f"timed out after {self.timeout_s}s")
        except (ControlUnavailableError, httpx.HTTPError, ValidationError, ValueError) as e:
            return self._fallback(str(e) or type(e).__name__)
        except Exception as e:
            logger.warning(f"Decision oracle failed: {e}", exc_info=True)
            return self._fallback(type(e).__name__)

        if not isinstance(decision, ControlDecision):
            return self._fallback(f"malformed decision {decision!r}")
        return decision

    def report_event(self, event: ControlEvent) -> None:
        """Send the applied decision to the oracle without waiting for it."""
        handler = getattr(self.oracle, "report_event", None)
        if handler is None:
            return
        task = asyncio.ensure_future(self._guarded(handler, event, "event"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def report_metric(self, record: MetricRecord) -> None:
        """Forward a metric record to the oracle. Failures are logged only."""
        handler = getattr(self.oracle, "report_metric", None)
        if handler is None:
            return
        await self._guarded(handler, record, "metric")

    async def _guarded(self, handler, payload: Any, what: str) -> None:
        try:
            await asyncio.wait_for(handler(payload), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Reporting control {what} timed out")
        except Exception as e:
            logger.warning(f"Reporting control {what} failed: {e}")

    async def flush(self) -> None:
        """Wait for in-flight event reports."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        close = getattr(self.oracle, "close", None)
        if close is not None:
            await close()


class RemoteDecisionOracle(DecisionOracle):
    """
    Decision oracle backed by the remote control API.

    Args:
        api_key: Bearer token for the control server
        server_url: Base URL of the control server
        timeout: HTTP timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    DECISION_PATH = "/v1/control/decision"
    EVENTS_PATH = "/v1/control/events"
    METRICS_PATH = "/v1/metrics"

    def __init__(
        self,
        api_key: str,
        server_url: str = "http://localhost:8000",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.instance_id = str(uuid.uuid4())
        self._client = httpx.AsyncClient(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-SDK-Instance-ID": self.instance_id,
            },
        )

    async def get_decision(self, request: ControlRequest) -> ControlDecision:
        response = await self._client.post(self.DECISION_PATH, json=request.to_dict())
        if response.status_code >= 400:
            raise ControlUnavailableError(
                f"Decision endpoint returned {response.status_code}"
            )
        return DecisionResponse.model_validate(response.json()).to_decision()

    async def report_event(self, event: ControlEvent) -> None:
        response = await self._client.post(self.EVENTS_PATH, json=event.to_dict())
        response.raise_for_status()

    async def report_metric(self, record: MetricRecord) -> None:
        response = await self._client.post(self.METRICS_PATH, json=record.to_dict())
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()

"""
Call interceptor.

Main component that sits between the application and a provider SDK
method:
- Pre-call: relationship snapshot, pre-flight hook, control decision
- Call: dispatch through the original SDK method, timed
- Post-call: usage extraction and exactly one metric record per call
"""
import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Sequence

from .. import context, enrichment
from ..control.models import AlertEvent, AlertLevel, ControlAction, ControlEvent
from ..emitters import MetricEmissionGateway
from ..errors import RequestBlockedError, RequestCancelledError
from ..models import MetricRecord, NormalizedUsage, ToolCallMetric
from .adapters import ProviderAdapter
from .models import (
    BeforeRequestAction,
    BeforeRequestContext,
    MeterOptions,
    PendingCall,
)
from .stream import MeteredStream, StreamState

logger = logging.getLogger(__name__)

STREAM_ABORTED = "Stream aborted before completion"


def _is_async_iterable(value: Any) -> bool:
    return hasattr(value, "__aiter__")


class CallInterceptor:
    """
    Intercepts provider calls with metering and policy control.

    Flow:
    1. Assign a span id and snapshot the call relationship
    2. Run the pre-flight hook (proceed / throttle / cancel / degrade / alert)
    3. Ask the control client for a decision and apply it
    4. Dispatch the original call
    5. Emit one metric record (streams emit when they end) and report it
       to the control client

    Usage:
        interceptor = CallInterceptor(OpenAIAdapter(), MeterOptions(emitters=sink))

        response = await interceptor.call(
            client.chat.completions.create,
            {"model": "gpt-4o", "messages": messages},
        )
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        options: Optional[MeterOptions] = None,
        gateway: Optional[MetricEmissionGateway] = None,
    ):
        """
        Initialize call interceptor.

        Args:
            adapter: Adapter for the provider being wrapped
            options: Runtime options (emitters, hook, control, ...)
            gateway: Optional pre-built emission gateway
        """
        self.adapter = adapter
        self.options = options or MeterOptions()
        self.gateway = gateway or MetricEmissionGateway(self.options.emitters)

    def wrap(self, fn: Callable[..., Any], stream: Optional[bool] = None) -> Callable[..., Any]:
        """Return an async function that routes fn through this interceptor."""

        @functools.wraps(fn)
        async def metered(*args, **kwargs):
            return await self.call(fn, kwargs, *args, stream=stream)

        metered.__llm_meter_wrapped__ = fn
        return metered

    async def call(
        self,
        fn: Callable[..., Any],
        params: Dict[str, Any],
        *args: Any,
        stream: Optional[bool] = None,
    ) -> Any:
        """
        Make one intercepted call.

        Args:
            fn: Original SDK method, called as fn(*args, **params)
            params: Keyword parameters of the call (including model)
            stream: Force streaming detection (otherwise params["stream"])

        Returns:
            The provider response unchanged, or a MeteredStream for streams

        Raises:
            RequestCancelledError: If the pre-flight hook cancelled the call
            RequestBlockedError: If the control policy blocked the call
            Exception: Whatever the provider raised, unchanged
        """
        params = dict(params)
        pending = self._begin(params, stream)

        # Steps 2-3: pre-flight hook, then control decision
        try:
            params = await self._run_before_request(params, pending)
        except asyncio.CancelledError:
            await self._emit(pending, error="cancelled")
            raise
        except Exception as e:
            await self._emit(pending, error=str(e) or type(e).__name__)
            raise

        try:
            params = await self._apply_control(params, pending)
        except asyncio.CancelledError:
            await self._emit(pending, error="cancelled")
            raise
        except Exception as e:
            # Blocked calls have already emitted; _emit is a no-op then
            await self._emit(pending, error=str(e) or type(e).__name__)
            raise

        # Step 4: dispatch
        pending.mark_dispatched()
        try:
            result = fn(*args, **params)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            await self._emit(pending, latency_ms=pending.elapsed_ms(), error="cancelled")
            raise
        except Exception as e:
            await self._emit(
                pending,
                latency_ms=pending.elapsed_ms(),
                error=str(e) or type(e).__name__,
            )
            raise

        # Step 5: streams emit when they end
        if pending.is_streaming and _is_async_iterable(result):
            async def on_finish(metered, state, error):
                await self._finish_stream(pending, metered, state, error)

            return MeteredStream(
                result,
                self.adapter,
                on_finish,
                track_tool_calls=self.options.track_tool_calls,
            )

        latency_ms = pending.elapsed_ms()
        usage, request_id, tool_calls = self._extract(result)
        await self._emit(
            pending,
            latency_ms=latency_ms,
            usage=usage,
            request_id=request_id,
            tool_calls=tool_calls,
        )
        return result

    # ------------------------------------------------------------------
    # Step 1
    # ------------------------------------------------------------------

    def _begin(self, params: Dict[str, Any], stream: Optional[bool]) -> PendingCall:
        options = self.options
        span_id = options.generate_span_id()
        ctx = context.current()

        # Synchronous: the parent pointer moves before anything can suspend
        relationship = None
        if options.track_call_relationships:
            relationship = context.record_call_relationship(span_id)

        context_id = self._context_id(ctx)
        metadata = {**ctx.metadata, **options.request_metadata}
        if context_id is not None:
            metadata.setdefault("context_id", context_id)

        pending = PendingCall(
            span_id=span_id,
            provider=self.adapter.provider,
            model=self.adapter.extract_model(params),
            is_streaming=stream if stream is not None else self.adapter.is_streaming(params),
            context=ctx,
            relationship=relationship,
            context_id=context_id,
            metadata=metadata,
        )
        if options.capture_call_site:
            pending.call_site = enrichment.capture_call_site()
            pending.inferred_agents = tuple(enrichment.infer_agents())
        return pending

    def _context_id(self, ctx: context.CallContext) -> Optional[str]:
        getter = self.options.get_context_id
        if getter is None:
            return ctx.metadata.get("context_id")
        try:
            return getter()
        except Exception as e:
            logger.warning(f"get_context_id failed: {e}")
            return None

    # ------------------------------------------------------------------
    # Step 2
    # ------------------------------------------------------------------

    async def _run_before_request(
        self, params: Dict[str, Any], pending: PendingCall
    ) -> Dict[str, Any]:
        hook = self.options.before_request
        if hook is None:
            return params

        hook_context = BeforeRequestContext(
            model=pending.model,
            stream=pending.is_streaming,
            span_id=pending.span_id,
            trace_id=pending.trace_id,
            timestamp=pending.start_time,
            metadata=dict(pending.metadata),
        )
        result = hook(params, hook_context)
        if inspect.isawaitable(result):
            result = await result
        if result is None or result.action == BeforeRequestAction.PROCEED:
            return params

        if result.action == BeforeRequestAction.CANCEL:
            raise RequestCancelledError(result.reason or "cancelled by hook", hook_context)

        if result.delay_ms > 0:
            logger.debug(f"Pre-flight hook delaying {pending.span_id} by {result.delay_ms}ms")
            await asyncio.sleep(result.delay_ms / 1000)

        if result.action == BeforeRequestAction.DEGRADE and result.to_model:
            params = self._degrade(params, pending, result.to_model)
        elif result.action == BeforeRequestAction.ALERT:
            await self._fire_alert(
                pending, result.reason or "Alert from pre-flight hook", result.level
            )
        return params

    # ------------------------------------------------------------------
    # Step 3
    # ------------------------------------------------------------------

    async def _apply_control(
        self, params: Dict[str, Any], pending: PendingCall
    ) -> Dict[str, Any]:
        control = self.options.control
        if control is None:
            return params

        requested_model = pending.model
        estimated_cost = self._estimate_cost(params)
        decision = await control.decide(
            pending.context_id,
            pending.provider,
            requested_model,
            metadata=pending.metadata,
            estimated_cost=estimated_cost,
            span_id=pending.span_id,
        )
        if decision.action != ControlAction.ALLOW:
            pending.control_action = decision.action.value

        control.report_event(ControlEvent(
            provider=pending.provider,
            original_model=requested_model,
            action=decision.action,
            trace_id=pending.trace_id,
            span_id=pending.span_id,
            context_id=pending.context_id,
            reason=decision.reason,
            degraded_to=decision.degrade_to_model,
            throttle_delay_ms=decision.throttle_delay_ms or None,
            estimated_cost=estimated_cost,
        ))

        if decision.action == ControlAction.BLOCK:
            error = RequestBlockedError(decision.reason or "Blocked by policy", decision)
            await self._emit(pending, error=str(error))
            raise error

        if decision.throttle_delay_ms > 0:
            logger.debug(
                f"Control delaying {pending.span_id} by {decision.throttle_delay_ms}ms"
            )
            await asyncio.sleep(decision.throttle_delay_ms / 1000)

        if decision.action == ControlAction.DEGRADE and decision.degrade_to_model:
            params = self._degrade(params, pending, decision.degrade_to_model)
        elif decision.action == ControlAction.ALERT:
            await self._fire_alert(
                pending, decision.reason or "Alert triggered", decision.alert_level
            )
        return params

    def _estimate_cost(self, params: Dict[str, Any]) -> Optional[float]:
        estimator = self.options.cost_estimator
        if estimator is None:
            return None
        try:
            return estimator(params)
        except Exception as e:
            logger.warning(f"Cost estimator failed: {e}")
            return None

    def _degrade(
        self, params: Dict[str, Any], pending: PendingCall, to_model: str
    ) -> Dict[str, Any]:
        if pending.original_model is None:
            pending.original_model = pending.model
        logger.info(f"Degrading {pending.model} to {to_model} for span {pending.span_id}")
        pending.model = to_model
        return self.adapter.with_model(params, to_model)

    async def _fire_alert(self, pending: PendingCall, reason: str, level: Any) -> None:
        logger.info(f"Alert for {pending.provider}/{pending.model}: {reason}")
        on_alert = self.options.on_alert
        if on_alert is None:
            return
        try:
            alert_level = AlertLevel(level) if level else AlertLevel.WARNING
        except ValueError:
            alert_level = AlertLevel.WARNING
        event = AlertEvent(
            level=alert_level,
            message=reason,
            reason=reason,
            provider=pending.provider,
            model=pending.model,
            context_id=pending.context_id,
        )
        try:
            result = on_alert(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"on_alert callback failed: {e}")

    # ------------------------------------------------------------------
    # Step 5
    # ------------------------------------------------------------------

    def _extract(self, response: Any):
        usage = request_id = None
        tool_calls: Sequence[ToolCallMetric] = ()
        try:
            usage = self.adapter.extract_usage(response)
            request_id = self.adapter.extract_request_id(response)
            if self.options.track_tool_calls:
                tool_calls = self.adapter.extract_tool_calls(response)
        except Exception:
            logger.debug(
                f"Could not read {self.adapter.provider} response", exc_info=True
            )
        return usage, request_id, tool_calls

    async def _finish_stream(
        self,
        pending: PendingCall,
        stream: MeteredStream,
        state: StreamState,
        error: Optional[BaseException],
    ) -> None:
        if state == StreamState.FAILED:
            message = str(error) or type(error).__name__
            usage = None
        else:
            message = STREAM_ABORTED if state == StreamState.ABORTED else None
            usage = stream.usage
        await self._emit(
            pending,
            latency_ms=pending.elapsed_ms(),
            usage=usage,
            error=message,
            request_id=stream.request_id,
            tool_calls=stream.tool_calls,
        )

    async def _emit(
        self,
        pending: PendingCall,
        latency_ms: float = 0.0,
        usage: Optional[NormalizedUsage] = None,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
        tool_calls: Sequence[ToolCallMetric] = (),
    ) -> Optional[MetricRecord]:
        if pending.emitted:
            return None
        pending.emitted = True
        record = self._build_record(
            pending, latency_ms, usage, error, request_id, tool_calls
        )
        await self.gateway.emit(record)
        # Settles the reservation made when the call was allowed
        if self.options.control is not None:
            await self.options.control.report_metric(record)
        return record

    def _build_record(
        self,
        pending: PendingCall,
        latency_ms: float,
        usage: Optional[NormalizedUsage],
        error: Optional[str],
        request_id: Optional[str],
        tool_calls: Sequence[ToolCallMetric],
    ) -> MetricRecord:
        relationship = pending.relationship
        agent_stack = list(relationship.agent_stack) if relationship else []
        for name in pending.inferred_agents:
            if name not in agent_stack:
                agent_stack.append(name)

        metadata = dict(pending.metadata)
        if pending.original_model:
            metadata["original_model"] = pending.original_model

        return MetricRecord(
            trace_id=pending.trace_id,
            span_id=pending.span_id,
            parent_span_id=relationship.parent_span_id if relationship else None,
            provider=pending.provider,
            model=pending.model,
            stream=pending.is_streaming,
            timestamp=pending.start_time,
            latency_ms=latency_ms,
            usage=usage,
            error=error,
            request_id=request_id,
            tool_calls=tuple(tool_calls),
            call_sequence=relationship.sequence if relationship else None,
            agent_stack=tuple(agent_stack),
            metadata=metadata,
            original_model=pending.original_model,
            control_action=pending.control_action,
            call_site=pending.call_site,
        )

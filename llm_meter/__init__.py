"""
llm-meter: cost metering and policy control for LLM provider calls.

Every intercepted call produces exactly one MetricRecord, streaming or
not, and may be blocked, throttled, degraded or flagged by a control policy
before it is dispatched.

Usage:
    from llm_meter import meter_client, MeterOptions, MemoryEmitter, context

    sink = MemoryEmitter()
    client = meter_client(AsyncOpenAI(), MeterOptions(emitters=sink))

    async with context.scope(metadata={"context_id": "user-1"}):
        await client.chat.completions.create(model="gpt-4o-mini", messages=messages)

    print(sink.records[0].usage)
"""
from . import context
from .config import (
    ConfigManager,
    MeterConfig,
    build_options,
    configure_logging,
    get_config,
    reset_config,
)
from .context import CallContext, CallRelationship
from .control import (
    ControlAction,
    ControlDecision,
    ControlDecisionClient,
    ControlPolicy,
    LocalPolicyEvaluator,
    RemoteDecisionOracle,
)
from .emitters import (
    BatchEmitter,
    JsonlFileEmitter,
    LoggingEmitter,
    MemoryEmitter,
    MetricEmissionGateway,
    filtered_emitter,
)
from .errors import (
    ConfigError,
    ControlUnavailableError,
    MeterError,
    RequestBlockedError,
    RequestCancelledError,
)
from .instrument import (
    instrument,
    instrument_method,
    is_metered,
    meter_client,
    uninstrument_all,
    uninstrument_method,
)
from .interceptor import (
    AnthropicAdapter,
    BeforeRequestAction,
    BeforeRequestContext,
    BeforeRequestResult,
    CallInterceptor,
    GeminiAdapter,
    MeteredStream,
    MeterOptions,
    OpenAIAdapter,
    ProviderAdapter,
)
from .models import MetricRecord, NormalizedUsage, ToolCallMetric
from .normalize import empty_usage, merge_usage, normalize_usage

__version__ = "0.1.0"

__all__ = [
    # Records
    "MetricRecord",
    "NormalizedUsage",
    "ToolCallMetric",
    # Context
    "context",
    "CallContext",
    "CallRelationship",
    # Interception
    "CallInterceptor",
    "MeteredStream",
    "MeterOptions",
    "BeforeRequestAction",
    "BeforeRequestContext",
    "BeforeRequestResult",
    "ProviderAdapter",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    # Instrumentation
    "meter_client",
    "is_metered",
    "instrument",
    "instrument_method",
    "uninstrument_method",
    "uninstrument_all",
    # Control
    "ControlAction",
    "ControlDecision",
    "ControlDecisionClient",
    "ControlPolicy",
    "LocalPolicyEvaluator",
    "RemoteDecisionOracle",
    # Emitters
    "MetricEmissionGateway",
    "MemoryEmitter",
    "LoggingEmitter",
    "JsonlFileEmitter",
    "BatchEmitter",
    "filtered_emitter",
    # Usage
    "normalize_usage",
    "empty_usage",
    "merge_usage",
    # Config
    "MeterConfig",
    "ConfigManager",
    "get_config",
    "reset_config",
    "configure_logging",
    "build_options",
    # Errors
    "MeterError",
    "ConfigError",
    "ControlUnavailableError",
    "RequestCancelledError",
    "RequestBlockedError",
]

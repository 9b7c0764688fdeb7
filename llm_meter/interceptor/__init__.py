"""
Call interceptor for provider SDK methods.

Wraps a provider "create" method with:
- Trace/span relationship tracking via the context store
- Pre-flight hook and control decisions (block, throttle, degrade, alert)
- Exactly one metric record per call, streaming or not

Usage:
    from llm_meter.interceptor import CallInterceptor, OpenAIAdapter, MeterOptions

    interceptor = CallInterceptor(OpenAIAdapter(), MeterOptions(emitters=sink))
    create = interceptor.wrap(client.chat.completions.create)

    response = await create(model="gpt-4o", messages=messages)
"""
from .adapters import (
    ADAPTERS,
    AnthropicAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    get_adapter,
)
from .models import (
    BeforeRequestAction,
    BeforeRequestContext,
    BeforeRequestHook,
    BeforeRequestResult,
    MeterOptions,
    PendingCall,
)
from .stream import MeteredStream, StreamState
from .wrapper import CallInterceptor

__all__ = [
    # Interceptor
    "CallInterceptor",
    "MeteredStream",
    "StreamState",
    # Adapters
    "ADAPTERS",
    "ProviderAdapter",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "get_adapter",
    # Models
    "BeforeRequestAction",
    "BeforeRequestContext",
    "BeforeRequestHook",
    "BeforeRequestResult",
    "MeterOptions",
    "PendingCall",
]

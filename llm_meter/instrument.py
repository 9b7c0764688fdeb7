"""
Instrumentation of provider SDK clients.

Two ways to route calls through the interceptor:

- meter_client(client): an explicit proxy around one async client. Only
  the "create" entry points are replaced; everything else is the client's
  own attribute.
- instrument() / instrument_method(): patch SDK classes in place, for
  code that creates its own clients. Every patch is reversible with
  uninstrument_method() / uninstrument_all(), and installing twice is a
  no-op.

Only async clients are supported (AsyncOpenAI, AsyncAnthropic,
genai.Client().aio).

Usage:
    from llm_meter import meter_client, MeterOptions, MemoryEmitter

    client = meter_client(AsyncOpenAI(), MeterOptions(emitters=MemoryEmitter()))
    await client.chat.completions.create(model="gpt-4o-mini", messages=messages)
"""
import functools
import importlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .interceptor.adapters import ProviderAdapter, get_adapter
from .interceptor.models import MeterOptions
from .interceptor.wrapper import CallInterceptor

logger = logging.getLogger(__name__)

# Entry points per provider: dotted attribute path -> forced streaming flag
ENTRY_POINTS: Dict[str, Dict[str, Optional[bool]]] = {
    "openai": {
        "chat.completions.create": None,
        "responses.create": None,
    },
    "anthropic": {
        "messages.create": None,
    },
    "gemini": {
        "models.generate_content": False,
        "models.generate_content_stream": True,
    },
}

# SDK classes patched by instrument(): provider -> [(module, class, method, stream)]
SDK_METHODS: Dict[str, List[Tuple[str, str, str, Optional[bool]]]] = {
    "openai": [
        ("openai.resources.chat.completions", "AsyncCompletions", "create", None),
        ("openai.resources.responses", "AsyncResponses", "create", None),
    ],
    "anthropic": [
        ("anthropic.resources.messages", "AsyncMessages", "create", None),
    ],
    "gemini": [
        ("google.genai.models", "AsyncModels", "generate_content", False),
        ("google.genai.models", "AsyncModels", "generate_content_stream", True),
    ],
}


# ============================================================================
# Proxy
# ============================================================================

class _MeteredNamespace:
    """Proxy for an SDK resource with some attributes replaced."""

    def __init__(self, target: Any, overrides: Dict[str, Any]):
        self._target = target
        self._overrides = overrides

    def __getattr__(self, name: str) -> Any:
        overrides = self.__dict__.get("_overrides", {})
        if name in overrides:
            return overrides[name]
        return getattr(self.__dict__["_target"], name)

    def __repr__(self) -> str:
        return f"<metered {self._target!r}>"


class MeteredClient(_MeteredNamespace):
    """A provider client whose create entry points are metered."""

    def __init__(self, target: Any, overrides: Dict[str, Any], interceptor: CallInterceptor):
        super().__init__(target, overrides)
        self.interceptor = interceptor

    def unwrap(self) -> Any:
        return self._target


def _resolve(obj: Any, path: str) -> Any:
    for part in path.split("."):
        obj = getattr(obj, part, None)
        if obj is None:
            return None
    return obj


def _build_proxy(target: Any, tree: Dict[str, Any]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name, node in tree.items():
        if isinstance(node, dict):
            child = getattr(target, name)
            overrides[name] = _MeteredNamespace(child, _build_proxy(child, node))
        else:
            overrides[name] = node
    return overrides


def detect_provider(client: Any) -> str:
    """Guess the provider of an SDK client from its module or shape."""
    module = type(client).__module__ or ""
    if module.startswith("openai"):
        return "openai"
    if module.startswith("anthropic"):
        return "anthropic"
    if module.startswith("google"):
        return "gemini"
    if _resolve(client, "chat.completions.create") or _resolve(client, "responses.create"):
        return "openai"
    if _resolve(client, "messages.create"):
        return "anthropic"
    if _resolve(client, "models.generate_content") or _resolve(client, "aio.models"):
        return "gemini"
    raise ValueError(f"Cannot detect provider for client {type(client).__name__}")


def is_metered(client: Any) -> bool:
    return isinstance(client, MeteredClient)


def meter_client(
    client: Any,
    options: Optional[MeterOptions] = None,
    adapter: Optional[ProviderAdapter] = None,
    provider: Optional[str] = None,
) -> Any:
    """
    Wrap an async provider client so its create calls are metered.

    Args:
        client: AsyncOpenAI, AsyncAnthropic or google-genai client
        options: Runtime options (emitters, hook, control, ...)
        adapter: Explicit adapter (detected from the client otherwise)
        provider: Explicit provider name (detected otherwise)

    Returns:
        A MeteredClient; the client itself if it is already metered
    """
    if is_metered(client):
        return client

    adapter = adapter or get_adapter(provider or detect_provider(client))
    interceptor = CallInterceptor(adapter, options)

    # google-genai keeps its async surface under client.aio
    prefix = ""
    if adapter.provider == "gemini" and getattr(client, "aio", None) is not None:
        prefix = "aio."

    tree: Dict[str, Any] = {}
    for path, stream in ENTRY_POINTS.get(adapter.provider, {}).items():
        method = _resolve(client, prefix + path)
        if method is None:
            continue
        node = tree
        parts = (prefix + path).split(".")
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = interceptor.wrap(method, stream=stream)

    if not tree:
        logger.warning(f"No {adapter.provider} entry points found on {type(client).__name__}")
    return MeteredClient(client, _build_proxy(client, tree), interceptor)


# ============================================================================
# Class patching
# ============================================================================

@dataclass
class _Patch:
    original: Any
    owned: bool
    interceptor: CallInterceptor


_installed: Dict[Tuple[type, str], _Patch] = {}


def instrument_method(
    owner: type,
    name: str,
    adapter: ProviderAdapter,
    options: Optional[MeterOptions] = None,
    stream: Optional[bool] = None,
) -> bool:
    """
    Patch owner.name so calls on every instance are metered.

    Returns:
        True if the patch was installed, False if it already was
    """
    key = (owner, name)
    if key in _installed:
        return False

    owned = name in owner.__dict__
    original = owner.__dict__[name] if owned else getattr(owner, name)
    method = getattr(owner, name)
    interceptor = CallInterceptor(adapter, options)

    @functools.wraps(method)
    async def patched(self, *args, **kwargs):
        return await interceptor.call(
            functools.partial(method, self), kwargs, *args, stream=stream
        )

    setattr(owner, name, patched)
    _installed[key] = _Patch(original=original, owned=owned, interceptor=interceptor)
    logger.debug(f"Instrumented {owner.__qualname__}.{name}")
    return True


def uninstrument_method(owner: type, name: str) -> bool:
    """Restore owner.name. Returns False if it was not instrumented."""
    patch = _installed.pop((owner, name), None)
    if patch is None:
        return False
    if patch.owned:
        setattr(owner, name, patch.original)
    else:
        delattr(owner, name)
    logger.debug(f"Uninstrumented {owner.__qualname__}.{name}")
    return True


def uninstrument_all() -> int:
    """Restore every patched method. Returns how many were restored."""
    count = 0
    for owner, name in list(_installed):
        if uninstrument_method(owner, name):
            count += 1
    return count


def is_instrumented(owner: type, name: str) -> bool:
    return (owner, name) in _installed


def _load_class(module_name: str, class_name: str) -> Optional[type]:
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        return None
    return getattr(module, class_name, None)


def instrument(
    options: Optional[MeterOptions] = None,
    providers: Optional[List[str]] = None,
) -> Dict[str, bool]:
    """
    Patch the async SDK classes of every installed provider SDK.

    Args:
        options: Runtime options shared by all patched methods
        providers: Restrict to these provider names

    Returns:
        Mapping of provider name to whether any method was patched
    """
    results: Dict[str, bool] = {}
    for provider, methods in SDK_METHODS.items():
        if providers is not None and provider not in providers:
            continue
        adapter = get_adapter(provider)
        patched_any = False
        for module_name, class_name, method, stream in methods:
            owner = _load_class(module_name, class_name)
            if owner is None or not hasattr(owner, method):
                continue
            instrument_method(owner, method, adapter, options, stream=stream)
            patched_any = True
        results[provider] = patched_any
        if patched_any:
            logger.info(f"Instrumented {provider} SDK")
    return results

"""
Provider adapters for the call interceptor.

Implements adapters for the supported provider SDKs:
- OpenAIAdapter: Responses API and Chat Completions
- AnthropicAdapter: Messages API
- GeminiAdapter: google-genai generate_content

An adapter only knows how to read a provider's requests, responses and
stream events. Dispatching the call stays with the wrapped SDK method.
"""
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional
import logging

from ..models import NormalizedUsage, ToolCallMetric
from ..normalize import as_mapping, normalize_usage

logger = logging.getLogger(__name__)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a mapping or an attribute from an SDK object."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _items(obj: Any, key: str) -> List[Any]:
    value = _get(obj, key)
    return list(value) if value else []


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses implement response and stream-event extraction for one SDK.
    """

    provider: str = "unknown"

    def extract_model(self, params: Dict[str, Any]) -> str:
        return str(params.get("model") or "unknown")

    def is_streaming(self, params: Dict[str, Any]) -> bool:
        return bool(params.get("stream"))

    def with_model(self, params: Dict[str, Any], model: str) -> Dict[str, Any]:
        """Return params with the model replaced (used when degrading)."""
        return {**params, "model": model}

    def extract_request_id(self, response: Any) -> Optional[str]:
        for key in ("_request_id", "request_id", "requestId", "id"):
            value = _get(response, key)
            if isinstance(value, str) and value:
                return value
        return None

    @abstractmethod
    def extract_usage(self, response: Any) -> Optional[NormalizedUsage]:
        """
        Extract normalized usage from a non-streaming response.

        Args:
            response: Raw provider response

        Returns:
            NormalizedUsage, or None when the response carries no usage
        """
        pass

    def extract_tool_calls(self, response: Any) -> List[ToolCallMetric]:
        return []

    def chunk_request_id(self, chunk: Any) -> Optional[str]:
        return None

    @abstractmethod
    def chunk_usage(
        self, chunk: Any, previous: Optional[NormalizedUsage]
    ) -> Optional[NormalizedUsage]:
        """
        Return the latest complete usage snapshot after a stream event.

        Args:
            chunk: One stream event
            previous: Snapshot captured so far (None when nothing yet)

        Returns:
            The new snapshot, or None when the event carries no usage
        """
        pass

    def chunk_tool_calls(self, chunk: Any) -> List[ToolCallMetric]:
        return []


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI SDK.

    Handles both Responses API objects (output items, response.* stream
    events) and Chat Completions objects (choices, chunk deltas).
    """

    provider = "openai"

    def extract_usage(self, response: Any) -> Optional[NormalizedUsage]:
        return normalize_usage(_get(response, "usage"), self.provider)

    def extract_tool_calls(self, response: Any) -> List[ToolCallMetric]:
        calls: List[ToolCallMetric] = []
        # Responses API
        for item in _items(response, "output"):
            metric = self._output_item_tool(item)
            if metric:
                calls.append(metric)
        # Chat Completions
        for choice in _items(response, "choices"):
            message = _get(choice, "message")
            for tool_call in _items(message, "tool_calls"):
                calls.append(ToolCallMetric(
                    type=_get(tool_call, "type") or "function",
                    name=_get(_get(tool_call, "function"), "name"),
                ))
        return calls

    @staticmethod
    def _output_item_tool(item: Any) -> Optional[ToolCallMetric]:
        item_type = _get(item, "type") or ""
        if item_type == "function_call":
            return ToolCallMetric(type="function", name=_get(item, "name"))
        if item_type.endswith("_call"):
            return ToolCallMetric(type=item_type[: -len("_call")])
        return None

    def chunk_request_id(self, chunk: Any) -> Optional[str]:
        if _get(chunk, "type") == "response.created":
            return _get(_get(chunk, "response"), "id")
        value = _get(chunk, "id")
        return value if isinstance(value, str) else None

    def chunk_usage(
        self, chunk: Any, previous: Optional[NormalizedUsage]
    ) -> Optional[NormalizedUsage]:
        event_type = _get(chunk, "type")
        if event_type == "response.completed":
            return normalize_usage(_get(_get(chunk, "response"), "usage"), self.provider)
        if event_type is None:
            # Chat chunks carry usage on the last chunk with include_usage
            return normalize_usage(_get(chunk, "usage"), self.provider)
        return None

    def chunk_tool_calls(self, chunk: Any) -> List[ToolCallMetric]:
        if _get(chunk, "type") == "response.output_item.added":
            metric = self._output_item_tool(_get(chunk, "item"))
            return [metric] if metric else []
        calls: List[ToolCallMetric] = []
        for choice in _items(chunk, "choices"):
            for tool_call in _items(_get(choice, "delta"), "tool_calls"):
                name = _get(_get(tool_call, "function"), "name")
                # Only the first delta of a tool call carries its name
                if name:
                    calls.append(ToolCallMetric(type="function", name=name))
        return calls


class AnthropicAdapter(ProviderAdapter):
    """
    Adapter for the Anthropic SDK.

    Streams report input usage on message_start and cumulative output
    usage on message_delta; the snapshot combines the two.
    """

    provider = "anthropic"

    def extract_usage(self, response: Any) -> Optional[NormalizedUsage]:
        return normalize_usage(_get(response, "usage"), self.provider)

    def extract_tool_calls(self, response: Any) -> List[ToolCallMetric]:
        calls = []
        for block in _items(response, "content"):
            metric = self._block_tool(block)
            if metric:
                calls.append(metric)
        return calls

    @staticmethod
    def _block_tool(block: Any) -> Optional[ToolCallMetric]:
        block_type = _get(block, "type")
        if block_type == "tool_use":
            return ToolCallMetric(type="function", name=_get(block, "name"))
        if block_type == "server_tool_use":
            return ToolCallMetric(type="server_tool", name=_get(block, "name"))
        return None

    def chunk_request_id(self, chunk: Any) -> Optional[str]:
        if _get(chunk, "type") == "message_start":
            return _get(_get(chunk, "message"), "id")
        return None

    def chunk_usage(
        self, chunk: Any, previous: Optional[NormalizedUsage]
    ) -> Optional[NormalizedUsage]:
        event_type = _get(chunk, "type")
        if event_type == "message_start":
            return normalize_usage(_get(_get(chunk, "message"), "usage"), self.provider)
        if event_type != "message_delta":
            return None

        delta = as_mapping(_get(chunk, "usage"))
        if not delta:
            return None
        base = previous or NormalizedUsage()
        updates = {}
        if delta.get("input_tokens") is not None:
            updates["input_tokens"] = int(delta["input_tokens"])
        if delta.get("output_tokens") is not None:
            updates["output_tokens"] = int(delta["output_tokens"])
        if delta.get("cache_read_input_tokens") is not None:
            updates["cached_tokens"] = int(delta["cache_read_input_tokens"])
        snapshot = replace(base, **updates)
        return replace(
            snapshot, total_tokens=snapshot.input_tokens + snapshot.output_tokens
        )

    def chunk_tool_calls(self, chunk: Any) -> List[ToolCallMetric]:
        if _get(chunk, "type") == "content_block_start":
            metric = self._block_tool(_get(chunk, "content_block"))
            return [metric] if metric else []
        return []


class GeminiAdapter(ProviderAdapter):
    """
    Adapter for the google-genai SDK.

    Stream chunks are partial GenerateContentResponse objects; the last one
    carries the final usage_metadata.
    """

    provider = "gemini"

    def extract_request_id(self, response: Any) -> Optional[str]:
        for key in ("response_id", "responseId"):
            value = _get(response, key)
            if isinstance(value, str) and value:
                return value
        return None

    def extract_usage(self, response: Any) -> Optional[NormalizedUsage]:
        metadata = _get(response, "usage_metadata") or _get(response, "usageMetadata")
        return normalize_usage(metadata, self.provider)

    def extract_tool_calls(self, response: Any) -> List[ToolCallMetric]:
        calls = []
        for candidate in _items(response, "candidates"):
            for part in _items(_get(candidate, "content"), "parts"):
                function_call = _get(part, "function_call") or _get(part, "functionCall")
                if function_call:
                    calls.append(ToolCallMetric(
                        type="function", name=_get(function_call, "name")
                    ))
        return calls

    def chunk_request_id(self, chunk: Any) -> Optional[str]:
        return self.extract_request_id(chunk)

    def chunk_usage(
        self, chunk: Any, previous: Optional[NormalizedUsage]
    ) -> Optional[NormalizedUsage]:
        return self.extract_usage(chunk)

    def chunk_tool_calls(self, chunk: Any) -> List[ToolCallMetric]:
        return self.extract_tool_calls(chunk)


ADAPTERS = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
}


def get_adapter(provider: str) -> ProviderAdapter:
    """Create the adapter for a provider name."""
    try:
        return ADAPTERS[provider]()
    except KeyError:
        raise ValueError(
            f"Unknown provider: {provider}. Available: {', '.join(ADAPTERS)}"
        ) from None

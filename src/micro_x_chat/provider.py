from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Protocol, Union, runtime_checkable

from micro_x_chat.errors import ConfigError, ErrorKind
from micro_x_chat.messages import Message, TokenUsage, Tool, ToolUseBlock


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"


@dataclass
class ProviderResponse:
    content: str
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: FinishReason | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# Streaming events. A stream is a finite async iterator of these.


@dataclass(frozen=True)
class ContentStart:
    pass


@dataclass(frozen=True)
class ContentDelta:
    delta: str


@dataclass(frozen=True)
class ContentStop:
    pass


@dataclass(frozen=True)
class ToolUseStart:
    tool_call: ToolUseBlock


@dataclass(frozen=True)
class ToolUseDelta:
    call_id: str
    args_delta: str


@dataclass(frozen=True)
class ToolUseStop:
    pass


@dataclass(frozen=True)
class UsageUpdate:
    usage: TokenUsage


@dataclass(frozen=True)
class ErrorEvent:
    kind: ErrorKind
    message: str


ProviderEvent = Union[
    ContentStart,
    ContentDelta,
    ContentStop,
    ToolUseStart,
    ToolUseDelta,
    ToolUseStop,
    UsageUpdate,
    ErrorEvent,
]


@dataclass
class ChatRequest:
    messages: list[Message]
    tools: list[Tool] = field(default_factory=list)
    system_message: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stream: bool = False
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderConfig:
    provider_type: str = "openai"
    api_key: str | None = None
    base_url: str | None = None
    model: str = "gpt-4"
    max_tokens: int | None = 4096
    temperature: float | None = 0.7
    top_p: float | None = None
    stream: bool = True
    tools: list[Tool] = field(default_factory=list)
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class LLMProvider(Protocol):
    async def complete(self, request: ChatRequest) -> ProviderResponse:
        """Send a non-streaming request and return the parsed reply."""
        ...

    def complete_stream(self, request: ChatRequest) -> AsyncIterator[ProviderEvent]:
        """Return a lazy, non-restartable sequence of streaming events.

        Transport and status failures raise from the first iteration; a
        malformed payload raises JsonError mid-stream.
        """
        ...

    @property
    def name(self) -> str: ...

    @property
    def model(self) -> str: ...

    def validate_config(self) -> None: ...

    async def aclose(self) -> None: ...


_PROVIDER_TYPES = ("openai", "anthropic", "ollama")


def available_providers() -> list[str]:
    return list(_PROVIDER_TYPES)


def create_provider(config: ProviderConfig, options=None, *, transport=None, sleep=None) -> LLMProvider:
    """Factory: create an LLMProvider from its provider_type tag.

    ``transport`` and ``sleep`` are forwarded to the driver so callers can
    substitute the HTTP layer and the backoff clock.
    """
    name = (config.provider_type or "").strip().lower()
    kwargs = {"options": options, "transport": transport, "sleep": sleep}
    if name == "openai":
        from micro_x_chat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(config, **kwargs)
    if name == "anthropic":
        from micro_x_chat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(config, **kwargs)
    if name == "ollama":
        from micro_x_chat.providers.ollama_provider import OllamaProvider
        return OllamaProvider(config, **kwargs)
    raise ConfigError(
        f"Unsupported provider type: {config.provider_type!r}. Supported: {', '.join(_PROVIDER_TYPES)}"
    )

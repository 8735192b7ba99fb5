import json
from typing import AsyncIterator

from loguru import logger

from micro_x_chat.errors import ConfigError, ErrorKind
from micro_x_chat.messages import (
    ImageBlock,
    Message,
    MessageRole,
    TextBlock,
    TokenUsage,
    Tool,
    ToolResultBlock,
    ToolUseBlock,
)
from micro_x_chat.provider import (
    ChatRequest,
    ContentDelta,
    ContentStart,
    ContentStop,
    ErrorEvent,
    FinishReason,
    ProviderConfig,
    ProviderEvent,
    ProviderResponse,
)
from micro_x_chat.providers.common import (
    ClientOptions,
    build_client,
    call_with_retry,
    decode_payload,
    expect_object,
    iter_sse_data,
    open_stream,
    payload_shape,
    post_json,
    sanitize_content,
    token_count,
)

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASON_MAP = {
    "end_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
}


def _parse_tool_input(arguments: str) -> dict:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {arguments[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def _to_anthropic_blocks(blocks: list) -> list[dict]:
    out: list[dict] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            out.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            out.append({
                "type": "image",
                "source": {"type": "base64", "media_type": block.media_type, "data": block.data},
            })
        elif isinstance(block, ToolUseBlock):
            out.append({
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": _parse_tool_input(block.arguments),
            })
        elif isinstance(block, ToolResultBlock):
            out.append({"type": "tool_result", "tool_use_id": block.tool_call_id, "content": block.content})
    return out


def _to_anthropic_messages(messages: list[Message]) -> tuple[str | None, list[dict]]:
    """Split out system text and convert the rest to Anthropic entries.

    Tool messages have no role of their own here: their blocks are appended to
    the preceding user entry, or dropped when there is none.
    """
    system_parts: list[str] = []
    out: list[dict] = []

    for msg in messages:
        if msg.role == MessageRole.SYSTEM:
            text = msg.text_content()
            if text:
                system_parts.append(text)
        elif msg.role in (MessageRole.USER, MessageRole.ASSISTANT):
            out.append({"role": msg.role.value, "content": _to_anthropic_blocks(msg.content)})
        elif msg.role == MessageRole.TOOL:
            if out and out[-1]["role"] == "user":
                out[-1]["content"].extend(_to_anthropic_blocks(msg.content))
            else:
                logger.debug(f"Dropping tool message {msg.id}: no preceding user entry")

    system = "\n".join(system_parts) if system_parts else None
    return system, out


def _to_anthropic_tools(tools: list[Tool]) -> list[dict]:
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def _parse_response(data: dict) -> ProviderResponse:
    data = expect_object(data, "message")
    with payload_shape("message"):
        text_parts: list[str] = []
        tool_calls: list[ToolUseBlock] = []
        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolUseBlock(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        arguments=json.dumps(block.get("input", {})),
                    )
                )

        usage = data.get("usage") or {}
        return ProviderResponse(
            content=sanitize_content("".join(text_parts)),
            tool_calls=tool_calls,
            usage=TokenUsage.of(token_count(usage.get("input_tokens")), token_count(usage.get("output_tokens"))),
            finish_reason=_STOP_REASON_MAP.get(data.get("stop_reason")),
            metadata={"provider": "anthropic", "model": data.get("model", ""), "id": data.get("id", "")},
        )


def _stream_event(event: dict) -> ProviderEvent | None:
    event_type = event.get("type")
    if event_type == "content_block_start":
        return ContentStart()
    if event_type == "content_block_delta":
        text = (event.get("delta") or {}).get("text")
        if text is not None:
            return ContentDelta(sanitize_content(str(text)))
        return None
    if event_type in ("content_block_stop", "message_stop"):
        return ContentStop()
    if event_type == "error":
        error = event.get("error") or {}
        return ErrorEvent(ErrorKind.API, str(error.get("message", "unknown stream error")))
    return None


class AnthropicProvider:
    def __init__(
        self,
        config: ProviderConfig,
        *,
        options: ClientOptions | None = None,
        transport=None,
        sleep=None,
    ):
        self._config = config
        self._options = options or ClientOptions()
        self._sleep = sleep
        self.validate_config()
        headers = {"x-api-key": config.api_key, "anthropic-version": ANTHROPIC_VERSION}
        headers.update(config.extra_headers)
        self._client = build_client(self._options, headers, transport=transport)

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def model(self) -> str:
        return self._config.model

    def validate_config(self) -> None:
        if not self._config.api_key:
            raise ConfigError("API key is required")
        if not self._config.model:
            raise ConfigError("Model is required")

    @property
    def endpoint(self) -> str:
        base_url = (self._config.base_url or DEFAULT_BASE_URL).rstrip("/")
        return f"{base_url}/v1/messages"

    def _build_body(self, request: ChatRequest, *, stream: bool) -> dict:
        system_from_messages, messages = _to_anthropic_messages(request.messages)
        body: dict = {
            "model": self._config.model,
            "messages": messages,
        }
        system = request.system_message or system_from_messages
        if system:
            body["system"] = system

        max_tokens = request.max_tokens if request.max_tokens is not None else self._config.max_tokens
        body["max_tokens"] = max_tokens if max_tokens is not None else DEFAULT_MAX_TOKENS
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None:
            body["temperature"] = temperature
        top_p = request.top_p if request.top_p is not None else self._config.top_p
        if top_p is not None:
            body["top_p"] = top_p
        tools = request.tools or self._config.tools
        if tools:
            body["tools"] = _to_anthropic_tools(tools)
        if stream:
            body["stream"] = True
        body.update(self._config.extra_body)
        body.update(request.extra_body)
        return body

    async def complete(self, request: ChatRequest) -> ProviderResponse:
        body = self._build_body(request, stream=False)
        logger.debug(
            f"API request: provider=anthropic, model={self._config.model}, max_tokens={body['max_tokens']}, "
            f"messages={len(body['messages'])}, tools={len(body.get('tools', []))}"
        )
        data = await call_with_retry(
            lambda: post_json(
                self._client,
                self.endpoint,
                body,
                provider="anthropic",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        response = _parse_response(data)
        logger.debug(
            f"API response: finish_reason={response.finish_reason}, "
            f"input_tokens={response.usage.input_tokens}, output_tokens={response.usage.output_tokens}"
        )
        return response

    async def complete_stream(self, request: ChatRequest) -> AsyncIterator[ProviderEvent]:
        body = self._build_body(request, stream=True)
        logger.debug(f"API stream request: provider=anthropic, model={self._config.model}, messages={len(body['messages'])}")
        response = await call_with_retry(
            lambda: open_stream(
                self._client,
                self.endpoint,
                body,
                provider="anthropic",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        try:
            async for payload in iter_sse_data(response):
                if not payload.strip():
                    continue
                event = expect_object(decode_payload(payload), "stream event")
                with payload_shape("stream event"):
                    translated = _stream_event(event)
                if translated is not None:
                    yield translated
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

from typing import AsyncIterator

from loguru import logger

from micro_x_chat.errors import ApiError, ConfigError
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
    ContentStop,
    FinishReason,
    ProviderConfig,
    ProviderEvent,
    ProviderResponse,
    ToolUseDelta,
    ToolUseStart,
    UsageUpdate,
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

DEFAULT_BASE_URL = "https://api.openai.com"

_FINISH_REASON_MAP = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "tool_calls": FinishReason.TOOL_CALLS,
}


def _to_openai_content(blocks: list) -> list[dict]:
    out: list[dict] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            out.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            out.append({
                "type": "image_url",
                "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
            })
    return out


def _to_openai_messages(messages: list[Message], system_message: str | None = None) -> list[dict]:
    """Convert messages to OpenAI chat entries.

    Tool blocks never appear in ``content``; they surface as ``tool_calls`` on
    assistant entries and ``tool_call_id`` on tool entries.
    """
    out: list[dict] = []

    if system_message and not any(m.role == MessageRole.SYSTEM for m in messages):
        out.append({"role": "system", "content": system_message})

    for msg in messages:
        visible = [b for b in msg.content if isinstance(b, (TextBlock, ImageBlock))]
        tool_uses = [b for b in msg.content if isinstance(b, ToolUseBlock)]
        tool_results = [b for b in msg.content if isinstance(b, ToolResultBlock)]

        entry: dict = {"role": msg.role.value}
        if len(visible) == 1 and isinstance(visible[0], TextBlock):
            entry["content"] = visible[0].text
        elif visible:
            entry["content"] = _to_openai_content(visible)
        elif tool_results:
            entry["content"] = "\n".join(r.content for r in tool_results)
        else:
            entry["content"] = None

        if tool_uses:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments or "{}"},
                }
                for call in tool_uses
            ]
        if tool_results:
            entry["tool_call_id"] = tool_results[0].tool_call_id

        out.append(entry)

    return out


def _to_openai_tools(tools: list[Tool]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def _usage(usage: dict) -> TokenUsage:
    return TokenUsage.of(token_count(usage.get("prompt_tokens")), token_count(usage.get("completion_tokens")))


def _parse_response(data: dict) -> ProviderResponse:
    data = expect_object(data, "chat completion")
    with payload_shape("chat completion"):
        choices = data.get("choices") or []
        if not choices:
            raise ApiError("No choices in response")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolUseBlock(
                id=tc.get("id", ""),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "",
            )
            for tc in message.get("tool_calls") or []
        ]

        return ProviderResponse(
            content=sanitize_content(message.get("content") or ""),
            tool_calls=tool_calls,
            usage=_usage(data.get("usage") or {}),
            finish_reason=_FINISH_REASON_MAP.get(choice.get("finish_reason")),
            metadata={"provider": "openai", "model": data.get("model", "")},
        )


def _translate_chunk(chunk: dict, call_ids: dict[int, str]) -> list[ProviderEvent]:
    """Map one streamed chunk to events; tool call ids arrive only on the first fragment of each call."""
    events: list[ProviderEvent] = []
    usage = chunk.get("usage")
    if usage:
        events.append(UsageUpdate(_usage(usage)))

    choices = chunk.get("choices") or []
    if not choices:
        return events
    delta = choices[0].get("delta") or {}

    content = delta.get("content")
    if content:
        events.append(ContentDelta(sanitize_content(content)))

    for tc in delta.get("tool_calls") or []:
        index = tc.get("index", 0)
        function = tc.get("function") or {}
        if tc.get("id") and function.get("name"):
            call_ids[index] = tc["id"]
            events.append(
                ToolUseStart(ToolUseBlock(id=tc["id"], name=function["name"], arguments=function.get("arguments") or ""))
            )
        elif function.get("arguments") and index in call_ids:
            events.append(ToolUseDelta(call_ids[index], function["arguments"]))
    return events


class OpenAIProvider:
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
        headers = {"Authorization": f"Bearer {config.api_key}"}
        headers.update(config.extra_headers)
        self._client = build_client(self._options, headers, transport=transport)

    @property
    def name(self) -> str:
        return "openai"

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
        return f"{base_url}/v1/chat/completions"

    def _build_body(self, request: ChatRequest, *, stream: bool) -> dict:
        body: dict = {
            "model": self._config.model,
            "messages": _to_openai_messages(request.messages, request.system_message),
            "stream": stream,
        }
        max_tokens = request.max_tokens if request.max_tokens is not None else self._config.max_tokens
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None:
            body["temperature"] = temperature
        top_p = request.top_p if request.top_p is not None else self._config.top_p
        if top_p is not None:
            body["top_p"] = top_p
        tools = request.tools or self._config.tools
        if tools:
            body["tools"] = _to_openai_tools(tools)
        body.update(self._config.extra_body)
        body.update(request.extra_body)
        return body

    async def complete(self, request: ChatRequest) -> ProviderResponse:
        body = self._build_body(request, stream=False)
        logger.debug(
            f"API request: provider=openai, model={self._config.model}, "
            f"messages={len(body['messages'])}, tools={len(body.get('tools', []))}"
        )
        data = await call_with_retry(
            lambda: post_json(
                self._client,
                self.endpoint,
                body,
                provider="openai",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        response = _parse_response(data)
        logger.debug(
            f"API response: finish_reason={response.finish_reason}, "
            f"text_len={len(response.content)}, tool_calls={len(response.tool_calls)}"
        )
        return response

    async def complete_stream(self, request: ChatRequest) -> AsyncIterator[ProviderEvent]:
        body = self._build_body(request, stream=True)
        logger.debug(f"API stream request: provider=openai, model={self._config.model}, messages={len(body['messages'])}")
        response = await call_with_retry(
            lambda: open_stream(
                self._client,
                self.endpoint,
                body,
                provider="openai",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        call_ids: dict[int, str] = {}
        try:
            async for payload in iter_sse_data(response):
                if payload == "[DONE]":
                    yield ContentStop()
                    continue
                chunk = expect_object(decode_payload(payload), "stream chunk")
                with payload_shape("stream chunk"):
                    events = _translate_chunk(chunk, call_ids)
                for event in events:
                    yield event
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

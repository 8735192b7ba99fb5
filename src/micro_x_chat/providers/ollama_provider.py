from typing import AsyncIterator

from loguru import logger

from micro_x_chat.errors import AgentError, ConfigError
from micro_x_chat.messages import Message, MessageRole, TokenUsage
from micro_x_chat.provider import (
    ChatRequest,
    ContentDelta,
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
    get_json,
    iter_lines,
    open_stream,
    payload_shape,
    post_json,
    sanitize_content,
    token_count,
)

DEFAULT_BASE_URL = "http://localhost:11434"

_DURATION_FIELDS = ("total_duration", "load_duration", "prompt_eval_duration", "eval_duration")


def _to_ollama_messages(messages: list[Message], system_message: str | None = None) -> list[dict]:
    """Ollama has no tool role and takes plain text only; tool messages go out
    as user messages and non-text blocks are dropped."""
    out: list[dict] = []
    if system_message and not any(m.role == MessageRole.SYSTEM for m in messages):
        out.append({"role": "system", "content": system_message})
    for msg in messages:
        role = "user" if msg.role == MessageRole.TOOL else msg.role.value
        out.append({"role": role, "content": msg.text_content()})
    return out


def _parse_response(data: dict) -> ProviderResponse:
    data = expect_object(data, "chat response")
    with payload_shape("chat response"):
        message = data.get("message") or {}
        input_tokens = token_count(data.get("prompt_eval_count"))
        output_tokens = token_count(data.get("eval_count"))

        metadata: dict = {"provider": "ollama", "model": data.get("model", "")}
        for key in _DURATION_FIELDS:
            if key in data:
                metadata[f"{key}_ns"] = data[key]
        if "eval_count" in data:
            metadata["eval_count"] = data["eval_count"]
        if "prompt_eval_count" in data:
            metadata["prompt_eval_count"] = data["prompt_eval_count"]

        return ProviderResponse(
            content=sanitize_content(message.get("content") or data.get("response") or ""),
            usage=TokenUsage.of(input_tokens, output_tokens),
            finish_reason=FinishReason.STOP if data.get("done") else None,
            metadata=metadata,
        )


def _stream_delta(chunk: dict) -> str | None:
    message = chunk.get("message")
    if isinstance(message, dict) and message.get("content"):
        return sanitize_content(str(message["content"]))
    if chunk.get("response"):
        return sanitize_content(str(chunk["response"]))
    return None


class OllamaProvider:
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
        self._client = build_client(self._options, dict(config.extra_headers), transport=transport)

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model(self) -> str:
        return self._config.model

    def validate_config(self) -> None:
        if not self._config.model:
            raise ConfigError("Model is required")

    @property
    def base_url(self) -> str:
        return (self._config.base_url or DEFAULT_BASE_URL).rstrip("/")

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def _build_body(self, request: ChatRequest, *, stream: bool) -> dict:
        if request.tools or self._config.tools:
            logger.warning("Ollama driver does not send tool definitions; tools are ignored for this request")
        body: dict = {
            "model": self._config.model,
            "messages": _to_ollama_messages(request.messages, request.system_message),
            "stream": stream,
        }
        temperature = request.temperature if request.temperature is not None else self._config.temperature
        if temperature is not None:
            body["temperature"] = temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self._config.max_tokens
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        top_p = request.top_p if request.top_p is not None else self._config.top_p
        if top_p is not None:
            body["top_p"] = top_p
        # extra_body carries passthrough fields such as "format"
        body.update(self._config.extra_body)
        body.update(request.extra_body)
        return body

    async def complete(self, request: ChatRequest) -> ProviderResponse:
        body = self._build_body(request, stream=False)
        logger.debug(f"API request: provider=ollama, model={self._config.model}, messages={len(body['messages'])}")
        data = await call_with_retry(
            lambda: post_json(
                self._client,
                self.endpoint,
                body,
                provider="ollama",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        return _parse_response(data)

    async def complete_stream(self, request: ChatRequest) -> AsyncIterator[ProviderEvent]:
        body = self._build_body(request, stream=True)
        response = await call_with_retry(
            lambda: open_stream(
                self._client,
                self.endpoint,
                body,
                provider="ollama",
                headers=request.extra_headers or None,
            ),
            self._options,
            sleep=self._sleep,
        )
        try:
            async for line in iter_lines(response):
                if not line.strip():
                    continue
                chunk = expect_object(decode_payload(line), "stream chunk")
                with payload_shape("stream chunk"):
                    delta = _stream_delta(chunk)
                if delta:
                    yield ContentDelta(delta)
        finally:
            await response.aclose()

    async def list_models(self) -> list[str]:
        data = await call_with_retry(
            lambda: get_json(self._client, f"{self.base_url}/api/tags", provider="ollama"),
            self._options,
            sleep=self._sleep,
        )
        data = expect_object(data or {}, "model list")
        with payload_shape("model list"):
            return [m.get("name", "") for m in data.get("models") or []]

    async def health_check(self) -> bool:
        try:
            await get_json(self._client, f"{self.base_url}/api/tags", provider="ollama")
        except AgentError as ex:
            logger.debug(f"Ollama health check failed: {ex}")
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()

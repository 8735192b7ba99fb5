from __future__ import annotations

import json
import random
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, TypeVar

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from micro_x_chat import __version__
from micro_x_chat.errors import (
    ConfigError,
    HttpError,
    JsonError,
    RequestTimeoutError,
    StreamError,
    classify_http_error,
    is_retryable,
)

T = TypeVar("T")

MAX_BACKOFF_MS = 30_000


@dataclass
class ClientOptions:
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_seconds: float = 300.0
    user_agent: str = f"micro-x-chat/{__version__}"


def backoff_delay_ms(attempt: int, base_delay_ms: int, jitter: float | None = None) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2^attempt * (1 + u), capped."""
    u = random.random() if jitter is None else jitter
    return min(base_delay_ms * (2 ** attempt) * (1 + u), MAX_BACKOFF_MS)


class wait_jittered_backoff(wait_base):
    def __init__(self, base_delay_ms: int):
        self._base_delay_ms = base_delay_ms

    def __call__(self, retry_state) -> float:
        return backoff_delay_ms(retry_state.attempt_number - 1, self._base_delay_ms) / 1000.0


def _make_on_retry(max_attempts: int):
    def _on_retry(retry_state) -> None:
        attempt = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = str(exc) if exc else "Unknown"
        logger.warning(f"{reason}. Retrying in {wait:.2f}s (attempt {attempt}/{max_attempts})...")

    return _on_retry


def default_retry_kwargs(options: ClientOptions, *, sleep: Callable[[float], Awaitable[None]] | None = None) -> dict:
    max_attempts = max(0, options.max_retries) + 1
    kwargs: dict = {
        "retry": retry_if_exception(is_retryable),
        "wait": wait_jittered_backoff(options.retry_delay_ms),
        "stop": stop_after_attempt(max_attempts),
        "before_sleep": _make_on_retry(max_attempts),
        "reraise": True,
    }
    if sleep is not None:
        kwargs["sleep"] = sleep
    return kwargs


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    options: ClientOptions,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    async for attempt in AsyncRetrying(**default_retry_kwargs(options, sleep=sleep)):
        with attempt:
            return await func()
    raise AssertionError("retry loop exited without a result")


def build_client(
    options: ClientOptions,
    headers: dict[str, str],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    for key, value in headers.items():
        if not isinstance(key, str) or not key.strip() or any(c in key for c in " :\r\n"):
            raise ConfigError(f"Invalid header name {key!r}")
        if not isinstance(value, str) or "\n" in value or "\r" in value:
            raise ConfigError(f"Invalid header value for {key!r}")
    all_headers = {"User-Agent": options.user_agent, "Content-Type": "application/json"}
    all_headers.update(headers)
    return httpx.AsyncClient(
        headers=all_headers,
        timeout=httpx.Timeout(options.timeout_seconds),
        transport=transport,
    )


def extract_error_message(status: int, body: str) -> str:
    try:
        parsed = json.loads(body)
    except ValueError:
        return f"{status}: {body}"
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return f"{status}: {error['message']}"
        # Ollama reports {"error": "..."}
        if isinstance(error, str):
            return f"{status}: {error}"
    return f"{status}: {body}"


def sanitize_content(content: str) -> str:
    """Drop control characters other than newline and tab."""
    return "".join(ch for ch in content if ch in "\n\t" or not _is_control(ch))


def _is_control(ch: str) -> bool:
    code = ord(ch)
    return code < 0x20 or 0x7F <= code <= 0x9F


def _transport_error(ex: httpx.HTTPError) -> Exception:
    if isinstance(ex, httpx.TimeoutException):
        return RequestTimeoutError(str(ex) or type(ex).__name__, cause=ex)
    return HttpError(str(ex) or type(ex).__name__, cause=ex)


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    body: dict,
    *,
    provider: str,
    headers: dict[str, str] | None = None,
) -> dict:
    """One POST attempt: transport failures, non-2xx and undecodable bodies raise."""
    try:
        response = await client.post(url, json=body, headers=headers)
    except httpx.HTTPError as ex:
        raise _transport_error(ex) from ex

    if not response.is_success:
        message = extract_error_message(response.status_code, response.text)
        raise classify_http_error(response.status_code, message, provider)

    try:
        return response.json()
    except ValueError as ex:
        raise HttpError(f"Failed to decode response body: {ex}", cause=ex) from ex


async def get_json(client: httpx.AsyncClient, url: str, *, provider: str) -> Any:
    try:
        response = await client.get(url)
    except httpx.HTTPError as ex:
        raise _transport_error(ex) from ex
    if not response.is_success:
        message = extract_error_message(response.status_code, response.text)
        raise classify_http_error(response.status_code, message, provider)
    try:
        return response.json()
    except ValueError as ex:
        raise HttpError(f"Failed to decode response body: {ex}", cause=ex) from ex


async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    body: dict,
    *,
    provider: str,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """Send a streaming POST and return the open response once the status is known to be 2xx."""
    request = client.build_request("POST", url, json=body, headers=headers)
    try:
        response = await client.send(request, stream=True)
    except httpx.HTTPError as ex:
        raise _transport_error(ex) from ex

    if not response.is_success:
        try:
            await response.aread()
            message = extract_error_message(response.status_code, response.text)
        finally:
            await response.aclose()
        raise classify_http_error(response.status_code, message, provider)
    return response


async def iter_lines(response: httpx.Response) -> AsyncIterator[str]:
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.HTTPError as ex:
        raise StreamError(str(ex) or type(ex).__name__, cause=ex) from ex


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of every ``data:`` record; comments, ids and event names are skipped."""
    async for line in iter_lines(response):
        if not line.startswith("data:"):
            continue
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        yield payload


def decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as ex:
        raise JsonError(f"{ex}: {payload[:200]}", cause=ex) from ex


def expect_object(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise JsonError(f"Expected a JSON object for {what}, got {type(value).__name__}")
    return value


def token_count(value: Any) -> int:
    """Token counters may be absent or null; anything else must be an integer."""
    return 0 if value is None else int(value)


@contextmanager
def payload_shape(what: str) -> Iterator[None]:
    """Report a decoded payload with an unexpected layout as a ``JsonError``."""
    try:
        yield
    except (AttributeError, TypeError, KeyError, IndexError, ValueError) as ex:
        raise JsonError(f"Unexpected {what} layout: {ex}", cause=ex) from ex

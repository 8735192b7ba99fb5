from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    API = "api"
    HTTP = "http"
    JSON = "json"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    CONTEXT_LIMIT = "context_limit"
    CONFIG = "config"
    STREAM = "stream"
    TOOL_CALL = "tool_call"
    TIMEOUT = "timeout"
    IO = "io"


class AgentError(Exception):
    """Base of the closed error taxonomy. Every failure surfaced by a driver,
    the session store or the agent is exactly one of the subclasses below."""

    kind: ErrorKind = ErrorKind.API
    prefix: str = "Error"

    def __init__(self, message: str = "", *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if not self.message:
            return self.prefix
        return f"{self.prefix}: {self.message}"


class ApiError(AgentError):
    kind = ErrorKind.API
    prefix = "API request failed"


class HttpError(AgentError):
    kind = ErrorKind.HTTP
    prefix = "HTTP error"

    def __init__(self, message: str = "", *, status: int | None = None, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.status = status


class JsonError(AgentError):
    kind = ErrorKind.JSON
    prefix = "JSON parsing error"


class RateLimitError(AgentError):
    kind = ErrorKind.RATE_LIMIT
    prefix = "Rate limit exceeded"


class AuthError(AgentError):
    kind = ErrorKind.AUTH
    prefix = "Authentication failed"


class ContextLimitError(AgentError):
    kind = ErrorKind.CONTEXT_LIMIT
    prefix = "Context limit exceeded"


class ConfigError(AgentError):
    kind = ErrorKind.CONFIG
    prefix = "Invalid configuration"


class StreamError(AgentError):
    kind = ErrorKind.STREAM
    prefix = "Stream error"


class ToolCallError(AgentError):
    kind = ErrorKind.TOOL_CALL
    prefix = "Tool call error"


class RequestTimeoutError(AgentError):
    kind = ErrorKind.TIMEOUT
    prefix = "Timeout error"


class IoError(AgentError):
    kind = ErrorKind.IO
    prefix = "IO error"


class SessionNotFoundError(IoError):
    """Lookup of a session id that is not in the store."""

    def __init__(self, session_id: str):
        super().__init__(f"Session does not exist: {session_id}")
        self.session_id = session_id


_RETRYABLE_STATUSES = {408, 429}

# Substrings in a 400 body that mean the prompt did not fit the model window.
_CONTEXT_MARKERS = {
    "openai": ("context_length_exceeded",),
    "anthropic": ("context_length_exceeded", "too long"),
    "ollama": ("context_length_exceeded",),
}


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, (RateLimitError, RequestTimeoutError)):
        return True
    if isinstance(error, HttpError):
        # No status means the request never produced a usable response.
        if error.status is None:
            return True
        return error.status in _RETRYABLE_STATUSES or 500 <= error.status <= 599
    return False


def classify_http_error(status: int, message: str, provider: str = "openai") -> AgentError:
    """Map a non-2xx response to its error kind."""
    if status == 429:
        return RateLimitError(message)
    if status in (401, 403):
        return AuthError(message)
    if status == 400:
        markers = _CONTEXT_MARKERS.get(provider, _CONTEXT_MARKERS["openai"])
        if any(marker in message for marker in markers):
            return ContextLimitError(message)
        return ApiError(message)
    if status == 408 or 500 <= status <= 599:
        return HttpError(message, status=status)
    return ApiError(message)

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable
from uuid import uuid4

from loguru import logger

from micro_x_chat.errors import AgentError, StreamError
from micro_x_chat.events import (
    AppEvent,
    ErrorOccurred,
    EventBus,
    MessageReceived,
    StreamChunk,
    StreamEnded,
    StreamStarted,
    ToolCalled,
)
from micro_x_chat.messages import Message, Tool
from micro_x_chat.provider import (
    ChatRequest,
    ContentDelta,
    ContentStop,
    ErrorEvent,
    LLMProvider,
    ProviderResponse,
)

_END = object()

StreamCompleteCallback = Callable[[str], Awaitable[None]]


class StreamReceiver:
    """Receiving end of a streamed reply.

    Iterate it to get text chunks; iteration ends when the producing task
    exits. Calling ``close()`` drops the receiver: the producer notices on its
    next chunk and stops.
    """

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.error: BaseException | None = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _send(self, chunk: str) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(chunk)
        return True

    def _finish(self) -> None:
        self._queue.put_nowait(_END)

    def close(self) -> None:
        self._closed = True

    def __aiter__(self) -> "StreamReceiver":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any later reader.
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    async def collect(self) -> str:
        return "".join([chunk async for chunk in self])

    async def wait(self) -> None:
        if self._task is not None:
            await self._task


class Agent:
    def __init__(
        self,
        provider: LLMProvider,
        bus: EventBus,
        session_id: str,
        *,
        tools: list[Tool] | None = None,
    ):
        self._provider = provider
        self._bus = bus
        self._session_id = session_id
        self._tools = list(tools or [])

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def model_name(self) -> str:
        return self._provider.model

    def _emit(self, event: AppEvent) -> None:
        self._bus.publish(event)

    def _build_request(self, messages: list[Message], system_message: str | None, *, stream: bool) -> ChatRequest:
        return ChatRequest(
            messages=list(messages),
            tools=list(self._tools),
            system_message=system_message,
            stream=stream,
        )

    async def send_message(self, messages: list[Message], system_message: str | None = None) -> ProviderResponse:
        request = self._build_request(messages, system_message, stream=False)
        try:
            response = await self._provider.complete(request)
        except AgentError as ex:
            logger.error(f"Provider {self.provider_name} failed: {ex}")
            self._emit(ErrorOccurred(str(ex)))
            raise

        self._emit(MessageReceived(self._session_id, str(uuid4())))
        for call in response.tool_calls:
            self._emit(ToolCalled(self._session_id, call.name, call.id))
        return response

    def send_message_stream(
        self,
        messages: list[Message],
        system_message: str | None = None,
        *,
        on_complete: StreamCompleteCallback | None = None,
    ) -> StreamReceiver:
        """Start streaming a reply and return its receiver immediately.

        ``on_complete`` runs with the assembled text after a clean finish and
        before the receiver closes. It is skipped on error or when the receiver
        was dropped.
        """
        request = self._build_request(messages, system_message, stream=True)
        receiver = StreamReceiver(str(uuid4()))
        receiver._task = asyncio.create_task(self._run_stream(request, receiver, on_complete))
        return receiver

    async def _run_stream(
        self,
        request: ChatRequest,
        receiver: StreamReceiver,
        on_complete: StreamCompleteCallback | None,
    ) -> None:
        message_id = receiver.message_id
        parts: list[str] = []
        completed = False

        self._emit(StreamStarted(self._session_id, message_id))
        stream = self._provider.complete_stream(request)
        try:
            async for event in stream:
                if isinstance(event, ContentDelta):
                    if not receiver._send(event.delta):
                        logger.debug(f"Stream receiver dropped for message {message_id}")
                        break
                    parts.append(event.delta)
                    self._emit(StreamChunk(self._session_id, message_id, event.delta))
                elif isinstance(event, ContentStop):
                    completed = True
                    break
                elif isinstance(event, ErrorEvent):
                    raise StreamError(event.message)
            else:
                completed = True

            if completed and not receiver.closed and on_complete is not None:
                await on_complete("".join(parts))
        except Exception as ex:
            # The task has no awaiting caller, so every failure is reported through the receiver.
            error = ex if isinstance(ex, AgentError) else StreamError(str(ex) or type(ex).__name__, cause=ex)
            logger.error(f"Streaming from {self.provider_name} failed: {error}")
            receiver.error = error
            self._emit(ErrorOccurred(str(error)))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            self._emit(StreamEnded(self._session_id, message_id))
            receiver._finish()

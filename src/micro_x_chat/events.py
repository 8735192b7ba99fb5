from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger


class AppEvent:
    """Base of the closed set of application events. Every variant exposes
    ``session_id``; it is None for ErrorOccurred and Shutdown."""

    @property
    def is_streaming_event(self) -> bool:
        return isinstance(self, (StreamStarted, StreamChunk, StreamEnded))

    @property
    def is_error(self) -> bool:
        return isinstance(self, ErrorOccurred)


@dataclass(frozen=True)
class SessionCreated(AppEvent):
    session_id: str


@dataclass(frozen=True)
class SessionUpdated(AppEvent):
    session_id: str


@dataclass(frozen=True)
class SessionDeleted(AppEvent):
    session_id: str


@dataclass(frozen=True)
class MessageSent(AppEvent):
    session_id: str
    message_id: str


@dataclass(frozen=True)
class MessageReceived(AppEvent):
    session_id: str
    message_id: str


@dataclass(frozen=True)
class ConversationStarted(AppEvent):
    session_id: str


@dataclass(frozen=True)
class ConversationEnded(AppEvent):
    session_id: str


@dataclass(frozen=True)
class StreamStarted(AppEvent):
    session_id: str
    message_id: str


@dataclass(frozen=True)
class StreamChunk(AppEvent):
    session_id: str
    message_id: str
    chunk: str


@dataclass(frozen=True)
class StreamEnded(AppEvent):
    session_id: str
    message_id: str


@dataclass(frozen=True)
class ToolCalled(AppEvent):
    session_id: str
    tool_name: str
    tool_id: str


@dataclass(frozen=True)
class ToolCompleted(AppEvent):
    session_id: str
    tool_id: str
    result: str


@dataclass(frozen=True)
class ErrorOccurred(AppEvent):
    error: str

    @property
    def session_id(self) -> str | None:
        return None


@dataclass(frozen=True)
class Shutdown(AppEvent):
    @property
    def session_id(self) -> str | None:
        return None


class Subscription:
    """One consumer's view of the bus: an async iterator that ends after Shutdown."""

    def __init__(self, bus: "EventBus"):
        self._bus = bus
        self._queue: asyncio.Queue[AppEvent] = asyncio.Queue()
        self._closed = False

    def _deliver(self, event: AppEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> AppEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def recv(self) -> AppEvent:
        return await self._queue.get()

    def close(self) -> None:
        self._closed = True
        self._bus.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AppEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if isinstance(event, Shutdown):
            self.close()
        return event


class EventBus:
    """Process-wide broadcast of AppEvent values.

    ``publish`` never blocks and never raises. Every subscriber receives events
    in publication order. Once Shutdown has been published, later events are
    discarded.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        if self._closed:
            sub._closed = True
        else:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: AppEvent) -> bool:
        if self._closed:
            logger.debug(f"Event bus closed; dropping {type(event).__name__}")
            return False
        for sub in list(self._subscribers):
            sub._deliver(event)
        if isinstance(event, Shutdown):
            self._closed = True
        return True

    def shutdown(self) -> None:
        self.publish(Shutdown())

    async def run_dispatcher(self, handler: "EventHandler") -> None:
        """Feed every event to ``handler`` until Shutdown is published."""
        dispatcher = EventDispatcher(self, handler)
        await dispatcher.start()
        await dispatcher.wait_closed()


EventHandler = Callable[[AppEvent], Any]


class EventDispatcher:
    """Runs a handler for every bus event on a background task until Shutdown."""

    def __init__(self, bus: EventBus, handler: EventHandler):
        self._bus = bus
        self._handler = handler
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task is None:
            self._subscription = self._bus.subscribe()
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        assert self._subscription is not None
        async for event in self._subscription:
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as ex:
                logger.error(f"Event handler failed for {type(event).__name__}: {ex}")
            if isinstance(event, Shutdown):
                break

    async def wait_closed(self) -> None:
        if self._task is not None:
            await self._task
            self._task = None

    async def close(self) -> None:
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._subscription is not None:
            self._subscription.close()

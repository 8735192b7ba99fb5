from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger

from micro_x_chat.agent import Agent
from micro_x_chat.bootstrap import AppRuntime
from micro_x_chat.completions import CompletionContext, CompletionItem
from micro_x_chat.conversation import Conversation
from micro_x_chat.events import (
    AppEvent,
    ErrorOccurred,
    EventDispatcher,
    MessageReceived,
    MessageSent,
    Shutdown,
    StreamChunk,
)
from micro_x_chat.memory import Session

NON_INTERACTIVE_TITLE = "Non-interactive session"

ChunkCallback = Callable[[str], None]


def log_event(event: AppEvent) -> None:
    """Default dispatcher handler: mirror every bus event into the log."""
    name = type(event).__name__
    if isinstance(event, ErrorOccurred):
        logger.error(f"Error event: {event.error}")
    elif isinstance(event, StreamChunk):
        logger.trace(f"{name}: session={event.session_id}, message={event.message_id}, {len(event.chunk)} chars")
    elif isinstance(event, (MessageSent, MessageReceived)) or event.is_streaming_event:
        logger.debug(f"{name}: session={event.session_id}")
    elif isinstance(event, Shutdown):
        logger.info("Shutdown requested")
    else:
        logger.info(f"{name}: session={event.session_id}")


class App:
    """Owns the runtime and the background event dispatcher."""

    def __init__(self, runtime: AppRuntime):
        self._runtime = runtime
        self._dispatcher = EventDispatcher(runtime.bus, log_event)
        self._closed = False

    @property
    def runtime(self) -> AppRuntime:
        return self._runtime

    @property
    def streaming(self) -> bool:
        return self._runtime.config.stream

    async def start(self) -> None:
        await self._dispatcher.start()

    async def new_conversation(self, title: str, *, parent_session_id: str | None = None) -> Conversation:
        session = await self._runtime.session_manager.create_session(title, parent_session_id)
        return await self.open_conversation(session.id)

    async def open_conversation(self, session_id: str) -> Conversation:
        agent = Agent(self._runtime.provider, self._runtime.bus, session_id)
        return await self._runtime.conversations.start_conversation(
            session_id,
            agent,
            system_message=self._runtime.config.system_message,
        )

    async def send(self, conversation: Conversation, text: str, on_chunk: ChunkCallback | None = None) -> str:
        """Run one turn and return the assistant's reply.

        Streams when the config says so, passing each chunk to ``on_chunk``.
        Errors propagate to the caller.
        """
        if not self.streaming:
            response = await conversation.send_message(text)
            return response.content

        receiver = await conversation.send_message_stream(text)
        parts: list[str] = []
        async for chunk in receiver:
            parts.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)
        await receiver.wait()
        if receiver.error is not None:
            raise receiver.error
        return "".join(parts)

    async def run_non_interactive(self, prompt: str, *, on_chunk: ChunkCallback | None = None) -> str:
        conversation = await self.new_conversation(NON_INTERACTIVE_TITLE)
        try:
            return await self.send(conversation, prompt, on_chunk)
        finally:
            self._runtime.conversations.end_conversation(conversation.session_id)

    async def list_sessions(self, limit: int | None = 20) -> list[Session]:
        return await self._runtime.session_manager.list_sessions(limit)

    async def complete(self, text: str) -> list[CompletionItem]:
        return await self._runtime.completions.get_completions(CompletionContext(text=text))

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._runtime.conversations.clear_all()
        self._runtime.bus.shutdown()
        try:
            await asyncio.wait_for(self._dispatcher.wait_closed(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("Event dispatcher did not stop in time")
        await self._dispatcher.close()
        await self._runtime.provider.aclose()
        self._runtime.session_manager.close()

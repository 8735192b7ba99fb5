from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from micro_x_chat.agent import Agent, StreamReceiver
from micro_x_chat.errors import SessionNotFoundError
from micro_x_chat.events import ConversationEnded, ConversationStarted, EventBus, MessageSent
from micro_x_chat.memory.session_manager import SessionManager
from micro_x_chat.messages import Message, MessageRole
from micro_x_chat.provider import ProviderResponse


@dataclass(frozen=True)
class ConversationStats:
    session_id: str
    total_messages: int
    user_messages: int
    assistant_messages: int
    last_activity: datetime | None


class Conversation:
    """In-memory turn history bound to one session.

    Every message is persisted before the history lock is released, so the
    stored sequence is always a prefix of the in-memory one.
    """

    def __init__(
        self,
        session_id: str,
        session_manager: SessionManager,
        agent: Agent,
        *,
        system_message: str | None = None,
        bus: EventBus | None = None,
    ):
        self._session_id = session_id
        self._sessions = session_manager
        self._agent = agent
        self._system_message = system_message
        self._bus = bus
        self._messages: list[Message] = []
        self._lock = asyncio.Lock()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def agent(self) -> Agent:
        return self._agent

    def set_system_message(self, system_message: str | None) -> None:
        self._system_message = system_message

    def get_system_message(self) -> str | None:
        return self._system_message

    async def load_messages(self) -> int:
        messages = await self._sessions.get_messages(self._session_id)
        async with self._lock:
            self._messages = list(messages)
        logger.debug(f"Loaded {len(messages)} message(s) for session {self._session_id}")
        return len(messages)

    async def _append(self, message: Message) -> list[Message]:
        """Persist and append ``message``; returns a snapshot of the history."""
        async with self._lock:
            await self._sessions.add_message(self._session_id, message)
            self._messages.append(message)
            snapshot = list(self._messages)
        if message.role == MessageRole.USER and self._bus is not None:
            self._bus.publish(MessageSent(self._session_id, message.id))
        return snapshot

    async def add_message(self, message: Message) -> None:
        await self._append(message)

    async def send_message(self, text: str) -> ProviderResponse:
        snapshot = await self._append(Message.user(text))
        response = await self._agent.send_message(snapshot, self._system_message)

        await self._append(Message.assistant(response.content))
        await self._sessions.update_session_usage(self._session_id, response.usage)
        return response

    async def send_message_stream(self, text: str) -> StreamReceiver:
        """Persist the user turn and start streaming the reply.

        The assembled reply is appended and persisted once the stream ends
        cleanly; a failed or abandoned stream leaves only the user turn.
        """
        snapshot = await self._append(Message.user(text))

        async def _persist_reply(reply: str) -> None:
            if not reply:
                logger.debug(f"Empty streamed reply for session {self._session_id}; nothing persisted")
                return
            await self._append(Message.assistant(reply))

        return self._agent.send_message_stream(snapshot, self._system_message, on_complete=_persist_reply)

    def get_messages(self) -> list[Message]:
        return list(self._messages)

    def get_recent_messages(self, count: int) -> list[Message]:
        if count <= 0:
            return []
        return list(self._messages[-count:])

    def message_count(self) -> int:
        return len(self._messages)

    async def clear(self) -> None:
        """Drop the in-memory history and the session's stored messages."""
        async with self._lock:
            await asyncio.to_thread(self._sessions.store.delete_messages, self._session_id)
            session = await self._sessions.get_session(self._session_id)
            if session is not None:
                session.message_count = 0
                await self._sessions.update_session(session)
            self._messages.clear()

    def get_stats(self) -> ConversationStats:
        messages = list(self._messages)
        return ConversationStats(
            session_id=self._session_id,
            total_messages=len(messages),
            user_messages=sum(1 for m in messages if m.role == MessageRole.USER),
            assistant_messages=sum(1 for m in messages if m.role == MessageRole.ASSISTANT),
            last_activity=messages[-1].timestamp if messages else None,
        )


class ConversationManager:
    """Tracks the conversations currently open in this process."""

    def __init__(self, session_manager: SessionManager, bus: EventBus):
        self._sessions = session_manager
        self._bus = bus
        self._conversations: dict[str, Conversation] = {}

    async def start_conversation(
        self,
        session_id: str,
        agent: Agent,
        *,
        system_message: str | None = None,
    ) -> Conversation:
        existing = self._conversations.get(session_id)
        if existing is not None:
            return existing
        if await self._sessions.get_session(session_id) is None:
            raise SessionNotFoundError(session_id)

        conversation = Conversation(
            session_id,
            self._sessions,
            agent,
            system_message=system_message,
            bus=self._bus,
        )
        await conversation.load_messages()
        self._conversations[session_id] = conversation
        self._bus.publish(ConversationStarted(session_id))
        return conversation

    def get_conversation(self, session_id: str) -> Conversation | None:
        return self._conversations.get(session_id)

    def end_conversation(self, session_id: str) -> bool:
        if self._conversations.pop(session_id, None) is None:
            return False
        self._bus.publish(ConversationEnded(session_id))
        return True

    def list_conversations(self) -> list[str]:
        return list(self._conversations)

    def get_all_stats(self) -> list[ConversationStats]:
        return [c.get_stats() for c in self._conversations.values()]

    def clear_all(self) -> None:
        for session_id in list(self._conversations):
            self.end_conversation(session_id)

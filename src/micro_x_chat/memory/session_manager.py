from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger

from micro_x_chat.errors import SessionNotFoundError
from micro_x_chat.events import EventBus, SessionCreated, SessionDeleted, SessionUpdated
from micro_x_chat.memory.models import Session, SessionStats
from micro_x_chat.memory.store import SessionStore
from micro_x_chat.messages import Message, TokenUsage

DB_FILENAME = "sessions.db"


class SessionManager:
    """Write-through session cache over a SessionStore.

    Store calls run on worker threads so the event loop never blocks on SQLite.
    The cache holds copies; callers always get their own Session value back.
    Read-modify-write operations on one session are serialized by a per-session
    lock, so concurrent ``add_message`` / ``update_session_usage`` calls never
    lose an increment.
    """

    def __init__(self, store: SessionStore, bus: EventBus | None = None):
        self._store = store
        self._bus = bus
        self._cache: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def open(
        cls,
        data_dir: str | Path,
        *,
        foreign_keys: bool = True,
        bus: EventBus | None = None,
    ) -> "SessionManager":
        db_path = Path(data_dir) / DB_FILENAME
        store = SessionStore(str(db_path), foreign_keys=foreign_keys)
        logger.info(f"Session store opened: {db_path}")
        return cls(store, bus)

    @property
    def store(self) -> SessionStore:
        return self._store

    def close(self) -> None:
        self._cache.clear()
        self._store.close()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _publish(self, event) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    def cached_session_count(self) -> int:
        return len(self._cache)

    async def create_session(
        self,
        title: str,
        parent_session_id: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        session = Session(title=title, parent_session_id=parent_session_id, metadata=dict(metadata or {}))
        await asyncio.to_thread(self._store.insert_session, session)
        self._cache[session.id] = session.copy()
        logger.info(f"Session created: id={session.id}, title={title!r}")
        self._publish(SessionCreated(session.id))
        return session

    async def get_session(self, session_id: str) -> Session | None:
        cached = self._cache.get(session_id)
        if cached is not None:
            return cached.copy()
        session = await asyncio.to_thread(self._store.get_session, session_id)
        if session is None:
            return None
        self._cache[session_id] = session.copy()
        return session

    async def update_session(self, session: Session) -> None:
        """Persist every mutable field of ``session`` and refresh the cache."""
        updated_at = await asyncio.to_thread(
            self._store.update_session,
            session.id,
            title=session.title,
            parent_session_id=session.parent_session_id,
            message_count=session.message_count,
            total_input_tokens=session.token_usage.input_tokens,
            total_output_tokens=session.token_usage.output_tokens,
            total_cost=session.total_cost,
            metadata=session.metadata,
        )
        if updated_at is None:
            raise SessionNotFoundError(session.id)
        session.updated_at = max(session.updated_at, updated_at)
        self._cache[session.id] = session.copy()
        self._publish(SessionUpdated(session.id))

    async def list_sessions(self, limit: int | None = None) -> list[Session]:
        sessions = await asyncio.to_thread(self._store.list_sessions, limit)
        for session in sessions:
            self._cache[session.id] = session.copy()
        return sessions

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            deleted = await asyncio.to_thread(self._store.delete_session, session_id)
            self._cache.pop(session_id, None)
        self._locks.pop(session_id, None)
        if deleted:
            logger.info(f"Session deleted: id={session_id}")
            self._publish(SessionDeleted(session_id))
        return deleted

    async def add_message(self, session_id: str, message: Message) -> None:
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            try:
                updated_at = await asyncio.to_thread(self._store.append_message, message, session_id)
            except SessionNotFoundError:
                self._cache.pop(session_id, None)
                raise
            session.increment_message_count()
            session.updated_at = max(session.updated_at, updated_at)
            self._cache[session_id] = session.copy()
        self._publish(SessionUpdated(session_id))

    async def get_messages(self, session_id: str, limit: int | None = None) -> list[Message]:
        return await asyncio.to_thread(self._store.get_messages, session_id, limit)

    async def update_session_usage(self, session_id: str, usage: TokenUsage, cost: float = 0.0) -> Session:
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            session.update_usage(usage, cost)
            await self.update_session(session)
            return session

    async def set_session_metadata(self, session_id: str, key: str, value: Any) -> None:
        async with self._lock_for(session_id):
            session = await self.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            session.set_metadata(key, value)
            await self.update_session(session)

    async def get_session_stats(self, session_id: str) -> SessionStats | None:
        session = await self.get_session(session_id)
        if session is None:
            return None
        return SessionStats(
            session_id=session.id,
            message_count=session.message_count,
            token_usage=session.token_usage,
            total_cost=session.total_cost,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

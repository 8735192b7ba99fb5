from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from micro_x_chat.messages import Message, MessageRole, TokenUsage, block_from_dict, utc_now


@dataclass
class Session:
    title: str
    id: str = field(default_factory=lambda: str(uuid4()))
    parent_session_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    message_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    total_cost: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def update_usage(self, usage: TokenUsage, cost: float) -> None:
        self.token_usage = self.token_usage + usage
        self.total_cost += cost
        self.touch()

    def increment_message_count(self) -> None:
        self.message_count += 1
        self.touch()

    def set_metadata(self, key: str, value: Any) -> None:
        self.metadata[key] = value
        self.touch()

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def touch(self) -> None:
        self.updated_at = max(self.updated_at, utc_now())

    def copy(self) -> "Session":
        return replace(self, metadata=dict(self.metadata))


@dataclass(frozen=True)
class SessionStats:
    session_id: str
    message_count: int
    token_usage: TokenUsage
    total_cost: float
    created_at: datetime
    updated_at: datetime


def to_timestamp(value: datetime) -> str:
    return value.isoformat()


def from_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def dump_metadata(metadata: dict) -> str | None:
    if not metadata:
        return None
    return json.dumps(metadata, ensure_ascii=True)


def _load_metadata(raw: str | None) -> dict:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def session_to_row(session: Session) -> tuple:
    return (
        session.id,
        session.title,
        session.parent_session_id,
        to_timestamp(session.created_at),
        to_timestamp(session.updated_at),
        session.message_count,
        session.token_usage.input_tokens,
        session.token_usage.output_tokens,
        session.total_cost,
        dump_metadata(session.metadata),
    )


def session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        parent_session_id=row["parent_session_id"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
        message_count=int(row["message_count"] or 0),
        token_usage=TokenUsage.of(int(row["total_input_tokens"] or 0), int(row["total_output_tokens"] or 0)),
        total_cost=float(row["total_cost"] or 0.0),
        metadata=_load_metadata(row["metadata"]),
    )


def message_to_row(message: Message, session_id: str) -> tuple:
    return (
        message.id,
        session_id,
        json.dumps(message.role.value),
        json.dumps([block.to_dict() for block in message.content], ensure_ascii=True),
        to_timestamp(message.timestamp),
        dump_metadata(message.metadata),
    )


def message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        role=MessageRole(json.loads(row["role"])),
        content=[block_from_dict(b) for b in json.loads(row["content"])],
        timestamp=from_timestamp(row["timestamp"]),
        metadata=_load_metadata(row["metadata"]),
    )

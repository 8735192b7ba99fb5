from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImageBlock:
    media_type: str
    data: str  # base64

    def to_dict(self) -> dict:
        return {"type": "image", "image": {"data": self.data, "media_type": self.media_type}}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    arguments: str = ""  # raw JSON text, possibly partial while streaming

    def to_dict(self) -> dict:
        return {"type": "tool_use", "id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    content: str

    def to_dict(self) -> dict:
        return {"type": "tool_result", "tool_call_id": self.tool_call_id, "content": self.content}


ContentBlock = Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: dict) -> ContentBlock:
    block_type = data.get("type")
    if block_type == "text":
        return TextBlock(text=data["text"])
    if block_type == "image":
        image = data["image"]
        return ImageBlock(media_type=image["media_type"], data=image["data"])
    if block_type == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], arguments=data.get("arguments", ""))
    if block_type == "tool_result":
        return ToolResultBlock(tool_call_id=data["tool_call_id"], content=data.get("content", ""))
    raise ValueError(f"Unknown content block type: {block_type!r}")


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: list[ContentBlock]
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.content:
            raise ValueError("Message content must contain at least one block")

    @classmethod
    def text(cls, role: MessageRole, text: str) -> "Message":
        return cls(role=role, content=[TextBlock(text)])

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls.text(MessageRole.USER, text)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        return cls.text(MessageRole.ASSISTANT, text)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls.text(MessageRole.SYSTEM, text)

    def text_content(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextBlock))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": [block.to_dict() for block in self.content],
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            id=data["id"],
            role=MessageRole(data["role"]),
            content=[block_from_dict(b) for b in data["content"]],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.total_tokens != self.input_tokens + self.output_tokens:
            raise ValueError(
                f"total_tokens ({self.total_tokens}) must equal input_tokens + output_tokens "
                f"({self.input_tokens} + {self.output_tokens})"
            )

    @classmethod
    def of(cls, input_tokens: int, output_tokens: int) -> "TokenUsage":
        return cls(input_tokens, output_tokens, input_tokens + output_tokens)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            self.total_tokens + other.total_tokens,
        )


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any

MAX_COMPLETIONS = 10

_WORD_BREAK = re.compile(r"[\s/\\]")


class ProviderPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True)
class CompletionItem:
    title: str
    value: str
    provider: str
    description: str | None = None
    score: float = 1.0
    metadata: dict[str, Any] | None = None

    def with_description(self, description: str) -> "CompletionItem":
        return replace(self, description=description)

    def with_score(self, score: float) -> "CompletionItem":
        return replace(self, score=score)

    def with_metadata(self, metadata: dict[str, Any]) -> "CompletionItem":
        return replace(self, metadata=dict(metadata))

    @property
    def dedup_key(self) -> str:
        return f"{self.title}:{self.value}"

    def __str__(self) -> str:
        return self.title


@dataclass
class CompletionContext:
    """Input line being completed plus the hints providers need."""

    text: str = ""
    cursor_pos: int | None = None
    working_dir: str | None = None
    command_context: str | None = None
    language: str | None = None
    max_results: int = MAX_COMPLETIONS
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.cursor_pos is None:
            self.cursor_pos = len(self.text)
        self.cursor_pos = max(0, min(self.cursor_pos, len(self.text)))

    @property
    def before_cursor(self) -> str:
        return self.text[: self.cursor_pos]

    def _word_start(self) -> int:
        start = 0
        for match in _WORD_BREAK.finditer(self.before_cursor):
            start = match.end()
        return start

    def current_word(self) -> str:
        """Text between the last whitespace or path separator and the cursor."""
        return self.text[self._word_start() : self.cursor_pos]

    def prefix(self) -> str:
        return self.text[: self._word_start()]

    def suffix(self) -> str:
        return self.text[self.cursor_pos :]

    def current_token(self) -> str:
        """Whitespace-delimited token ending at the cursor, separators included."""
        before = self.before_cursor
        parts = re.split(r"\s", before)
        return parts[-1] if parts else ""

    def words(self) -> list[str]:
        return self.before_cursor.split()

    def is_file_path(self) -> bool:
        token = self.current_token()
        return "/" in token or "\\" in token or token.startswith(".")

    def is_command(self) -> bool:
        return not self.prefix().strip() or self.command_context is not None

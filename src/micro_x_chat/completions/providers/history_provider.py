from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from micro_x_chat.completions.providers.base import CompletionProvider
from micro_x_chat.completions.types import CompletionContext, CompletionItem
from micro_x_chat.errors import AgentError
from micro_x_chat.memory.session_manager import SessionManager
from micro_x_chat.messages import Message, MessageRole, utc_now

RECENT_SESSIONS = 5
MESSAGES_PER_SESSION = 20

COMMON_WORDS = frozenset(
    {
        "the", "and", "or", "but", "for", "with", "this", "that", "these", "those",
        "can", "will", "would", "should", "could", "may", "might", "must",
        "have", "has", "had", "are", "was", "were", "been", "being",
        "do", "does", "did", "get", "got", "give", "take", "make", "use",
        "see", "know", "think", "say", "tell", "ask", "try", "come", "go",
        "want", "need", "like", "help", "show", "find", "look", "work",
        "file", "files", "directory", "folder", "path", "name", "type",
        "how", "what", "when", "where", "why", "who", "which",
    }
)


@dataclass
class PatternInfo:
    text: str
    frequency: int = 0
    last_used: datetime | None = None
    first_used: datetime | None = None
    is_command: bool = False
    is_path: bool = False

    def increment(self, timestamp: datetime) -> None:
        self.frequency += 1
        if self.last_used is None or timestamp > self.last_used:
            self.last_used = timestamp
        if self.first_used is None or timestamp < self.first_used:
            self.first_used = timestamp


def is_common_word(word: str) -> bool:
    return word.lower() in COMMON_WORDS


def looks_like_path(text: str) -> bool:
    return (
        "/" in text
        or "\\" in text
        or text.startswith((".", "~"))
        or ("." in text and " " not in text)
    )


def looks_like_command(text: str) -> bool:
    if not 2 <= len(text) <= 20:
        return False
    if not all(ch.isascii() and (ch.isalnum() or ch in "_-") for ch in text):
        return False
    # All-caps names are constants, not commands.
    return any(ch.islower() for ch in text)


def extract_patterns(text: str, timestamp: datetime, patterns: dict[str, PatternInfo]) -> None:
    """Fold the words, two-word phrases, paths and leading command of ``text`` into ``patterns``."""
    words = text.split()

    def _bump(key: str, display: str) -> PatternInfo:
        info = patterns.get(key)
        if info is None:
            info = patterns[key] = PatternInfo(display)
        info.increment(timestamp)
        return info

    for word in words:
        if len(word) >= 3 and not is_common_word(word):
            _bump(word.lower(), word)

    for first, second in zip(words, words[1:]):
        phrase = f"{first} {second}"
        if 6 <= len(phrase) <= 50:
            _bump(phrase.lower(), phrase)

    for word in words:
        if len(word) >= 3 and looks_like_path(word):
            _bump(word.lower(), word).is_path = True

    if words and looks_like_command(words[0]):
        _bump(f"cmd:{words[0].lower()}", words[0]).is_command = True


class HistoryProvider(CompletionProvider):
    """Suggests tokens the user has typed repeatedly in recent sessions."""

    name = "history"

    def __init__(
        self,
        session_manager: SessionManager | None = None,
        *,
        max_history: int = 100,
        min_frequency: int = 2,
        boost_recent: bool = True,
    ):
        self._sessions = session_manager
        self._max_history = max_history
        self._min_frequency = min_frequency
        self._boost_recent = boost_recent

    async def recent_history(self) -> list[Message]:
        if self._sessions is None:
            return []
        messages: list[Message] = []
        for session in await self._sessions.list_sessions(RECENT_SESSIONS):
            messages.extend(await self._sessions.get_messages(session.id, MESSAGES_PER_SESSION))
        messages.sort(key=lambda m: m.timestamp, reverse=True)
        return messages[: self._max_history]

    def collect_patterns(self, messages: list[Message]) -> dict[str, PatternInfo]:
        patterns: dict[str, PatternInfo] = {}
        for message in messages:
            if message.role != MessageRole.USER:
                continue
            extract_patterns(message.text_content(), message.timestamp, patterns)
        return patterns

    def score_pattern(self, pattern: PatternInfo, query: str, now: datetime | None = None) -> float:
        if pattern.frequency < self._min_frequency:
            return 0.0

        score = math.log(pattern.frequency) * 0.3

        if self._boost_recent and pattern.last_used is not None:
            hours_ago = ((now or utc_now()) - pattern.last_used).total_seconds() / 3600.0
            if hours_ago < 1:
                score += 0.5
            elif hours_ago < 24:
                score += 0.3
            elif hours_ago < 168:
                score += 0.1

        text = pattern.text.lower()
        query = query.lower()
        if text.startswith(query):
            score += 0.4
        if f" {query}" in text:
            score += 0.2
        if pattern.is_command:
            score += 0.2
        if pattern.is_path:
            score += 0.1
        if len(pattern.text) > 50:
            score -= 0.1
        return max(score, 0.0)

    def _matches_context(self, pattern: PatternInfo, context: CompletionContext) -> bool:
        if context.is_command():
            return pattern.is_command or len(pattern.text.split()) <= 2
        if context.is_file_path():
            return pattern.is_path or looks_like_path(pattern.text)
        return True

    async def get_completions(self, context: CompletionContext) -> list[CompletionItem]:
        query = context.current_word()
        if len(query) < 2:
            return []

        try:
            messages = await self.recent_history()
        except (AgentError, ValueError) as ex:
            logger.warning(f"Failed to load completion history: {ex}")
            return []

        now = utc_now()
        scored = []
        for pattern in self.collect_patterns(messages).values():
            if not self._matches_context(pattern, context):
                continue
            score = self.score_pattern(pattern, query, now)
            if score > 0.0:
                scored.append((pattern, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)

        items = []
        for pattern, score in scored[: context.max_results]:
            if pattern.is_command:
                description = f"Command (used {pattern.frequency} times)"
            elif pattern.is_path:
                description = f"Path (used {pattern.frequency} times)"
            else:
                description = f"From history (used {pattern.frequency} times)"
            items.append(CompletionItem(pattern.text, pattern.text, "history", description=description, score=score))
        logger.debug(f"Found {len(items)} history completions")
        return items

    def get_priority(self, context: CompletionContext) -> int:
        return 3

    def cache_ttl(self) -> float | None:
        return 300.0

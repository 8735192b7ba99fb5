import asyncio
import math
import unittest
from datetime import UTC, datetime, timedelta

from micro_x_chat.completions.providers.history_provider import (
    HistoryProvider,
    PatternInfo,
    extract_patterns,
    looks_like_command,
    looks_like_path,
)
from micro_x_chat.completions.types import CompletionContext
from micro_x_chat.errors import IoError
from micro_x_chat.messages import Message
from tests.memory.base import SessionStoreTestCase


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class PatternHelperTests(unittest.TestCase):
    def test_looks_like_command(self) -> None:
        self.assertTrue(looks_like_command("ls"))
        self.assertTrue(looks_like_command("git-lfs"))
        self.assertTrue(looks_like_command("pip3"))
        self.assertFalse(looks_like_command("README"))
        self.assertFalse(looks_like_command("a"))
        self.assertFalse(looks_like_command("src/main"))
        self.assertFalse(looks_like_command("x" * 21))

    def test_looks_like_path(self) -> None:
        self.assertTrue(looks_like_path("~/notes"))
        self.assertTrue(looks_like_path("C:\\temp"))
        self.assertTrue(looks_like_path("main.py"))
        self.assertFalse(looks_like_path("plain"))
        self.assertFalse(looks_like_path("two words.txt"))

    def test_extract_patterns(self) -> None:
        patterns: dict[str, PatternInfo] = {}
        extract_patterns("cargo build the project", NOW, patterns)
        extract_patterns("cargo test", NOW + timedelta(minutes=5), patterns)

        self.assertEqual(2, patterns["cargo"].frequency)
        self.assertNotIn("the", patterns)
        self.assertEqual(1, patterns["cargo build"].frequency)
        self.assertTrue(patterns["cmd:cargo"].is_command)
        self.assertEqual(2, patterns["cmd:cargo"].frequency)
        self.assertEqual(NOW, patterns["cargo"].first_used)
        self.assertEqual(NOW + timedelta(minutes=5), patterns["cargo"].last_used)

    def test_paths_are_flagged(self) -> None:
        patterns: dict[str, PatternInfo] = {}
        extract_patterns("open ./src/main.py now", NOW, patterns)
        self.assertTrue(patterns["./src/main.py"].is_path)
        self.assertFalse(patterns["open"].is_path)

    def test_phrases_are_length_limited(self) -> None:
        patterns: dict[str, PatternInfo] = {}
        extract_patterns("go to", NOW, patterns)
        self.assertNotIn("go to", patterns)


class ScorePatternTests(unittest.TestCase):
    def test_frequency_below_minimum_scores_zero(self) -> None:
        provider = HistoryProvider()
        pattern = PatternInfo("status", frequency=1, last_used=NOW)
        self.assertEqual(0.0, provider.score_pattern(pattern, "st", NOW))

    def test_recency_prefix_and_word_match_bonuses(self) -> None:
        provider = HistoryProvider()
        pattern = PatternInfo("git status", frequency=3, last_used=NOW - timedelta(hours=2))

        self.assertAlmostEqual(math.log(3) * 0.3 + 0.3 + 0.4, provider.score_pattern(pattern, "git", NOW))
        self.assertAlmostEqual(math.log(3) * 0.3 + 0.3 + 0.2, provider.score_pattern(pattern, "st", NOW))

    def test_command_and_path_bonuses(self) -> None:
        provider = HistoryProvider(boost_recent=False)
        command = PatternInfo("make", frequency=2, is_command=True)
        path = PatternInfo("./build", frequency=2, is_path=True)
        self.assertAlmostEqual(math.log(2) * 0.3 + 0.4 + 0.2, provider.score_pattern(command, "ma", NOW))
        self.assertAlmostEqual(math.log(2) * 0.3 + 0.1, provider.score_pattern(path, "zz", NOW))

    def test_min_frequency_is_configurable(self) -> None:
        provider = HistoryProvider(min_frequency=1, boost_recent=False)
        self.assertAlmostEqual(0.4, provider.score_pattern(PatternInfo("deploy", frequency=1), "de", NOW))


class FailingSessions:
    async def list_sessions(self, limit=None):
        raise IoError("database is locked")


class HistoryProviderTests(SessionStoreTestCase):
    def _seed(self, *texts: str) -> None:
        async def scenario():
            session = await self._sessions.create_session("History")
            for text in texts:
                await self._sessions.add_message(session.id, Message.user(text))
            await self._sessions.add_message(session.id, Message.assistant("cargo cargo cargo"))

        asyncio.run(scenario())

    def test_frequent_commands_are_suggested(self) -> None:
        self._seed("cargo build --release", "cargo build --release", "git status")
        provider = HistoryProvider(self._sessions)

        items = asyncio.run(provider.get_completions(CompletionContext(text="car")))

        self.assertEqual("cargo", items[0].title)
        self.assertEqual("Command (used 2 times)", items[0].description)
        self.assertEqual("history", items[0].provider)
        self.assertNotIn("git", [item.title for item in items])
        self.assertNotIn("git status", [item.title for item in items])

    def test_assistant_messages_are_ignored(self) -> None:
        self._seed("cargo run")
        provider = HistoryProvider(self._sessions)
        self.assertEqual([], asyncio.run(provider.get_completions(CompletionContext(text="car"))))

    def test_short_query_returns_nothing(self) -> None:
        self._seed("cargo build", "cargo build")
        provider = HistoryProvider(self._sessions)
        self.assertEqual([], asyncio.run(provider.get_completions(CompletionContext(text="c"))))

    def test_results_respect_context_limit(self) -> None:
        self._seed("cargo build --release", "cargo build --release")
        provider = HistoryProvider(self._sessions)
        items = asyncio.run(provider.get_completions(CompletionContext(text="car", max_results=1)))
        self.assertEqual(1, len(items))

    def test_history_failure_yields_no_completions(self) -> None:
        provider = HistoryProvider(FailingSessions())
        self.assertEqual([], asyncio.run(provider.get_completions(CompletionContext(text="cargo"))))

    def test_without_session_manager(self) -> None:
        provider = HistoryProvider()
        self.assertEqual([], asyncio.run(provider.get_completions(CompletionContext(text="cargo"))))
        self.assertEqual(3, provider.get_priority(CompletionContext()))
        self.assertEqual(300.0, provider.cache_ttl())

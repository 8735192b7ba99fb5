import unittest

from micro_x_chat.completions.types import CompletionContext, CompletionItem, ProviderPriority


class CompletionContextTests(unittest.TestCase):
    def test_cursor_defaults_to_end_and_is_clamped(self) -> None:
        self.assertEqual(6, CompletionContext(text="git st").cursor_pos)
        self.assertEqual(6, CompletionContext(text="git st", cursor_pos=99).cursor_pos)
        self.assertEqual(0, CompletionContext(text="git st", cursor_pos=-3).cursor_pos)

    def test_word_prefix_and_suffix_around_cursor(self) -> None:
        context = CompletionContext(text="git checkout mai --force", cursor_pos=16)
        self.assertEqual("mai", context.current_word())
        self.assertEqual("git checkout ", context.prefix())
        self.assertEqual(" --force", context.suffix())

    def test_current_word_stops_at_path_separators(self) -> None:
        context = CompletionContext(text="cat src/comp")
        self.assertEqual("comp", context.current_word())
        self.assertEqual("src/comp", context.current_token())
        self.assertEqual("cat src/", context.prefix())

    def test_trailing_space_starts_an_empty_word(self) -> None:
        context = CompletionContext(text="git ")
        self.assertEqual("", context.current_word())
        self.assertEqual("", context.current_token())
        self.assertEqual(["git"], context.words())

    def test_file_path_detection(self) -> None:
        self.assertTrue(CompletionContext(text="ls ./sr").is_file_path())
        self.assertTrue(CompletionContext(text="type C:\\Users").is_file_path())
        self.assertTrue(CompletionContext(text="open docs/").is_file_path())
        self.assertFalse(CompletionContext(text="git status").is_file_path())

    def test_command_position(self) -> None:
        self.assertTrue(CompletionContext(text="gi").is_command())
        self.assertTrue(CompletionContext(text="  ca").is_command())
        self.assertFalse(CompletionContext(text="git sta").is_command())
        self.assertTrue(CompletionContext(text="git sta", command_context="git").is_command())


class CompletionItemTests(unittest.TestCase):
    def test_builders_return_modified_copies(self) -> None:
        item = CompletionItem("status", "status", "command")
        described = item.with_description("Show status").with_score(0.5)

        self.assertIsNone(item.description)
        self.assertEqual(1.0, item.score)
        self.assertEqual("Show status", described.description)
        self.assertEqual(0.5, described.score)

    def test_metadata_is_copied(self) -> None:
        metadata = {"language": "python"}
        item = CompletionItem("def", "def", "code").with_metadata(metadata)
        metadata["language"] = "rust"
        self.assertEqual({"language": "python"}, item.metadata)

    def test_dedup_key_ignores_provider_and_score(self) -> None:
        a = CompletionItem("main", "src/main", "file", score=0.2)
        b = CompletionItem("main", "src/main", "history", score=0.9)
        c = CompletionItem("main", "main", "file")
        self.assertEqual(a.dedup_key, b.dedup_key)
        self.assertNotEqual(a.dedup_key, c.dedup_key)
        self.assertEqual("main", str(a))

    def test_priority_ordering(self) -> None:
        self.assertLess(ProviderPriority.LOW, ProviderPriority.MEDIUM)
        self.assertLess(ProviderPriority.HIGH, ProviderPriority.CRITICAL)

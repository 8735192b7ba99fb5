import unittest

from micro_x_chat.completions.fuzzy import (
    acronym_score,
    advanced_fuzzy_score,
    camel_case_score,
    fuzzy_match,
    fuzzy_score,
    rank_completions,
    word_boundary_score,
)


class FuzzyScoreTests(unittest.TestCase):
    def test_exact_and_empty(self) -> None:
        self.assertEqual(1.0, fuzzy_score("hello", "hello"))
        self.assertEqual(1.0, fuzzy_score("HeLLo", "hello"))
        self.assertEqual(1.0, fuzzy_score("anything", ""))
        self.assertEqual(0.0, fuzzy_score("", "x"))

    def test_prefix_scores_above_substring(self) -> None:
        self.assertAlmostEqual(0.96, fuzzy_score("hello", "hel"))
        prefix = fuzzy_score("hello_world", "hello")
        substring = fuzzy_score("say_hello", "hello")
        self.assertGreater(prefix, substring)
        self.assertGreaterEqual(prefix, 0.9)

    def test_substring_prefers_early_position(self) -> None:
        self.assertGreater(fuzzy_score("xhello", "hello"), fuzzy_score("xxxxxhello", "hello"))
        self.assertAlmostEqual(0.7 * (1 - 1 / 6 * 0.3) + 0.3 * 5 / 6, fuzzy_score("xhello", "hello"))

    def test_character_match_is_capped(self) -> None:
        score = fuzzy_score("hxexlxlxo", "hello")
        self.assertGreater(score, 0.0)
        self.assertLessEqual(score, 0.6)

    def test_no_common_characters_scores_zero(self) -> None:
        self.assertEqual(0.0, fuzzy_score("abc", "xyz"))
        self.assertFalse(fuzzy_match("abc", "xyz"))
        self.assertTrue(fuzzy_match("abc", "ab"))

    def test_scores_stay_in_unit_interval(self) -> None:
        samples = ["", "a", "ab", "abc", "git status", "getUserName", "src/main.rs", "zzzz"]
        for haystack in samples:
            for needle in samples:
                for scorer in (fuzzy_score, advanced_fuzzy_score, camel_case_score, acronym_score, word_boundary_score):
                    score = scorer(haystack, needle)
                    self.assertGreaterEqual(score, 0.0, (scorer.__name__, haystack, needle))
                    self.assertLessEqual(score, 1.0, (scorer.__name__, haystack, needle))


class AdvancedScorerTests(unittest.TestCase):
    def test_camel_case_initials(self) -> None:
        self.assertAlmostEqual(1.0, camel_case_score("getUserName", "gun"))
        self.assertGreater(camel_case_score("get_user_name", "gun"), 0.8)
        self.assertEqual(1.0, camel_case_score("x", ""))

    def test_acronym(self) -> None:
        self.assertAlmostEqual(1.0, acronym_score("git status short", "gss"))
        self.assertEqual(0.0, acronym_score("git status", "x"))

    def test_word_boundary(self) -> None:
        self.assertAlmostEqual(0.6 + 3 / 6 * 0.4, word_boundary_score("list-remote", "rem"))
        self.assertEqual(0.4, word_boundary_score("preload.cache", "loa"))
        self.assertEqual(0.0, word_boundary_score("abc", "z"))

    def test_advanced_takes_best_strategy(self) -> None:
        self.assertGreater(advanced_fuzzy_score("getUserName", "gun"), fuzzy_score("getUserName", "gun"))

    def test_rank_orders_by_score_and_drops_misses(self) -> None:
        ranked = rank_completions(["status", "stash", "commit"], "sta", lambda s: s)
        self.assertEqual({"status", "stash"}, {item for item, _ in ranked})
        self.assertEqual("stash", ranked[0][0])
        self.assertTrue(all(score > 0 for _, score in ranked))

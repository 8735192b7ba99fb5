"""Fuzzy matching used to filter and rank completion candidates.

Every scorer returns a value in [0, 1]; 1.0 is an exact match.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, TypeVar

T = TypeVar("T")

_CHAR_MATCH_CAP = 0.6
_SEQUENTIAL_BONUS = 0.1
_LENGTH_PENALTY_RATE = 0.05
_LENGTH_PENALTY_CAP = 0.3

_WORD_SPLIT = re.compile(r"[\s_\-.]+")


def fuzzy_score(haystack: str, needle: str) -> float:
    if not needle:
        return 1.0
    if not haystack:
        return 0.0

    haystack = haystack.lower()
    needle = needle.lower()

    if haystack == needle:
        return 1.0

    if haystack.startswith(needle):
        return 0.9 + len(needle) / len(haystack) * 0.1

    start = haystack.find(needle)
    if start >= 0:
        position_score = 1.0 - start / len(haystack) * 0.3
        length_score = len(needle) / len(haystack)
        return 0.7 * position_score + 0.3 * length_score

    score = _character_match_score(haystack, needle)
    if score > 0.0:
        return min(score, _CHAR_MATCH_CAP)
    return 0.0


def fuzzy_match(haystack: str, needle: str) -> bool:
    return fuzzy_score(haystack, needle) > 0.0


def _character_match_score(haystack: str, needle: str) -> float:
    # Greedy left-to-right subsequence walk.
    matches = 0
    sequential = 0
    last_index = -2
    index = 0
    for ch in needle:
        while index < len(haystack):
            if haystack[index] == ch:
                matches += 1
                if index == last_index + 1:
                    sequential += 1
                last_index = index
                index += 1
                break
            index += 1

    if matches == 0:
        return 0.0

    base = matches / len(needle)
    bonus = sequential * _SEQUENTIAL_BONUS
    penalty = 0.0
    if len(haystack) > len(needle):
        penalty = min((len(haystack) - len(needle)) * _LENGTH_PENALTY_RATE, _LENGTH_PENALTY_CAP)
    return max(base + bonus - penalty, 0.0)


def _camel_case_initials(text: str) -> str:
    initials = []
    previous_was_lower = False
    for ch in text:
        if ch.isupper() or (not previous_was_lower and ch.isalpha()):
            initials.append(ch)
        previous_was_lower = ch.islower()
    return "".join(initials).lower()


def camel_case_score(haystack: str, needle: str) -> float:
    """Match against identifier initials: ``getUserName`` -> ``gun``."""
    if not needle:
        return 1.0
    initials = _camel_case_initials(haystack)
    if not initials:
        return 0.0
    needle = needle.lower()
    if initials.startswith(needle):
        return 0.8 + len(needle) / len(initials) * 0.2
    return fuzzy_score(initials, needle) * 0.6


def acronym_score(haystack: str, needle: str) -> float:
    """Match against the first letter of each whitespace-separated word."""
    words = haystack.split()
    if not words or not needle:
        return 0.0
    acronym = "".join(word[0] for word in words).lower()
    if acronym.startswith(needle.lower()):
        return 0.7 + len(needle) / len(acronym) * 0.3
    return 0.0


def word_boundary_score(haystack: str, needle: str) -> float:
    if not needle:
        return 0.0
    needle = needle.lower()
    words = [w for w in _WORD_SPLIT.split(haystack.lower()) if w]
    for word in words:
        if word.startswith(needle):
            return 0.6 + len(needle) / len(word) * 0.4
    if any(needle in word for word in words):
        return 0.4
    return 0.0


def advanced_fuzzy_score(haystack: str, needle: str) -> float:
    if not needle:
        return 1.0
    return max(
        fuzzy_score(haystack, needle),
        camel_case_score(haystack, needle),
        acronym_score(haystack, needle),
        word_boundary_score(haystack, needle),
    )


def rank_completions(items: Iterable[T], needle: str, text_of: Callable[[T], str]) -> list[tuple[T, float]]:
    scored = [(item, advanced_fuzzy_score(text_of(item), needle)) for item in items]
    scored = [pair for pair in scored if pair[1] > 0.0]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored

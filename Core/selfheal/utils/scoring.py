from __future__ import annotations

import re
from typing import Iterable

from rapidfuzz.distance import Levenshtein

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_text(value: str | None) -> str:
    """Lowercases, strips punctuation and collapses whitespace."""

    if not value:
        return ""
    collapsed = _WHITESPACE.sub(" ", value.lower())
    return _PUNCTUATION.sub("", collapsed).strip()


def levenshtein_similarity(left: str, right: str) -> float:
    if not left and not right:
        return 1.0
    return Levenshtein.normalized_similarity(left, right)


def text_similarity(left: str | None, right: str | None) -> float:
    """Edit-distance similarity over normalized text."""

    return levenshtein_similarity(normalize_text(left), normalize_text(right))


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    left_set = {item for item in left if item}
    right_set = {item for item in right if item}
    if not left_set and not right_set:
        return 1.0
    if not left_set or not right_set:
        return 0.0
    return len(left_set & right_set) / len(left_set | right_set)


def string_similarity(left: str | None, right: str | None) -> float:
    """Hybrid of containment ratio, word Jaccard and edit distance."""

    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    first = left.lower().strip()
    second = right.lower().strip()
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    if first in second or second in first:
        shorter, longer = sorted((first, second), key=len)
        return len(shorter) / len(longer)
    word_score = jaccard(first.split(), second.split())
    if len(first) < 20 and len(second) < 20:
        return (word_score + levenshtein_similarity(first, second)) / 2
    return word_score


def optional_similarity(left: str | None, right: str | None) -> float:
    """Both absent counts as a match, one absent as a miss."""

    if left and right:
        return string_similarity(left, right)
    if not left and not right:
        return 1.0
    return 0.0


def string_list_similarity(left: list[str], right: list[str]) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    total = 0.0
    for item in left:
        total += max(string_similarity(item, other) for other in right)
    for item in right:
        total += max(string_similarity(item, other) for other in left)
    return total / (max(len(left), len(right)) * 2)


def containment_similarity(left: str | None, right: str | None) -> float:
    first = (left or "").lower().strip()
    second = (right or "").lower().strip()
    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    if first in second or second in first:
        return min(len(first), len(second)) / max(len(first), len(second))
    return 0.0


def significant_words(value: str | None, min_length: int = 3) -> list[str]:
    return [word for word in normalize_text(value).split() if len(word) >= min_length]

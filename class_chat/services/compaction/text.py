# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Deterministic text transforms used by scoring and merging.

``compact_line`` collapses whitespace and clamps to 160 characters: longer
text keeps its first 157 characters (trailing whitespace stripped) followed
by ``"..."``. ``first_sentence`` applies the same clamp to the first
sentence.
"""

from __future__ import annotations

import re
from typing import Iterable, List

from class_chat.services.compaction.settings import COMPACT_LINE_MAX_CHARS

ELLIPSIS = "..."
MIN_TERM_LENGTH = 3

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "has", "have", "how", "i", "in", "is", "it", "of", "on", "or",
    "that", "the", "their", "this", "to", "was", "we", "what", "when",
    "where", "which", "who", "why", "with", "you", "your",
})

QUESTION_RE = re.compile(r"\?")
CONFUSION_RE = re.compile(r"(stuck|confused|not sure|don['’]t understand|help)", re.IGNORECASE)
RESOLUTION_RE = re.compile(r"(therefore|so the answer|this means|remember)", re.IGNORECASE)

_TERM_SPLIT_RE = re.compile(r"[^a-z0-9_]+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WHITESPACE_RE = re.compile(r"\s+")


def extract_terms(text: str) -> List[str]:
    """Lower-case content terms of a text, in order, duplicates kept.

    Args:
        text (str): Source text.

    Returns:
        List[str]: Alphanumeric tokens of at least 3 characters that are
            not stop words.
    """
    return [
        token
        for token in _TERM_SPLIT_RE.split((text or "").lower())
        if len(token) >= MIN_TERM_LENGTH and token not in STOP_WORDS
    ]


def compact_line(text: str, max_chars: int = COMPACT_LINE_MAX_CHARS) -> str:
    """Collapse whitespace and clamp to ``max_chars`` with an ellipsis.

    Args:
        text (str): Source text.
        max_chars (int): Maximum length of the result. Defaults to 160.

    Returns:
        str: Single-line text no longer than ``max_chars``.
    """
    clean = _WHITESPACE_RE.sub(" ", text or "").strip()
    if len(clean) <= max_chars:
        return clean
    return clean[: max_chars - len(ELLIPSIS)].strip() + ELLIPSIS


def first_sentence(text: str) -> str:
    """First sentence of a text, compacted.

    Sentences end at ``.``, ``!`` or ``?`` followed by whitespace.

    Args:
        text (str): Source text.

    Returns:
        str: The compacted first sentence, possibly empty.
    """
    parts = _SENTENCE_SPLIT_RE.split((text or "").strip(), maxsplit=1)
    return compact_line(parts[0] if parts else "")


def asks_question(text: str) -> bool:
    """Whether a text contains a question mark."""
    return bool(QUESTION_RE.search(text or ""))


def has_confusion_signal(text: str) -> bool:
    """Whether a text signals the student is stuck or confused."""
    return bool(CONFUSION_RE.search(text or ""))


def has_resolution_signal(text: str) -> bool:
    """Whether a text reads like a concluding explanation."""
    return bool(RESOLUTION_RE.search(text or ""))


def unique_tail(values: Iterable[str], limit: int) -> List[str]:
    """Drop blanks and exact duplicates, then keep the last ``limit`` items.

    The first occurrence of a duplicate keeps its position.

    Args:
        values (Iterable[str]): Candidate items, oldest first.
        limit (int): Maximum items to keep.

    Returns:
        List[str]: At most ``limit`` distinct, non-blank items.
    """
    seen = set()
    unique: List[str] = []
    for value in values:
        if not value.strip() or value in seen:
            continue
        seen.add(value)
        unique.append(value)
    if limit <= 0:
        return []
    return unique[-limit:]

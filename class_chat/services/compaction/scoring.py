# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Turn salience scoring and highlight selection.

Every candidate gets a recency base plus additive signal bonuses. The top
turns by score are kept and handed back in chronological order so the
merger reads them as a timeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, List, Optional

from class_chat.models import ChatMessage
from class_chat.services.compaction.chronology import chronology_key
from class_chat.services.compaction.settings import MAX_SELECTED_TURNS, SalienceWeights
from class_chat.services.compaction.text import (
    asks_question,
    extract_terms,
    has_confusion_signal,
    has_resolution_signal,
)

DEFAULT_WEIGHTS = SalienceWeights()


@dataclass(frozen=True)
class ScoredTurn:
    """A candidate turn with its salience score.

    Attributes:
        message (ChatMessage): The candidate turn.
        index (int): Position within the candidate window.
        score (float): Relative salience.
    """

    message: ChatMessage
    index: int
    score: float


def score_turn(
    turn: ChatMessage,
    index: int,
    total: int,
    query_terms: Collection[str],
    weights: SalienceWeights = DEFAULT_WEIGHTS,
) -> float:
    """Score one candidate turn.

    Args:
        turn (ChatMessage): Candidate turn.
        index (int): Zero-based position in the chronological window.
        total (int): Window size.
        query_terms (Collection[str]): Terms of the pending user message.
        weights (SalienceWeights): Signal weights.

    Returns:
        float: ``base + (index + 1) / total`` plus signal bonuses.
    """
    score = weights.base + (index + 1) / max(1, total)

    if query_terms:
        overlap = sum(1 for term in extract_terms(turn.content) if term in query_terms)
        score += overlap * weights.query_overlap

    if turn.is_assistant:
        if turn.citations:
            score += weights.citation
        if has_resolution_signal(turn.content):
            score += weights.resolution
    else:
        if asks_question(turn.content):
            score += weights.question
        if has_confusion_signal(turn.content):
            score += weights.confusion

    return score


def score_turns(
    candidates: List[ChatMessage],
    query_terms: Collection[str],
    weights: SalienceWeights = DEFAULT_WEIGHTS,
) -> List[ScoredTurn]:
    """Score every turn of a chronological candidate window."""
    total = len(candidates)
    return [
        ScoredTurn(message=turn, index=index, score=score_turn(turn, index, total, query_terms, weights))
        for index, turn in enumerate(candidates)
    ]


def select_chronological_highlights(
    candidates: List[ChatMessage],
    query_terms: Collection[str],
    limit: int = MAX_SELECTED_TURNS,
    weights: Optional[SalienceWeights] = None,
) -> List[ChatMessage]:
    """Keep the most salient turns, returned in chronological order.

    Ties keep their chronological order because the sort is stable.

    Args:
        candidates (List[ChatMessage]): Chronological candidate window.
        query_terms (Collection[str]): Terms of the pending user message.
        limit (int): Maximum turns to keep.
        weights (Optional[SalienceWeights]): Signal weights.

    Returns:
        List[ChatMessage]: ``min(limit, len(candidates))`` turns.
    """
    if not candidates or limit <= 0:
        return []

    scored = score_turns(candidates, query_terms, weights or DEFAULT_WEIGHTS)
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    selected = [item.message for item in ranked[:limit]]
    return sorted(selected, key=chronology_key)

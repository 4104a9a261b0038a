# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Summary merger.

Folds the selected turns of a compaction pass into the previous summary and
produces its replacement. The previous summary is never mutated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Collection, Dict, List, Optional

from class_chat.models import ChatMessage
from class_chat.schemas.compaction import (
    MAX_HIGHLIGHTS,
    MAX_KEY_TERMS,
    MAX_LIST_ITEMS,
    SUMMARY_VERSION,
    ChatCompactionSummary,
    CompactionAnchor,
    CompactionTimeline,
    KeyTerm,
)
from class_chat.services.compaction.chronology import (
    collect_compaction_candidates,
    sort_messages_chronologically,
)
from class_chat.services.compaction.renderer import render_memory_text
from class_chat.services.compaction.scoring import select_chronological_highlights
from class_chat.services.compaction.settings import CompactionSettings
from class_chat.services.compaction.text import (
    asks_question,
    compact_line,
    extract_terms,
    first_sentence,
    has_confusion_signal,
    unique_tail,
)

logger = logging.getLogger(__name__)

# Short terms are noise unless the student is asking about them right now.
MIN_TRACKED_TERM_LENGTH = 4


@dataclass(frozen=True)
class CompactionResult:
    """Outcome of a compaction pass.

    Attributes:
        summary (ChatCompactionSummary): The merged summary to persist.
        summary_text (str): Its rendered memory text.
    """

    summary: ChatCompactionSummary
    summary_text: str


def _merge_key_terms(
    previous: Optional[ChatCompactionSummary],
    selected: List[ChatMessage],
    query_terms: Collection[str],
) -> List[KeyTerm]:
    merged: Dict[str, dict] = {}
    if previous is not None:
        for key_term in previous.key_terms:
            merged[key_term.term] = {
                "weight": key_term.weight,
                "occurrences": key_term.occurrences,
                "last_seen": key_term.last_seen,
            }

    for message in selected:
        for term in extract_terms(message.content):
            if term not in query_terms and len(term) < MIN_TRACKED_TERM_LENGTH:
                continue
            entry = merged.setdefault(term, {"weight": 0.0, "occurrences": 0})
            entry["weight"] += 1
            entry["occurrences"] += 1
            entry["last_seen"] = message.created_at

    key_terms = [
        KeyTerm(
            term=term,
            weight=round(entry["weight"], 2),
            occurrences=entry["occurrences"],
            last_seen=entry["last_seen"],
        )
        for term, entry in merged.items()
    ]
    key_terms.sort(key=lambda item: (-item.weight, -item.occurrences))
    return key_terms[:MAX_KEY_TERMS]


def merge_summary(
    existing: Optional[ChatCompactionSummary],
    selected: List[ChatMessage],
    candidates: List[ChatMessage],
    query_terms: Collection[str],
    now: Optional[datetime] = None,
) -> ChatCompactionSummary:
    """Fold selected turns into the previous summary.

    Args:
        existing (Optional[ChatCompactionSummary]): Previous summary.
        selected (List[ChatMessage]): Salient turns, chronological, non-empty.
        candidates (List[ChatMessage]): Full candidate window the selection
            was drawn from. Its size advances the coverage count.
        query_terms (Collection[str]): Terms of the pending user message.
        now (Optional[datetime]): Generation time. Defaults to current UTC.

    Returns:
        ChatCompactionSummary: The replacement summary.

    Raises:
        ValueError: If ``selected`` is empty.
    """
    if not selected:
        raise ValueError("Cannot merge a compaction pass with no selected turns")

    query_terms = set(query_terms)
    generated_at = now or datetime.now(timezone.utc)
    anchor_turn = selected[-1]

    user_turns = [message for message in selected if not message.is_assistant]
    assistant_turns = [message for message in selected if message.is_assistant]

    resolved_facts = unique_tail(
        [*(existing.resolved_facts if existing else [])]
        + [first_sentence(message.content) for message in assistant_turns],
        MAX_LIST_ITEMS,
    )
    open_questions = unique_tail(
        [*(existing.open_questions if existing else [])]
        + [first_sentence(message.content) for message in user_turns if asks_question(message.content)],
        MAX_LIST_ITEMS,
    )
    student_needs = unique_tail(
        [*(existing.student_needs if existing else [])]
        + [
            first_sentence(message.content)
            for message in user_turns
            if has_confusion_signal(message.content)
        ],
        MAX_LIST_ITEMS,
    )
    highlights = unique_tail(
        [*(existing.timeline.highlights if existing else [])]
        + [compact_line(message.content) for message in selected],
        MAX_HIGHLIGHTS,
    )

    prior_turn_count = existing.compacted_through.turn_count if existing else 0
    prior_retained = existing.compacted_through.retained_turn_count if existing else 0

    return ChatCompactionSummary(
        version=SUMMARY_VERSION,
        generated_at=generated_at,
        compacted_through=CompactionAnchor(
            created_at=anchor_turn.created_at,
            message_id=anchor_turn.id,
            turn_count=prior_turn_count + len(candidates),
            retained_turn_count=prior_retained + len(selected),
        ),
        key_terms=_merge_key_terms(existing, selected, query_terms),
        resolved_facts=resolved_facts,
        open_questions=open_questions,
        student_needs=student_needs,
        timeline=CompactionTimeline(
            from_=existing.timeline.from_ if existing else selected[0].created_at,
            to=anchor_turn.created_at,
            highlights=highlights,
        ),
    )


def build_compaction_result(
    messages: List[ChatMessage],
    existing: Optional[ChatCompactionSummary],
    latest_user_message: str,
    settings: Optional[CompactionSettings] = None,
    now: Optional[datetime] = None,
) -> Optional[CompactionResult]:
    """Run one full compaction pass over a message window.

    Normalizes the window, collects candidates, scores and selects the
    salient turns, merges them into the summary and renders it.

    Args:
        messages (List[ChatMessage]): Fetched message window, any order.
        existing (Optional[ChatCompactionSummary]): Current summary.
        latest_user_message (str): Pending message used as the query.
        settings (Optional[CompactionSettings]): Tunables.
        now (Optional[datetime]): Generation time override.

    Returns:
        Optional[CompactionResult]: The new summary and its text, or
            ``None`` when there is nothing to compact.
    """
    settings = settings or CompactionSettings()
    chronological = sort_messages_chronologically(messages)
    candidates = collect_compaction_candidates(chronological, settings.recent_turns, existing)
    if not candidates:
        return None

    query_terms = extract_terms(latest_user_message)
    selected = select_chronological_highlights(
        candidates, set(query_terms), limit=settings.max_selected_turns
    )
    if not selected:
        return None

    summary = merge_summary(existing, selected, candidates, query_terms, now=now)
    logger.info(
        "Compacted %d candidate turns (%d retained) through message %s",
        len(candidates),
        len(selected),
        summary.compacted_through.message_id,
    )
    return CompactionResult(summary=summary, summary_text=render_memory_text(summary))

# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Chronological normalization.

Every downstream step works on messages ordered by ``(created_at, id)`` so
results never depend on the order the store returned them in.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from class_chat.models import ChatMessage
from class_chat.schemas.compaction import ChatCompactionSummary, CompactionAnchor


def chronology_key(message: ChatMessage) -> Tuple[datetime, str]:
    """Ordering key of a message.

    Args:
        message (ChatMessage): Message to key.

    Returns:
        Tuple[datetime, str]: ``(created_at, id)``.
    """
    return message.created_at, message.id


def sort_messages_chronologically(messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """Return a new list sorted ascending by ``(created_at, id)``.

    Args:
        messages (Iterable[ChatMessage]): Messages in any order.

    Returns:
        List[ChatMessage]: Sorted copy; the input is left untouched.
    """
    return sorted(messages, key=chronology_key)


def is_after_anchor(message: ChatMessage, anchor: CompactionAnchor) -> bool:
    """Whether a message is strictly later than the compaction anchor.

    Args:
        message (ChatMessage): Message to test.
        anchor (CompactionAnchor): Last compacted turn.

    Returns:
        bool: ``True`` if the message has not been compacted yet.
    """
    return chronology_key(message) > (anchor.created_at, anchor.message_id)


def collect_compaction_candidates(
    chronological_messages: List[ChatMessage],
    recent_turns: int,
    existing_summary: Optional[ChatCompactionSummary],
) -> List[ChatMessage]:
    """Turns eligible for compaction.

    The newest ``recent_turns`` messages are always excluded, as is anything
    at or before the existing summary's anchor.

    Args:
        chronological_messages (List[ChatMessage]): Sorted message window.
        recent_turns (int): Size of the verbatim recency window.
        existing_summary (Optional[ChatCompactionSummary]): Last summary.

    Returns:
        List[ChatMessage]: Candidate window in chronological order.
    """
    if len(chronological_messages) <= recent_turns:
        return []

    compactable = chronological_messages[: len(chronological_messages) - recent_turns]
    if existing_summary is None:
        return compactable

    anchor = existing_summary.compacted_through
    return [message for message in compactable if is_after_anchor(message, anchor)]

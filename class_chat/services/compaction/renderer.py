# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Render a compaction summary as plain text for the tutor prompt."""

from __future__ import annotations

from typing import List, Optional

from class_chat.schemas.compaction import ChatCompactionSummary

MEMORY_HEADER = "Compacted conversation memory (older turns):"
MEMORY_FOOTER = "If this memory conflicts with recent transcript turns, prefer the recent transcript."
ITEM_SEPARATOR = " | "


def render_memory_text(summary: Optional[ChatCompactionSummary]) -> str:
    """Render the summary in a fixed section order.

    Sections with no entries are omitted. The closing line tells the model
    to trust the recent transcript over this memory.

    Args:
        summary (Optional[ChatCompactionSummary]): Summary to render.

    Returns:
        str: Newline-joined memory text, or ``""`` when there is no summary.
    """
    if summary is None:
        return ""

    lines: List[str] = [MEMORY_HEADER]
    if summary.timeline.highlights:
        lines.append(f"Timeline highlights: {ITEM_SEPARATOR.join(summary.timeline.highlights)}")
    if summary.key_terms:
        lines.append(f"Key terms: {', '.join(term.term for term in summary.key_terms)}")
    if summary.resolved_facts:
        lines.append(f"Resolved points: {ITEM_SEPARATOR.join(summary.resolved_facts)}")
    if summary.open_questions:
        lines.append(f"Open questions: {ITEM_SEPARATOR.join(summary.open_questions)}")
    if summary.student_needs:
        lines.append(f"Student needs: {ITEM_SEPARATOR.join(summary.student_needs)}")
    lines.append(MEMORY_FOOTER)
    return "\n".join(lines)

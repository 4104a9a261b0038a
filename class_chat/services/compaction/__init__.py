# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Conversation memory compaction.

Keeps long class-chat sessions inside the tutor model's context budget by
folding older turns into a bounded, structured summary while the newest
turns stay verbatim:

  Step 1: Chronological normalization  (chronology.py)
      Order every window by (created_at, id).

  Step 2: Decision  (decision.py)
      Decide per inbound message whether to compact, from turn counts and
      estimated token pressure (tokens.py).

  Step 3: Salience scoring  (scoring.py)
      Rank unsummarized candidate turns and keep the most informative.

  Step 4: Merge  (merger.py)
      Fold the selected turns into the previous summary and advance the
      anchor so no turn is summarized twice.

  Step 5: Render  (renderer.py)
      Produce the memory text injected into the tutor prompt.

Usage:

    settings = CompactionSettings(recent_turns=12)

    decision = decide_compaction(messages, summary, pending, settings)
    if decision.should_compact:
        result = build_compaction_result(messages, summary, pending, settings)

    memory_text = render_memory_text(result.summary if result else summary)

The engine is pure and synchronous. Persisting the summary is the caller's
job, and the caller must read the message window and the summary
consistently.
"""

from class_chat.services.compaction.chronology import (
    collect_compaction_candidates,
    is_after_anchor,
    sort_messages_chronologically,
)
from class_chat.services.compaction.decision import decide_compaction
from class_chat.services.compaction.merger import (
    CompactionResult,
    build_compaction_result,
    merge_summary,
)
from class_chat.services.compaction.renderer import render_memory_text
from class_chat.services.compaction.scoring import (
    ScoredTurn,
    score_turn,
    select_chronological_highlights,
)
from class_chat.services.compaction.settings import CompactionSettings, SalienceWeights
from class_chat.services.compaction.text import extract_terms
from class_chat.services.compaction.tokens import estimate_prompt_tokens, estimate_tokens

__all__ = [
    "CompactionSettings",
    "SalienceWeights",
    "estimate_tokens",
    "estimate_prompt_tokens",
    "sort_messages_chronologically",
    "is_after_anchor",
    "collect_compaction_candidates",
    "decide_compaction",
    "extract_terms",
    "ScoredTurn",
    "score_turn",
    "select_chronological_highlights",
    "CompactionResult",
    "merge_summary",
    "build_compaction_result",
    "render_memory_text",
]

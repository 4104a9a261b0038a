# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Compaction decision engine.

Rules are evaluated in a fixed order and the first match wins:

1. ``below_trigger``: fewer messages than ``trigger_turns``.
2. ``no_new_turns``: fewer unsummarized candidates than ``min_new_turns``.
3. ``token_pressure``: estimated prompt at or over the pressure threshold.
4. ``message_count_trigger``: at least ``2 * trigger_turns`` messages.
5. ``low_context_pressure``: otherwise.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from class_chat.models import ChatMessage
from class_chat.schemas.compaction import (
    ChatCompactionSummary,
    CompactionDecision,
    CompactionReason,
)
from class_chat.services.compaction.chronology import (
    collect_compaction_candidates,
    sort_messages_chronologically,
)
from class_chat.services.compaction.settings import CompactionSettings
from class_chat.services.compaction.tokens import estimate_prompt_tokens

logger = logging.getLogger(__name__)


def decide_compaction(
    messages: List[ChatMessage],
    existing_summary: Optional[ChatCompactionSummary],
    pending_user_message: str,
    settings: Optional[CompactionSettings] = None,
) -> CompactionDecision:
    """Decide whether to compact before answering the pending message.

    Args:
        messages (List[ChatMessage]): Fetched message window, any order.
        existing_summary (Optional[ChatCompactionSummary]): Current summary.
        pending_user_message (str): Inbound message, not yet stored.
        settings (Optional[CompactionSettings]): Tunables; defaults apply
            when omitted.

    Returns:
        CompactionDecision: Verdict with its estimate and pressure ratio.
    """
    settings = settings or CompactionSettings()
    chronological = sort_messages_chronologically(messages)
    candidates = collect_compaction_candidates(
        chronological, settings.recent_turns, existing_summary
    )

    estimated = estimate_prompt_tokens(
        pending_user_message, chronological, settings.chars_per_token
    )
    pressure_ratio = estimated / settings.usable_budget_tokens

    def verdict(should_compact: bool, reason: CompactionReason) -> CompactionDecision:
        return CompactionDecision(
            should_compact=should_compact,
            reason=reason,
            estimated_prompt_tokens=estimated,
            pressure_ratio=pressure_ratio,
            unsummarized_turn_count=len(candidates),
        )

    if len(chronological) < settings.trigger_turns:
        decision = verdict(False, CompactionReason.BELOW_TRIGGER)
    elif len(candidates) < settings.min_new_turns:
        decision = verdict(False, CompactionReason.NO_NEW_TURNS)
    elif pressure_ratio >= settings.pressure_threshold:
        decision = verdict(True, CompactionReason.TOKEN_PRESSURE)
    elif len(chronological) >= settings.trigger_turns * 2:
        decision = verdict(True, CompactionReason.MESSAGE_COUNT_TRIGGER)
    else:
        decision = verdict(False, CompactionReason.LOW_CONTEXT_PRESSURE)

    logger.debug(
        "Compaction decision: %s (messages=%d, candidates=%d, tokens=%d, pressure=%.3f)",
        decision.reason.value,
        len(chronological),
        len(candidates),
        estimated,
        pressure_ratio,
    )
    return decision

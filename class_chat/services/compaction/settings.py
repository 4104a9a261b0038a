# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Compaction settings.

Tunables are passed explicitly into every engine entry point so the engine
can be exercised with arbitrary combinations; ``class_chat.config`` only
builds one from the environment.
"""

from __future__ import annotations

from dataclasses import dataclass

MAX_SELECTED_TURNS = 18
COMPACT_LINE_MAX_CHARS = 160


@dataclass(frozen=True)
class SalienceWeights:
    """Additive signal weights used to rank candidate turns.

    Scores are relative only; the absolute value carries no meaning.

    Attributes:
        base (float): Score every turn starts from.
        query_overlap (float): Added per turn term that also appears in the
            pending user message.
        question (float): Added when a non-assistant turn asks a question.
        confusion (float): Added when a non-assistant turn signals
            confusion ("stuck", "not sure", ...).
        citation (float): Added when an assistant turn carries citations.
        resolution (float): Added when an assistant turn signals a
            resolution ("therefore", "this means", ...).
    """

    base: float = 1.0
    query_overlap: float = 0.8
    question: float = 1.5
    confusion: float = 1.3
    citation: float = 1.1
    resolution: float = 0.7


@dataclass
class CompactionSettings:
    """All compaction-related tunables in one place.

    Values are clamped on construction: ``recent_turns`` to at least 2,
    ``trigger_turns`` to at least ``recent_turns + 2`` and
    ``min_new_turns`` to at least 1.

    Attributes:
        recent_turns (int): Newest turns always passed through verbatim and
            never compacted.
        trigger_turns (int): History length below which compaction is never
            considered. Twice this value is the message-count safety net.
        min_new_turns (int): Minimum unsummarized candidates needed before a
            compaction pass is worth running.
        pressure_threshold (float): Pressure ratio at or above which the
            engine compacts.
        context_window_tokens (int): Model context window in tokens.
        output_token_reserve (int): Tokens reserved for the model's answer.
        chars_per_token (int): Characters per token for estimation.
        max_selected_turns (int): Upper bound of turns retained per merge.
    """

    recent_turns: int = 12
    trigger_turns: int = 30
    min_new_turns: int = 6
    pressure_threshold: float = 0.8
    context_window_tokens: int = 12_000
    output_token_reserve: int = 1_400
    chars_per_token: int = 4
    max_selected_turns: int = MAX_SELECTED_TURNS

    def __post_init__(self) -> None:
        self.recent_turns = max(2, self.recent_turns)
        self.trigger_turns = max(self.recent_turns + 2, self.trigger_turns)
        self.min_new_turns = max(1, self.min_new_turns)
        self.chars_per_token = max(1, self.chars_per_token)
        self.max_selected_turns = max(1, self.max_selected_turns)

    @property
    def usable_budget_tokens(self) -> int:
        """Tokens available for the prompt.

        Returns:
            int: Context window minus the output reserve, at least 1.
        """
        return max(1, self.context_window_tokens - self.output_token_reserve)

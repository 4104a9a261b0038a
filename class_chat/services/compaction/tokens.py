# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Token estimation utilities.

Estimates feed budget math only, never correctness, so they use a plain
characters-per-token heuristic and never raise.

The ceil(chars / 4) rule is the estimator itself, not a fallback for a
missing tokenizer: the trigger and pressure thresholds are tuned against
it, so swapping in a model tokenizer would shift every compaction decision.
"""

from __future__ import annotations

from typing import Iterable, Optional

from class_chat.models import ChatMessage

CHARS_PER_TOKEN_FALLBACK = 4


def estimate_tokens(text: Optional[str], chars_per_token: int = CHARS_PER_TOKEN_FALLBACK) -> int:
    """Estimate token count using a character heuristic.

    Args:
        text (Optional[str]): Text to estimate tokens for. ``None`` and
            non-string values are tolerated.
        chars_per_token (int): Characters per token. Defaults to 4.

    Returns:
        int: Estimated token count (at least 1), computed as
            ``ceil(len(text) / chars_per_token)``.
    """
    if not isinstance(text, str):
        text = "" if text is None else str(text)
    divisor = max(1, chars_per_token)
    return max(1, -(-len(text) // divisor))


def estimate_prompt_tokens(
    pending_user_message: str,
    messages: Iterable[ChatMessage],
    chars_per_token: int = CHARS_PER_TOKEN_FALLBACK,
) -> int:
    """Estimate the prompt cost of the pending message plus the window.

    Args:
        pending_user_message (str): The inbound message not yet stored.
        messages (Iterable[ChatMessage]): The fetched message window.
        chars_per_token (int): Characters per token.

    Returns:
        int: Estimated token count of all texts joined by newlines.
    """
    parts = [pending_user_message or ""]
    parts.extend(message.content for message in messages)
    return estimate_tokens("\n".join(parts), chars_per_token)

# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Conversation memory compaction schemas.

The summary body is stored as camelCase JSON (``summary_json``) and must
round-trip through :func:`parse_compaction_summary`. Anything that fails
validation is rejected whole so callers fall back to a first compaction
instead of trusting a partial record.
"""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from class_chat.models import ensure_utc

logger = logging.getLogger(__name__)

SUMMARY_VERSION = "v1"
MAX_KEY_TERMS = 12
MAX_LIST_ITEMS = 8
MAX_HIGHLIGHTS = 8

_SUMMARY_CONFIG = ConfigDict(frozen=True, populate_by_name=True)


def _wire_datetime(value: Any) -> datetime:
    """Accept ISO 8601 text or a datetime; naive values are read as UTC.

    Numbers are rejected rather than read as Unix timestamps.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError("timestamp must be an ISO 8601 string")
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as e:
        raise ValueError(f"invalid ISO 8601 timestamp: {value!r}") from e


class CompactionAnchor(BaseModel):
    """Last turn folded into the summary plus running turn totals.

    Attributes:
        created_at (datetime): Timestamp of the last folded turn.
        message_id (str): Identifier of the last folded turn.
        turn_count (int): Turns ever considered for compaction (coverage).
        retained_turn_count (int): Turns ever selected into the summary.
    """

    model_config = _SUMMARY_CONFIG

    created_at: datetime = Field(alias="createdAt")
    message_id: StrictStr = Field(alias="messageId", min_length=1)
    turn_count: StrictInt = Field(alias="turnCount", ge=0)
    retained_turn_count: StrictInt = Field(default=0, alias="retainedTurnCount", ge=0)

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at_iso(cls, value: Any) -> datetime:
        return _wire_datetime(value)


class KeyTerm(BaseModel):
    """Tracked vocabulary term.

    Attributes:
        term (str): Lower-case term.
        weight (float): Accumulated weight.
        occurrences (int): Times the term was seen in selected turns.
        last_seen (datetime): Timestamp of the latest turn containing it.
    """

    model_config = _SUMMARY_CONFIG

    term: StrictStr = Field(min_length=1)
    weight: float
    occurrences: StrictInt = Field(ge=0)
    last_seen: datetime = Field(alias="lastSeen")

    @field_validator("weight", mode="before")
    @classmethod
    def _numeric_weight(cls, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("weight must be a number")
        return float(value)

    @field_validator("last_seen", mode="before")
    @classmethod
    def _last_seen_iso(cls, value: Any) -> datetime:
        return _wire_datetime(value)


class CompactionTimeline(BaseModel):
    """Span covered by the summary and its rolling highlights.

    Attributes:
        from_ (datetime): First compacted turn; fixed at first compaction.
        to (datetime): Anchor timestamp of the latest compaction.
        highlights (List[str]): Compact renderings of selected turns.
    """

    model_config = _SUMMARY_CONFIG

    from_: datetime = Field(alias="from")
    to: datetime
    highlights: List[StrictStr] = Field(default_factory=list, max_length=MAX_HIGHLIGHTS)

    @field_validator("from_", "to", mode="before")
    @classmethod
    def _span_iso(cls, value: Any) -> datetime:
        return _wire_datetime(value)


class ChatCompactionSummary(BaseModel):
    """Rolling summary of a chat session, one per (session, owner).

    Attributes:
        version (str): Schema version tag, always ``"v1"``.
        generated_at (datetime): When this summary was computed.
        compacted_through (CompactionAnchor): Re-summarization guard.
        key_terms (List[KeyTerm]): Top terms by weight.
        resolved_facts (List[str]): First sentences of assistant turns.
        open_questions (List[str]): First sentences of user questions.
        student_needs (List[str]): First sentences of confusion signals.
        timeline (CompactionTimeline): Span and highlights.
    """

    model_config = _SUMMARY_CONFIG

    version: Literal["v1"]
    generated_at: datetime = Field(alias="generatedAt")
    compacted_through: CompactionAnchor = Field(alias="compactedThrough")
    key_terms: List[KeyTerm] = Field(alias="keyTerms", max_length=MAX_KEY_TERMS)
    resolved_facts: List[StrictStr] = Field(alias="resolvedFacts", max_length=MAX_LIST_ITEMS)
    open_questions: List[StrictStr] = Field(alias="openQuestions", max_length=MAX_LIST_ITEMS)
    student_needs: List[StrictStr] = Field(alias="studentNeeds", max_length=MAX_LIST_ITEMS)
    timeline: CompactionTimeline

    @field_validator("generated_at", mode="before")
    @classmethod
    def _generated_at_iso(cls, value: Any) -> datetime:
        return _wire_datetime(value)


class CompactionReason(str, Enum):
    """Why the decision engine did or did not compact.

    Attributes:
        BELOW_TRIGGER (str): History shorter than the trigger floor.
        NO_NEW_TURNS (str): Too few unsummarized candidates.
        TOKEN_PRESSURE (str): Estimated prompt exceeds the pressure threshold.
        MESSAGE_COUNT_TRIGGER (str): History at least twice the trigger floor.
        LOW_CONTEXT_PRESSURE (str): Nothing warrants compaction yet.
    """

    BELOW_TRIGGER = "below_trigger"
    NO_NEW_TURNS = "no_new_turns"
    TOKEN_PRESSURE = "token_pressure"
    MESSAGE_COUNT_TRIGGER = "message_count_trigger"
    LOW_CONTEXT_PRESSURE = "low_context_pressure"


class CompactionDecision(BaseModel):
    """Per-message compaction verdict. Computed fresh, never persisted.

    Attributes:
        should_compact (bool): Whether to run a compaction pass now.
        reason (CompactionReason): First matching rule.
        estimated_prompt_tokens (int): Estimated prompt size.
        pressure_ratio (float): Estimated tokens over the usable budget.
        unsummarized_turn_count (int): Size of the candidate window.
    """

    model_config = ConfigDict(frozen=True)

    should_compact: bool
    reason: CompactionReason
    estimated_prompt_tokens: int
    pressure_ratio: float
    unsummarized_turn_count: int


class SessionCompactionRecord(BaseModel):
    """Persisted compaction row keyed by (session, owner) for upsert.

    The ``compacted_through_*`` columns are authoritative and override the
    anchor embedded in ``summary_json`` when read back.
    """

    session_id: str
    class_id: str
    owner_user_id: str
    summary_text: str = ""
    summary_json: Any = Field(default_factory=dict)
    compacted_through_created_at: Optional[datetime] = None
    compacted_through_message_id: Optional[str] = None
    compacted_turn_count: Optional[int] = None
    last_compacted_at: Optional[datetime] = None


def serialize_compaction_summary(summary: ChatCompactionSummary) -> dict:
    """Dump a summary to its JSON-shaped persisted body.

    Args:
        summary (ChatCompactionSummary): Summary to serialize.

    Returns:
        dict: camelCase JSON-compatible mapping.
    """
    return summary.model_dump(mode="json", by_alias=True)


def parse_compaction_summary(raw: Any) -> Optional[ChatCompactionSummary]:
    """Parse a persisted summary body.

    Args:
        raw (Any): A mapping, JSON text, or an already-parsed summary.

    Returns:
        Optional[ChatCompactionSummary]: The summary, or ``None`` when the
            input is missing, malformed, or not a ``v1`` summary.
    """
    if raw is None:
        return None
    if isinstance(raw, ChatCompactionSummary):
        return raw
    # Persisted bodies are camelCase only; snake_case keys are foreign.
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return ChatCompactionSummary.model_validate_json(raw, by_alias=True, by_name=False)
        if isinstance(raw, dict):
            return ChatCompactionSummary.model_validate(raw, by_alias=True, by_name=False)
    except (ValidationError, ValueError, json.JSONDecodeError) as e:
        logger.debug("Rejected compaction summary payload: %s", e)
        return None
    return None


def summary_from_record(
    record: Optional[SessionCompactionRecord],
) -> Optional[ChatCompactionSummary]:
    """Read the effective summary out of a persisted row.

    Args:
        record (Optional[SessionCompactionRecord]): Stored row, if any.

    Returns:
        Optional[ChatCompactionSummary]: Parsed summary with the row's anchor
            columns applied, or ``None`` when absent or invalid.
    """
    if record is None:
        return None
    parsed = parse_compaction_summary(record.summary_json)
    if parsed is None:
        return None

    anchor = parsed.compacted_through
    updates = {}
    if record.compacted_through_created_at is not None:
        updates["created_at"] = ensure_utc(record.compacted_through_created_at)
    if record.compacted_through_message_id:
        updates["message_id"] = record.compacted_through_message_id
    if record.compacted_turn_count is not None:
        updates["turn_count"] = record.compacted_turn_count
    if not updates:
        return parsed
    return parsed.model_copy(
        update={"compacted_through": anchor.model_copy(update=updates)}
    )


def record_from_summary(
    summary: ChatCompactionSummary,
    *,
    session_id: str,
    class_id: str,
    owner_user_id: str,
    summary_text: str,
) -> SessionCompactionRecord:
    """Build the upsert payload for a freshly merged summary.

    Args:
        summary (ChatCompactionSummary): The new summary.
        session_id (str): Chat session.
        class_id (str): Owning class.
        owner_user_id (str): Session owner.
        summary_text (str): Rendered memory text stored alongside.

    Returns:
        SessionCompactionRecord: Row to upsert.
    """
    anchor = summary.compacted_through
    return SessionCompactionRecord(
        session_id=session_id,
        class_id=class_id,
        owner_user_id=owner_user_id,
        summary_text=summary_text,
        summary_json=serialize_compaction_summary(summary),
        compacted_through_created_at=anchor.created_at,
        compacted_through_message_id=anchor.message_id,
        compacted_turn_count=anchor.turn_count,
        last_compacted_at=summary.generated_at,
    )

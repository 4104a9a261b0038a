# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Shared models for the application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so all ordering keys are comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthorKind(str, Enum):
    """Who wrote a chat turn.

    Attributes:
        STUDENT (str): An enrolled student.
        TEACHER (str): A teacher or TA.
        ASSISTANT (str): The AI tutor.
    """

    STUDENT = "student"
    TEACHER = "teacher"
    ASSISTANT = "assistant"


class SafetyFlag(str, Enum):
    """Safety outcome reported by the model for assistant turns."""

    OK = "ok"
    REFUSAL = "refusal"


class Citation(BaseModel):
    """Source reference attached to an assistant turn.

    Attributes:
        source_label (str): Label of the cited context block.
        snippet (Optional[str]): Supporting excerpt or rationale.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_label: str = Field(alias="sourceLabel", min_length=1)
    snippet: Optional[str] = None


class ChatMessage(BaseModel):
    """One persisted turn of a class chat session.

    Immutable once stored. Chronology is ``(created_at, id)`` so equal
    timestamps still order deterministically.

    Attributes:
        id (str): Message identifier.
        session_id (str): Owning chat session.
        class_id (str): Owning class.
        author_user_id (Optional[str]): Author, ``None`` for the assistant.
        author_kind (AuthorKind): Student, teacher or assistant.
        content (str): Text content.
        citations (List[Citation]): Sources cited by assistant turns.
        safety (Optional[SafetyFlag]): Safety flag, assistant turns only.
        created_at (datetime): Creation time (UTC).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    session_id: str
    class_id: str
    author_user_id: Optional[str] = None
    author_kind: AuthorKind
    content: str
    citations: List[Citation] = Field(default_factory=list)
    safety: Optional[SafetyFlag] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    latency_ms: Optional[int] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("citations", mode="before")
    @classmethod
    def _drop_invalid_citations(cls, value: Any) -> Any:
        # Stored citation payloads are loosely typed; keep only usable entries.
        if not isinstance(value, list):
            return []
        cleaned: List[Dict[str, Any]] = []
        for item in value:
            if isinstance(item, Citation):
                cleaned.append(item.model_dump())
                continue
            if not isinstance(item, dict):
                continue
            label = item.get("sourceLabel", item.get("source_label"))
            snippet = item.get("snippet")
            if not isinstance(label, str) or not label.strip():
                continue
            if snippet is not None and not isinstance(snippet, str):
                continue
            cleaned.append(
                {
                    "source_label": label.strip(),
                    "snippet": (snippet or "").strip() or None,
                }
            )
        return cleaned

    @property
    def is_assistant(self) -> bool:
        """Whether the turn was written by the AI tutor."""
        return self.author_kind == AuthorKind.ASSISTANT


class ModelCitation(BaseModel):
    """Citation as returned by the tutor model.

    Attributes:
        source_label (str): Label of a context block shown to the model.
        rationale (str): Why the source supports the answer.
    """

    model_config = ConfigDict(populate_by_name=True)

    source_label: str = Field(alias="sourceLabel")
    rationale: str


class ChatModelResponse(BaseModel):
    """Structured tutor answer parsed from the model output.

    Attributes:
        answer (str): Answer text shown to the user.
        safety (SafetyFlag): ``ok`` or ``refusal``.
        citations (List[ModelCitation]): Supporting sources.
        confidence (Optional[str]): ``low``, ``medium`` or ``high`` when
            the model reports it.
    """

    model_config = ConfigDict(populate_by_name=True)

    answer: str
    safety: SafetyFlag
    citations: List[ModelCitation] = Field(default_factory=list)
    confidence: Optional[str] = None


class SendMessageRequest(BaseModel):
    """Inbound chat message for a class chat session.

    Attributes:
        message (str): Raw user message text.
        user_id (str): Authenticated author, resolved by the web tier.
        author_kind (AuthorKind): Student or teacher.
        class_title (str): Class title shown to the tutor.
        assignment_instructions (Optional[str]): Instructions when the chat
            belongs to an assignment.
    """

    message: str
    user_id: str
    author_kind: AuthorKind = AuthorKind.STUDENT
    class_title: str = ""
    assignment_instructions: Optional[str] = None


class ContextMeta(BaseModel):
    """What happened to the conversation memory during a send.

    Attributes:
        compacted (bool): Whether a new summary was written.
        compacted_at (Optional[datetime]): Generation time of that summary.
        reason (Optional[str]): Decision reason when compaction ran.
    """

    compacted: bool = False
    compacted_at: Optional[datetime] = None
    reason: Optional[str] = None


class SendMessageResponse(BaseModel):
    """Response for a successful send.

    Attributes:
        response (ChatModelResponse): Parsed tutor answer.
        user_message (ChatMessage): The stored user turn.
        assistant_message (ChatMessage): The stored assistant turn.
        context_meta (ContextMeta): Compaction outcome for the UI.
        decision (Dict[str, Any]): Compaction decision for telemetry.
    """

    response: ChatModelResponse
    user_message: ChatMessage
    assistant_message: ChatMessage
    context_meta: ContextMeta
    decision: Dict[str, Any]


class CompactionPreviewRequest(BaseModel):
    """Message window to run through the compaction engine.

    Attributes:
        messages (List[ChatMessage]): Message window, any order.
        existing_summary (Optional[Any]): Persisted summary body, if any.
            Malformed bodies are treated as absent.
        pending_message (str): Inbound message used as the salience query.
    """

    messages: List[ChatMessage] = Field(default_factory=list)
    existing_summary: Optional[Any] = None
    pending_message: str = ""


class CompactionPreviewResponse(BaseModel):
    """Dry-run compaction outcome.

    Attributes:
        decision (Dict[str, Any]): Compaction decision.
        compacted (bool): Whether a new summary was produced.
        summary (Optional[Dict[str, Any]]): The new summary body, camelCase.
        memory_text (str): Memory text the tutor would receive.
    """

    decision: Dict[str, Any]
    compacted: bool
    summary: Optional[Dict[str, Any]] = None
    memory_text: str

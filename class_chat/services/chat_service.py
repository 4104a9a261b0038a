# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Chat service: one grounded tutor answer per inbound class-chat message.

Per message:
  1. Fetch the recent message window and the stored compaction row.
  2. Decide whether to compact; if so merge, render and persist the summary.
  3. Assemble the prompt (blueprint, materials, memory, recent transcript).
  4. Call the tutor model with transient-error retry and parse its JSON.
  5. Append the user turn and the assistant turn to the session log.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from class_chat.config import settings
from class_chat.models import (
    AuthorKind,
    ChatMessage,
    ChatModelResponse,
    Citation,
    ContextMeta,
    ModelCitation,
)
from class_chat.schemas.compaction import (
    ChatCompactionSummary,
    CompactionDecision,
    record_from_summary,
    summary_from_record,
)
from class_chat.services.compaction import (
    CompactionResult,
    CompactionSettings,
    build_compaction_result,
    decide_compaction,
    render_memory_text,
    sort_messages_chronologically,
)
from class_chat.services.prompts.base import BLUEPRINT_SOURCE_LABEL, ChatPrompt, build_chat_prompt
from class_chat.services.providers.platform import ChatStoreError, PlatformClient

logger = logging.getLogger(__name__)

USER_SAFE_GENERATION_ERROR = "Sorry, I couldn't generate a response right now. Please try again."

_CONFIDENCE_LEVELS = ("low", "medium", "high")
_SOURCE_LABEL_LINE_RE = re.compile(r"(?:^|\n)([^|\n]+)\s*\|")
_SOURCE_PREFIX_RE = re.compile(r"^source:\s*", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


class InvalidChatMessageError(ValueError):
    """The inbound message or its sender was rejected before any I/O."""


class ChatGenerationError(Exception):
    """The tutor model failed or answered with unusable output."""


def create_llm():
    """Create LLM instance based on AGENT_MODEL setting."""
    model = settings.AGENT_MODEL
    if model.startswith("gemini"):
        return ChatGoogleGenerativeAI(
            model=model,
            google_api_key=settings.GOOGLE_API_KEY,
            temperature=settings.AGENT_TEMPERATURE,
            max_output_tokens=settings.AGENT_MAX_TOKENS,
        )
    return ChatOpenAI(
        api_key=SecretStr(settings.OPENAI_API_KEY),
        model=model,
        temperature=settings.AGENT_TEMPERATURE,
        max_completion_tokens=settings.AGENT_MAX_TOKENS,
    )


def _provider_name(model: str) -> str:
    return "google" if model.startswith("gemini") else "openai"


def _is_retryable_error(error: Exception) -> bool:
    """Check whether an LLM error is transient and worth retrying.

    Covers server errors (5xx), rate limits (429), and other transient
    provider-side availability failures.

    Args:
        error (Exception): The exception to inspect.

    Returns:
        bool: True if the error is likely transient.
    """
    msg = str(error).lower()
    retryable_patterns = (
        "500",
        "502",
        "503",
        "504",
        "529",
        "rate limit",
        "rate_limit",
        "429",
        "overloaded",
        "temporarily unavailable",
        "internal server error",
        "service unavailable",
        "resource exhausted",
        "resource_exhausted",
        "deadline exceeded",
    )
    return any(s in msg for s in retryable_patterns)


def validate_chat_message(raw: Any) -> str:
    """Trim and bound an inbound message.

    Args:
        raw (Any): Raw message value.

    Returns:
        str: The trimmed message.

    Raises:
        InvalidChatMessageError: If the message is empty or longer than
            ``MAX_CHAT_MESSAGE_CHARS``.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidChatMessageError("Message is required.")
    value = raw.strip()
    if len(value) > settings.MAX_CHAT_MESSAGE_CHARS:
        raise InvalidChatMessageError(f"Message exceeds {settings.MAX_CHAT_MESSAGE_CHARS} characters.")
    return value


def _balanced_object_ranges(raw: str) -> List[Tuple[int, int]]:
    ranges: List[Tuple[int, int]] = []
    start = -1
    depth = 0
    in_string = False
    escaping = False

    for index, char in enumerate(raw):
        if in_string:
            if escaping:
                escaping = False
            elif char == "\\":
                escaping = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                ranges.append((start, index))
                start = -1

    return ranges


def extract_json_object(raw: str) -> str:
    """Extract the single JSON object embedded in model output.

    Braces inside JSON strings are ignored. Surrounding prose and code
    fences are tolerated.

    Args:
        raw (str): Raw model output.

    Returns:
        str: Text of the only balanced ``{...}`` range that parses to an
            object.

    Raises:
        ValueError: If no such object exists or more than one does.
    """
    candidates = []
    for start, end in _balanced_object_ranges(raw or ""):
        text = raw[start : end + 1]
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            candidates.append(text)

    if not candidates:
        raise ValueError("No JSON object found in model response.")
    if len(candidates) > 1:
        raise ValueError("Multiple JSON objects found in model response.")
    return candidates[0]


def _non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def parse_chat_model_response(raw: str) -> ChatModelResponse:
    """Parse and validate the tutor model's JSON answer.

    Args:
        raw (str): Raw model output.

    Returns:
        ChatModelResponse: Trimmed answer, safety flag, citations and
            optional confidence.

    Raises:
        ValueError: If the payload does not match the expected shape.
    """
    payload = json.loads(extract_json_object(raw))

    answer = payload.get("answer")
    if not _non_empty_string(answer):
        raise ValueError("Model response answer is required.")

    safety = payload.get("safety")
    if safety not in ("ok", "refusal"):
        raise ValueError("Model response safety must be 'ok' or 'refusal'.")

    citations_raw = payload.get("citations")
    if not isinstance(citations_raw, list):
        raise ValueError("Model response citations must be an array.")

    citations: List[ModelCitation] = []
    for index, item in enumerate(citations_raw, start=1):
        if not isinstance(item, dict):
            raise ValueError(f"Citation {index} is invalid.")
        label = item.get("sourceLabel")
        if not _non_empty_string(label):
            raise ValueError(f"Citation {index} sourceLabel is required.")
        rationale = item.get("rationale")
        if not _non_empty_string(rationale):
            raise ValueError(f"Citation {index} rationale is required.")
        citations.append(ModelCitation(source_label=label.strip(), rationale=rationale.strip()))

    confidence = payload.get("confidence")
    return ChatModelResponse(
        answer=answer.strip(),
        safety=safety,
        citations=citations,
        confidence=confidence if confidence in _CONFIDENCE_LEVELS else None,
    )


def normalize_source_label_key(value: str) -> str:
    """Fold a source label for lookup: drop ``Source:``, lowercase, squash spaces."""
    key = _SOURCE_PREFIX_RE.sub("", value.strip()).lower()
    return _WHITESPACE_RE.sub(" ", key)


def collect_source_labels(blueprint_context: str, material_context: str) -> Dict[str, str]:
    """Map folded label keys to the labels present in the prompt context.

    Context blocks start with ``<label> | <title>`` lines.

    Args:
        blueprint_context (str): Blueprint context block.
        material_context (str): Retrieved material block.

    Returns:
        Dict[str, str]: Folded key to canonical label.
    """
    labels = {normalize_source_label_key(BLUEPRINT_SOURCE_LABEL): BLUEPRINT_SOURCE_LABEL}
    content = "\n".join([blueprint_context or "", material_context or ""])
    for match in _SOURCE_LABEL_LINE_RE.finditer(content):
        label = match.group(1).strip()
        if label:
            labels[normalize_source_label_key(label)] = label
    return labels


def normalize_citations(
    citations: List[ModelCitation], known_labels: Dict[str, str]
) -> List[ModelCitation]:
    """Snap citation labels to known context labels and drop exact duplicates.

    Args:
        citations (List[ModelCitation]): Citations from the model.
        known_labels (Dict[str, str]): Output of :func:`collect_source_labels`.

    Returns:
        List[ModelCitation]: Normalized citations in their original order.
    """
    seen = set()
    normalized: List[ModelCitation] = []
    for citation in citations:
        label = known_labels.get(
            normalize_source_label_key(citation.source_label), citation.source_label.strip()
        )
        key = (label, citation.rationale)
        if key in seen:
            continue
        seen.add(key)
        normalized.append(ModelCitation(source_label=label, rationale=citation.rationale))
    return normalized


@dataclass
class SendMessageResult:
    """Outcome of a successful send.

    Attributes:
        response (ChatModelResponse): Parsed tutor answer.
        user_message (ChatMessage): Stored user turn.
        assistant_message (ChatMessage): Stored assistant turn.
        context_meta (ContextMeta): Compaction outcome.
        decision (CompactionDecision): The compaction verdict for this send.
    """

    response: ChatModelResponse
    user_message: ChatMessage
    assistant_message: ChatMessage
    context_meta: ContextMeta
    decision: CompactionDecision


@dataclass
class CompactionPreview:
    """Dry-run compaction outcome for a message window.

    Attributes:
        decision (CompactionDecision): Verdict for the window.
        result (Optional[CompactionResult]): Merged summary when the verdict
            is to compact and candidates exist.
        memory_text (str): Memory text the tutor would receive.
    """

    decision: CompactionDecision
    result: Optional[CompactionResult]
    memory_text: str


class ChatService:
    """Service for grounded class-chat turns.

    Args:
        platform (Optional[PlatformClient]): Store and retrieval client.
        llm: LangChain chat model. Created from settings on first use when
            omitted.
        compaction_settings (Optional[CompactionSettings]): Engine
            tunables. Built from settings when omitted.
    """

    def __init__(
        self,
        platform: Optional[PlatformClient] = None,
        llm: Any = None,
        compaction_settings: Optional[CompactionSettings] = None,
    ) -> None:
        self.platform = platform or PlatformClient()
        self._llm = llm
        self.compaction_settings = compaction_settings or settings.compaction_settings()

    @property
    def llm(self):
        """The tutor chat model."""
        if self._llm is None:
            self._llm = create_llm()
        return self._llm

    @staticmethod
    def _extract_text(content: Any) -> str:
        """Extract plain text from LLM response content.

        Args:
            content (Any): Raw content from an LLM response (str, list, or
                other type).

        Returns:
            str: The concatenated text representation.
        """
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return " ".join(
                item if isinstance(item, str) else item.get("text", "")
                for item in content
                if isinstance(item, (str, dict))
            )
        return str(content)

    @staticmethod
    def _extract_usage(response: Any) -> Dict[str, Optional[int]]:
        meta = getattr(response, "usage_metadata", None) or {}
        return {
            "prompt_tokens": meta.get("input_tokens"),
            "completion_tokens": meta.get("output_tokens"),
            "total_tokens": meta.get("total_tokens"),
        }

    async def _invoke_with_retry(self, prompt: ChatPrompt):
        """Call the model, retrying transient provider errors with backoff.

        Args:
            prompt (ChatPrompt): Assembled prompt.

        Returns:
            AIMessage: The model response.

        Raises:
            Exception: The last error when it is not transient or retries
                are exhausted.
        """
        lc_messages = [SystemMessage(content=prompt.system), HumanMessage(content=prompt.user)]
        llm_retries = 0
        while True:
            try:
                return await self.llm.ainvoke(lc_messages)
            except Exception as e:
                if _is_retryable_error(e) and llm_retries < settings.MAX_LLM_RETRIES:
                    llm_retries += 1
                    delay = settings.LLM_RETRY_BASE_DELAY * (2 ** (llm_retries - 1))
                    logger.warning(
                        "Retryable LLM error (attempt %d/%d), retrying in %.1fs: %s",
                        llm_retries,
                        settings.MAX_LLM_RETRIES,
                        delay,
                        e,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise

    async def generate_response(
        self,
        prompt: ChatPrompt,
        blueprint_context: str,
        material_context: str,
    ) -> Tuple[ChatModelResponse, Dict[str, Any]]:
        """Generate and validate a tutor answer.

        Args:
            prompt (ChatPrompt): Assembled prompt.
            blueprint_context (str): Blueprint block, for citation labels.
            material_context (str): Material block, for citation labels.

        Returns:
            Tuple[ChatModelResponse, Dict[str, Any]]: The parsed answer and
                telemetry (provider, model, token usage, latency).

        Raises:
            ChatGenerationError: If the model fails or its output is invalid.
        """
        started = time.monotonic()
        try:
            result = await self._invoke_with_retry(prompt)
        except Exception as e:
            raise ChatGenerationError(f"Tutor model call failed: {e}") from e
        latency_ms = int((time.monotonic() - started) * 1000)

        raw = self._extract_text(result.content)
        try:
            parsed = parse_chat_model_response(raw)
        except ValueError as e:
            raise ChatGenerationError(f"Tutor model returned invalid output: {e}") from e

        known_labels = collect_source_labels(blueprint_context, material_context)
        response = parsed.model_copy(
            update={"citations": normalize_citations(parsed.citations, known_labels)}
        )
        telemetry: Dict[str, Any] = {
            "provider": _provider_name(settings.AGENT_MODEL),
            "model": settings.AGENT_MODEL,
            "latency_ms": latency_ms,
            **self._extract_usage(result),
        }
        return response, telemetry

    def preview(
        self,
        messages: List[ChatMessage],
        existing_summary: Optional[ChatCompactionSummary],
        pending_message: str,
    ) -> CompactionPreview:
        """Run the compaction engine without persisting anything.

        Args:
            messages (List[ChatMessage]): Message window, any order.
            existing_summary (Optional[ChatCompactionSummary]): Current summary.
            pending_message (str): Inbound message used as the query.

        Returns:
            CompactionPreview: Decision, optional merge result, memory text.
        """
        decision = decide_compaction(
            messages, existing_summary, pending_message, self.compaction_settings
        )
        result = None
        if decision.should_compact:
            result = build_compaction_result(
                messages, existing_summary, pending_message, self.compaction_settings
            )
        summary = result.summary if result else existing_summary
        return CompactionPreview(
            decision=decision, result=result, memory_text=render_memory_text(summary)
        )

    async def send_message(
        self,
        class_id: str,
        session_id: str,
        user_id: str,
        author_kind: AuthorKind,
        message: str,
        class_title: str,
        assignment_instructions: Optional[str] = None,
    ) -> SendMessageResult:
        """Answer one inbound message and store both turns.

        Args:
            class_id (str): Class the session belongs to.
            session_id (str): Chat session.
            user_id (str): Sender and session owner.
            author_kind (AuthorKind): Student or teacher.
            message (str): Raw message text.
            class_title (str): Class title for the prompt.
            assignment_instructions (Optional[str]): Assignment instructions
                for graded chats.

        Returns:
            SendMessageResult: Answer, stored turns and compaction outcome.

        Raises:
            InvalidChatMessageError: If the message is empty or too long, or
                the sender is not a student or teacher.
            ChatStoreError: If a platform read or write fails, including the
                summary upsert.
            ChatGenerationError: If the tutor model fails.
        """
        message = validate_chat_message(message)
        if author_kind == AuthorKind.ASSISTANT:
            raise InvalidChatMessageError("Only students and teachers can send chat messages.")

        messages = await self.platform.fetch_recent_messages(
            session_id, settings.context_fetch_limit
        )
        record = await self.platform.load_compaction(session_id, user_id)
        existing = summary_from_record(record)
        if record is not None and existing is None:
            logger.warning(
                "Discarding unreadable compaction summary (class=%s, session=%s, user=%s)",
                class_id,
                session_id,
                user_id,
            )

        decision = decide_compaction(messages, existing, message, self.compaction_settings)
        summary = existing
        context_meta = ContextMeta()

        if decision.should_compact:
            result = build_compaction_result(
                messages, existing, message, self.compaction_settings
            )
            if result is not None:
                new_record = record_from_summary(
                    result.summary,
                    session_id=session_id,
                    class_id=class_id,
                    owner_user_id=user_id,
                    summary_text=result.summary_text,
                )
                try:
                    await self.platform.upsert_compaction(new_record)
                except ChatStoreError as e:
                    logger.error(
                        "Failed to persist compaction summary (class=%s, session=%s, user=%s): %s",
                        class_id,
                        session_id,
                        user_id,
                        e,
                    )
                    raise
                summary = result.summary
                context_meta = ContextMeta(
                    compacted=True,
                    compacted_at=result.summary.generated_at,
                    reason=decision.reason.value,
                )

        chronological = sort_messages_chronologically(messages)
        transcript = chronological[-self.compaction_settings.recent_turns :]
        memory_text = render_memory_text(summary)

        blueprint_context = await self.platform.load_blueprint_context(class_id)
        retrieval_query = (
            f"{assignment_instructions}\n\n{message}" if assignment_instructions else message
        )
        material_context = await self.platform.retrieve_material_context(class_id, retrieval_query)

        prompt = build_chat_prompt(
            class_title=class_title,
            user_message=message,
            transcript=transcript,
            blueprint_context=blueprint_context,
            material_context=material_context,
            compacted_memory_context=memory_text,
            assignment_instructions=assignment_instructions,
        )

        try:
            response, telemetry = await self.generate_response(
                prompt, blueprint_context, material_context
            )
        except ChatGenerationError as e:
            logger.error(
                "Failed to generate class chat response (class=%s, session=%s, user=%s): %s",
                class_id,
                session_id,
                user_id,
                e,
            )
            raise

        now = datetime.now(timezone.utc)
        user_message = ChatMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            class_id=class_id,
            author_user_id=user_id,
            author_kind=author_kind,
            content=message,
            created_at=now,
        )
        # One microsecond later so the assistant turn always sorts after its prompt.
        assistant_message = ChatMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            class_id=class_id,
            author_user_id=None,
            author_kind=AuthorKind.ASSISTANT,
            content=response.answer,
            citations=[
                Citation(source_label=c.source_label, snippet=c.rationale)
                for c in response.citations
            ],
            safety=response.safety,
            created_at=now + timedelta(microseconds=1),
            **telemetry,
        )
        await self.platform.append_messages(session_id, [user_message, assistant_message])

        logger.info(
            "Answered class chat message (class=%s, session=%s, compacted=%s, reason=%s)",
            class_id,
            session_id,
            context_meta.compacted,
            decision.reason.value,
        )
        return SendMessageResult(
            response=response,
            user_message=user_message,
            assistant_message=assistant_message,
            context_meta=context_meta,
            decision=decision,
        )

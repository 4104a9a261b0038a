# Copyright (c) 2026 Heureum AI. All rights reserved.

"""Shared test fixtures for the class chat test suite."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from class_chat.models import AuthorKind, ChatMessage, Citation
from class_chat.services.providers.platform import PlatformClient

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Message factories
# ---------------------------------------------------------------------------


def turn(
    index: int,
    content: Optional[str] = None,
    kind: Optional[AuthorKind] = None,
    citations: Optional[List[Citation]] = None,
    created_at: Optional[datetime] = None,
    session_id: str = "session-1",
) -> ChatMessage:
    """Create a chat turn; even indexes are students, odd ones the assistant."""
    if kind is None:
        kind = AuthorKind.STUDENT if index % 2 == 0 else AuthorKind.ASSISTANT
    return ChatMessage(
        id=f"msg-{index:04d}",
        session_id=session_id,
        class_id="class-1",
        author_user_id=None if kind == AuthorKind.ASSISTANT else "user-1",
        author_kind=kind,
        content=content if content is not None else f"Turn {index} about kinematics",
        citations=citations or [],
        created_at=created_at or T0 + timedelta(minutes=index),
    )


def conversation(count: int, start: int = 0, content: Optional[str] = None) -> List[ChatMessage]:
    """Create ``count`` consecutive turns starting at ``start``."""
    return [turn(i, content=content) for i in range(start, start + count)]


@pytest.fixture
def make_turn():
    """Factory fixture for creating ChatMessage turns."""
    return turn


@pytest.fixture
def make_conversation():
    """Factory fixture for creating consecutive ChatMessage turns."""
    return conversation


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


def model_reply(
    answer: str = "Velocity is the rate of change of position.",
    safety: str = "ok",
    citations: Optional[List[Dict[str, str]]] = None,
) -> str:
    """Render a tutor model reply in the expected JSON shape."""
    return json.dumps(
        {
            "safety": safety,
            "answer": answer,
            "citations": citations
            if citations is not None
            else [{"sourceLabel": "Blueprint Context", "rationale": "Defines velocity."}],
        }
    )


@pytest.fixture
def mock_llm():
    """Factory fixture for a mock async LLM returning the given text."""

    def _factory(response_text: Optional[str] = None) -> AsyncMock:
        llm = AsyncMock()
        result = MagicMock()
        result.content = response_text if response_text is not None else model_reply()
        result.usage_metadata = {"input_tokens": 900, "output_tokens": 60, "total_tokens": 960}
        llm.ainvoke.return_value = result
        return llm

    return _factory


@pytest.fixture
def fake_platform():
    """Factory fixture for a PlatformClient double backed by AsyncMocks."""

    def _factory(
        messages: Optional[List[ChatMessage]] = None,
        record: Any = None,
        blueprint_context: str = "Blueprint Context | Published blueprint context\nSummary: Mechanics.",
        material_context: str = "Source 1 | Kinematics notes.pdf\nVelocity is displacement over time.",
    ) -> AsyncMock:
        platform = AsyncMock(spec=PlatformClient)
        platform.fetch_recent_messages.return_value = list(messages or [])
        platform.load_compaction.return_value = record
        platform.upsert_compaction.return_value = None
        platform.append_messages.return_value = None
        platform.load_blueprint_context.return_value = blueprint_context
        platform.retrieve_material_context.return_value = material_context
        return platform

    return _factory

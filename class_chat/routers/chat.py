# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Chat router - class chat sends and compaction previews.
"""

import logging

from fastapi import APIRouter, HTTPException

from class_chat.models import (
    CompactionPreviewRequest,
    CompactionPreviewResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from class_chat.schemas.compaction import parse_compaction_summary, serialize_compaction_summary
from class_chat.services.chat_service import (
    USER_SAFE_GENERATION_ERROR,
    ChatGenerationError,
    ChatService,
    InvalidChatMessageError,
)
from class_chat.services.providers.platform import ChatStoreError, MissingBlueprintError

logger = logging.getLogger(__name__)

router = APIRouter()

chat_service = ChatService()

STORE_UNAVAILABLE_MESSAGE = "Chat storage is unavailable. Please try again."


@router.post(
    "/classes/{class_id}/chat/sessions/{session_id}/messages",
    response_model=SendMessageResponse,
)
async def send_message(
    class_id: str, session_id: str, request: SendMessageRequest
) -> SendMessageResponse:
    """Answer a class chat message and store both turns."""
    try:
        result = await chat_service.send_message(
            class_id=class_id,
            session_id=session_id,
            user_id=request.user_id,
            author_kind=request.author_kind,
            message=request.message,
            class_title=request.class_title,
            assignment_instructions=request.assignment_instructions,
        )
    except InvalidChatMessageError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except MissingBlueprintError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ChatStoreError as e:
        logger.error("Chat store failure for session %s: %s", session_id, e)
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE_MESSAGE) from e
    except ChatGenerationError as e:
        raise HTTPException(status_code=502, detail=USER_SAFE_GENERATION_ERROR) from e

    return SendMessageResponse(
        response=result.response,
        user_message=result.user_message,
        assistant_message=result.assistant_message,
        context_meta=result.context_meta,
        decision=result.decision.model_dump(mode="json"),
    )


@router.post("/compaction/preview", response_model=CompactionPreviewResponse)
async def preview_compaction(request: CompactionPreviewRequest) -> CompactionPreviewResponse:
    """Run the compaction engine over a supplied window without persisting."""
    existing = parse_compaction_summary(request.existing_summary)
    preview = chat_service.preview(request.messages, existing, request.pending_message)
    return CompactionPreviewResponse(
        decision=preview.decision.model_dump(mode="json"),
        compacted=preview.result is not None,
        summary=serialize_compaction_summary(preview.result.summary) if preview.result else None,
        memory_text=preview.memory_text,
    )

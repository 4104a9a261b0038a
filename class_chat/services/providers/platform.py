# Copyright (c) 2026 Heureum AI. All rights reserved.

"""
Platform API client.

The platform service owns every persisted record of a class chat: the
message log, the per-session compaction row, published blueprints and
indexed class materials. This client is the only place that talks to it.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from class_chat.config import settings
from class_chat.models import ChatMessage
from class_chat.schemas.compaction import SessionCompactionRecord

logger = logging.getLogger(__name__)

MISSING_BLUEPRINT_MESSAGE = "A published blueprint is required before using AI chat."


class ChatStoreError(Exception):
    """A platform read or write failed.

    Attributes:
        status_code (Optional[int]): HTTP status when the platform answered,
            ``None`` for transport failures.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MissingBlueprintError(ChatStoreError):
    """The class has no published blueprint to ground the tutor on."""


def _segment(value: str) -> str:
    return quote(value, safe="")


class PlatformClient:
    """Async client for the platform's internal chat API.

    Args:
        base_url (Optional[str]): Platform base URL. Defaults to
            ``settings.PLATFORM_API_URL``.
        timeout (Optional[float]): Request timeout in seconds.
        transport (Optional[httpx.AsyncBaseTransport]): Custom transport,
            used by tests to stub the platform.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.PLATFORM_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PLATFORM_API_TIMEOUT
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and decode its JSON body.

        Args:
            method (str): HTTP method.
            path (str): Path below the base URL.
            params (Optional[Dict[str, Any]]): Query parameters.
            json (Any): JSON body.
            allow_not_found (bool): Return ``None`` on 404 instead of raising.

        Returns:
            Any: Decoded body, or ``None`` for empty bodies and allowed 404s.

        Raises:
            ChatStoreError: On transport failure or any other non-2xx status.
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise ChatStoreError(f"Platform request {method} {path} failed: {e}") from e

        if resp.status_code == 404 and allow_not_found:
            return None
        if not resp.is_success:
            raise ChatStoreError(
                f"Platform request {method} {path} returned {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ChatStoreError(
                f"Platform request {method} {path} returned invalid JSON",
                status_code=resp.status_code,
            ) from e

    async def fetch_recent_messages(self, session_id: str, limit: int) -> List[ChatMessage]:
        """Fetch the newest ``limit`` messages of a session.

        Args:
            session_id (str): Chat session.
            limit (int): Maximum messages to return.

        Returns:
            List[ChatMessage]: Messages in the order the platform returned
                them. Callers normalize chronology themselves.
        """
        data = await self._request(
            "GET",
            f"/api/v1/internal/chat/sessions/{_segment(session_id)}/messages",
            params={"limit": limit, "order": "desc"},
        )
        rows = (data or {}).get("messages", [])
        try:
            return [ChatMessage.model_validate(row) for row in rows]
        except ValidationError as e:
            raise ChatStoreError(f"Platform returned malformed messages: {e}") from e

    async def load_compaction(
        self, session_id: str, owner_user_id: str
    ) -> Optional[SessionCompactionRecord]:
        """Load the compaction row of a session, if one exists.

        Args:
            session_id (str): Chat session.
            owner_user_id (str): Session owner.

        Returns:
            Optional[SessionCompactionRecord]: The stored row, or ``None``.
        """
        data = await self._request(
            "GET",
            f"/api/v1/internal/chat/sessions/{_segment(session_id)}/compaction",
            params={"owner_user_id": owner_user_id},
            allow_not_found=True,
        )
        if not data:
            return None
        try:
            return SessionCompactionRecord.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed compaction row for session %s: %s", session_id, e)
            return None

    async def upsert_compaction(self, record: SessionCompactionRecord) -> None:
        """Insert or replace the compaction row keyed by session.

        Args:
            record (SessionCompactionRecord): Row to write.
        """
        await self._request(
            "PUT",
            f"/api/v1/internal/chat/sessions/{_segment(record.session_id)}/compaction",
            json=record.model_dump(mode="json"),
        )

    async def append_messages(self, session_id: str, messages: List[ChatMessage]) -> None:
        """Append turns to the session log.

        Args:
            session_id (str): Chat session.
            messages (List[ChatMessage]): Turns to store, in order.
        """
        await self._request(
            "POST",
            f"/api/v1/internal/chat/sessions/{_segment(session_id)}/messages",
            json={"messages": [m.model_dump(mode="json", by_alias=True) for m in messages]},
        )

    async def load_blueprint_context(self, class_id: str) -> str:
        """Load the published blueprint context block of a class.

        Args:
            class_id (str): Class.

        Returns:
            str: Blueprint context text.

        Raises:
            MissingBlueprintError: If the class has no published blueprint.
        """
        data = await self._request(
            "GET",
            f"/api/v1/internal/classes/{_segment(class_id)}/blueprint/context",
            allow_not_found=True,
        )
        if data is None:
            raise MissingBlueprintError(MISSING_BLUEPRINT_MESSAGE, status_code=404)
        return str(data.get("blueprint_context") or "")

    async def retrieve_material_context(self, class_id: str, query: str) -> str:
        """Retrieve class material passages relevant to a query.

        Args:
            class_id (str): Class.
            query (str): Retrieval query.

        Returns:
            str: Labeled material context, possibly empty.
        """
        data = await self._request(
            "POST",
            f"/api/v1/internal/classes/{_segment(class_id)}/materials/retrieve",
            json={"query": query},
        )
        return str((data or {}).get("context") or "")

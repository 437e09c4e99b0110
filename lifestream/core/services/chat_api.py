"""
Chat REST client: history, read receipts, conversation list, search, clear.

Every request carries the bearer token from the auth collaborator; a 401 logs
the user out.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from lifestream.core.auth import AuthProvider
from lifestream.core.config import settings
from lifestream.core.errors import HistoryAccessDeniedError, HistoryFetchError

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return str(data.get("message") or data.get("detail") or response.text)
    except ValueError:
        pass
    return response.text or f"HTTP {response.status_code}"


def _extract_messages(body: Any) -> List[Dict[str, Any]]:
    """Pull the message list from {status, data:{messages}} (or a bare {messages})."""
    if not isinstance(body, dict):
        raise HistoryFetchError("Unexpected chat history response")
    if body.get("status") not in (None, "success"):
        raise HistoryFetchError(str(body.get("message") or "Failed to load chat history"))
    data = body.get("data") or {}
    messages = data.get("messages") if isinstance(data, dict) else None
    if messages is None:
        messages = body.get("messages") or []
    return list(messages)


class ChatAPI:
    """Async client for the chat REST endpoints."""

    def __init__(
        self,
        auth: AuthProvider,
        base_url: Optional[str] = None,
        chat_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth = auth
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.api_base_url).rstrip("/"),
            timeout=timeout if timeout is not None else settings.http_timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
            event_hooks={"request": [self._add_auth], "response": [self._check_unauthorized]},
        )
        self._prefix = chat_prefix if chat_prefix is not None else settings.chat_prefix

    async def _add_auth(self, request: httpx.Request) -> None:
        token = self._auth.get_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

    async def _check_unauthorized(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            logger.warning("Chat API returned 401 for %s, logging out", response.request.url.path)
            self._auth.logout()

    def _path(self, endpoint: str) -> str:
        return f"{self._prefix}{endpoint}"

    async def get_conversation_history(self, request_id: str) -> List[Dict[str, Any]]:
        """
        Fetch persisted messages of a request's conversation.

        Returns:
            Raw message rows; empty list when the server has no history yet (404)

        Raises:
            HistoryAccessDeniedError on 403, HistoryFetchError on anything else
        """
        try:
            response = await self._client.get(self._path(f"/conversation/request/{request_id}"))
        except httpx.RequestError as e:
            raise HistoryFetchError(f"Failed to load chat history: {e}") from e
        if response.status_code == 404:
            logger.info("No chat history found for request %s", request_id)
            return []
        if response.status_code == 403:
            raise HistoryAccessDeniedError("You don't have access to this conversation")
        if response.is_error:
            raise HistoryFetchError(_error_detail(response))
        try:
            body = response.json()
        except ValueError as e:
            raise HistoryFetchError("Invalid chat history response") from e
        return _extract_messages(body)

    async def mark_messages_read(self, message_ids: List[str]) -> None:
        response = await self._client.post(self._path("/messages/read"), json={"messageIds": list(message_ids)})
        response.raise_for_status()

    async def list_conversations(self) -> List[Dict[str, Any]]:
        response = await self._client.get(self._path("/conversations"))
        response.raise_for_status()
        body = response.json()
        data = body.get("data") if isinstance(body, dict) else body
        if isinstance(data, dict):
            data = data.get("conversations") or []
        return list(data or [])

    async def search_messages(self, request_id: str, query: str) -> List[Dict[str, Any]]:
        response = await self._client.get(
            self._path(f"/conversation/{request_id}/search"),
            params={"query": query},
        )
        response.raise_for_status()
        return _extract_messages(response.json())

    async def clear_conversation(self, request_id: str) -> None:
        """Mark every message of the conversation as read on the server."""
        response = await self._client.post(self._path(f"/conversation/{request_id}/clear"))
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()

"""Tests for the chat REST client against httpx.MockTransport."""
import asyncio
import json

import httpx
import pytest

from lifestream.core.errors import HistoryAccessDeniedError, HistoryFetchError
from lifestream.core.services.chat_api import ChatAPI

from conftest import server_message


def _client(auth, handler) -> ChatAPI:
    return ChatAPI(auth, base_url="http://api.test/api", transport=httpx.MockTransport(handler))


def _call(api: ChatAPI, method: str, *args):
    async def _run():
        try:
            return await getattr(api, method)(*args)
        finally:
            await api.aclose()

    return asyncio.run(_run())


def test_history_success_sends_bearer_token(auth):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"status": "success", "data": {"messages": [server_message("m1", "hi")]}})

    rows = _call(_client(auth, handler), "get_conversation_history", "req-42")
    assert [r["id"] for r in rows] == ["m1"]
    assert seen["path"] == "/api/chat/conversation/request/req-42"
    assert seen["auth"] == "Bearer token-123"


def test_history_not_found_is_empty(auth):
    rows = _call(_client(auth, lambda request: httpx.Response(404, json={"message": "Not found"})),
                 "get_conversation_history", "req-42")
    assert rows == []


def test_history_forbidden_raises_access_denied(auth):
    with pytest.raises(HistoryAccessDeniedError):
        _call(_client(auth, lambda request: httpx.Response(403, json={"message": "Forbidden"})),
              "get_conversation_history", "req-42")


def test_history_server_error_raises_fetch_error(auth):
    with pytest.raises(HistoryFetchError, match="Database unavailable"):
        _call(_client(auth, lambda request: httpx.Response(500, json={"message": "Database unavailable"})),
              "get_conversation_history", "req-42")


def test_history_error_status_in_body_raises_fetch_error(auth):
    with pytest.raises(HistoryFetchError, match="Request closed"):
        _call(_client(auth, lambda request: httpx.Response(200, json={"status": "error", "message": "Request closed"})),
              "get_conversation_history", "req-42")


def test_history_network_error_raises_fetch_error(auth):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(HistoryFetchError):
        _call(_client(auth, handler), "get_conversation_history", "req-42")


def test_unauthorized_response_logs_out(auth):
    logged_out = []
    auth.on_logout(lambda: logged_out.append(True))

    with pytest.raises(HistoryFetchError):
        _call(_client(auth, lambda request: httpx.Response(401, json={"message": "Token expired"})),
              "get_conversation_history", "req-42")
    assert logged_out == [True]
    assert auth.get_token() is None


def test_mark_messages_read_posts_ids(auth):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success"})

    _call(_client(auth, handler), "mark_messages_read", ["m1", "m2"])
    assert seen == {"method": "POST", "path": "/api/chat/messages/read", "body": {"messageIds": ["m1", "m2"]}}


def test_mark_messages_read_failure_raises(auth):
    with pytest.raises(httpx.HTTPStatusError):
        _call(_client(auth, lambda request: httpx.Response(500)), "mark_messages_read", ["m1"])


def test_list_conversations(auth):
    conversations = [{"requestId": "req-42", "unreadCount": 2}]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/chat/conversations"
        return httpx.Response(200, json={"status": "success", "data": {"conversations": conversations}})

    assert _call(_client(auth, handler), "list_conversations") == conversations


def test_search_messages_passes_query(auth):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["query"] = request.url.params.get("query")
        return httpx.Response(200, json={"status": "success", "data": {"messages": [server_message("m3", "O negative")]}})

    rows = _call(_client(auth, handler), "search_messages", "req-42", "negative")
    assert [r["id"] for r in rows] == ["m3"]
    assert seen == {"path": "/api/chat/conversation/req-42/search", "query": "negative"}


def test_clear_conversation(auth):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"status": "success"})

    _call(_client(auth, handler), "clear_conversation", "req-42")
    assert seen == [("POST", "/api/chat/conversation/req-42/clear")]

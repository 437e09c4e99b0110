"""
Shared fakes: in-memory transport/server, chat API stand-in, auth.

Tests drive async code with asyncio.run() inside plain test functions.
"""
import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import pytest

from lifestream.core.auth import ChatUser, TokenStore
from lifestream.core.chat.session import ConversationSession
from lifestream.core.errors import ChannelConnectError
from lifestream.core.observability.metrics import ChatMetrics
from lifestream.core.realtime.manager import ConnectionManager
from lifestream.core.realtime.transport import Transport


class FakeTransport(Transport):
    """Transport whose behaviour is scripted by its FakeServer."""

    def __init__(self, server: "FakeServer") -> None:
        self.server = server
        self._connected = False
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self.closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, url: str, auth: Dict[str, Any]) -> None:
        self.server.connect_attempts += 1
        self.server.last_auth = auth
        self.server.last_url = url
        if self.server.connect_gate is not None:
            await self.server.connect_gate.wait()
        if self.server.hang:
            await asyncio.Event().wait()
        if self.server.connect_error:
            raise ChannelConnectError(self.server.connect_error)
        self._connected = True
        self.fire("connect")

    async def disconnect(self) -> None:
        was_connected = self._connected
        self._connected = False
        self.closed = True
        if was_connected:
            self.fire("disconnect", "io client disconnect")

    def drop(self, reason: str = "transport close") -> None:
        """Server-side drop."""
        self._connected = False
        self.fire("disconnect", reason)

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def fire(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            handler(*args)

    async def emit(self, event: str, data: Any) -> None:
        if self.server.emit_error is not None:
            raise self.server.emit_error
        self.server.emitted.append((event, data))

    async def call(self, event: str, data: Any, timeout: float) -> Any:
        self.server.emitted.append((event, data))
        responder = self.server.acks.get(event, True)
        if isinstance(responder, BaseException):
            raise responder
        if callable(responder):
            result = responder(data)
            if inspect.isawaitable(result):
                return await asyncio.wait_for(result, timeout)
            return result
        return responder


class FakeServer:
    """Scripted chat server; use .factory as the manager's transport factory."""

    def __init__(self) -> None:
        self.transports: List[FakeTransport] = []
        self.connect_attempts = 0
        self.connect_gate: Optional[asyncio.Event] = None
        self.connect_error: Optional[str] = None
        self.hang = False
        self.emit_error: Optional[BaseException] = None
        self.acks: Dict[str, Any] = {}
        self.emitted: List[tuple] = []
        self.last_auth: Optional[Dict[str, Any]] = None
        self.last_url: Optional[str] = None

    def factory(self) -> FakeTransport:
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def push(self, event: str, data: Any) -> None:
        self.transport.fire(event, data)

    def emitted_events(self, event: str) -> List[Any]:
        return [data for name, data in self.emitted if name == event]


class FakeChatAPI:
    """Stand-in for ChatAPI with scripted history and recorded side effects."""

    def __init__(self) -> None:
        self.history: Dict[str, List[Dict[str, Any]]] = {}
        self.history_errors: Dict[str, BaseException] = {}
        self.history_gates: Dict[str, asyncio.Event] = {}
        self.history_calls: List[str] = []
        self.read_calls: List[List[str]] = []
        self.read_error: Optional[BaseException] = None
        self.cleared: List[str] = []
        self.search_results: List[Dict[str, Any]] = []

    async def get_conversation_history(self, request_id: str) -> List[Dict[str, Any]]:
        self.history_calls.append(request_id)
        gate = self.history_gates.get(request_id)
        if gate is not None:
            await gate.wait()
        error = self.history_errors.get(request_id)
        if error is not None:
            raise error
        return list(self.history.get(request_id, []))

    async def mark_messages_read(self, message_ids: List[str]) -> None:
        self.read_calls.append(list(message_ids))
        if self.read_error is not None:
            raise self.read_error

    async def clear_conversation(self, request_id: str) -> None:
        self.cleared.append(request_id)

    async def search_messages(self, request_id: str, query: str) -> List[Dict[str, Any]]:
        return list(self.search_results)


def server_message(message_id: str, text: str, *, sender: str = "u2", request_id: str = "req-42",
                   timestamp: str = "2026-03-01T10:00:00Z", **extra: Any) -> Dict[str, Any]:
    data = {
        "id": message_id,
        "requestId": request_id,
        "text": text,
        "senderId": sender,
        "senderRole": "requester",
        "timestamp": timestamp,
        "readStatus": False,
    }
    data.update(extra)
    return data


@pytest.fixture
def user() -> ChatUser:
    return ChatUser(id="u1", role="donor", name="Ada")


@pytest.fixture
def auth(user) -> TokenStore:
    return TokenStore("token-123", user)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def metrics() -> ChatMetrics:
    return ChatMetrics()


@pytest.fixture
def manager(auth, server, metrics) -> ConnectionManager:
    return ConnectionManager(
        auth,
        transport_factory=server.factory,
        url="http://chat.test",
        connect_timeout=0.5,
        ack_timeout=0.5,
        backoff_base=0.0,
        backoff_max=0.0,
        metrics=metrics,
    )


@pytest.fixture
def api() -> FakeChatAPI:
    return FakeChatAPI()


@pytest.fixture
def session(manager, api, auth, metrics) -> ConversationSession:
    return ConversationSession(manager, api, auth, join_timeout=0.5, send_timeout=0.2, metrics=metrics)


@pytest.fixture
def make_message() -> Callable[..., Dict[str, Any]]:
    return server_message

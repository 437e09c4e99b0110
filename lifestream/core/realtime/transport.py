"""
Abstract channel transport plus the Socket.IO implementation used in production.

Defines the standard interface so the connection manager can be driven by an
in-memory transport in tests.
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import socketio

from lifestream.core.config import get_socket_transports, settings
from lifestream.core.errors import ChannelConnectError

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class Transport(ABC):
    """One bidirectional connection. Not reusable after disconnect()."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self, url: str, auth: Dict[str, Any]) -> None:
        """
        Open the connection.

        Args:
            url: Server URL
            auth: Handshake auth payload (carries the bearer token)

        Raises:
            ChannelConnectError if the server refuses the connection
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    def on(self, event: str, handler: Handler) -> None:
        pass

    @abstractmethod
    def off(self, event: str, handler: Handler) -> None:
        pass

    @abstractmethod
    async def emit(self, event: str, data: Any) -> None:
        """Fire-and-forget send."""
        pass

    @abstractmethod
    async def call(self, event: str, data: Any, timeout: float) -> Any:
        """
        Send and wait for the server's acknowledgement.

        Returns:
            The ack payload

        Raises:
            asyncio.TimeoutError if no ack arrives within timeout
        """
        pass


class SocketIOTransport(Transport):
    """Transport over python-socketio's AsyncClient (reconnection handled by the manager)."""

    def __init__(
        self,
        transports: Optional[List[str]] = None,
        wait_timeout: Optional[float] = None,
    ) -> None:
        self._client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._transports = transports or get_socket_transports()
        self._wait_timeout = wait_timeout if wait_timeout is not None else settings.connect_timeout
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._bound: set = set()

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    async def connect(self, url: str, auth: Dict[str, Any]) -> None:
        try:
            await self._client.connect(
                url,
                auth=auth,
                transports=self._transports,
                wait_timeout=self._wait_timeout,
            )
        except socketio.exceptions.ConnectionError as e:
            raise ChannelConnectError(str(e) or "Failed to connect to chat server") from e

    async def disconnect(self) -> None:
        await self._client.disconnect()

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)
        if event not in self._bound:
            # One dispatcher per event; handlers live in our own registry so off() works
            self._client.on(event, self._dispatcher(event))
            self._bound.add(event)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: str, data: Any) -> None:
        await self._client.emit(event, data)

    async def call(self, event: str, data: Any, timeout: float) -> Any:
        try:
            return await self._client.call(event, data, timeout=timeout)
        except socketio.exceptions.TimeoutError as e:
            raise asyncio.TimeoutError(f"No acknowledgement for {event}") from e

    def _dispatcher(self, event: str) -> Callable[..., Any]:
        async def dispatch(*args: Any) -> None:
            for handler in list(self._handlers.get(event, [])):
                try:
                    result = handler(*args)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Handler for %s failed", event)
        return dispatch

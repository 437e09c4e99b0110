"""
Connection manager: owns the single chat channel, coalesces connects, acked emit, handler registry.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from lifestream.core.auth import AuthProvider
from lifestream.core.config import get_socket_url, settings
from lifestream.core.errors import (
    ChannelConnectError,
    ChatError,
    ConnectionTimeoutError,
    NotAuthenticatedError,
)
from lifestream.core.observability.metrics import ChatMetrics, get_metrics
from lifestream.core.realtime import events
from lifestream.core.realtime.transport import Handler, SocketIOTransport, Transport

logger = logging.getLogger(__name__)

# Reasons passed to status listeners
REASON_CONNECTED = "connected"
REASON_CLIENT = "client"
REASON_TIMEOUT = "timeout"
REASON_CONNECT_ERROR = "connect_error"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class EmitResult:
    """
    Outcome of an emit. Channel problems are reported here instead of raised.

    Attributes:
        ok: True if the message was delivered (and acknowledged, when asked).
        data: The ack payload, if any.
        error: Human-readable failure reason.
        timed_out: True if the ack wait expired.
    """

    ok: bool
    data: Any = None
    error: Optional[str] = None
    timed_out: bool = False

    def __bool__(self) -> bool:
        return self.ok


StatusListener = Callable[[ConnectionState, Optional[str]], None]


def _interpret_ack(event: str, response: Any) -> EmitResult:
    """False, or a dict carrying error / success=False, is a rejection; anything else is success."""
    if response is False:
        return EmitResult(ok=False, data=response, error=f"{event} rejected by server")
    if isinstance(response, dict):
        err = response.get("error")
        if err:
            return EmitResult(ok=False, data=response, error=str(err))
        if response.get("success") is False:
            return EmitResult(ok=False, data=response, error=str(response.get("message") or f"{event} rejected by server"))
    return EmitResult(ok=True, data=response)


class ConnectionManager:
    """Single shared channel to the chat server. Sessions hold a reference; nothing global."""

    def __init__(
        self,
        auth: AuthProvider,
        transport_factory: Optional[Callable[[], Transport]] = None,
        url: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        ack_timeout: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        metrics: Optional[ChatMetrics] = None,
    ) -> None:
        self._auth = auth
        self._transport_factory = transport_factory or SocketIOTransport
        self._url = url
        self._connect_timeout = connect_timeout if connect_timeout is not None else settings.connect_timeout
        self._ack_timeout = ack_timeout if ack_timeout is not None else settings.send_ack_timeout
        self._backoff_base = backoff_base if backoff_base is not None else settings.reconnect_backoff_base
        self._backoff_max = backoff_max if backoff_max is not None else settings.reconnect_backoff_max
        self._metrics = metrics or get_metrics()

        self._transport: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._pending: Optional[asyncio.Task] = None
        self._failures = 0
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._listeners: List[StatusListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Return True if the channel is up."""
        return (
            self._state == ConnectionState.CONNECTED
            and self._transport is not None
            and self._transport.connected
        )

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    # --- connection lifecycle ---

    async def connect(self) -> None:
        """
        Connect the channel, or join the attempt already in flight.

        Raises:
            NotAuthenticatedError: no bearer token (no transport is opened)
            ConnectionTimeoutError: bounded wait exceeded
            ChannelConnectError: transport refused the connection
        """
        if self.is_connected:
            return
        if self._pending is None:
            token = self._auth.get_token()
            if not token:
                logger.warning("No authentication token available for chat connection")
                raise NotAuthenticatedError("User not authenticated")
            self._pending = asyncio.ensure_future(self._open(token))
        await asyncio.shield(self._pending)

    async def disconnect(self) -> None:
        """Tear down the transport and drop handlers. Safe to call when already disconnected."""
        transport = self._transport
        self._transport = None
        self._pending = None
        self._handlers.clear()
        if transport is not None:
            try:
                await transport.disconnect()
            except Exception as e:
                logger.debug("Transport disconnect failed: %s", e)
            logger.info("Chat channel disconnected by client")
        self._state = ConnectionState.DISCONNECTED
        # Always notify so logout resets sessions even after a transport drop
        self._notify(ConnectionState.DISCONNECTED, REASON_CLIENT)

    async def _open(self, token: str) -> None:
        try:
            delay = self._backoff_delay()
            if delay > 0:
                logger.info("Reconnect backoff %.1fs after %d failed attempts", delay, self._failures)
                await asyncio.sleep(delay)
            if self._transport is not None:
                await self._abandon(self._transport)
            transport = self._transport_factory()
            self._transport = transport
            self._bind(transport)
            self._set_state(ConnectionState.CONNECTING)
            self._metrics.record_connect_attempt()
            try:
                await asyncio.wait_for(
                    transport.connect(self._url or get_socket_url(), {"token": token}),
                    timeout=self._connect_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("Chat channel connection timeout after %.1fs", self._connect_timeout)
                await self._abandon(transport)
                self._record_failure(ConnectionState.DISCONNECTED, REASON_TIMEOUT)
                raise ConnectionTimeoutError(
                    f"Connection to chat server timed out after {self._connect_timeout:g}s"
                )
            except Exception as e:
                logger.warning("Chat channel connection error: %s", e)
                await self._abandon(transport)
                self._record_failure(ConnectionState.ERROR, REASON_CONNECT_ERROR)
                raise ChannelConnectError(str(e) or "Failed to connect to chat server") from e

            if self._transport is not transport:
                # disconnect() ran while we were connecting
                await transport.disconnect()
                raise ChannelConnectError("Connection attempt abandoned")
            self._failures = 0
            self._metrics.record_connect_result(True)
            logger.info("Chat channel connected")
            self._set_state(ConnectionState.CONNECTED, REASON_CONNECTED)
        finally:
            if self._pending is asyncio.current_task():
                self._pending = None

    async def _abandon(self, transport: Transport) -> None:
        if self._transport is transport:
            self._transport = None
        try:
            await transport.disconnect()
        except Exception as e:
            logger.debug("Abandoned transport disconnect failed: %s", e)

    def _record_failure(self, state: ConnectionState, reason: str) -> None:
        self._failures += 1
        self._metrics.record_connect_result(False)
        self._set_state(state, reason)

    def _backoff_delay(self) -> float:
        if self._failures == 0:
            return 0.0
        return min(self._backoff_base * (2 ** (self._failures - 1)), self._backoff_max)

    def _bind(self, transport: Transport) -> None:
        """Attach lifecycle handlers and every registered event handler to a fresh transport."""
        transport.on(events.CONNECT, lambda *args: self._on_transport_connect(transport))
        transport.on(events.DISCONNECT, lambda *args: self._on_transport_drop(transport, ConnectionState.DISCONNECTED, args))
        transport.on(events.CONNECT_ERROR, lambda *args: self._on_transport_drop(transport, ConnectionState.ERROR, args))
        for event, handlers in self._handlers.items():
            for handler in handlers:
                transport.on(event, handler)

    def _on_transport_connect(self, transport: Transport) -> None:
        if transport is self._transport and self._pending is None:
            self._set_state(ConnectionState.CONNECTED, REASON_CONNECTED)

    def _on_transport_drop(self, transport: Transport, state: ConnectionState, args: tuple) -> None:
        if transport is not self._transport:
            return
        reason = str(args[0]) if args and args[0] is not None else state.value
        logger.info("Chat channel %s: %s", state.value, reason)
        self._transport = None
        self._pending = None
        self._set_state(state, reason)

    # --- messaging ---

    async def emit(
        self,
        event: str,
        payload: Dict[str, Any],
        *,
        ack: bool = True,
        timeout: Optional[float] = None,
    ) -> EmitResult:
        """Send an event, reconnecting once if needed. Never raises for channel problems."""
        if not self.is_connected:
            try:
                await self.connect()
            except ChatError as e:
                logger.warning("Channel not connected, cannot emit %s: %s", event, e)
                return EmitResult(ok=False, error=str(e))
        transport = self._transport
        if transport is None:
            return EmitResult(ok=False, error="Channel not connected")
        try:
            if not ack:
                await transport.emit(event, payload)
                return EmitResult(ok=True)
            wait = timeout if timeout is not None else self._ack_timeout
            response = await transport.call(event, payload, timeout=wait)
        except asyncio.TimeoutError:
            logger.warning("No acknowledgement for %s", event)
            return EmitResult(ok=False, error=f"No acknowledgement for {event}", timed_out=True)
        except Exception as e:
            logger.warning("Emit %s failed: %s", event, e)
            return EmitResult(ok=False, error=str(e) or f"Failed to emit {event}")
        result = _interpret_ack(event, response)
        if not result.ok:
            logger.warning("Socket emit error for %s: %s", event, result.error)
        return result

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler; it is attached to the current and every future transport."""
        self._handlers[event].append(handler)
        if self._transport is not None:
            self._transport.on(event, handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        """Deregister one handler, or all handlers for event when handler is None."""
        handlers = self._handlers.get(event)
        if not handlers:
            return
        removed = list(handlers) if handler is None else [h for h in handlers if h == handler]
        for h in removed:
            handlers.remove(h)
            if self._transport is not None:
                self._transport.off(event, h)
        if not handlers:
            del self._handlers[event]

    # --- status observers ---

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Observe (state, reason) changes. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        if state == self._state:
            return
        self._state = state
        self._notify(state, reason)

    def _notify(self, state: ConnectionState, reason: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(state, reason)
            except Exception:
                logger.exception("Connection status listener failed")

"""
Conversation session controller for one chat screen.

States: idle -> joining -> joined -> leaving -> idle; joining -> failed (until retry()).

Every initialize() starts a new generation; join acks, history responses and push
handlers carry the generation they were started under and are dropped once it is
superseded. Observers get immutable ChatSnapshot values via subscribe().
"""
import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from lifestream.core.auth import AuthProvider
from lifestream.core.chat.models import (
    LOCAL_ID_PREFIX,
    ChatErrorInfo,
    ChatSnapshot,
    Message,
    SessionStatus,
    conversation_id_for,
    format_timestamp,
    message_from_payload,
    new_local_id,
    utcnow,
)
from lifestream.core.chat.reconciler import MessageReconciler
from lifestream.core.config import settings
from lifestream.core.errors import (
    ChatError,
    HistoryFetchError,
    JoinRejectedError,
    NotAuthenticatedError,
    SendFailedError,
)
from lifestream.core.observability.metrics import ChatMetrics, get_metrics
from lifestream.core.realtime import events
from lifestream.core.realtime.manager import REASON_CLIENT, ConnectionManager, ConnectionState
from lifestream.core.services.chat_api import ChatAPI

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[ChatSnapshot], None]

# Join signal outcomes (from conversation-joined / join-error pushes or teardown)
_JOINED = "joined"
_REJECTED = "rejected"
_SUPERSEDED = "superseded"


def _ack_conversation_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        value = data.get("conversationId") or data.get("conversation_id")
        return str(value) if value else None
    return None


class ConversationSession:
    """Join, hydrate, send/receive and tear down one request's conversation."""

    def __init__(
        self,
        manager: ConnectionManager,
        api: ChatAPI,
        auth: AuthProvider,
        join_timeout: Optional[float] = None,
        send_timeout: Optional[float] = None,
        echo_window: Optional[float] = None,
        metrics: Optional[ChatMetrics] = None,
    ) -> None:
        self._manager = manager
        self._api = api
        self._auth = auth
        self._join_timeout = join_timeout if join_timeout is not None else settings.join_ack_timeout
        self._send_timeout = send_timeout if send_timeout is not None else settings.send_ack_timeout
        self._echo_window = echo_window
        self._metrics = metrics or get_metrics()

        self._snapshot = ChatSnapshot(connected=manager.is_connected)
        self._listeners: List[SnapshotListener] = []
        self._generation = 0
        self._reconciler: Optional[MessageReconciler] = None
        self._handlers: List[Tuple[str, Callable[..., Any]]] = []
        self._join_signal: Optional[asyncio.Future] = None
        self._last_request_id: Optional[str] = None
        # Conversation ids of torn-down sessions; late join outcomes naming them are ignored
        self._departed_ids: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe_status = manager.subscribe(self._on_channel_status)

    # --- observation ---

    @property
    def snapshot(self) -> ChatSnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Receive every new snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, **changes: Any) -> None:
        snapshot = replace(self._snapshot, **changes)
        if snapshot == self._snapshot:
            return
        self._set_snapshot(snapshot)

    def _set_snapshot(self, snapshot: ChatSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Chat snapshot listener failed")

    def _publish_messages(self) -> None:
        if self._reconciler is not None:
            self._publish(messages=self._reconciler.messages)

    def _is_stale(self, generation: int, what: str) -> bool:
        if generation != self._generation:
            logger.debug("Discarding stale %s (generation %d, current %d)", what, generation, self._generation)
            return True
        return False

    # --- lifecycle ---

    async def initialize(self, request_id: str) -> ChatSnapshot:
        """Tear down any previous conversation, then connect, join and hydrate history."""
        self.teardown()
        self._generation += 1
        generation = self._generation
        request_id = str(request_id)
        # Revisiting a conversation makes its ids ours again
        self._departed_ids.discard(conversation_id_for(request_id))
        self._last_request_id = request_id

        user = self._auth.current_user()
        conversation_id = conversation_id_for(request_id)
        self._reconciler = MessageReconciler(
            conversation_id,
            request_id,
            self_user_id=user.id if user else None,
            echo_window=self._echo_window,
            metrics=self._metrics,
        )
        self._set_snapshot(ChatSnapshot(
            status=SessionStatus.JOINING,
            request_id=request_id,
            conversation_id=conversation_id,
            connected=self._manager.is_connected,
            is_loading=True,
        ))
        if user is None:
            return self._fail(generation, NotAuthenticatedError("User not authenticated"))

        self._register_handlers(generation)
        try:
            await self._manager.connect()
        except ChatError as e:
            return self._fail(generation, e)
        if self._is_stale(generation, "connect"):
            return self._snapshot
        self._publish(connected=True)

        outcome, value = await self._join(conversation_id, user.id, request_id)
        if self._is_stale(generation, "join ack") or outcome == _SUPERSEDED:
            return self._snapshot
        if outcome == _REJECTED:
            return self._fail(generation, JoinRejectedError(value or "Failed to join conversation"))

        joined_id = value or conversation_id
        self._reconciler.adopt_conversation_id(joined_id)
        logger.info("Joined conversation %s for request %s", joined_id, request_id)
        self._publish(status=SessionStatus.JOINED, conversation_id=joined_id)
        await self._hydrate(generation)
        return self._snapshot

    async def _join(self, conversation_id: str, user_id: str, request_id: str) -> Tuple[str, Optional[str]]:
        """Emit join and wait for its ack, or a conversation-joined / join-error push, whichever comes first."""
        signal = asyncio.get_running_loop().create_future()
        self._join_signal = signal
        emit_task = asyncio.ensure_future(self._manager.emit(
            events.JOIN_CONVERSATION,
            {"conversationId": conversation_id, "userId": user_id, "requestId": request_id},
            timeout=self._join_timeout,
        ))
        try:
            await asyncio.wait({emit_task, signal}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if self._join_signal is signal:
                self._join_signal = None
        if signal.done():
            if not emit_task.done():
                emit_task.cancel()
            return signal.result()
        ack = emit_task.result()
        if not ack.ok:
            return _REJECTED, ack.error
        return _JOINED, _ack_conversation_id(ack.data)

    async def _hydrate(self, generation: int) -> None:
        """Replace the log with server history; 404 is an empty history, 403 access denied."""
        request_id = self._snapshot.request_id
        self._publish(is_loading=True)
        try:
            rows = await self._api.get_conversation_history(request_id)
        except ChatError as e:
            if not self._is_stale(generation, "history error"):
                logger.warning("Failed to load chat history for request %s: %s", request_id, e)
                self._surface(e, is_loading=False)
            return
        except Exception as e:
            if not self._is_stale(generation, "history error"):
                logger.warning("Failed to load chat history for request %s: %s", request_id, e)
                self._surface(HistoryFetchError("Failed to load chat history"), is_loading=False)
            return
        if self._is_stale(generation, "history"):
            return
        self._reconciler.replace_history(rows)
        logger.info("Loaded %d messages for request %s", len(self._reconciler.messages), request_id)
        self._publish(messages=self._reconciler.messages, is_loading=False)

    async def refresh_history(self) -> ChatSnapshot:
        """Re-fetch history for the joined conversation."""
        if self._snapshot.status == SessionStatus.JOINED:
            await self._hydrate(self._generation)
        return self._snapshot

    async def retry(self) -> ChatSnapshot:
        """Explicit retry after a failed join or connection problem."""
        if self._last_request_id is None:
            return self._snapshot
        return await self.initialize(self._last_request_id)

    def teardown(self) -> ChatSnapshot:
        """Deregister handlers, send a best-effort leave, reset to idle."""
        previous = self._snapshot
        if previous.status == SessionStatus.IDLE and self._reconciler is None:
            return previous
        self._generation += 1
        self._publish(status=SessionStatus.LEAVING)

        for event, handler in self._handlers:
            self._manager.off(event, handler)
        self._handlers = []
        if self._join_signal is not None and not self._join_signal.done():
            self._join_signal.set_result((_SUPERSEDED, None))

        user = self._auth.current_user()
        if (
            previous.status in (SessionStatus.JOINING, SessionStatus.JOINED)
            and previous.conversation_id
            and user is not None
            and self._manager.is_connected
        ):
            self._spawn(self._send_leave(previous.conversation_id, user.id), "leave-conversation")

        if self._reconciler is not None:
            self._departed_ids |= self._reconciler.conversation_ids
        self._reconciler = None
        if previous.conversation_id:
            logger.info("Left conversation %s", previous.conversation_id)
        self._set_snapshot(ChatSnapshot(connected=self._manager.is_connected))
        return self._snapshot

    async def _send_leave(self, conversation_id: str, user_id: str) -> None:
        result = await self._manager.emit(
            events.LEAVE_CONVERSATION,
            {"conversationId": conversation_id, "userId": user_id},
            ack=False,
        )
        if not result.ok:
            logger.warning("Leave signal for %s not delivered: %s", conversation_id, result.error)

    async def close(self) -> None:
        """Teardown, stop observing the channel, wait for background work."""
        self.teardown()
        self._unsubscribe_status()
        await self.flush_background()

    # --- messaging ---

    async def send_message(self, text: str) -> bool:
        """Optimistically append, emit and wait for the ack; roll back on failure."""
        snapshot = self._snapshot
        if snapshot.status != SessionStatus.JOINED or not text or not text.strip():
            return False
        user = self._auth.current_user()
        if user is None:
            self._surface(NotAuthenticatedError("User not authenticated"))
            return False

        generation = self._generation
        reconciler = self._reconciler
        now = utcnow()
        message = Message(
            id=new_local_id(),
            text=text.strip(),
            sender_id=user.id,
            sender_role=user.role,
            sender_name=user.name,
            timestamp=now,
            conversation_id=snapshot.conversation_id,
            request_id=snapshot.request_id,
            read=False,
            local=True,
        )
        reconciler.add_optimistic(message)
        self._publish_messages()

        result = await self._manager.emit(
            events.SEND_MESSAGE,
            {
                "conversationId": snapshot.conversation_id,
                "message": message.text,
                "senderId": user.id,
                "senderRole": user.role,
                "requestId": snapshot.request_id,
                "timestamp": format_timestamp(now),
                "clientMessageId": message.id,
            },
            timeout=self._send_timeout,
        )
        if self._is_stale(generation, "send ack"):
            self._metrics.record_send_result(result.ok)
            return result.ok
        if result.ok:
            reconciler.confirm_optimistic(message.id)
            self._metrics.record_send_result(True)
            return True
        if not reconciler.discard_optimistic(message.id):
            # Already replaced by its server copy
            logger.info("Send of %s not acknowledged (%s) but its server copy arrived", message.id, result.error)
            self._metrics.record_send_result(True)
            return True
        logger.warning("Failed to send message: %s", result.error)
        self._metrics.record_send_result(False)
        self._surface(SendFailedError("Failed to send message"), messages=reconciler.messages)
        return False

    def mark_read(self, message_ids: Iterable[str]) -> List[str]:
        """Flip read locally now, persist in the background. Returns ids that changed."""
        if self._reconciler is None:
            return []
        changed = self._reconciler.mark_read(list(message_ids))
        if not changed:
            return []
        self._publish_messages()
        server_ids = [i for i in changed if not i.startswith(LOCAL_ID_PREFIX)]
        if server_ids:
            self._spawn(self._api.mark_messages_read(server_ids), "persist read receipts")
        return changed

    def mark_all_read(self) -> List[str]:
        """Mark every message read locally and clear the conversation on the server."""
        if self._reconciler is None or self._snapshot.request_id is None:
            return []
        changed = self._reconciler.mark_read([m.id for m in self._reconciler.messages])
        if changed:
            self._publish_messages()
        self._spawn(self._api.clear_conversation(self._snapshot.request_id), "clear conversation")
        return changed

    async def search_messages(self, query: str) -> List[Message]:
        """Server-side search within the current conversation; does not touch the log."""
        request_id = self._snapshot.request_id
        if request_id is None or not query.strip():
            return []
        rows = await self._api.search_messages(request_id, query.strip())
        results = []
        for row in rows:
            try:
                results.append(message_from_payload(row, conversation_id=self._snapshot.conversation_id, request_id=request_id))
            except ValueError as e:
                logger.debug("Search skip invalid message: %s", e)
        return results

    async def start_typing(self) -> bool:
        return await self._send_typing(events.TYPING_START)

    async def stop_typing(self) -> bool:
        return await self._send_typing(events.TYPING_STOP)

    async def _send_typing(self, event: str) -> bool:
        user = self._auth.current_user()
        if self._snapshot.status != SessionStatus.JOINED or user is None:
            return False
        result = await self._manager.emit(
            event,
            {"conversationId": self._snapshot.conversation_id, "userId": user.id},
            ack=False,
        )
        return result.ok

    def clear_error(self) -> None:
        self._publish(error=None)

    def _surface(self, error: ChatError, **changes: Any) -> None:
        self._publish(error=ChatErrorInfo(kind=error.kind, message=str(error)), **changes)

    def _fail(self, generation: int, error: ChatError) -> ChatSnapshot:
        if self._is_stale(generation, "failure"):
            return self._snapshot
        logger.warning("Chat session failed (%s): %s", error.kind.value, error)
        self._surface(error, status=SessionStatus.FAILED, is_loading=False)
        return self._snapshot

    # --- background tasks ---

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, skipping %s", label)
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._background_done(t, label))

    def _background_done(self, task: asyncio.Task, label: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background %s failed: %s", label, exc)

    async def flush_background(self) -> None:
        """Wait for pending leave / read-receipt tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- push handlers ---

    def _register_handlers(self, generation: int) -> None:
        routes: Dict[str, Callable[[int, Dict[str, Any]], None]] = {
            events.NEW_MESSAGE: self._on_new_message,
            events.MESSAGES_READ: self._on_messages_read,
            events.CONVERSATION_JOINED: self._on_conversation_joined,
            events.JOIN_ERROR: self._on_join_error,
            events.USER_TYPING: self._on_user_typing,
            events.USER_JOINED: self._on_user_joined,
            events.USER_LEFT: self._on_user_left,
            events.CHAT_HISTORY: self._on_chat_history,
        }
        for event, route in routes.items():
            handler = self._bind(generation, event, route)
            self._manager.on(event, handler)
            self._handlers.append((event, handler))

    def _bind(self, generation: int, event: str, route: Callable[[int, Dict[str, Any]], None]) -> Callable[..., None]:
        def handler(*args: Any) -> None:
            data = args[0] if args else {}
            if event == events.CHAT_HISTORY and isinstance(data, list):
                data = {"messages": data}
            if self._is_stale(generation, event) or not isinstance(data, dict):
                self._metrics.record_push(event, applied=False)
                return
            route(generation, data)
        return handler

    def _on_new_message(self, generation: int, data: Dict[str, Any]) -> None:
        if self._reconciler is not None and self._reconciler.apply_push(data):
            self._publish_messages()

    def _on_chat_history(self, generation: int, data: Dict[str, Any]) -> None:
        """History sent over the channel after a join; same replace as the REST hydration."""
        if self._reconciler is None:
            return
        rows = [row for row in data.get("messages") or [] if isinstance(row, dict) and self._history_row_is_ours(row)]
        self._reconciler.replace_history(rows)
        self._metrics.record_push(events.CHAT_HISTORY, applied=True)
        logger.info("Received %d history messages for request %s", len(self._reconciler.messages), self._reconciler.request_id)
        self._publish(messages=self._reconciler.messages, is_loading=False)

    def _history_row_is_ours(self, row: Dict[str, Any]) -> bool:
        request_id = row.get("request_id") or row.get("requestId")
        if request_id is not None:
            return str(request_id) == self._reconciler.request_id
        return self._concerns_us(row)

    def _on_messages_read(self, generation: int, data: Dict[str, Any]) -> None:
        if self._reconciler is None:
            return
        ids = [str(i) for i in data.get("messageIds") or []]
        if self._reconciler.mark_read(ids):
            self._metrics.record_push(events.MESSAGES_READ, applied=True)
            self._publish_messages()

    def _names_current_join(self, data: Dict[str, Any]) -> bool:
        """False for join outcomes tagged with another request or a departed conversation."""
        if self._reconciler is None:
            return False
        request_id = data.get("requestId") or data.get("request_id")
        if request_id is not None:
            return str(request_id) == self._reconciler.request_id
        conversation_id = data.get("conversationId") or data.get("conversation_id")
        if conversation_id is None:
            return True
        conversation_id = str(conversation_id)
        if conversation_id in self._reconciler.conversation_ids:
            return True
        if conversation_id.startswith(conversation_id_for("")):
            # Derived hint of some other request
            return False
        return conversation_id not in self._departed_ids

    def _on_conversation_joined(self, generation: int, data: Dict[str, Any]) -> None:
        if not self._names_current_join(data):
            logger.debug("Ignoring conversation-joined for %s", data.get("conversationId") or data.get("requestId"))
            self._metrics.record_push(events.CONVERSATION_JOINED, applied=False)
            return
        signal = self._join_signal
        if signal is not None and not signal.done():
            signal.set_result((_JOINED, _ack_conversation_id(data)))

    def _on_join_error(self, generation: int, data: Dict[str, Any]) -> None:
        reason = data.get("reason") or data.get("error") or data.get("message") or "Failed to join conversation"
        if not self._names_current_join(data):
            logger.debug("Ignoring join-error for %s: %s", data.get("conversationId") or data.get("requestId"), reason)
            self._metrics.record_push(events.JOIN_ERROR, applied=False)
            return
        signal = self._join_signal
        if signal is not None and not signal.done():
            signal.set_result((_REJECTED, str(reason)))
        else:
            logger.warning("join-error outside of a join: %s", reason)

    def _concerns_us(self, data: Dict[str, Any]) -> bool:
        keys = ("conversationId", "conversation_id", "requestId", "request_id")
        if self._reconciler is None:
            return False
        if any(k in data for k in keys):
            return self._reconciler.accepts(data)
        return True

    def _other_user_id(self, data: Dict[str, Any]) -> Optional[str]:
        user_id = data.get("userId") or data.get("user_id")
        if user_id is None:
            return None
        user = self._auth.current_user()
        if user is not None and str(user_id) == user.id:
            return None
        return str(user_id)

    def _on_user_typing(self, generation: int, data: Dict[str, Any]) -> None:
        user_id = self._other_user_id(data)
        if user_id is None or not self._concerns_us(data):
            return
        typing = set(self._snapshot.typing_user_ids)
        if data.get("isTyping", True):
            typing.add(user_id)
        else:
            typing.discard(user_id)
        self._publish(typing_user_ids=frozenset(typing))

    def _on_user_joined(self, generation: int, data: Dict[str, Any]) -> None:
        user_id = self._other_user_id(data)
        if user_id is None or not self._concerns_us(data):
            return
        logger.info("User %s joined conversation %s", user_id, self._snapshot.conversation_id)
        self._publish(present_user_ids=self._snapshot.present_user_ids | {user_id})

    def _on_user_left(self, generation: int, data: Dict[str, Any]) -> None:
        user_id = self._other_user_id(data)
        if user_id is None or not self._concerns_us(data):
            return
        logger.info("User %s left conversation %s", user_id, self._snapshot.conversation_id)
        self._publish(
            present_user_ids=self._snapshot.present_user_ids - {user_id},
            typing_user_ids=self._snapshot.typing_user_ids - {user_id},
        )

    # --- channel status ---

    def _on_channel_status(self, state: ConnectionState, reason: Optional[str]) -> None:
        if reason == REASON_CLIENT:
            # Explicit disconnect / logout resets every session
            if self._snapshot.status != SessionStatus.IDLE:
                logger.info("Channel closed by client, resetting chat session")
            self.teardown()
            self._publish(connected=False)
            return
        self._publish(connected=state == ConnectionState.CONNECTED)

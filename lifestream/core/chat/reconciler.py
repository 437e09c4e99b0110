"""
Message reconciler: one ordered, deduplicated log from three sources.

Sources:
- history rows from REST or a chat-history push (replace the log wholesale)
- live pushes (only for the active conversation; others are dropped)
- our own optimistic sends (local ids, never compared with server ids)

Self-echo strategy: match-and-replace. A push from the local user replaces the
oldest outstanding optimistic entry with the same client id (when the server
echoes one) or with the same sender and text within echo_window seconds. The
server copy takes over the entry's arrival rank but brings its canonical id
and timestamp.

Ordering: timestamp ascending, ties by arrival order.
"""
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from lifestream.core.chat.models import Message, client_message_id_of, message_from_payload
from lifestream.core.config import settings
from lifestream.core.observability.metrics import ChatMetrics, get_metrics

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    message: Message
    seq: int


class MessageReconciler:
    """Per-session message log."""

    def __init__(
        self,
        conversation_id: str,
        request_id: str,
        self_user_id: Optional[str] = None,
        echo_window: Optional[float] = None,
        metrics: Optional[ChatMetrics] = None,
    ) -> None:
        self.request_id = str(request_id)
        self._conversation_ids: Set[str] = {conversation_id}
        self.conversation_id = conversation_id
        self._self_user_id = self_user_id
        self._echo_window = echo_window if echo_window is not None else settings.echo_match_window
        self._metrics = metrics or get_metrics()
        self._seq = itertools.count()
        self._entries: List[_Entry] = []
        self._by_server_id: Dict[str, _Entry] = {}
        self._optimistic: Dict[str, _Entry] = {}
        self._unacked: Set[str] = set()

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(e.message for e in self._entries)

    @property
    def conversation_ids(self) -> FrozenSet[str]:
        """The derived hint plus every server-acknowledged id."""
        return frozenset(self._conversation_ids)

    def adopt_conversation_id(self, conversation_id: str) -> None:
        """Switch to the server-acknowledged id; pushes tagged with the old hint still count."""
        self._conversation_ids.add(conversation_id)
        self.conversation_id = conversation_id

    def accepts(self, data: Dict[str, Any]) -> bool:
        """True if a push belongs to the active conversation."""
        conversation_id = data.get("conversationId") or data.get("conversation_id")
        if conversation_id is not None:
            return str(conversation_id) in self._conversation_ids
        request_id = data.get("requestId") or data.get("request_id")
        if request_id is not None:
            return str(request_id) == self.request_id
        return False

    # --- history ---

    def replace_history(self, rows: Iterable[Dict[str, Any]]) -> None:
        """
        Full replace with server history. Optimistic sends still waiting for their ack
        are carried over unless the history already contains their echo. Messages
        already read locally stay read even if the server has not persisted it yet.
        """
        history: List[_Entry] = []
        by_id: Dict[str, _Entry] = {}
        for row in rows:
            try:
                msg = message_from_payload(row, conversation_id=self.conversation_id, request_id=self.request_id)
            except ValueError as e:
                logger.warning("History skip invalid message: %s", e)
                continue
            previous = self._by_server_id.get(msg.id)
            if previous is not None:
                msg = _merge(msg, previous.message)
            existing = by_id.get(msg.id)
            if existing is not None:
                existing.message = _merge(existing.message, msg)
                continue
            entry = _Entry(msg, next(self._seq))
            by_id[msg.id] = entry
            history.append(entry)

        carried: Dict[str, _Entry] = {}
        for local_id, entry in self._optimistic.items():
            if local_id not in self._unacked:
                continue
            if any(self._is_echo(entry.message, h.message) for h in history):
                self._unacked.discard(local_id)
                continue
            carried[local_id] = entry

        self._entries = history + list(carried.values())
        self._by_server_id = by_id
        self._optimistic = carried
        self._unacked &= set(carried)
        self._sort()

    # --- optimistic sends ---

    def add_optimistic(self, message: Message) -> None:
        entry = _Entry(message, next(self._seq))
        self._optimistic[message.id] = entry
        self._unacked.add(message.id)
        self._entries.append(entry)
        self._sort()

    def confirm_optimistic(self, local_id: str) -> None:
        """Ack arrived: the entry stays as-is until its server copy shows up."""
        self._unacked.discard(local_id)

    def discard_optimistic(self, local_id: str) -> bool:
        """Roll back a failed send. False if the entry was already replaced or gone."""
        self._unacked.discard(local_id)
        entry = self._optimistic.pop(local_id, None)
        if entry is None:
            return False
        self._entries.remove(entry)
        return True

    # --- pushes ---

    def apply_push(self, data: Dict[str, Any]) -> bool:
        """Apply a new-message push. Returns True if the log changed."""
        if not self.accepts(data):
            logger.debug("Discarding push for another conversation: %s", data.get("requestId") or data.get("conversationId"))
            self._metrics.record_push("new-message", applied=False)
            return False
        try:
            msg = message_from_payload(data, conversation_id=self.conversation_id, request_id=self.request_id)
        except ValueError as e:
            logger.warning("Discarding invalid push: %s", e)
            self._metrics.record_push("new-message", applied=False)
            return False
        self._metrics.record_push("new-message", applied=True)

        existing = self._by_server_id.get(msg.id)
        if existing is not None:
            merged = _merge(existing.message, msg)
            if merged == existing.message:
                return False
            existing.message = merged
            return True

        echo = self._match_echo(msg, client_message_id_of(data))
        if echo is not None:
            local_id = echo.message.id
            self._optimistic.pop(local_id, None)
            self._unacked.discard(local_id)
            echo.message = msg.model_copy(update={"read": msg.read or echo.message.read})
            self._by_server_id[msg.id] = echo
            self._metrics.record_echo_matched()
            logger.debug("Replaced optimistic %s with server message %s", local_id, msg.id)
        else:
            entry = _Entry(msg, next(self._seq))
            self._by_server_id[msg.id] = entry
            self._entries.append(entry)
        self._sort()
        return True

    def _match_echo(self, msg: Message, client_id: Optional[str]) -> Optional[_Entry]:
        if client_id and client_id in self._optimistic:
            return self._optimistic[client_id]
        if self._self_user_id is None or msg.sender_id != self._self_user_id:
            return None
        candidates = [e for e in self._optimistic.values() if self._is_echo(e.message, msg)]
        if not candidates:
            return None
        return min(candidates, key=lambda e: e.seq)

    def _is_echo(self, local: Message, server: Message) -> bool:
        return (
            local.sender_id == server.sender_id
            and local.text == server.text
            and abs((local.timestamp - server.timestamp).total_seconds()) <= self._echo_window
        )

    # --- read receipts ---

    def mark_read(self, message_ids: Iterable[str]) -> List[str]:
        """Flip read for matching entries. Returns the ids that actually changed."""
        changed: List[str] = []
        for message_id in message_ids:
            entry = self._by_server_id.get(message_id) or self._optimistic.get(message_id)
            if entry is None or entry.message.read:
                continue
            entry.message = entry.message.model_copy(update={"read": True})
            changed.append(message_id)
        return changed

    def clear(self) -> None:
        self._entries = []
        self._by_server_id = {}
        self._optimistic = {}
        self._unacked = set()

    def _sort(self) -> None:
        self._entries.sort(key=lambda e: (e.message.timestamp, e.seq))


def _merge(current: Message, incoming: Message) -> Message:
    """Same server id seen twice: keep the entry, never un-read it."""
    if current.read or not incoming.read:
        return current
    return current.model_copy(update={"read": True})

"""
Chat message and session snapshot models.

Contract:
- Message is immutable; updates go through model_copy(update=...)
- local=True: id is a client temporary id (prefix "local-"), pending server confirmation
- local=False: id is server-assigned; only these ids take part in dedup
- timestamp is always timezone-aware UTC
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel

from lifestream.core.errors import ErrorKind

LOCAL_ID_PREFIX = "local-"


def conversation_id_for(request_id: str) -> str:
    """Client-side conversation id hint; the server's join ack is authoritative."""
    return f"request_{request_id}"


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """ISO 8601 in UTC with millisecond precision and a Z suffix (wire format)."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Message(BaseModel):
    """Single chat message."""
    id: str
    text: str
    sender_id: str
    sender_role: str  # "donor" | "requester"
    sender_name: Optional[str] = None
    sender_blood_type: Optional[str] = None
    timestamp: datetime
    conversation_id: Optional[str] = None
    request_id: Optional[str] = None
    read: bool = False
    local: bool = False
    model_config = {"frozen": True}


class SessionStatus(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    FAILED = "failed"
    LEAVING = "leaving"


@dataclass(frozen=True)
class ChatErrorInfo:
    """User-facing error surfaced on a snapshot."""
    kind: ErrorKind
    message: str


@dataclass(frozen=True)
class ChatSnapshot:
    """Immutable view of a conversation session handed to observers."""
    status: SessionStatus = SessionStatus.IDLE
    request_id: Optional[str] = None
    conversation_id: Optional[str] = None
    messages: Tuple[Message, ...] = ()
    connected: bool = False
    is_loading: bool = False
    error: Optional[ChatErrorInfo] = None
    typing_user_ids: FrozenSet[str] = field(default_factory=frozenset)
    present_user_ids: FrozenSet[str] = field(default_factory=frozenset)


# --- payload normalization ---

def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO 8601 (Z, offset or naive-as-UTC), epoch milliseconds, or datetime to aware UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.isdigit():
            return datetime.fromtimestamp(int(raw) / 1000.0, tz=timezone.utc)
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}")
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def message_from_payload(
    data: Dict[str, Any],
    *,
    conversation_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Message:
    """
    Normalize a server message (push or history row), accepting snake_case and camelCase keys.

    Raises:
        ValueError if the payload has no id or an unparseable timestamp
    """
    message_id = _as_str(_first(data, "id", "messageId", "_id"))
    if not message_id:
        raise ValueError("Message payload without id")
    raw_ts = _first(data, "timestamp", "created_at", "createdAt")
    return Message(
        id=message_id,
        text=str(_first(data, "text", "message") or ""),
        sender_id=_as_str(_first(data, "sender_id", "senderId")) or "",
        sender_role=str(_first(data, "sender_type", "senderType", "sender_role", "senderRole") or ""),
        sender_name=_as_str(_first(data, "sender_name", "senderName")),
        sender_blood_type=_as_str(_first(data, "sender_blood_type", "senderBloodType")),
        timestamp=parse_timestamp(raw_ts) if raw_ts is not None else utcnow(),
        conversation_id=_as_str(_first(data, "conversation_id", "conversationId")) or conversation_id,
        request_id=_as_str(_first(data, "request_id", "requestId")) or request_id,
        read=bool(_first(data, "read_status", "readStatus", "read")),
        local=False,
    )


def client_message_id_of(data: Dict[str, Any]) -> Optional[str]:
    """Client temp id echoed back by the server, if it echoes one."""
    return _as_str(_first(data, "clientMessageId", "client_message_id"))

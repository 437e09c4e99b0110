"""
Conversation layer: session controller, message reconciler, message models.
"""
from lifestream.core.chat.models import (
    ChatErrorInfo,
    ChatSnapshot,
    Message,
    SessionStatus,
    conversation_id_for,
    message_from_payload,
)
from lifestream.core.chat.reconciler import MessageReconciler
from lifestream.core.chat.session import ConversationSession

__all__ = [
    "ChatErrorInfo",
    "ChatSnapshot",
    "Message",
    "SessionStatus",
    "conversation_id_for",
    "message_from_payload",
    "MessageReconciler",
    "ConversationSession",
]

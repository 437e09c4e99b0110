"""
Error kinds for the chat client.

Connection-level errors are raised by ConnectionManager.connect(); everything the
conversation session hits is caught and surfaced on its snapshot instead.
"""
from enum import Enum


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_FAILED = "connection_failed"
    JOIN_REJECTED = "join_rejected"
    ACCESS_DENIED = "access_denied"
    HISTORY_FAILED = "history_failed"
    SEND_FAILED = "send_failed"


class ChatError(Exception):
    """Base class for chat client errors."""
    kind: ErrorKind = ErrorKind.CONNECTION_FAILED


class NotAuthenticatedError(ChatError):
    """Raised when no bearer token (or user) is available."""
    kind = ErrorKind.NOT_AUTHENTICATED


class ConnectionTimeoutError(ChatError):
    """Raised when the channel does not connect within the bounded wait."""
    kind = ErrorKind.CONNECTION_TIMEOUT


class ChannelConnectError(ChatError):
    """Raised when the transport refuses or drops the connection attempt."""
    kind = ErrorKind.CONNECTION_FAILED


class JoinRejectedError(ChatError):
    """Raised when the server denies a conversation join."""
    kind = ErrorKind.JOIN_REJECTED


class HistoryAccessDeniedError(ChatError):
    """Raised on 403 from the history endpoint."""
    kind = ErrorKind.ACCESS_DENIED


class HistoryFetchError(ChatError):
    """Raised on any other history endpoint failure."""
    kind = ErrorKind.HISTORY_FAILED


class SendFailedError(ChatError):
    """Raised when a send is not acknowledged."""
    kind = ErrorKind.SEND_FAILED

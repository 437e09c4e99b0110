"""
Auth collaborator contract.

Token issuance lives elsewhere; the chat client only needs the current bearer
token, the current user, and a way to force logout (e.g. on HTTP 401).
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatUser:
    """Signed-in user as seen by the chat client."""
    id: str
    role: str  # "donor" | "requester"
    name: Optional[str] = None


class AuthProvider(ABC):
    """Synchronous view of the current auth state."""

    @abstractmethod
    def get_token(self) -> Optional[str]:
        """Return the current bearer token, or None when signed out."""
        pass

    @abstractmethod
    def current_user(self) -> Optional[ChatUser]:
        """Return the signed-in user, or None."""
        pass

    @abstractmethod
    def logout(self) -> None:
        """Drop credentials (called when the backend answers 401)."""
        pass


class TokenStore(AuthProvider):
    """In-memory AuthProvider holding a token and user; notifies on logout."""

    def __init__(self, token: Optional[str] = None, user: Optional[ChatUser] = None) -> None:
        self._token = token
        self._user = user
        self._logout_callbacks: List[Callable[[], None]] = []

    def get_token(self) -> Optional[str]:
        return self._token

    def current_user(self) -> Optional[ChatUser]:
        return self._user

    def sign_in(self, token: str, user: ChatUser) -> None:
        self._token = token
        self._user = user

    def on_logout(self, callback: Callable[[], None]) -> None:
        self._logout_callbacks.append(callback)

    def logout(self) -> None:
        if self._token is None and self._user is None:
            return
        logger.info("Logging out user_id=%s", self._user.id if self._user else None)
        self._token = None
        self._user = None
        for callback in list(self._logout_callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning("Logout callback failed: %s", e)

"""REST collaborators used by the chat client."""
from lifestream.core.services.chat_api import ChatAPI

__all__ = ["ChatAPI"]

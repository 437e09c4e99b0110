"""
Configuration management for the LifeStream chat client.

Handles environment-based configuration for development and production.
"""
import os
from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Client settings loaded from environment variables (LIFESTREAM_ prefix)."""

    # Environment
    environment: str = os.getenv("LIFESTREAM_ENVIRONMENT", "development")

    # Debug - handle non-boolean values gracefully
    debug: bool = False

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        """Parse debug from environment, handling non-boolean values."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes")
        debug_env = os.getenv("LIFESTREAM_DEBUG", "false").lower()
        return debug_env in ("true", "1", "yes")

    # REST API (the backend mounts everything under /api)
    api_base_url: str = os.getenv("LIFESTREAM_API_BASE_URL", "http://localhost:5000/api")
    chat_prefix: str = os.getenv("LIFESTREAM_CHAT_PREFIX", "/chat")
    http_timeout: float = float(os.getenv("LIFESTREAM_HTTP_TIMEOUT", "15"))

    # Realtime channel; socket_url defaults to api_base_url without the /api suffix
    socket_url: Optional[str] = os.getenv("LIFESTREAM_SOCKET_URL", None)
    socket_transports: str = os.getenv("LIFESTREAM_SOCKET_TRANSPORTS", "websocket,polling")

    # Bounded waits (seconds)
    connect_timeout: float = float(os.getenv("LIFESTREAM_CONNECT_TIMEOUT", "10"))
    join_ack_timeout: float = float(os.getenv("LIFESTREAM_JOIN_ACK_TIMEOUT", "10"))
    send_ack_timeout: float = float(os.getenv("LIFESTREAM_SEND_ACK_TIMEOUT", "8"))

    # Reconnect backoff after consecutive connect failures (seconds)
    reconnect_backoff_base: float = float(os.getenv("LIFESTREAM_RECONNECT_BACKOFF_BASE", "1.0"))
    reconnect_backoff_max: float = float(os.getenv("LIFESTREAM_RECONNECT_BACKOFF_MAX", "30.0"))

    # Max distance between an optimistic send and its server echo (seconds)
    echo_match_window: float = float(os.getenv("LIFESTREAM_ECHO_MATCH_WINDOW", "30"))

    class Config:
        # Load .env from project root (lifestream/core/config.py -> parent.parent.parent)
        env_file = str(Path(__file__).resolve().parent.parent.parent / ".env")
        env_prefix = "LIFESTREAM_"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


def get_socket_url() -> str:
    """Get the realtime channel URL."""
    if settings.socket_url:
        return settings.socket_url
    base = settings.api_base_url.rstrip("/")
    if base.endswith("/api"):
        base = base[: -len("/api")]
    return base


def get_socket_transports() -> List[str]:
    """Parse LIFESTREAM_SOCKET_TRANSPORTS (comma-separated)."""
    return [t.strip() for t in settings.socket_transports.split(",") if t.strip()]

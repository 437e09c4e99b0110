"""
Simple in-memory metrics for the chat client: connect attempts, sends, pushes.
"""
import logging
from typing import Dict, Optional

logger = logging.getLogger("lifestream.chat.metrics")


class ChatMetrics:
    """In-memory counters for channel connects, sends and pushes."""

    def __init__(self) -> None:
        self._connect_attempts = 0
        self._connect_success = 0
        self._connect_failed = 0
        self._messages_sent = 0
        self._messages_failed = 0
        self._pushes: Dict[str, int] = {}
        self._pushes_discarded: Dict[str, int] = {}
        self._echoes_matched = 0

    def record_connect_attempt(self) -> None:
        self._connect_attempts += 1

    def record_connect_result(self, success: bool) -> None:
        if success:
            self._connect_success += 1
        else:
            self._connect_failed += 1

    def record_send_result(self, success: bool) -> None:
        if success:
            self._messages_sent += 1
        else:
            self._messages_failed += 1

    def record_push(self, event: str, applied: bool) -> None:
        target = self._pushes if applied else self._pushes_discarded
        target[event] = target.get(event, 0) + 1

    def record_echo_matched(self) -> None:
        self._echoes_matched += 1

    def get_connect_stats(self) -> Dict[str, int]:
        return {
            "attempts": self._connect_attempts,
            "success": self._connect_success,
            "failed": self._connect_failed,
        }

    def get_message_stats(self) -> Dict[str, int]:
        return {
            "sent": self._messages_sent,
            "failed": self._messages_failed,
            "echoes_matched": self._echoes_matched,
        }

    def get_push_stats(self) -> Dict[str, Dict[str, int]]:
        return {
            "applied": dict(self._pushes),
            "discarded": dict(self._pushes_discarded),
        }

    def get_send_success_rate(self) -> Optional[float]:
        total = self._messages_sent + self._messages_failed
        if total == 0:
            return None
        return self._messages_sent / total


_metrics = ChatMetrics()


def get_metrics() -> ChatMetrics:
    return _metrics

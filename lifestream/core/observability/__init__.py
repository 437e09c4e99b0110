"""Observability: in-memory metrics for the chat client."""
from lifestream.core.observability.metrics import ChatMetrics, get_metrics

__all__ = [
    "ChatMetrics",
    "get_metrics",
]

"""
Realtime channel: one shared connection per process, handed to conversation sessions.

The manager coalesces concurrent connects, bounds them with a timeout and backs
off after repeated failures.
"""

from lifestream.core.realtime.manager import ConnectionManager, ConnectionState, EmitResult
from lifestream.core.realtime.transport import SocketIOTransport, Transport

__all__ = ["ConnectionManager", "ConnectionState", "EmitResult", "SocketIOTransport", "Transport"]

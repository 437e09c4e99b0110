"""LifeStream real-time chat synchronization client."""

__version__ = "0.1.0"

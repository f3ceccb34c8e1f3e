"""Realtime room and private message routing over Socket.IO."""

__version__ = "0.1.0"

"""Realtime delivery of notifications to connected clients."""

from .broadcaster import RealtimeBroadcaster, SocketMessage, room_for
from .connection import Connection, ConnectionState, Transport
from .rate_limit import FixedWindowRateLimiter
from .serialization import error_event, serialize_notification

__all__ = [
    "Connection",
    "ConnectionState",
    "FixedWindowRateLimiter",
    "RealtimeBroadcaster",
    "SocketMessage",
    "Transport",
    "error_event",
    "room_for",
    "serialize_notification",
]

"""Shared broker adapters enabling multi-instance fan-out."""

from .base import MessageHandler, SharedBroker, Subscription
from .memory import InMemoryBroker
from .redis_broker import RedisBroker

__all__ = [
    "InMemoryBroker",
    "MessageHandler",
    "RedisBroker",
    "SharedBroker",
    "Subscription",
]

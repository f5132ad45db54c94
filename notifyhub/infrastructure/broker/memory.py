"""In-process broker shared by broadcaster instances living in one process."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, DefaultDict

import anyio

from notifyhub.domain.errors import BrokerUnavailableError

from .base import MessageHandler, SharedBroker, Subscription

logger = logging.getLogger(__name__)


class InMemoryBroker(SharedBroker):
    def __init__(self) -> None:
        self._subscriptions: DefaultDict[str, list[Subscription]] = defaultdict(list)
        self._connected = True
        self._closed: anyio.Event | None = None
        self._closing = False
        self.published: list[tuple[str, dict[str, Any]]] = []

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        """Simulate a transport outage."""

        self._connected = connected

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        if not self._connected:
            raise BrokerUnavailableError(f"Broker disconnected; cannot publish to {channel}")
        self.published.append((channel, message))
        for subscription in list(self._subscriptions.get(channel, ())):
            try:
                await subscription.handler(message)
            except Exception:
                logger.exception("Subscriber on %s failed to handle a message", channel)

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        subscription = Subscription(self, channel, handler)
        self._subscriptions[channel].append(subscription)
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.channel)
        if not subscriptions:
            return
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, ()))

    async def run(self) -> None:
        if self._closing:
            return
        self._closed = anyio.Event()
        await self._closed.wait()

    async def close(self) -> None:
        self._closing = True
        if self._closed is not None:
            self._closed.set()


__all__ = ["InMemoryBroker"]

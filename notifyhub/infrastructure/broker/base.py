"""Cross-instance publish/subscribe fabric."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class Subscription:
    """Handle returned by :meth:`SharedBroker.subscribe`."""

    def __init__(self, broker: "SharedBroker", channel: str, handler: MessageHandler) -> None:
        self.broker = broker
        self.channel = channel
        self.handler = handler
        self.active = True

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.broker._remove(self)


class SharedBroker(ABC):
    @abstractmethod
    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        """Publish ``message`` or raise ``BrokerUnavailableError``."""

    @abstractmethod
    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        ...

    @abstractmethod
    async def _remove(self, subscription: Subscription) -> None:
        ...

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    async def run(self) -> None:
        """Deliver incoming messages until :meth:`close` is called."""

    async def close(self) -> None:
        return None


__all__ = ["MessageHandler", "SharedBroker", "Subscription"]

"""Redis pub/sub implementation of :class:`SharedBroker`."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Any, DefaultDict

import anyio
import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from notifyhub.domain.errors import BrokerUnavailableError

from .base import MessageHandler, SharedBroker, Subscription

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


class RedisBroker(SharedBroker):
    """Fan messages out through Redis channels.

    The listener reconnects with exponential backoff after transport failures
    and re-subscribes every channel that still has handlers. While
    disconnected, :meth:`publish` raises :class:`BrokerUnavailableError` so
    callers can log the degraded fan-out and carry on.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        channel_prefix: str = "notifyhub:",
        reconnect_base_delay_ms: int = 500,
        reconnect_max_delay_ms: int = 30_000,
        poll_timeout: float = 1.0,
    ) -> None:
        self._redis = client
        self._prefix = channel_prefix
        self._base_delay = reconnect_base_delay_ms / 1000
        self._max_delay = reconnect_max_delay_ms / 1000
        self._poll_timeout = poll_timeout
        self._handlers: DefaultDict[str, list[Subscription]] = defaultdict(list)
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._connected = True
        self._closing = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBroker":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, **kwargs)

    @property
    def connected(self) -> bool:
        return self._connected

    def _channel(self, channel: str) -> str:
        return f"{self._prefix}{channel}"

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        try:
            await self._redis.publish(self._channel(channel), json.dumps(message))
        except _TRANSPORT_ERRORS as exc:
            self._connected = False
            raise BrokerUnavailableError(f"Cannot publish to {channel}: {exc}") from exc

    async def subscribe(self, channel: str, handler: MessageHandler) -> Subscription:
        subscription = Subscription(self, channel, handler)
        first = not self._handlers.get(channel)
        self._handlers[channel].append(subscription)
        if first and self._connected:
            try:
                await self._pubsub.subscribe(self._channel(channel))
            except _TRANSPORT_ERRORS as exc:
                # The listener re-subscribes once the connection is back.
                self._connected = False
                logger.warning("Subscribing to %s deferred, broker unreachable: %s", channel, exc)
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.channel)
        if not handlers:
            return
        if subscription in handlers:
            handlers.remove(subscription)
        if handlers:
            return
        self._handlers.pop(subscription.channel, None)
        if self._connected:
            try:
                await self._pubsub.unsubscribe(self._channel(subscription.channel))
            except _TRANSPORT_ERRORS as exc:
                logger.warning("Unsubscribing from %s failed: %s", subscription.channel, exc)

    async def run(self) -> None:
        attempt = 0
        while not self._closing:
            if not self._connected:
                attempt += 1
                delay = min(self._max_delay, self._base_delay * 2 ** (attempt - 1))
                await anyio.sleep(delay)
                if await self._reconnect():
                    attempt = 0
                continue
            if not self._handlers:
                await anyio.sleep(self._poll_timeout)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except _TRANSPORT_ERRORS as exc:
                self._connected = False
                logger.warning("Broker connection lost, cross-instance fan-out degraded: %s", exc)
                continue
            if message is not None:
                await self._deliver(message)

    async def _reconnect(self) -> bool:
        try:
            await self._pubsub.aclose()
        except _TRANSPORT_ERRORS:
            logger.debug("Discarding broken pub/sub connection")
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        channels = [self._channel(channel) for channel in self._handlers]
        try:
            await self._redis.ping()
            if channels:
                await self._pubsub.subscribe(*channels)
        except _TRANSPORT_ERRORS as exc:
            logger.warning("Broker reconnect failed: %s", exc)
            return False
        self._connected = True
        logger.info("Broker reconnected, %s channel(s) restored", len(channels))
        return True

    async def _deliver(self, message: dict[str, Any]) -> None:
        if message.get("type") != "message":
            return
        channel = str(message.get("channel", ""))
        if channel.startswith(self._prefix):
            channel = channel[len(self._prefix):]
        try:
            data = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed broker message on %s", channel)
            return
        for subscription in list(self._handlers.get(channel, ())):
            try:
                await subscription.handler(data)
            except Exception:
                logger.exception("Subscriber on %s failed to handle a message", channel)

    async def close(self) -> None:
        self._closing = True
        try:
            await self._pubsub.aclose()
            await self._redis.aclose()
        except _TRANSPORT_ERRORS as exc:
            logger.debug("Ignoring error while closing broker: %s", exc)


__all__ = ["RedisBroker"]

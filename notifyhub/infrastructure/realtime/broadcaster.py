"""Tenant scoped fan-out of socket events to live connections."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

import anyio
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from notifyhub.domain.entities import (
    Notification,
    Principal,
    SocketEvent,
    SocketEventType,
    event_type_for,
    room_for,
)
from notifyhub.domain.errors import BrokerUnavailableError, RateLimitExceeded, UnauthorizedConnection
from notifyhub.domain.policies import PriorityPolicy
from notifyhub.infrastructure.broker import SharedBroker, Subscription
from notifyhub.infrastructure.security import IdentityVerifier

from .connection import Connection, ConnectionState, Transport
from .rate_limit import FixedWindowRateLimiter
from .serialization import error_event, serialize_notification

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

AckHandler = Callable[[Principal, list[str]], Awaitable[int]]
SnapshotProvider = Callable[[Principal], Awaitable[list[dict[str, Any]]]]


class SocketMessage(BaseModel):
    """Typed event emitted by a client for its own room."""

    model_config = ConfigDict(populate_by_name=True)

    type: SocketEventType
    room_id: str = Field(..., alias="roomId", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    version: str = Field(default="1.0", min_length=1, max_length=10)


class AckMessage(BaseModel):
    type: str
    ids: list[str] = Field(..., min_length=1)


class RealtimeBroadcaster:
    """Own the room table and rate limits of one service instance.

    Rooms are created on first join and destroyed when their last connection
    leaves. Each room holds a broker subscription so events published by
    sibling instances reach local members; messages carrying this instance's
    own origin id are skipped since they were delivered locally already.
    """

    def __init__(
        self,
        broker: SharedBroker,
        identity: IdentityVerifier,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        priority_policy: PriorityPolicy | None = None,
        instance_id: str | None = None,
        send_timeout: float = 5.0,
        on_ack: AckHandler | None = None,
        snapshot: SnapshotProvider | None = None,
    ) -> None:
        self.broker = broker
        self.identity = identity
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter()
        self.priority_policy = priority_policy or PriorityPolicy()
        self.instance_id = instance_id or uuid4().hex
        self.send_timeout = send_timeout
        self.on_ack = on_ack
        self.snapshot = snapshot
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._subscriptions: dict[str, Subscription] = {}

    @property
    def rooms(self) -> dict[str, frozenset[str]]:
        return {room_id: frozenset(members) for room_id, members in self._rooms.items()}

    def members(self, room_id: str) -> frozenset[str]:
        return frozenset(self._rooms.get(room_id, ()))

    def connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    async def connect(self, transport: Transport, assertion: str | None) -> Connection:
        """Authenticate ``transport`` and join it to its organization room.

        Raises :class:`UnauthorizedConnection` after closing the transport when
        the assertion is missing, expired or malformed.
        """

        connection = Connection(transport=transport)
        try:
            principal = self.identity.verify(assertion)
        except UnauthorizedConnection as exc:
            connection.advance(ConnectionState.DISCONNECTED)
            logger.warning("Rejected connection %s: %s", connection.id, exc)
            await self._close(connection, POLICY_VIOLATION, str(exc))
            raise

        connection.principal = principal
        connection.advance(ConnectionState.AUTHENTICATED)
        self._connections[connection.id] = connection
        await self._join(connection, principal.room_id)
        connection.advance(ConnectionState.ACTIVE)
        logger.info(
            "Connection %s of user %s joined %s", connection.id, principal.user_id, connection.room_id
        )

        if self.snapshot is not None:
            try:
                unread = await self.snapshot(principal)
            except Exception:
                logger.warning(
                    "Snapshot for connection %s failed; leaving %s", connection.id, connection.room_id
                )
                await self.disconnect(connection)
                raise
            await self._send(connection, {"type": "init", "data": unread})
        return connection

    async def disconnect(self, connection: Connection) -> None:
        if connection.state is ConnectionState.DISCONNECTED:
            return
        connection.advance(ConnectionState.DISCONNECTED)
        self._connections.pop(connection.id, None)
        self.rate_limiter.discard(connection.id)
        room_id = connection.room_id
        if room_id is None:
            return
        members = self._rooms.get(room_id)
        if members is None:
            return
        members.discard(connection.id)
        if members:
            return
        del self._rooms[room_id]
        subscription = self._subscriptions.pop(room_id, None)
        if subscription is not None:
            await subscription.unsubscribe()
        logger.debug("Room %s destroyed", room_id)

    async def handle_client_event(self, connection: Connection, message: Any) -> None:
        """Process one client frame after applying the connection's rate limit."""

        if not connection.is_active:
            raise UnauthorizedConnection(f"Connection {connection.id} is not active")

        try:
            self.rate_limiter.check(connection.id)
        except RateLimitExceeded as exc:
            logger.info("Connection %s exceeded its event quota", connection.id)
            await self._send(connection, error_event("RATE_LIMIT_EXCEEDED", str(exc)))
            return

        if not isinstance(message, dict):
            await self._send(connection, error_event("INVALID_EVENT", "Events must be JSON objects"))
            return

        kind = message.get("type")
        if kind == "ping":
            await self._send(connection, {"type": "pong"})
        elif kind == "ack":
            await self._handle_ack(connection, message)
        else:
            await self._handle_typed_event(connection, message)

    async def broadcast(
        self,
        room_id: str,
        event: SocketEvent,
        *,
        principal: Principal | None = None,
    ) -> int:
        """Deliver ``event`` to local members of ``room_id`` and to sibling instances.

        When ``principal`` is given the room must be the one derived from its
        organization. Returns the number of local connections reached.
        """

        if principal is not None and room_id != principal.room_id:
            raise UnauthorizedConnection(f"Room {room_id} is outside the caller's organization")

        message = event.to_message()
        delivered = await self._deliver_local(room_id, message)
        try:
            await self.broker.publish(
                room_id, {"origin": self.instance_id, "room": room_id, "event": message}
            )
        except BrokerUnavailableError as exc:
            logger.warning("Cross-instance fan-out degraded for %s: %s", room_id, exc)
        return delivered

    async def broadcast_notification(self, notification: Notification) -> int:
        payload = serialize_notification(notification)
        payload["urgency"] = self.priority_policy.urgency(notification.priority)
        event = SocketEvent(type=event_type_for(notification.type), payload=payload)
        return await self.broadcast(room_for(notification.organization_id), event)

    async def close(self) -> None:
        for connection in list(self._connections.values()):
            await self._close(connection, 1001, "Server shutting down")
            await self.disconnect(connection)

    async def _join(self, connection: Connection, room_id: str) -> None:
        connection.room_id = room_id
        created = room_id not in self._rooms
        self._rooms.setdefault(room_id, set()).add(connection.id)
        if not created:
            return
        subscription = await self.broker.subscribe(room_id, self._on_broker_message)
        if room_id in self._rooms and room_id not in self._subscriptions:
            self._subscriptions[room_id] = subscription
        else:
            await subscription.unsubscribe()

    async def _on_broker_message(self, data: dict[str, Any]) -> None:
        if data.get("origin") == self.instance_id:
            return
        room_id = data.get("room")
        message = data.get("event")
        if not isinstance(room_id, str) or not isinstance(message, dict):
            logger.warning("Ignoring malformed broker envelope")
            return
        await self._deliver_local(room_id, message)

    async def _deliver_local(self, room_id: str, message: dict[str, Any]) -> int:
        targets = [
            self._connections[connection_id]
            for connection_id in self._rooms.get(room_id, ())
            if connection_id in self._connections and self._connections[connection_id].is_active
        ]
        if not targets:
            return 0

        failed: list[Connection] = []

        async def send(connection: Connection) -> None:
            if not await self._send(connection, message):
                failed.append(connection)

        async with anyio.create_task_group() as tg:
            for connection in targets:
                tg.start_soon(send, connection)

        for connection in failed:
            await self.disconnect(connection)
        return len(targets) - len(failed)

    async def _send(self, connection: Connection, message: dict[str, Any]) -> bool:
        with anyio.move_on_after(self.send_timeout) as scope:
            try:
                await connection.transport.send_json(message)
            except Exception as exc:
                logger.warning("Sending to connection %s failed: %s", connection.id, exc)
                return False
        if scope.cancelled_caught:
            logger.warning("Sending to connection %s timed out", connection.id)
            return False
        return True

    async def _close(self, connection: Connection, code: int, reason: str) -> None:
        try:
            await connection.transport.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("Closing connection %s failed: %s", connection.id, exc)

    async def _handle_ack(self, connection: Connection, message: dict[str, Any]) -> None:
        try:
            ack = AckMessage.model_validate(message)
        except PydanticValidationError:
            await self._send(connection, error_event("INVALID_EVENT", "ack requires a list of ids"))
            return
        updated = 0
        if self.on_ack is not None and connection.principal is not None:
            updated = await self.on_ack(connection.principal, _clean_ids(ack.ids))
        await self._send(connection, {"type": "ack", "data": {"updated": updated}})

    async def _handle_typed_event(self, connection: Connection, message: dict[str, Any]) -> None:
        try:
            event = SocketMessage.model_validate(message)
        except PydanticValidationError:
            await self._send(connection, error_event("INVALID_EVENT", "Unsupported or malformed event"))
            return

        if event.room_id != connection.room_id:
            logger.warning(
                "Connection %s attempted to address foreign room %s", connection.id, event.room_id
            )
            await self._close(connection, POLICY_VIOLATION, "Unauthorized room access")
            await self.disconnect(connection)
            raise UnauthorizedConnection(f"Room {event.room_id} is outside the caller's organization")

        payload = {key: value for key, value in event.payload.items() if value is not None}
        await self.broadcast(
            event.room_id,
            SocketEvent(type=event.type, payload=payload, version=event.version),
            principal=connection.principal,
        )


def _clean_ids(ids: Iterable[str]) -> list[str]:
    unique: list[str] = []
    for value in ids:
        value = str(value).strip()
        if value and value not in unique:
            unique.append(value)
    return unique


__all__ = [
    "AckHandler",
    "RealtimeBroadcaster",
    "SnapshotProvider",
    "SocketMessage",
    "room_for",
]

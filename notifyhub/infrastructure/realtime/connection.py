"""Live client connection and its lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

from notifyhub.domain.entities import Principal


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    AUTHENTICATED = "AUTHENTICATED"
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


_ALLOWED = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED},
    ConnectionState.AUTHENTICATED: {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED},
    ConnectionState.ACTIVE: {ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}


class Transport(Protocol):
    """The subset of :class:`fastapi.WebSocket` the broadcaster relies on."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass(eq=False)
class Connection:
    transport: Transport
    id: str = field(default_factory=lambda: uuid4().hex)
    state: ConnectionState = ConnectionState.CONNECTING
    principal: Principal | None = None
    room_id: str | None = None

    def advance(self, target: ConnectionState) -> None:
        if target not in _ALLOWED[self.state]:
            raise ValueError(
                f"Connection {self.id} cannot move from {self.state.value} to {target.value}"
            )
        self.state = target

    @property
    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE


__all__ = ["Connection", "ConnectionState", "Transport"]

"""Authenticated caller identity supplied by the identity provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


def room_for(organization_id: str) -> str:
    """Name of the realtime room shared by one organization."""

    return f"org_{organization_id}"


@dataclass(frozen=True)
class Principal:
    user_id: str
    organization_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    expires_at: datetime | None = None

    @property
    def room_id(self) -> str:
        return room_for(self.organization_id)

    def has_any_role(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


__all__ = ["Principal", "room_for"]

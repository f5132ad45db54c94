"""Shared fixtures for the notification pipeline tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from jose import jwt

from notifyhub.config import Settings
from notifyhub.container import build_container
from notifyhub.infrastructure.cache import MemoryNotificationCache
from notifyhub.infrastructure.database import (
    build_engine,
    build_session_factory,
    initialize_database,
)
from notifyhub.infrastructure.repositories import NotificationStore

TEST_SECRET = "test-secret"


class FakeTransport:
    """Websocket stand-in recording every frame sent by the broadcaster."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str | None] | None = None
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == kind]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Single instance settings with instant priority delays and short retries."""

    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'notifyhub.db'}",
        redis_url=None,
        identity_secret_key=TEST_SECRET,
        worker_enabled=False,
        priority_delay_scale=0,
        retry_base_delay_ms=1,
        retry_max_delay_ms=20,
        retry_jitter_ratio=0,
        queue_poll_interval_ms=5,
        queue_lock_duration_ms=2000,
        queue_lock_renew_ms=500,
    )


@pytest.fixture
def session_factory(settings: Settings):
    engine = build_engine(settings.database_url)
    initialize_database(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> NotificationStore:
    return NotificationStore(session_factory, MemoryNotificationCache())


@pytest.fixture
def container(settings: Settings):
    services = build_container(settings, instance_id="instance-a")
    yield services
    services.engine.dispose()


@pytest.fixture
def make_token():
    """Return a helper minting identity assertions signed with the test key."""

    def _make_token(
        user_id: str = "u1",
        organization_id: str = "org1",
        roles: tuple[str, ...] = ("admin",),
        *,
        expires_in: timedelta = timedelta(minutes=5),
        **claims: Any,
    ) -> str:
        payload: dict[str, Any] = {
            "sub": user_id,
            "organizationId": organization_id,
            "roles": list(roles),
            "exp": datetime.now(tz=timezone.utc) + expires_in,
        }
        payload.update(claims)
        return jwt.encode(payload, TEST_SECRET, algorithm="HS256")

    return _make_token


@pytest.fixture
def make_payload():
    """Return a helper building a valid camelCase dispatch payload."""

    def _make_payload(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "organizationId": "org1",
            "userId": "u1",
            "type": "SUBSCRIPTION_RENEWAL",
            "priority": "HIGH",
            "title": "Renewal due",
            "message": "Your subscription renews in 3 days.",
            "metadata": {"subscriptionId": "sub_1"},
        }
        payload.update(overrides)
        return {key: value for key, value in payload.items() if value is not None}

    return _make_payload


@pytest.fixture
def transport_factory():
    return FakeTransport

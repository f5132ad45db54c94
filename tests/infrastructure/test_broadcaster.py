"""Tests for tenant scoped realtime fan-out."""

from datetime import datetime, timezone

import pytest

from notifyhub.domain.entities import (
    Notification,
    NotificationPriority,
    NotificationType,
    Principal,
    SocketEvent,
    SocketEventType,
)
from notifyhub.domain.errors import TransientStoreError, UnauthorizedConnection
from notifyhub.infrastructure.broker import InMemoryBroker
from notifyhub.infrastructure.realtime import (
    ConnectionState,
    FixedWindowRateLimiter,
    RealtimeBroadcaster,
    room_for,
)
from notifyhub.infrastructure.security import IdentityVerifier

pytestmark = pytest.mark.anyio


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def make_broadcaster(broker, settings):
    def _make(instance_id="instance-a", **kwargs):
        return RealtimeBroadcaster(
            broker,
            IdentityVerifier.from_settings(settings),
            instance_id=instance_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def broadcaster(make_broadcaster):
    return make_broadcaster()


def _notification(organization_id="org1", **overrides) -> Notification:
    values = {
        "id": "n1",
        "organization_id": organization_id,
        "user_id": "u1",
        "type": NotificationType.SUBSCRIPTION_RENEWAL,
        "priority": NotificationPriority.HIGH,
        "title": "Renewal due",
        "message": "Your subscription renews soon.",
        "metadata": {"subscriptionId": "sub_1"},
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Notification(**values)


async def test_authenticated_connection_joins_its_organization_room(
    broadcaster, broker, make_token, transport_factory
):
    connection = await broadcaster.connect(transport_factory(), make_token("u1", "org1"))

    assert connection.state is ConnectionState.ACTIVE
    assert connection.room_id == "org_org1"
    assert broadcaster.members("org_org1") == {connection.id}
    assert broker.subscriber_count("org_org1") == 1


@pytest.mark.parametrize("token", [None, "garbage"])
async def test_rejected_connection_never_joins_a_room(broadcaster, transport_factory, token):
    transport = transport_factory()

    with pytest.raises(UnauthorizedConnection):
        await broadcaster.connect(transport, token)

    assert transport.closed[0] == 1008
    assert broadcaster.rooms == {}


async def test_room_is_destroyed_with_its_last_member(broadcaster, broker, make_token, transport_factory):
    first = await broadcaster.connect(transport_factory(), make_token("u1"))
    second = await broadcaster.connect(transport_factory(), make_token("u2"))

    await broadcaster.disconnect(first)
    assert broadcaster.members("org_org1") == {second.id}

    await broadcaster.disconnect(second)
    await broadcaster.disconnect(second)
    assert "org_org1" not in broadcaster.rooms
    assert broker.subscriber_count("org_org1") == 0
    assert second.state is ConnectionState.DISCONNECTED


async def test_notification_reaches_only_its_organization(broadcaster, make_token, transport_factory):
    org1_a, org1_b, org2 = transport_factory(), transport_factory(), transport_factory()
    await broadcaster.connect(org1_a, make_token("u1", "org1"))
    await broadcaster.connect(org1_b, make_token("u2", "org1"))
    await broadcaster.connect(org2, make_token("u3", "org2"))

    delivered = await broadcaster.broadcast_notification(_notification())

    assert delivered == 2
    for transport in (org1_a, org1_b):
        (event,) = transport.sent
        assert event["type"] == "subscription.updated"
        assert event["version"] == "1.0"
        assert event["payload"]["id"] == "n1"
        assert event["payload"]["organizationId"] == "org1"
        assert event["payload"]["urgency"] == "high"
    assert org2.sent == []


async def test_sibling_instances_share_events_through_the_broker(
    make_broadcaster, make_token, transport_factory
):
    instance_a = make_broadcaster("instance-a")
    instance_b = make_broadcaster("instance-b")
    local, remote = transport_factory(), transport_factory()
    await instance_a.connect(local, make_token("u1"))
    await instance_b.connect(remote, make_token("u2"))

    delivered = await instance_a.broadcast_notification(_notification())

    assert delivered == 1
    assert len(local.sent) == 1
    assert len(remote.sent) == 1
    assert remote.sent[0]["payload"]["id"] == "n1"


async def test_broker_outage_degrades_to_local_delivery(
    broadcaster, broker, make_token, transport_factory, caplog
):
    transport = transport_factory()
    await broadcaster.connect(transport, make_token())
    broker.set_connected(False)

    assert await broadcaster.broadcast_notification(_notification()) == 1
    assert len(transport.sent) == 1
    assert "Cross-instance fan-out degraded" in caplog.text


async def test_broken_transport_is_dropped_without_affecting_others(
    broadcaster, make_token, transport_factory
):
    healthy, broken = transport_factory(), transport_factory(fail=True)
    await broadcaster.connect(healthy, make_token("u1"))
    dead = await broadcaster.connect(broken, make_token("u2"))

    assert await broadcaster.broadcast_notification(_notification()) == 1
    assert len(healthy.sent) == 1
    assert dead.state is ConnectionState.DISCONNECTED
    assert dead.id not in broadcaster.members("org_org1")


async def test_broadcast_rejects_rooms_outside_the_principal_organization(
    broadcaster, make_token, transport_factory
):
    connection = await broadcaster.connect(transport_factory(), make_token("u1", "org1"))
    event = SocketEvent(SocketEventType.USER_ACTION, {"action": "clicked"})

    with pytest.raises(UnauthorizedConnection):
        await broadcaster.broadcast("org_org2", event, principal=connection.principal)


async def test_ping_is_answered(broadcaster, make_token, transport_factory):
    transport = transport_factory()
    connection = await broadcaster.connect(transport, make_token())

    await broadcaster.handle_client_event(connection, {"type": "ping"})

    assert transport.sent == [{"type": "pong"}]


async def test_rate_limit_only_affects_the_noisy_connection(
    make_broadcaster, make_token, transport_factory
):
    broadcaster = make_broadcaster(rate_limiter=FixedWindowRateLimiter(3, 60))
    noisy, quiet = transport_factory(), transport_factory()
    noisy_connection = await broadcaster.connect(noisy, make_token("u1"))
    quiet_connection = await broadcaster.connect(quiet, make_token("u2"))

    for _ in range(4):
        await broadcaster.handle_client_event(noisy_connection, {"type": "ping"})
    await broadcaster.handle_client_event(quiet_connection, {"type": "ping"})

    assert len(noisy.of_type("pong")) == 3
    (error,) = noisy.of_type("error")
    assert error["payload"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert noisy_connection.is_active
    assert quiet.sent == [{"type": "pong"}]


async def test_typed_event_is_relayed_to_the_room_without_null_fields(
    broadcaster, make_token, transport_factory
):
    sender, peer = transport_factory(), transport_factory()
    connection = await broadcaster.connect(sender, make_token("u1"))
    await broadcaster.connect(peer, make_token("u2"))

    await broadcaster.handle_client_event(
        connection,
        {
            "type": "user.action",
            "roomId": "org_org1",
            "payload": {"action": "opened", "target": None},
            "version": "2.1",
        },
    )

    (event,) = peer.sent
    assert event["type"] == "user.action"
    assert event["payload"] == {"action": "opened"}
    assert event["version"] == "2.1"
    assert len(sender.sent) == 1


async def test_event_for_a_foreign_room_closes_the_connection(
    broadcaster, make_token, transport_factory
):
    attacker, victim = transport_factory(), transport_factory()
    connection = await broadcaster.connect(attacker, make_token("u1", "org1"))
    await broadcaster.connect(victim, make_token("u9", "org2"))

    with pytest.raises(UnauthorizedConnection):
        await broadcaster.handle_client_event(
            connection, {"type": "user.action", "roomId": "org_org2", "payload": {"x": 1}}
        )

    assert attacker.closed[0] == 1008
    assert connection.state is ConnectionState.DISCONNECTED
    assert victim.sent == []
    assert "org_org1" not in broadcaster.rooms


@pytest.mark.parametrize(
    "message",
    [
        "not an object",
        {"type": "unknown.event", "roomId": "org_org1"},
        {"type": "user.action"},
        {"type": "user.action", "roomId": "org_org1", "version": "x" * 11},
        {"type": "ack", "ids": []},
    ],
)
async def test_malformed_events_get_an_error_frame(broadcaster, make_token, transport_factory, message):
    transport = transport_factory()
    connection = await broadcaster.connect(transport, make_token())

    await broadcaster.handle_client_event(connection, message)

    (error,) = transport.sent
    assert error["type"] == "error"
    assert error["payload"]["code"] == "INVALID_EVENT"
    assert connection.is_active


async def test_ack_marks_notifications_read_for_the_caller(
    make_broadcaster, make_token, transport_factory
):
    acknowledged = []

    async def on_ack(principal, ids):
        acknowledged.append((principal.user_id, ids))
        return len(ids)

    broadcaster = make_broadcaster(on_ack=on_ack)
    transport = transport_factory()
    connection = await broadcaster.connect(transport, make_token("u1"))

    await broadcaster.handle_client_event(connection, {"type": "ack", "ids": ["n1", " n1 ", "n2"]})

    assert acknowledged == [("u1", ["n1", "n2"])]
    assert transport.sent == [{"type": "ack", "data": {"updated": 2}}]


async def test_unread_snapshot_is_sent_on_connect(make_broadcaster, make_token, transport_factory):
    async def snapshot(principal):
        return [{"id": "n1", "userId": principal.user_id}]

    broadcaster = make_broadcaster(snapshot=snapshot)
    transport = transport_factory()

    await broadcaster.connect(transport, make_token("u1"))

    assert transport.sent == [{"type": "init", "data": [{"id": "n1", "userId": "u1"}]}]


async def test_failed_snapshot_leaves_no_member_behind(
    make_broadcaster, broker, make_token, transport_factory
):
    async def snapshot(principal):
        raise TransientStoreError("Notification store unavailable during list_unread")

    broadcaster = make_broadcaster(snapshot=snapshot)

    with pytest.raises(TransientStoreError):
        await broadcaster.connect(transport_factory(), make_token("u1"))

    assert broadcaster.rooms == {}
    assert broker.subscriber_count("org_org1") == 0


async def test_inactive_connection_cannot_send_events(broadcaster, make_token, transport_factory):
    connection = await broadcaster.connect(transport_factory(), make_token())
    await broadcaster.disconnect(connection)

    with pytest.raises(UnauthorizedConnection):
        await broadcaster.handle_client_event(connection, {"type": "ping"})


async def test_close_disconnects_everyone(broadcaster, make_token, transport_factory):
    transport = transport_factory()
    await broadcaster.connect(transport, make_token())

    await broadcaster.close()

    assert transport.closed[0] == 1001
    assert broadcaster.rooms == {}


def test_room_naming_is_shared_with_principals():
    assert room_for("org1") == Principal("u1", "org1").room_id == "org_org1"

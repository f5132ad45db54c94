"""Tests for the async store facade used by workers and handlers."""

import anyio
import pytest

from notifyhub.domain.entities import NotificationStatus

pytestmark = pytest.mark.anyio


async def test_store_runs_repository_operations_off_the_loop(store, make_payload):
    created = await store.create(make_payload(), dispatch_key="job-1")

    page = await store.list_by_user("u1", organization_id="org1")
    assert [item.id for item in page.items] == [created.id]

    assert await store.mark_as_read("u1", [created.id]) == 1
    assert await store.list_unread_by_user("u1") == []
    assert (await store.get(created.id)).status is NotificationStatus.READ

    assert await store.archive("u1", [created.id]) == 1
    assert (await store.list_by_organization("org1")).items[0].status is NotificationStatus.ARCHIVED


async def test_concurrent_creates_with_distinct_keys(store, make_payload):
    async with anyio.create_task_group() as tg:
        for index in range(5):
            tg.start_soon(lambda i=index: store.create(make_payload(), dispatch_key=f"job-{i}"))

    assert (await store.list_by_organization("org1")).total == 5


async def test_same_dispatch_key_is_persisted_once(store, make_payload):
    first = await store.create(make_payload(), dispatch_key="job-1")
    second = await store.create(make_payload(), dispatch_key="job-1")

    assert first.id == second.id
    assert (await store.list_by_organization("org1")).total == 1

"""Tests for the message backlog."""

import pytest

from pricebook.pipelines.ingest import MessageBacklog
from pricebook.store import MessageFilter


async def collect(listing):
    return [m async for m in listing]


@pytest.mark.asyncio
async def test_identical_messages_are_recorded_separately(store, clock):
    backlog = MessageBacklog(store, clock=clock)

    first = await backlog.record_incoming("user-001", "Alpha", "Caneta R$ 2,00")
    second = await backlog.record_incoming("user-001", "Alpha", "Caneta R$ 2,00")

    assert first.id != second.id
    assert not first.processed and first.processing_error is None
    assert await backlog.unprocessed_count("user-001") == 2


@pytest.mark.asyncio
async def test_listing_is_newest_first_by_default(store, clock):
    backlog = MessageBacklog(store, clock=clock)
    ids = [(await backlog.record_incoming("user-001", "Alpha", f"msg {i}")).id for i in range(3)]

    newest = await collect(backlog.list_by_tenant("user-001"))
    oldest = await collect(backlog.list_by_tenant("user-001", newest_first=False))

    assert [m.id for m in newest] == list(reversed(ids))
    assert [m.id for m in oldest] == ids


@pytest.mark.asyncio
async def test_listing_is_restartable(store, clock):
    backlog = MessageBacklog(store, clock=clock)
    await backlog.record_incoming("user-001", "Alpha", "a")
    await backlog.record_incoming("user-001", "Beta", "b")

    assert await collect(backlog.list_by_tenant("user-001")) == await collect(
        backlog.list_by_tenant("user-001")
    )


@pytest.mark.asyncio
async def test_status_filters(store, clock):
    backlog = MessageBacklog(store, clock=clock)
    ok = await backlog.record_incoming("user-001", "Alpha", "a")
    bad = await backlog.record_incoming("user-001", "Alpha", "b")
    waiting = await backlog.record_incoming("user-001", "Alpha", "c")
    await store.commit_outcome("user-001", ok.id)
    await store.commit_outcome("user-001", bad.id, error="extraction failed")

    def ids(messages):
        return {m.id for m in messages}

    assert ids(await collect(backlog.list_by_tenant("user-001", status=MessageFilter.PENDING))) == {waiting.id}
    assert ids(await collect(backlog.list_by_tenant("user-001", status=MessageFilter.PROCESSED))) == {ok.id}
    assert ids(await collect(backlog.list_by_tenant("user-001", status=MessageFilter.FAILED))) == {bad.id}
    assert [m.id for m in await backlog.pending("user-001")] == [waiting.id]


@pytest.mark.asyncio
async def test_backlog_is_tenant_scoped(store, clock):
    backlog = MessageBacklog(store, clock=clock)
    await backlog.record_incoming("user-001", "Alpha", "a")
    await backlog.record_incoming("user-002", "Beta", "b")

    assert await backlog.unprocessed_count("user-001") == 1
    assert [m.sender for m in await collect(backlog.list_by_tenant("user-002"))] == ["Beta"]
    assert await store.get_message("user-002", (await backlog.pending("user-001"))[0].id) is None

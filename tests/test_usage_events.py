"""
Tests for the append-only usage event log.
"""

import sqlite3
from datetime import timedelta

import pytest

from clipper_billing.models.usage import UsageEventCreate, UsageEventType, UsageFeature


def clip_event(user_id="user-1", **metadata):
    return UsageEventCreate(
        user_id=user_id,
        event_type=UsageEventType.CLIP_SENT,
        feature=UsageFeature.CLIPS,
        metadata=metadata,
    )


@pytest.mark.asyncio
async def test_append_assigns_id_and_timestamp(event_log, clock):
    event = await event_log.append(clip_event(source="extension"), now=clock.now)

    assert event.id
    assert event.created_at == clock.now
    assert event.metadata == {"source": "extension"}


@pytest.mark.asyncio
async def test_query_returns_newest_first(event_log, clock):
    for i in range(3):
        await event_log.append(clip_event(n=i), now=clock.now + timedelta(seconds=i))

    page = await event_log.query("user-1")

    assert page.total == 3
    assert [e.metadata["n"] for e in page.events] == [2, 1, 0]


@pytest.mark.asyncio
async def test_same_timestamp_keeps_insertion_order(event_log, clock):
    for i in range(3):
        await event_log.append(clip_event(n=i), now=clock.now)

    page = await event_log.query("user-1")

    assert [e.metadata["n"] for e in page.events] == [2, 1, 0]


@pytest.mark.asyncio
async def test_filter_by_event_type(event_log, clock):
    await event_log.append(clip_event(), now=clock.now)
    await event_log.append(
        UsageEventCreate(user_id="user-1", event_type=UsageEventType.QUOTA_EXCEEDED),
        now=clock.now,
    )

    page = await event_log.query("user-1", event_type="quota_exceeded")

    assert page.total == 1
    assert page.events[0].event_type == UsageEventType.QUOTA_EXCEEDED
    assert page.events[0].feature is None


@pytest.mark.asyncio
async def test_time_range_end_is_exclusive(event_log, clock):
    for hours in (0, 1, 2):
        await event_log.append(clip_event(h=hours), now=clock.now + timedelta(hours=hours))

    page = await event_log.query(
        "user-1", start=clock.now + timedelta(hours=1), end=clock.now + timedelta(hours=2)
    )

    assert page.total == 1
    assert page.events[0].metadata["h"] == 1


@pytest.mark.asyncio
async def test_pagination(event_log, clock):
    for i in range(5):
        await event_log.append(clip_event(n=i), now=clock.now + timedelta(seconds=i))

    page = await event_log.query("user-1", limit=2, offset=2)

    assert page.total == 5
    assert page.limit == 2
    assert page.offset == 2
    assert [e.metadata["n"] for e in page.events] == [2, 1]


@pytest.mark.asyncio
async def test_events_are_scoped_to_user(event_log, clock):
    await event_log.append(clip_event(user_id="user-2"), now=clock.now)

    page = await event_log.query("user-1")

    assert page.total == 0
    assert page.events == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0},
        {"limit": 201},
        {"offset": -1},
        {"event_type": "clip_deleted"},
    ],
)
async def test_invalid_query_arguments(event_log, kwargs):
    with pytest.raises(ValueError):
        await event_log.query("user-1", **kwargs)


@pytest.mark.asyncio
async def test_inverted_range_rejected(event_log, clock):
    with pytest.raises(ValueError):
        await event_log.query("user-1", start=clock.now, end=clock.now - timedelta(days=1))


@pytest.mark.asyncio
async def test_stored_events_cannot_be_modified(event_log, db, clock):
    event = await event_log.append(clip_event(), now=clock.now)
    conn = db._get_connection()

    with pytest.raises(sqlite3.DatabaseError):
        conn.execute("UPDATE usage_events SET metadata = '{}' WHERE id = ?", (event.id,))
    with pytest.raises(sqlite3.DatabaseError):
        conn.execute("DELETE FROM usage_events WHERE id = ?", (event.id,))

    assert (await event_log.query("user-1")).total == 1

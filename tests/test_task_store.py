# tests/test_task_store.py

from __future__ import annotations

import asyncio

import pytest

from app.models import Priority
from app.realtime.feed import ChangeType
from app.store.task_store import TaskNotFound


@pytest.mark.asyncio
async def test_insert_assigns_id_and_defaults(task_store) -> None:
    task = await task_store.insert("  write report ", Priority.HIGH, "u1")

    assert task.id is not None
    assert task.title == "write report"
    assert task.priority is Priority.HIGH
    assert task.completed is False
    assert task.created_at is not None


@pytest.mark.asyncio
async def test_select_is_owner_scoped_newest_first(task_store) -> None:
    first = await task_store.insert("first", Priority.LOW, "u1")
    await task_store.insert("foreign", Priority.LOW, "u2")
    second = await task_store.insert("second", Priority.LOW, "u1")

    rows = await task_store.select_by_owner("u1")

    assert [r.id for r in rows] == [second.id, first.id]
    assert all(r.user_id == "u1" for r in rows)


@pytest.mark.asyncio
async def test_update_and_delete(task_store) -> None:
    task = await task_store.insert("chores", Priority.MEDIUM, "u1")

    updated = await task_store.update_completed(task.id, "u1", True)
    assert updated.completed is True
    assert (await task_store.select_by_owner("u1"))[0].completed is True

    await task_store.delete(task.id, "u1")
    assert await task_store.select_by_owner("u1") == []


@pytest.mark.asyncio
async def test_foreign_rows_look_missing(task_store) -> None:
    task = await task_store.insert("private", Priority.LOW, "u2")

    with pytest.raises(TaskNotFound):
        await task_store.update_completed(task.id, "u1", True)
    with pytest.raises(TaskNotFound):
        await task_store.delete(task.id, "u1")
    with pytest.raises(TaskNotFound):
        await task_store.delete(9999, "u1")

    assert len(await task_store.select_by_owner("u2")) == 1


@pytest.mark.asyncio
async def test_writes_publish_change_events(task_store, feed) -> None:
    sub = await feed.subscribe("u1")

    task = await task_store.insert("watch me", Priority.LOW, "u1")
    await task_store.update_completed(task.id, "u1", True)
    await task_store.delete(task.id, "u1")

    events = [await asyncio.wait_for(sub.__anext__(), timeout=1) for _ in range(3)]
    assert [e.type for e in events] == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
    assert {e.task_id for e in events} == {task.id}
    await sub.close()


@pytest.mark.asyncio
async def test_other_owners_writes_are_not_delivered(task_store, feed) -> None:
    sub = await feed.subscribe("u1")

    await task_store.insert("not yours", Priority.LOW, "u2")

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sub.__anext__(), timeout=0.05)
    await sub.close()

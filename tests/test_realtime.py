# tests/test_realtime.py

from __future__ import annotations

import pytest

from auratask.core.models import ChangeType, TaskDraft
from auratask.store.gamification import NoticeKind


def _remote_task(user_id: str, **extra):
    row = {
        "id": "remote-1",
        "user_id": user_id,
        "title": "From phone",
        "is_completed": False,
        "order_index": 50000,
        "created_at": 1.0,
        "updated_at": 5.0,
    }
    row.update(extra)
    return row


@pytest.mark.asyncio
async def test_subscribes_to_owner_scoped_tables(store, backend) -> None:
    await store.initialize()

    tables = sorted(t for t, _, _ in backend.channels)
    assert tables == ["subtasks", "tasks", "user_achievements"]
    assert all(match == {"user_id": store.identity.id} for _, _, match in backend.channels)


@pytest.mark.asyncio
async def test_remote_insert_update_delete(store, backend) -> None:
    await store.initialize()
    uid = store.identity.id

    backend.push("tasks", ChangeType.INSERT, new=_remote_task(uid))
    assert [t.title for t in store.state.tasks] == ["From phone"]

    backend.push("tasks", ChangeType.UPDATE, new=_remote_task(uid, title="Edited", updated_at=6.0))
    assert store.state.tasks[0].title == "Edited"

    backend.push("tasks", ChangeType.DELETE, old={"id": "remote-1", "user_id": uid})
    assert store.state.tasks == []


@pytest.mark.asyncio
async def test_other_users_changes_are_not_delivered(store, backend) -> None:
    await store.initialize()

    backend.push("tasks", ChangeType.INSERT, new=_remote_task("someone-else"))

    assert store.state.tasks == []


@pytest.mark.asyncio
async def test_stale_update_is_ignored(store, backend) -> None:
    await store.initialize()
    uid = store.identity.id

    backend.push("tasks", ChangeType.INSERT, new=_remote_task(uid, title="Fresh", updated_at=10.0))
    backend.push("tasks", ChangeType.UPDATE, new=_remote_task(uid, title="Stale", updated_at=9.0))

    assert store.state.tasks[0].title == "Fresh"


@pytest.mark.asyncio
async def test_echo_of_own_insert_does_not_duplicate(store, backend) -> None:
    await store.initialize()
    task = await store.add_task(TaskDraft(title="Mine"))

    backend.push("tasks", ChangeType.INSERT, new=backend.rows("tasks", id=task.id)[0])

    assert [t.id for t in store.state.tasks] == [task.id]


@pytest.mark.asyncio
async def test_remote_update_keeps_local_subtasks_and_tags(store, backend) -> None:
    await store.initialize()
    task = await store.add_task(TaskDraft(title="Parent", subtasks=["one"]))
    tag = await store.add_tag("home")
    await store.add_tag_to_task(task.id, tag.id)

    row = backend.rows("tasks", id=task.id)[0]
    row.update(title="Renamed elsewhere", updated_at=row["updated_at"] + 100)
    backend.push("tasks", ChangeType.UPDATE, new=row)

    merged = store.state.tasks[0]
    assert merged.title == "Renamed elsewhere"
    assert [s.title for s in merged.subtasks] == ["one"]
    assert [t.name for t in merged.tags] == ["home"]


@pytest.mark.asyncio
async def test_subtask_events_merge_into_parent(store, backend) -> None:
    await store.initialize()
    uid = store.identity.id
    task = await store.add_task(TaskDraft(title="Parent"))

    sub = {"id": "s-remote", "task_id": task.id, "user_id": uid, "title": "remote step", "order_index": 1,
           "updated_at": 3.0}
    backend.push("subtasks", ChangeType.INSERT, new=sub)
    assert [s.title for s in store.state.tasks[0].subtasks] == ["remote step"]

    backend.push("subtasks", ChangeType.UPDATE, new={**sub, "is_completed": True, "updated_at": 4.0})
    assert store.state.tasks[0].subtasks[0].is_completed is True

    backend.push("subtasks", ChangeType.DELETE, old={"id": "s-remote", "user_id": uid})
    assert store.state.tasks[0].subtasks == []

    orphan = {**sub, "id": "s-orphan", "task_id": "unknown-task"}
    backend.push("subtasks", ChangeType.INSERT, new=orphan)
    assert store.state.tasks[0].subtasks == []


@pytest.mark.asyncio
async def test_achievement_unlock_shows_notice_once(store, backend) -> None:
    backend.seed("achievements", id=1, name="First Step", reward_points=10, required_tasks_completed=1)
    await store.initialize()
    uid = store.identity.id

    unlocked = {"id": "ua-1", "user_id": uid, "achievement_id": 1, "unlocked_at": 2.0}
    backend.push("user_achievements", ChangeType.INSERT, new=unlocked)

    notice = store.notices.newly_unlocked_achievement
    assert notice is not None and notice.name == "First Step"
    assert [u.achievement_id for u in store.state.unlocked] == [1]

    store.notices.dismiss(NoticeKind.ACHIEVEMENT)
    backend.push("user_achievements", ChangeType.INSERT, new={**unlocked, "id": "ua-dup"})
    assert store.notices.newly_unlocked_achievement is None
    assert len(store.state.unlocked) == 1


@pytest.mark.asyncio
async def test_sign_out_drops_realtime_channels(store, backend) -> None:
    await store.initialize()
    assert backend.channels

    await store.sign_out()
    await store.drain()

    assert backend.channels == []
    backend.push("tasks", ChangeType.INSERT, new=_remote_task("anyone"))
    assert store.state.tasks == []

# tests/test_sqlite_gateway.py

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from auratask.analyzer.offline import OfflineTaskAnalyzer
from auratask.backend.sqlite_gateway import SqliteGateway
from auratask.core.errors import PersistenceFailure
from auratask.core.models import AuthEventType, ChangeEvent, ChangeType, TaskDraft
from auratask.store.app_store import AppStore
from auratask.store.gamification import NoticeKind
from auratask.store.local_storage import MemoryStorage

from .fakes import RecordingNotifier


async def _task(gateway: SqliteGateway, user_id: str = "u1", **extra) -> dict:
    row = {"user_id": user_id, "title": "t", "order_index": 10000}
    row.update(extra)
    return await gateway.insert("tasks", row)


@pytest.mark.asyncio
async def test_insert_select_roundtrip_and_bools(gateway) -> None:
    row = await _task(gateway, title="Report", ai_generated=True)

    assert row["id"]
    assert row["is_completed"] is False
    assert row["ai_generated"] is True
    assert row["created_at"] == row["updated_at"]

    other = await _task(gateway, user_id="u2")
    rows = await gateway.select("tasks", match={"id": [row["id"], other["id"]]}, order_by=("created_at",))
    assert [r["id"] for r in rows] == [row["id"], other["id"]]
    assert await gateway.select("tasks", match={"id": []}) == []
    assert len(await gateway.select("tasks", match={"user_id": "u1"}, limit=1)) == 1


@pytest.mark.asyncio
async def test_update_bumps_updated_at(gateway) -> None:
    row = await _task(gateway)

    (updated,) = await gateway.update("tasks", {"title": "new"}, match={"id": row["id"]})

    assert updated["title"] == "new"
    assert updated["updated_at"] > row["updated_at"]
    assert await gateway.update("tasks", {"title": "x"}, match={"id": "missing"}) == []


@pytest.mark.asyncio
async def test_unknown_table_or_column_is_a_persistence_failure(gateway) -> None:
    with pytest.raises(PersistenceFailure):
        await gateway.select("users")
    with pytest.raises(PersistenceFailure):
        await gateway.insert("tasks", {"user_id": "u", "title": "t", "bogus": 1})
    with pytest.raises(PersistenceFailure):
        await gateway.delete("tasks", match={})


@pytest.mark.asyncio
async def test_constraint_violation_is_a_persistence_failure(gateway) -> None:
    with pytest.raises(PersistenceFailure):
        await gateway.insert("subtasks", {"task_id": "no-such-task", "user_id": "u", "title": "s"})


@pytest.mark.asyncio
async def test_upsert_inserts_then_updates(gateway) -> None:
    a = await _task(gateway, title="a")

    rows = await gateway.upsert("tasks", [{"id": a["id"], "order_index": 5}])
    assert rows[0]["order_index"] == 5
    assert rows[0]["title"] == "a"

    (settings,) = await gateway.upsert("user_settings", [{"id": "u1", "username": "neda"}], on_conflict="id")
    assert settings["username"] == "neda"
    (settings,) = await gateway.upsert("user_settings", [{"id": "u1", "theme": "alireza"}])
    assert (settings["username"], settings["theme"]) == ("neda", "alireza")


@pytest.mark.asyncio
async def test_deleting_group_ungroups_tasks_and_publishes(gateway) -> None:
    events: list[ChangeEvent] = []
    gateway.subscribe("tasks", events.append, match={"user_id": "u1"})
    group = await gateway.insert("task_groups", {"user_id": "u1", "name": "G"})
    task = await _task(gateway, group_id=group["id"])
    events.clear()

    assert await gateway.delete("task_groups", match={"id": group["id"]}) == 1

    (row,) = await gateway.select("tasks", match={"id": task["id"]})
    assert row["group_id"] is None
    assert [(e.event_type, e.new["group_id"]) for e in events] == [(ChangeType.UPDATE, None)]


@pytest.mark.asyncio
async def test_deleting_task_cascades_to_subtasks_and_links(gateway) -> None:
    task = await _task(gateway)
    await gateway.insert("subtasks", {"task_id": task["id"], "user_id": "u1", "title": "s"})
    tag = await gateway.insert("tags", {"user_id": "u1", "name": "x"})
    await gateway.insert("task_tags", {"task_id": task["id"], "tag_id": tag["id"], "user_id": "u1"})

    await gateway.delete("tasks", match={"id": task["id"]})

    assert gateway.count_rows("subtasks") == 0
    assert gateway.count_rows("task_tags") == 0


@pytest.mark.asyncio
async def test_realtime_delivers_only_matching_rows(gateway) -> None:
    mine: list[ChangeEvent] = []
    handle = gateway.subscribe("tasks", mine.append, match={"user_id": "u1"})

    await _task(gateway, user_id="u1")
    await _task(gateway, user_id="u2")
    assert [e.event_type for e in mine] == [ChangeType.INSERT]

    handle.unsubscribe()
    handle.unsubscribe()
    await _task(gateway, user_id="u1")
    assert len(mine) == 1


@pytest.mark.asyncio
async def test_completion_routine_awards_points_and_first_achievement_once(gateway) -> None:
    unlocked: list[ChangeEvent] = []
    gateway.subscribe("user_achievements", unlocked.append, match={"user_id": "u1"})

    first = await _task(gateway)
    await gateway.update("tasks", {"is_completed": True}, match={"id": first["id"]})
    settings = await gateway.rpc("handle_task_completion", {"task_id": first["id"]})

    # 10 base points + 10 for "First Step"
    assert settings["aura_points"] == 20
    assert settings["level"] == 1
    assert settings["current_streak"] == 1
    assert len(unlocked) == 1

    second = await _task(gateway)
    await gateway.update("tasks", {"is_completed": True}, match={"id": second["id"]})
    settings = await gateway.rpc("handle_task_completion", {"task_id": second["id"]})

    assert settings["aura_points"] == 30
    assert settings["current_streak"] == 1
    assert gateway.count_rows("user_achievements") == 1


@pytest.mark.asyncio
async def test_completion_routine_uses_score_weights_and_levels(gateway) -> None:
    await gateway.upsert("user_settings", [{"id": "u1", "aura_points": 80, "importance_weight": 2.0}])
    task = await _task(gateway, ai_importance_score=10, ai_speed_score=4, is_completed=True)

    settings = await gateway.rpc("handle_task_completion", {"task_id": task["id"]})

    # 80 + 10 base + 20 importance + 4 speed + 10 "First Step"
    assert settings["aura_points"] == 124
    assert settings["level"] == 2


@pytest.mark.asyncio
async def test_completion_routine_rejects_open_or_missing_tasks(gateway) -> None:
    task = await _task(gateway)

    with pytest.raises(PersistenceFailure):
        await gateway.rpc("handle_task_completion", {"task_id": task["id"]})
    with pytest.raises(PersistenceFailure):
        await gateway.rpc("handle_task_completion", {"task_id": "missing"})
    with pytest.raises(PersistenceFailure):
        await gateway.rpc("no_such_routine", {})


@pytest.mark.asyncio
async def test_migrate_guest_data_moves_rows_and_merges_points(gateway) -> None:
    await _task(gateway, user_id="guest_1")
    await gateway.insert("tags", {"user_id": "guest_1", "name": "g"})
    await gateway.upsert("user_settings", [{"id": "guest_1", "aura_points": 15, "level": 1}])
    await gateway.upsert("user_settings", [{"id": "user-9", "aura_points": 100, "level": 2}])

    moved = await gateway.rpc("migrate_guest_data", {"guest_id": "guest_1", "user_id": "user-9"})

    assert moved["tasks"] == 1
    assert moved["tags"] == 1
    assert await gateway.select("tasks", match={"user_id": "guest_1"}) == []
    (settings,) = await gateway.select("user_settings", match={"id": "user-9"})
    assert settings["aura_points"] == 115
    assert await gateway.select("user_settings", match={"id": "guest_1"}) == []

    with pytest.raises(PersistenceFailure):
        await gateway.rpc("migrate_guest_data", {"guest_id": "", "user_id": "user-9"})


@pytest.mark.asyncio
async def test_auth_session_lifecycle(gateway) -> None:
    events: list[tuple[AuthEventType, object]] = []
    gateway.on_auth_state_change(lambda event, user: events.append((event, user)))

    assert await gateway.get_user() is None
    user = await gateway.sign_in_with_oauth("Google", email="Neda@Example.com")
    again = await gateway.sign_in_with_oauth("google", email="neda@example.com")

    assert again.id == user.id
    assert user.email == "neda@example.com"
    assert (await gateway.get_user()).id == user.id

    anon = await gateway.sign_in_anonymously()
    assert anon.is_anonymous and anon.id != user.id

    await gateway.sign_out()
    assert await gateway.get_user() is None
    assert [e for e, _ in events] == [AuthEventType.SIGNED_IN] * 3 + [AuthEventType.SIGNED_OUT]


def test_old_database_gets_new_columns(tmp_path: Path) -> None:
    db = tmp_path / "old.sqlite3"
    conn = sqlite3.connect(db)
    conn.execute(
        "CREATE TABLE user_settings (id TEXT PRIMARY KEY, username TEXT, api_key TEXT, "
        "aura_points INTEGER NOT NULL DEFAULT 0, level INTEGER NOT NULL DEFAULT 1, "
        "speed_weight REAL NOT NULL DEFAULT 1.0, importance_weight REAL NOT NULL DEFAULT 1.0, "
        "theme TEXT NOT NULL DEFAULT 'default', haptic_feedback INTEGER NOT NULL DEFAULT 1, "
        "auto_ranking INTEGER NOT NULL DEFAULT 0, auto_subtasks INTEGER NOT NULL DEFAULT 0, "
        "created_at REAL NOT NULL, updated_at REAL NOT NULL)"
    )
    conn.commit()
    conn.close()

    gw = SqliteGateway(db)

    conn = sqlite3.connect(db)
    cols = {row[1] for row in conn.execute("PRAGMA table_info(user_settings)")}
    conn.close()
    assert {"current_streak", "last_completed_on", "is_admin"} <= cols
    assert gw.count_rows("achievements") == 8


@pytest.mark.asyncio
async def test_store_end_to_end_on_sqlite(gateway, settings) -> None:
    notifier = RecordingNotifier()
    store = AppStore(
        gateway,
        analyzer=OfflineTaskAnalyzer(),
        notifier=notifier,
        storage=MemoryStorage(),
        settings=settings,
    )
    await store.initialize()

    task = await store.add_task(TaskDraft(title="Ship it", enable_ai_subtasks=True))
    assert [s.title for s in task.subtasks] == ["Plan: Ship it", "Do: Ship it", "Review: Ship it"]

    await store.toggle_task_complete(task.id)

    # 10 base + default scores 10 and 10 (weights 1.0) + 10 for "First Step"
    assert store.state.settings.aura_points == 40
    assert store.notices.aura_award.points == 40
    achievement = store.notices.get(NoticeKind.ACHIEVEMENT)
    assert achievement is not None and achievement.name == "First Step"
    assert [u.achievement_id for u in store.state.unlocked] == [achievement.id]

    await store.close()


@pytest.mark.asyncio
async def test_award_points_increments_in_place(gateway) -> None:
    events: list[ChangeEvent] = []
    gateway.subscribe("user_settings", events.append, match={"id": "u1"})
    await gateway.upsert("user_settings", [{"id": "u1", "aura_points": 95, "level": 1}])
    events.clear()

    settings = await gateway.rpc("award_points", {"user_id": "u1", "points": 5})

    assert (settings["aura_points"], settings["level"]) == (100, 1)
    assert [e.event_type for e in events] == [ChangeType.UPDATE]
    assert (await gateway.rpc("award_points", {"user_id": "u2", "points": 5}))["aura_points"] == 5

    for bad in ({"user_id": "u1", "points": 0}, {"user_id": "u1", "points": "x"}, {"points": 5}):
        with pytest.raises(PersistenceFailure):
            await gateway.rpc("award_points", bad)

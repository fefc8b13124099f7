# tests/test_store_gamification.py

from __future__ import annotations

from typing import Any

import pytest

from auratask.core.errors import ValidationFailure
from auratask.core.models import TaskDraft
from auratask.store.app_store import AppStore

from .fakes import FakeBackend


async def _with_settings(store: AppStore, backend: FakeBackend, **values: Any) -> None:
    await store.initialize()
    backend.seed("user_settings", id=store.identity.id, **values)
    await store.refresh_settings()


def _completion_result(store: AppStore, *, points: int, level: int):
    def handler(params):
        return {"id": store.identity.id, "aura_points": points, "level": level}

    return handler


@pytest.mark.asyncio
async def test_completion_shows_award_and_level_up(store, backend, notifier) -> None:
    await _with_settings(store, backend, aura_points=90, level=1)
    backend.rpc_handlers["handle_task_completion"] = _completion_result(store, points=110, level=2)
    task = await store.add_task(TaskDraft(title="Finish thesis"))

    done = await store.toggle_task_complete(task.id)

    assert done is not None and done.is_completed
    assert done.completed_at is not None
    assert backend.ops("rpc", "handle_task_completion")[0][2] == {"task_id": task.id}
    assert store.state.settings.aura_points == 110
    assert store.state.settings.level == 2
    assert store.notices.just_leveled_up_to == 2
    assert store.notices.aura_award.points == 20
    assert "Task completed." in notifier.successes


@pytest.mark.asyncio
async def test_completion_without_level_change_shows_no_level_notice(store, backend) -> None:
    await _with_settings(store, backend, aura_points=10, level=1)
    backend.rpc_handlers["handle_task_completion"] = _completion_result(store, points=25, level=1)
    task = await store.add_task(TaskDraft(title="Small win"))

    await store.toggle_task_complete(task.id)

    assert store.notices.just_leveled_up_to is None
    assert store.notices.aura_award.points == 15


@pytest.mark.asyncio
async def test_reopening_a_task_does_not_run_completion(store, backend, notifier) -> None:
    await _with_settings(store, backend, aura_points=0, level=1)
    backend.rpc_handlers["handle_task_completion"] = _completion_result(store, points=10, level=1)
    task = await store.add_task(TaskDraft(title="Flip"))

    await store.toggle_task_complete(task.id)
    reopened = await store.toggle_task_complete(task.id)

    assert reopened is not None and not reopened.is_completed
    assert reopened.completed_at is None
    assert len(backend.ops("rpc", "handle_task_completion")) == 1
    assert "Task moved back to active." in notifier.successes


@pytest.mark.asyncio
async def test_completion_routine_failure_keeps_completion(store, backend, notifier) -> None:
    await _with_settings(store, backend, aura_points=0, level=1)
    backend.fail.add(("rpc", "handle_task_completion"))
    task = await store.add_task(TaskDraft(title="Done anyway"))

    done = await store.toggle_task_complete(task.id)

    assert done is not None and done.is_completed
    assert backend.rows("tasks")[0]["is_completed"] is True
    assert notifier.errors == ["Task completed, but rewards could not be recorded."]
    assert store.notices.aura_award is None


@pytest.mark.asyncio
async def test_toggle_failure_rolls_back_completion(store, backend, notifier) -> None:
    await _with_settings(store, backend)
    task = await store.add_task(TaskDraft(title="Stuck"))
    backend.fail.add(("update", "tasks"))

    assert await store.toggle_task_complete(task.id) is None

    assert store.state.tasks[0].is_completed is False
    assert backend.ops("rpc", "handle_task_completion") == []
    assert notifier.errors == ["Failed to update task."]


@pytest.mark.asyncio
async def test_subtask_completion_awards_points_immediately(store, backend) -> None:
    await _with_settings(store, backend, aura_points=98, level=1)
    task = await store.add_task(TaskDraft(title="Parent"))
    sub = await store.add_subtask(task.id, "child")

    toggled = await store.toggle_subtask_complete(sub.id)

    assert toggled is not None and toggled.is_completed
    assert store.state.settings.aura_points == 103
    # Points only; the level is owned by the backend rule.
    assert store.state.settings.level == 1
    assert store.notices.aura_award.points == 5
    assert store.notices.just_leveled_up_to is None
    assert backend.rows("user_settings")[0]["aura_points"] == 103
    assert "Settings saved." not in store.notifier.successes


@pytest.mark.asyncio
async def test_subtask_reopen_does_not_award(store, backend) -> None:
    await _with_settings(store, backend, aura_points=0, level=1)
    task = await store.add_task(TaskDraft(title="Parent"))
    sub = await store.add_subtask(task.id, "child")

    await store.toggle_subtask_complete(sub.id)
    await store.toggle_subtask_complete(sub.id)

    assert store.state.settings.aura_points == 5
    assert len(backend.ops("rpc", "award_points")) == 1
    assert backend.ops("upsert", "user_settings") == []


@pytest.mark.asyncio
async def test_subtask_failure_reverts_points(store, backend, notifier) -> None:
    await _with_settings(store, backend, aura_points=40, level=1)
    task = await store.add_task(TaskDraft(title="Parent"))
    sub = await store.add_subtask(task.id, "child")
    backend.fail.add(("update", "subtasks"))

    assert await store.toggle_subtask_complete(sub.id) is None

    assert store.state.settings.aura_points == 40
    assert store.state.tasks[0].subtasks[0].is_completed is False
    assert notifier.errors == ["Failed to update subtask."]


@pytest.mark.asyncio
async def test_level_is_not_user_editable(store, backend) -> None:
    await _with_settings(store, backend)

    with pytest.raises(ValidationFailure) as exc_info:
        await store.update_settings({"level": 99})

    assert "level" in str(exc_info.value)
    assert store.state.settings.level == 1


@pytest.mark.asyncio
async def test_subtask_reward_is_an_increment_on_the_backend(store, backend) -> None:
    await _with_settings(store, backend, aura_points=10, level=1)
    task = await store.add_task(TaskDraft(title="Parent"))
    sub = await store.add_subtask(task.id, "child")
    # Points earned in another session since our last fetch.
    backend.tables["user_settings"][0]["aura_points"] = 200

    await store.toggle_subtask_complete(sub.id)

    assert backend.ops("rpc", "award_points")[-1][2] == {"user_id": store.identity.id, "points": 5}
    assert backend.rows("user_settings")[0]["aura_points"] == 205
    assert store.state.settings.aura_points == 205


@pytest.mark.asyncio
async def test_subtask_reward_failure_refetches_settings(store, backend, notifier) -> None:
    await _with_settings(store, backend, aura_points=40, level=1)
    task = await store.add_task(TaskDraft(title="Parent"))
    sub = await store.add_subtask(task.id, "child")
    backend.fail.add(("rpc", "award_points"))

    toggled = await store.toggle_subtask_complete(sub.id)

    assert toggled is not None and toggled.is_completed
    assert store.state.settings.aura_points == 40
    assert notifier.errors == ["Points could not be recorded."]

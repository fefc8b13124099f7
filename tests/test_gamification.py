# tests/test_gamification.py

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from auratask.core.models import Achievement, Task, UserSettings
from auratask.store.gamification import (
    NoticeBoard,
    NoticeKind,
    achievements_to_unlock,
    completion_points,
    detect_level_up,
    level_for_points,
    next_streak,
)


def test_detect_level_up_only_on_strict_increase() -> None:
    assert detect_level_up(2, 3) == 3
    assert detect_level_up(3, 3) is None
    assert detect_level_up(4, 3) is None
    assert detect_level_up(None, 2) == 2
    assert detect_level_up(2, None) is None


def test_level_for_points() -> None:
    assert level_for_points(0) == 1
    assert level_for_points(99) == 1
    assert level_for_points(100) == 2
    assert level_for_points(250, points_per_level=50) == 6


def test_completion_points_uses_weights() -> None:
    task = Task(id="t", user_id="u", title="x", ai_speed_score=10, ai_importance_score=15)
    settings = UserSettings(id="u", speed_weight=0.5, importance_weight=2.0)
    assert completion_points(task, settings, base_points=10) == 10 + 30 + 5
    assert completion_points(task, None, base_points=10) == 10


def test_next_streak() -> None:
    today = date(2024, 5, 10)
    assert next_streak(0, None, today) == 1
    assert next_streak(3, date(2024, 5, 9), today) == 4
    assert next_streak(3, today, today) == 3
    assert next_streak(3, date(2024, 5, 1), today) == 1


def test_achievements_to_unlock_respects_thresholds_and_history() -> None:
    catalog = [
        Achievement(id=1, name="first", required_tasks_completed=1),
        Achievement(id=2, name="ten", required_tasks_completed=10),
        Achievement(id=3, name="streak", required_streak_days=3),
        Achievement(id=4, name="no thresholds"),
    ]
    got = achievements_to_unlock(catalog, set(), completed_count=1, streak=3, level=1)
    assert [a.id for a in got] == [1, 3]

    got = achievements_to_unlock(catalog, {1, 3}, completed_count=10, streak=3, level=1)
    assert [a.id for a in got] == [2]


def test_notice_board_replaces_and_dismisses() -> None:
    changes: list[int] = []
    board = NoticeBoard(on_change=lambda: changes.append(1))

    board.show(NoticeKind.LEVEL_UP, 3)
    board.show(NoticeKind.LEVEL_UP, 4)
    assert board.just_leveled_up_to == 4

    board.dismiss(NoticeKind.LEVEL_UP)
    assert board.just_leveled_up_to is None
    assert len(changes) == 3

    board.dismiss(NoticeKind.LEVEL_UP)
    assert len(changes) == 3


@pytest.mark.asyncio
async def test_notice_board_auto_dismisses_with_running_loop() -> None:
    board = NoticeBoard(durations={NoticeKind.AURA_AWARD: 0.01})
    board.show_award(5, "Subtask completed")
    assert board.aura_award is not None
    assert board.aura_award.points == 5

    await asyncio.sleep(0.05)
    assert board.aura_award is None

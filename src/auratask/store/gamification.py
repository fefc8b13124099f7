# src/auratask/store/gamification.py

from __future__ import annotations

"""
Gamification pipeline: pure rules + transient notices.

Points and levels for task completion are owned by the backend routine
(handle_task_completion); the rules it applies live here so the reference
backend and tests share one definition. The store only compares levels
before/after and surfaces notices.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Any

from ..core.models import Achievement, Task, UserSettings

logger = logging.getLogger(__name__)


class NoticeKind(str, Enum):
    AURA_AWARD = "aura_award"
    LEVEL_UP = "level_up"
    ACHIEVEMENT = "achievement"


@dataclass(slots=True, frozen=True)
class AuraAward:
    points: int
    reason: str
    timestamp: float


# ---- rules ----


def detect_level_up(previous_level: int | None, new_level: int | None) -> int | None:
    """Return the new level iff it is strictly higher than the previous one."""
    if new_level is None:
        return None
    prev = previous_level if previous_level is not None else 1
    return new_level if new_level > prev else None


def level_for_points(points: int, points_per_level: int = 100) -> int:
    return max(0, int(points)) // max(1, int(points_per_level)) + 1


def completion_points(task: Task, settings: UserSettings | None, base_points: int = 10) -> int:
    """Base award plus score bonuses weighted by the user's AI weights."""
    if settings is None:
        return base_points
    importance_bonus = math.floor((task.ai_importance_score or 0) * settings.importance_weight)
    speed_bonus = math.floor((task.ai_speed_score or 0) * settings.speed_weight)
    return base_points + max(0, importance_bonus) + max(0, speed_bonus)


def next_streak(current: int, last_completed_on: date | None, today: date) -> int:
    """Consecutive days with at least one completion."""
    if last_completed_on is None:
        return 1
    if last_completed_on == today:
        return max(1, current)
    if last_completed_on == today - timedelta(days=1):
        return current + 1
    return 1


def achievements_to_unlock(
        achievements: Iterable[Achievement],
        already_unlocked: set[int],
        *,
        completed_count: int,
        streak: int,
        level: int,
) -> list[Achievement]:
    """Achievements whose every threshold is met and that are not unlocked yet."""
    out: list[Achievement] = []
    for a in achievements:
        if a.id in already_unlocked:
            continue
        thresholds = (
            (a.required_tasks_completed, completed_count),
            (a.required_streak_days, streak),
            (a.required_level, level),
        )
        if all(req is None for req, _ in thresholds):
            continue
        if all(req is None or have >= req for req, have in thresholds):
            out.append(a)
    return out


# ---- transient notices ----


class NoticeBoard:
    """
    Push-only, auto-dismissing notices. At most one active notice per kind;
    showing a new one replaces the previous one (and its timer).
    Not persisted.
    """

    def __init__(
            self,
            durations: dict[NoticeKind, float] | None = None,
            on_change: Callable[[], None] | None = None,
    ) -> None:
        self._durations = durations or {
            NoticeKind.AURA_AWARD: 3.0,
            NoticeKind.LEVEL_UP: 6.0,
            NoticeKind.ACHIEVEMENT: 7.0,
        }
        self._active: dict[NoticeKind, Any] = {}
        self._timers: dict[NoticeKind, asyncio.TimerHandle] = {}
        self._on_change = on_change

    def get(self, kind: NoticeKind) -> Any | None:
        return self._active.get(kind)

    @property
    def just_leveled_up_to(self) -> int | None:
        return self._active.get(NoticeKind.LEVEL_UP)

    @property
    def newly_unlocked_achievement(self) -> Achievement | None:
        return self._active.get(NoticeKind.ACHIEVEMENT)

    @property
    def aura_award(self) -> AuraAward | None:
        return self._active.get(NoticeKind.AURA_AWARD)

    def show(self, kind: NoticeKind, value: Any) -> None:
        self._cancel_timer(kind)
        self._active[kind] = value
        logger.debug("Notice shown kind=%s value=%r", kind.value, value)

        ttl = self._durations.get(kind)
        if ttl and ttl > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._timers[kind] = loop.call_later(ttl, self.dismiss, kind)
        self._changed()

    def show_award(self, points: int, reason: str) -> None:
        self.show(NoticeKind.AURA_AWARD, AuraAward(points=points, reason=reason, timestamp=time.time()))

    def dismiss(self, kind: NoticeKind) -> None:
        self._cancel_timer(kind)
        if self._active.pop(kind, None) is not None:
            self._changed()

    def clear(self) -> None:
        for kind in list(self._active):
            self.dismiss(kind)

    def _cancel_timer(self, kind: NoticeKind) -> None:
        handle = self._timers.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

# src/auratask/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field

from .models import (
    Achievement,
    Identity,
    Tag,
    Task,
    TaskFilters,
    TaskGroup,
    TaskTab,
    UserAchievement,
    UserSettings,
)


@dataclass
class UIState:
    active_tab: TaskTab = TaskTab.ALL
    filters: TaskFilters = field(default_factory=TaskFilters)
    show_filters: bool = False
    dark_mode: bool = False

    is_settings_panel_open: bool = False
    is_task_form_open: bool = False
    is_group_form_open: bool = False
    is_tag_form_open: bool = False
    is_username_modal_open: bool = False

    editing_task: Task | None = None
    editing_group: TaskGroup | None = None
    editing_tag: Tag | None = None


@dataclass
class AppState:
    """Everything the store owns. Mutated only through AppStore actions."""

    identity: Identity | None = None
    # Guest id remembered for a one-time migration after sign-in.
    pending_guest_id: str | None = None

    tasks: list[Task] = field(default_factory=list)
    groups: list[TaskGroup] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    settings: UserSettings | None = None

    achievements: list[Achievement] = field(default_factory=list)
    unlocked: list[UserAchievement] = field(default_factory=list)

    is_loading: bool = False
    error: str | None = None

    ui: UIState = field(default_factory=UIState)

# src/auratask/core/models.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from enum import StrEnum
from typing import Any, TypeVar

Row = dict[str, Any]

DEFAULT_TASK_EMOJI = "📝"
DEFAULT_GROUP_EMOJI = "📁"

MIN_SCORE = 1
MAX_SCORE = 20
MAX_GROUP_NAME_LEN = 50


class TagColor(StrEnum):
    RED = "red"
    GREEN = "green"
    BLUE = "blue"
    YELLOW = "yellow"
    PURPLE = "purple"
    ORANGE = "orange"

    @classmethod
    def from_db(cls, raw: str | None) -> TagColor:
        if not raw:
            return cls.BLUE
        try:
            return cls(raw)
        except ValueError:
            return cls.BLUE


class Theme(StrEnum):
    DEFAULT = "default"
    ALIREZA = "alireza"
    NEDA = "neda"

    @classmethod
    def from_db(cls, raw: str | None) -> Theme:
        if not raw:
            return cls.DEFAULT
        try:
            return cls(raw)
        except ValueError:
            return cls.DEFAULT


class TaskTab(StrEnum):
    ALL = "all"
    TODAY = "today"
    IMPORTANT = "important"
    COMPLETED = "completed"


class StatusFilter(StrEnum):
    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"


class PriorityFilter(StrEnum):
    ALL = "all"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuthEventType(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


# ---- identity ----


@dataclass(slots=True)
class User:
    """Identity issued by the backend auth subsystem (may itself be anonymous)."""

    id: str
    email: str | None = None
    is_anonymous: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class GuestUser:
    """Locally generated identity with no server session."""

    id: str
    created_at: float = 0.0

    @property
    def is_anonymous(self) -> bool:
        return True


Identity = User | GuestUser


# ---- task data ----


@dataclass(slots=True)
class Subtask:
    id: str
    task_id: str
    user_id: str
    title: str
    is_completed: bool = False
    order_index: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: Row) -> Subtask:
        return cls(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            user_id=str(row.get("user_id") or ""),
            title=str(row.get("title") or ""),
            is_completed=bool(row.get("is_completed")),
            order_index=int(row.get("order_index") or 0),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
        )


@dataclass(slots=True)
class Tag:
    id: str
    user_id: str
    name: str
    color: TagColor = TagColor.BLUE
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: Row) -> Tag:
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            name=str(row.get("name") or ""),
            color=TagColor.from_db(row.get("color")),
            created_at=float(row.get("created_at") or 0.0),
        )


@dataclass(slots=True)
class TaskGroup:
    id: str
    user_id: str
    name: str
    emoji: str = DEFAULT_GROUP_EMOJI
    order_index: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: Row) -> TaskGroup:
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            name=str(row.get("name") or ""),
            emoji=str(row.get("emoji") or DEFAULT_GROUP_EMOJI),
            order_index=int(row.get("order_index") or 0),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
        )


@dataclass(slots=True)
class Task:
    id: str
    user_id: str
    title: str
    description: str | None = None
    is_completed: bool = False
    completed_at: float | None = None
    group_id: str | None = None
    due_date: str | None = None

    ai_speed_score: int | None = None
    ai_importance_score: int | None = None
    speed_tag: str | None = None
    importance_tag: str | None = None
    emoji: str | None = None
    ai_generated: bool = False
    enable_ai_ranking: bool = False
    enable_ai_subtasks: bool = False

    order_index: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    # Owned / joined collections (never persisted on the tasks row itself).
    subtasks: list[Subtask] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)
    group: TaskGroup | None = None

    @property
    def is_archived(self) -> bool:
        # Completed tasks are kept for history rather than removed.
        return self.is_completed

    @classmethod
    def from_row(cls, row: Row) -> Task:
        completed_at = row.get("completed_at")
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            title=str(row.get("title") or ""),
            description=row.get("description"),
            is_completed=bool(row.get("is_completed")),
            completed_at=float(completed_at) if completed_at is not None else None,
            group_id=row.get("group_id"),
            due_date=row.get("due_date"),
            ai_speed_score=_opt_int(row.get("ai_speed_score")),
            ai_importance_score=_opt_int(row.get("ai_importance_score")),
            speed_tag=row.get("speed_tag"),
            importance_tag=row.get("importance_tag"),
            emoji=row.get("emoji"),
            ai_generated=bool(row.get("ai_generated")),
            enable_ai_ranking=bool(row.get("enable_ai_ranking")),
            enable_ai_subtasks=bool(row.get("enable_ai_subtasks")),
            order_index=int(row.get("order_index") or 0),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
        )


TASK_COLUMNS: tuple[str, ...] = (
    "id",
    "user_id",
    "title",
    "description",
    "is_completed",
    "completed_at",
    "group_id",
    "due_date",
    "ai_speed_score",
    "ai_importance_score",
    "speed_tag",
    "importance_tag",
    "emoji",
    "ai_generated",
    "enable_ai_ranking",
    "enable_ai_subtasks",
    "order_index",
    "created_at",
    "updated_at",
)


# ---- settings / gamification ----


@dataclass(slots=True)
class UserSettings:
    id: str
    username: str | None = None
    api_key: str | None = None
    aura_points: int = 0
    level: int = 1
    speed_weight: float = 1.0
    importance_weight: float = 1.0
    theme: Theme = Theme.DEFAULT
    haptic_feedback: bool = True
    auto_ranking: bool = False
    auto_subtasks: bool = False
    current_streak: int = 0
    last_completed_on: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: Row) -> UserSettings:
        return cls(
            id=str(row["id"]),
            username=row.get("username"),
            api_key=row.get("api_key"),
            aura_points=max(0, int(row.get("aura_points") or 0)),
            level=max(1, int(row.get("level") or 1)),
            speed_weight=float(row.get("speed_weight") if row.get("speed_weight") is not None else 1.0),
            importance_weight=float(
                row.get("importance_weight") if row.get("importance_weight") is not None else 1.0
            ),
            theme=Theme.from_db(row.get("theme")),
            haptic_feedback=bool(row.get("haptic_feedback", True)),
            auto_ranking=bool(row.get("auto_ranking")),
            auto_subtasks=bool(row.get("auto_subtasks")),
            current_streak=int(row.get("current_streak") or 0),
            last_completed_on=row.get("last_completed_on"),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
        )

    def to_row(self) -> Row:
        row = asdict(self)
        row["theme"] = self.theme.value
        return row


@dataclass(slots=True)
class Achievement:
    id: int
    name: str
    description: str = ""
    icon_name: str = "Trophy"
    reward_points: int = 0
    category: str = "general"
    rarity: str = "common"
    required_tasks_completed: int | None = None
    required_streak_days: int | None = None
    required_level: int | None = None

    @classmethod
    def from_row(cls, row: Row) -> Achievement:
        return cls(
            id=int(row["id"]),
            name=str(row.get("name") or ""),
            description=str(row.get("description") or ""),
            icon_name=str(row.get("icon_name") or "Trophy"),
            reward_points=int(row.get("reward_points") or 0),
            category=str(row.get("category") or "general"),
            rarity=str(row.get("rarity") or "common"),
            required_tasks_completed=_opt_int(row.get("required_tasks_completed")),
            required_streak_days=_opt_int(row.get("required_streak_days")),
            required_level=_opt_int(row.get("required_level")),
        )


@dataclass(slots=True)
class UserAchievement:
    id: str
    user_id: str
    achievement_id: int
    unlocked_at: float = 0.0

    @classmethod
    def from_row(cls, row: Row) -> UserAchievement:
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            achievement_id=int(row["achievement_id"]),
            unlocked_at=float(row.get("unlocked_at") or 0.0),
        )


# ---- inputs / outputs of store actions ----


@dataclass(slots=True)
class TaskDraft:
    """User input for a new task (before AI enrichment)."""

    title: str
    description: str | None = None
    group_id: str | None = None
    due_date: str | None = None
    enable_ai_ranking: bool = False
    enable_ai_subtasks: bool = False
    ai_speed_score: int | None = None
    ai_importance_score: int | None = None
    emoji: str | None = None
    subtasks: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskAnalysis:
    """What the task analyzer returns."""

    ai_speed_score: int | None = None
    ai_importance_score: int | None = None
    speed_tag: str | None = None
    importance_tag: str | None = None
    emoji: str | None = None
    sub_tasks: list[str] = field(default_factory=list)
    ai_generated: bool = True

    def task_fields(self) -> Row:
        """Task columns to merge into the row being written (None values skipped)."""
        out: Row = {"ai_generated": self.ai_generated}
        for name in ("ai_speed_score", "ai_importance_score", "speed_tag", "importance_tag", "emoji"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


@dataclass(slots=True)
class TaskFilters:
    search_query: str = ""
    group_id: str | None = None
    status: StatusFilter = StatusFilter.ALL
    priority: PriorityFilter = PriorityFilter.ALL
    tag_id: str | None = None

    def to_dict(self) -> Row:
        return {
            "search_query": self.search_query,
            "group_id": self.group_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "tag_id": self.tag_id,
        }

    @classmethod
    def from_dict(cls, data: Row | None) -> TaskFilters:
        if not isinstance(data, dict):
            return cls()
        try:
            status = StatusFilter(data.get("status") or "all")
        except ValueError:
            status = StatusFilter.ALL
        try:
            priority = PriorityFilter(data.get("priority") or "all")
        except ValueError:
            priority = PriorityFilter.ALL
        return cls(
            search_query=str(data.get("search_query") or ""),
            group_id=data.get("group_id"),
            status=status,
            priority=priority,
            tag_id=data.get("tag_id"),
        )


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """One row-level change pushed by the backend realtime feed."""

    table: str
    event_type: ChangeType
    new: Row | None = None
    old: Row | None = None


# ---- helpers ----

M = TypeVar("M")


def apply_changes(obj: M, changes: Row) -> M:
    """Return a copy of a dataclass with only the known fields in `changes` replaced."""
    names = {f.name for f in fields(obj)}  # type: ignore[arg-type]
    known = {k: v for k, v in changes.items() if k in names}
    if not known:
        return obj
    return replace(obj, **known)  # type: ignore[type-var]


def _opt_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

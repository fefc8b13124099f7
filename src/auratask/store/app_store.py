# src/auratask/store/app_store.py

from __future__ import annotations

"""
AppStore: the single client-side state container.

Every mutating action follows the same protocol:
1) apply the change to local state and notify listeners (before any await)
2) persist it through the BackendGateway
3) success: merge the canonical row returned by the backend
   failure: notify an error and re-fetch the affected collection

Realtime change events from other sessions are merged into the same state.
Callers must not mutate `store.state` directly.
"""

import asyncio
import logging
import secrets
import time
import uuid
from collections.abc import Callable, Coroutine, Iterable, Mapping, Sequence
from dataclasses import fields, replace
from datetime import date, datetime
from typing import Any

from ..analyzer.keys import resolve_api_key
from ..core.errors import (
    AuthFailure,
    EnrichmentFailure,
    MigrationFailure,
    PersistenceFailure,
    ValidationFailure,
)
from ..core.models import (
    DEFAULT_GROUP_EMOJI,
    DEFAULT_TASK_EMOJI,
    MAX_GROUP_NAME_LEN,
    MAX_SCORE,
    MIN_SCORE,
    Achievement,
    AuthEventType,
    ChangeEvent,
    ChangeType,
    GuestUser,
    Identity,
    PriorityFilter,
    Row,
    StatusFilter,
    Subtask,
    Tag,
    TagColor,
    Task,
    TaskAnalysis,
    TaskDraft,
    TaskFilters,
    TaskGroup,
    TaskTab,
    Theme,
    User,
    UserAchievement,
    UserSettings,
    apply_changes,
)
from ..core.ports import BackendGateway, LocalStorage, Notifier, Subscription, TaskAnalyzer
from ..core.state import AppState
from .gamification import NoticeBoard, NoticeKind, detect_level_up
from .local_storage import MemoryStorage
from .ordering import (
    DEFAULT_GAP,
    DropKind,
    DropPlan,
    next_group_index,
    next_order_index,
    partition,
    plan_task_drop,
    position_keys,
    respace,
    sort_groups,
    sort_tasks,
)

logger = logging.getLogger(__name__)

Listener = Callable[[AppState], None]

MAX_TITLE_LEN = 255
MAX_DESCRIPTION_LEN = 1000
MIN_API_KEY_LEN = 10

HIGH_PRIORITY_MIN = 15
MEDIUM_PRIORITY_MIN = 8

# Task columns a caller may change through update_task.
_TASK_EDITABLE = frozenset(
    {
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
    }
)
_SUBTASK_EDITABLE = frozenset({"title", "is_completed", "order_index"})
_GROUP_EDITABLE = frozenset({"name", "emoji", "order_index"})
_TAG_EDITABLE = frozenset({"name", "color"})
# Points, level and streak only change through backend routines.
_SETTINGS_READ_ONLY = frozenset(
    {"id", "aura_points", "level", "current_streak", "last_completed_on", "created_at", "updated_at"}
)
_SETTINGS_EDITABLE = frozenset(f.name for f in fields(UserSettings) if f.name not in _SETTINGS_READ_ONLY)

# Rollback scopes.
_TASKS = "tasks"
_ALL = "all"
_SETTINGS = "settings"


def new_guest_id() -> str:
    return f"guest_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class LoggingNotifier:
    """Notifier that only writes to the log (headless / CLI default)."""

    def success(self, message: str) -> None:
        logger.info("OK: %s", message)

    def error(self, message: str) -> None:
        logger.warning("ERROR: %s", message)


class AppStore:
    def __init__(
            self,
            gateway: BackendGateway,
            *,
            analyzer: TaskAnalyzer | None = None,
            notifier: Notifier | None = None,
            storage: LocalStorage | None = None,
            settings: Any | None = None,
    ) -> None:
        self.gateway = gateway
        self.analyzer = analyzer
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.storage: LocalStorage = storage or MemoryStorage()

        self.order_gap = int(getattr(settings, "order_gap", DEFAULT_GAP) or DEFAULT_GAP)
        self.subtask_reward_points = int(getattr(settings, "subtask_reward_points", 5))

        self.state = AppState()
        self.notices = NoticeBoard(
            durations={
                NoticeKind.AURA_AWARD: float(getattr(settings, "notice_seconds_aura", 3.0)),
                NoticeKind.LEVEL_UP: float(getattr(settings, "notice_seconds_level_up", 6.0)),
                NoticeKind.ACHIEVEMENT: float(getattr(settings, "notice_seconds_achievement", 7.0)),
            },
            on_change=self._emit,
        )

        self._listeners: list[Listener] = []
        self._realtime: list[Subscription] = []
        self._auth_sub: Subscription | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._guest_id: str | None = None

        self._restore_local()

    # ---- observation ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("State listener failed: %r", listener)

    # ---- local persistence (guest id + UI preferences) ----

    def _restore_local(self) -> None:
        data = self.storage.load()
        ui = self.state.ui

        ui.dark_mode = bool(data.get("dark_mode", False))
        try:
            ui.active_tab = TaskTab(data.get("active_tab") or TaskTab.ALL.value)
        except ValueError:
            ui.active_tab = TaskTab.ALL
        ui.filters = TaskFilters.from_dict(data.get("filters"))
        ui.show_filters = bool(data.get("show_filters", False))

        self._guest_id = data.get("guest_id") or None
        self.state.pending_guest_id = data.get("pending_guest_id") or None

    def _persist_local(self) -> None:
        ui = self.state.ui
        self.storage.save(
            {
                "guest_id": self._guest_id,
                "pending_guest_id": self.state.pending_guest_id,
                "dark_mode": ui.dark_mode,
                "active_tab": ui.active_tab.value,
                "filters": ui.filters.to_dict(),
                "show_filters": ui.show_filters,
            }
        )

    # ---- background work ----

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; dropping background work %r", coro)
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background store task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every background task spawned by the store has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        self._unsubscribe_realtime()
        if self._auth_sub is not None:
            self._auth_sub.unsubscribe()
            self._auth_sub = None
        await self.drain()
        self.notices.clear()

    # ---- identity / auth ----

    @property
    def identity(self) -> Identity | None:
        return self.state.identity

    def _require_identity(self) -> Identity:
        identity = self.state.identity
        if identity is None:
            self.notifier.error("Sign in or continue as a guest first.")
            raise AuthFailure("No active identity")
        return identity

    def _guest_identity(self) -> GuestUser:
        if not self._guest_id:
            self._guest_id = new_guest_id()
            logger.info("Generated new guest id=%s", self._guest_id)
        return GuestUser(id=self._guest_id, created_at=time.time())

    async def initialize(self) -> None:
        """Resume the backend session if any, otherwise continue as the local guest."""
        if self._auth_sub is None:
            self._auth_sub = self.gateway.on_auth_state_change(self._on_auth_change)

        try:
            user = await self.gateway.get_user()
        except PersistenceFailure as e:
            logger.warning("Session lookup failed: %s", e)
            user = None

        if user is not None:
            await self.handle_auth_event(AuthEventType.SIGNED_IN, user)
            return

        self.state.identity = self._guest_identity()
        self._persist_local()
        self._resubscribe_realtime()
        self._emit()
        await self.fetch_initial_data()

    def _on_auth_change(self, event: AuthEventType, user: User | None) -> None:
        self._spawn(self.handle_auth_event(event, user))

    async def handle_auth_event(self, event: AuthEventType, user: User | None) -> None:
        """
        React to a backend auth event. Idempotent for a user that is already
        the current identity, so direct calls and the gateway callback can both
        deliver the same event.
        """
        if event == AuthEventType.SIGNED_OUT:
            if self.state.identity is None:
                return
            logger.info("Signed out (was id=%s)", self.state.identity.id)
            self._unsubscribe_realtime()
            self.state.identity = None
            self.state.tasks = []
            self.state.groups = []
            self.state.tags = []
            self.state.settings = None
            self.state.unlocked = []
            self.notices.clear()
            self._persist_local()
            self._emit()
            return

        if user is None:
            return

        current = self.state.identity
        if current is not None and current.id == user.id:
            if current != user:
                self.state.identity = user
                self._emit()
            return

        previous_guest: str | None = None
        if current is not None and current.is_anonymous:
            previous_guest = current.id
        elif self.state.pending_guest_id:
            previous_guest = self.state.pending_guest_id
        elif current is None and self._guest_id:
            previous_guest = self._guest_id

        # Identity is switched before any await.
        self.state.identity = user
        if user.is_anonymous:
            self.state.pending_guest_id = None
        else:
            self.state.pending_guest_id = previous_guest if previous_guest != user.id else None
        self._persist_local()
        self._resubscribe_realtime()
        self._emit()

        logger.info("Signed in id=%s anonymous=%s", user.id, user.is_anonymous)

        if self.state.pending_guest_id:
            await self.migrate_guest_data(self.state.pending_guest_id)
        else:
            await self.fetch_initial_data()

    async def sign_in_anonymously(self) -> User:
        try:
            user = await self.gateway.sign_in_anonymously()
        except PersistenceFailure as e:
            self.notifier.error("Could not start a guest session.")
            raise AuthFailure(str(e)) from e
        await self.handle_auth_event(AuthEventType.SIGNED_IN, user)
        return user

    async def sign_in_with_oauth(self, provider: str, *, email: str | None = None) -> User:
        try:
            user = await self.gateway.sign_in_with_oauth(provider, email=email)
        except PersistenceFailure as e:
            self.notifier.error("Sign-in failed.")
            raise AuthFailure(str(e)) from e
        await self.handle_auth_event(AuthEventType.SIGNED_IN, user)
        return user

    async def sign_out(self) -> None:
        try:
            await self.gateway.sign_out()
        except PersistenceFailure as e:
            logger.warning("Backend sign-out failed: %s", e)
        await self.handle_auth_event(AuthEventType.SIGNED_OUT, None)

    async def migrate_guest_data(self, guest_id: str) -> bool:
        """
        One-time reassignment of guest-owned rows to the signed-in user.
        Not retried on failure; the remembered guest id is cleared either way.
        """
        identity = self._require_identity()
        ok = False
        try:
            result = await self.gateway.rpc(
                "migrate_guest_data",
                {"guest_id": guest_id, "user_id": identity.id},
            )
            ok = True
            logger.info("Migrated guest data guest=%s -> user=%s result=%r", guest_id, identity.id, result)
            self.notifier.success("Your guest data was moved to your account.")
        except PersistenceFailure as e:
            err = MigrationFailure(f"Guest data migration failed: {e}")
            logger.error("%s", err)
            self.notifier.error("Could not move your guest data.")
        finally:
            self.state.pending_guest_id = None
            self._guest_id = None
            self._persist_local()

        await self.fetch_initial_data()
        return ok

    # ---- realtime ----

    def _resubscribe_realtime(self) -> None:
        self._unsubscribe_realtime()
        identity = self.state.identity
        if identity is None:
            return

        handlers: tuple[tuple[str, Callable[[ChangeEvent], None]], ...] = (
            ("tasks", self._on_task_change),
            ("subtasks", self._on_subtask_change),
            ("user_achievements", self._on_achievement_change),
        )
        for table, handler in handlers:
            try:
                self._realtime.append(self.gateway.subscribe(table, handler, match={"user_id": identity.id}))
            except PersistenceFailure as e:
                logger.warning("Realtime subscription to %s failed: %s", table, e)

    def _unsubscribe_realtime(self) -> None:
        subs, self._realtime = self._realtime, []
        for sub in subs:
            try:
                sub.unsubscribe()
            except Exception:
                logger.exception("Failed to unsubscribe realtime channel")

    def _on_task_change(self, event: ChangeEvent) -> None:
        if event.event_type == ChangeType.DELETE:
            task_id = (event.old or {}).get("id")
            if task_id is not None and self._find_task(str(task_id)) is not None:
                self.state.tasks = [t for t in self.state.tasks if t.id != str(task_id)]
                self._emit()
            return
        if event.new and self._merge_task_row(event.new):
            self._emit()

    def _on_subtask_change(self, event: ChangeEvent) -> None:
        if event.event_type == ChangeType.DELETE:
            sub_id = (event.old or {}).get("id")
            if sub_id is not None and self._remove_subtask_local(str(sub_id)):
                self._emit()
            return
        if event.new and self._merge_subtask_row(event.new):
            self._emit()

    def _on_achievement_change(self, event: ChangeEvent) -> None:
        if event.event_type != ChangeType.INSERT or not event.new:
            return
        unlocked = UserAchievement.from_row(event.new)
        if any(u.achievement_id == unlocked.achievement_id for u in self.state.unlocked):
            return
        self.state.unlocked = [*self.state.unlocked, unlocked]

        achievement = next((a for a in self.state.achievements if a.id == unlocked.achievement_id), None)
        if achievement is None:
            logger.warning("Unlocked unknown achievement id=%s", unlocked.achievement_id)
            self._emit()
            return

        logger.info("Achievement unlocked: %s", achievement.name)
        self.notices.show(NoticeKind.ACHIEVEMENT, achievement)

    # ---- loading ----

    async def fetch_initial_data(self) -> None:
        identity = self.state.identity
        if identity is None:
            return

        owner = {"user_id": identity.id}
        self.state.is_loading = True
        self.state.error = None
        self._emit()

        try:
            groups = [
                TaskGroup.from_row(r)
                for r in await self.gateway.select("task_groups", match=owner, order_by=("order_index", "created_at"))
            ]
            tags = [
                Tag.from_row(r)
                for r in await self.gateway.select("tags", match=owner, order_by=("created_at",))
            ]
            tasks = await self._load_tasks(identity.id, groups=groups, tags=tags)
            settings_rows = await self.gateway.select("user_settings", match={"id": identity.id}, limit=1)
            achievements = [
                Achievement.from_row(r) for r in await self.gateway.select("achievements", order_by=("id",))
            ]
            unlocked = [
                UserAchievement.from_row(r)
                for r in await self.gateway.select("user_achievements", match=owner, order_by=("unlocked_at",))
            ]
        except PersistenceFailure as e:
            logger.error("Initial data load failed: %s", e)
            self.state.is_loading = False
            self.state.error = "Failed to load your data."
            self.notifier.error("Failed to load your data.")
            self._emit()
            return

        if self.state.identity is None or self.state.identity.id != identity.id:
            # Identity changed while loading; that switch triggers its own fetch.
            logger.debug("Discarding data loaded for stale identity id=%s", identity.id)
            return

        self.state.groups = groups
        self.state.tags = tags
        self.state.tasks = tasks
        self.state.settings = UserSettings.from_row(settings_rows[0]) if settings_rows else None
        self.state.achievements = achievements
        self.state.unlocked = unlocked
        self.state.is_loading = False

        settings = self.state.settings
        if isinstance(identity, User) and not identity.is_anonymous and settings is not None and not settings.username:
            self.state.ui.is_username_modal_open = True

        logger.info(
            "Loaded data for id=%s: tasks=%d groups=%d tags=%d",
            identity.id,
            len(tasks),
            len(groups),
            len(tags),
        )
        self._emit()

    async def refresh_tasks(self) -> None:
        identity = self.state.identity
        if identity is None:
            return
        try:
            tasks = await self._load_tasks(identity.id, groups=self.state.groups, tags=self.state.tags)
        except PersistenceFailure as e:
            logger.error("Task refresh failed: %s", e)
            self.notifier.error("Failed to refresh tasks.")
            return
        self.state.tasks = tasks
        self._emit()

    async def refresh_settings(self) -> None:
        identity = self.state.identity
        if identity is None:
            return
        try:
            rows = await self.gateway.select("user_settings", match={"id": identity.id}, limit=1)
        except PersistenceFailure as e:
            logger.error("Settings refresh failed: %s", e)
            return
        self.state.settings = UserSettings.from_row(rows[0]) if rows else None
        self._emit()

    async def _load_tasks(self, owner_id: str, *, groups: Iterable[TaskGroup], tags: Iterable[Tag]) -> list[Task]:
        task_rows = await self.gateway.select(
            "tasks",
            match={"user_id": owner_id},
            order_by=("order_index", "created_at"),
        )
        subtask_rows = await self.gateway.select(
            "subtasks",
            match={"user_id": owner_id},
            order_by=("order_index", "created_at"),
        )
        task_ids = [str(r["id"]) for r in task_rows]
        link_rows = await self.gateway.select("task_tags", match={"task_id": task_ids}) if task_ids else []

        groups_by_id = {g.id: g for g in groups}
        tags_by_id = {t.id: t for t in tags}

        subtasks: dict[str, list[Subtask]] = {}
        for r in subtask_rows:
            s = Subtask.from_row(r)
            subtasks.setdefault(s.task_id, []).append(s)

        task_tags: dict[str, list[Tag]] = {}
        for r in link_rows:
            tag = tags_by_id.get(str(r["tag_id"]))
            if tag is not None:
                task_tags.setdefault(str(r["task_id"]), []).append(tag)

        out: list[Task] = []
        for r in task_rows:
            task = Task.from_row(r)
            task.subtasks = sorted(subtasks.get(task.id, []), key=lambda s: (s.order_index, s.created_at))
            task.tags = task_tags.get(task.id, [])
            task.group = groups_by_id.get(task.group_id) if task.group_id else None
            out.append(task)
        return sort_tasks(out)

    # ---- failure protocol ----

    async def _persistence_failed(self, action: str, exc: PersistenceFailure, *, scope: str) -> None:
        logger.warning("Failed to %s: %s", action, exc)
        self.notifier.error(f"Failed to {action}.")
        if scope == _TASKS:
            await self.refresh_tasks()
        elif scope == _SETTINGS:
            await self.refresh_settings()
        else:
            await self.fetch_initial_data()

    # ---- lookups / local merges ----

    def _find_task(self, task_id: str) -> Task | None:
        return next((t for t in self.state.tasks if t.id == task_id), None)

    def _tail_key(self, task_id: str, group_id: str | None, *, completed: bool) -> int:
        """Key placing a task after every other task of the (group, completion) partition it enters."""
        others = [t for t in partition(self.state.tasks, group_id, completed=completed) if t.id != task_id]
        return next_order_index(others, self.order_gap)

    def _find_group(self, group_id: str | None) -> TaskGroup | None:
        if group_id is None:
            return None
        return next((g for g in self.state.groups if g.id == group_id), None)

    def _find_tag(self, tag_id: str) -> Tag | None:
        return next((t for t in self.state.tags if t.id == tag_id), None)

    def _find_subtask(self, subtask_id: str) -> tuple[Task, Subtask] | None:
        for task in self.state.tasks:
            for sub in task.subtasks:
                if sub.id == subtask_id:
                    return task, sub
        return None

    def _patch_task(self, task_id: str, changes: Row) -> Task | None:
        updated: Task | None = None
        out: list[Task] = []
        for t in self.state.tasks:
            if t.id == task_id:
                t = apply_changes(t, changes)
                if "group_id" in changes:
                    t.group = self._find_group(t.group_id)
                updated = t
            out.append(t)
        if updated is not None:
            self.state.tasks = sort_tasks(out) if "order_index" in changes else out
        return updated

    def _merge_task_row(self, row: Row) -> bool:
        """Merge a canonical task row by id. Rows older than the local copy are ignored."""
        incoming = Task.from_row(row)
        existing = self._find_task(incoming.id)
        if existing is not None:
            if incoming.updated_at and existing.updated_at and incoming.updated_at < existing.updated_at:
                logger.debug("Ignoring stale task row id=%s", incoming.id)
                return False
            incoming.subtasks = existing.subtasks
            incoming.tags = existing.tags
        incoming.group = self._find_group(incoming.group_id)
        others = [t for t in self.state.tasks if t.id != incoming.id]
        self.state.tasks = sort_tasks([*others, incoming])
        return True

    def _merge_subtask_row(self, row: Row) -> bool:
        incoming = Subtask.from_row(row)
        parent = self._find_task(incoming.task_id)
        if parent is None:
            logger.debug("Subtask id=%s for unknown task id=%s", incoming.id, incoming.task_id)
            return False
        existing = next((s for s in parent.subtasks if s.id == incoming.id), None)
        if existing is not None and incoming.updated_at and existing.updated_at:
            if incoming.updated_at < existing.updated_at:
                logger.debug("Ignoring stale subtask row id=%s", incoming.id)
                return False
        subs = [s for s in parent.subtasks if s.id != incoming.id]
        subs.append(incoming)
        subs.sort(key=lambda s: (s.order_index, s.created_at))
        self._patch_task(parent.id, {"subtasks": subs})
        return True

    def _patch_subtask_local(self, subtask_id: str, changes: Row) -> Subtask | None:
        found = self._find_subtask(subtask_id)
        if found is None:
            return None
        task, sub = found
        updated = apply_changes(sub, changes)
        subs = [updated if s.id == subtask_id else s for s in task.subtasks]
        self._patch_task(task.id, {"subtasks": subs})
        return updated

    def _remove_subtask_local(self, subtask_id: str) -> bool:
        found = self._find_subtask(subtask_id)
        if found is None:
            return False
        task, _ = found
        self._patch_task(task.id, {"subtasks": [s for s in task.subtasks if s.id != subtask_id]})
        return True

    def _replace_group_everywhere(self, group: TaskGroup) -> None:
        self.state.groups = sort_groups([group if g.id == group.id else g for g in self.state.groups])
        self.state.tasks = [replace(t, group=group) if t.group_id == group.id else t for t in self.state.tasks]

    def _replace_tag_everywhere(self, tag: Tag) -> None:
        self.state.tags = [tag if t.id == tag.id else t for t in self.state.tags]
        self.state.tasks = [
            replace(t, tags=[tag if x.id == tag.id else x for x in t.tags]) if any(x.id == tag.id for x in t.tags)
            else t
            for t in self.state.tasks
        ]

    # ---- validation ----

    @staticmethod
    def _clean_title(raw: Any, *, what: str = "Task title") -> str:
        title = str(raw or "").strip()
        if not title:
            raise ValidationFailure(f"{what} is required")
        if len(title) > MAX_TITLE_LEN:
            raise ValidationFailure(f"{what} must be at most {MAX_TITLE_LEN} characters")
        return title

    @staticmethod
    def _clean_description(raw: Any) -> str | None:
        if raw is None:
            return None
        text = str(raw).strip()
        if len(text) > MAX_DESCRIPTION_LEN:
            raise ValidationFailure(f"Description must be at most {MAX_DESCRIPTION_LEN} characters")
        return text or None

    @staticmethod
    def _check_score(name: str, value: Any) -> int | None:
        if value is None:
            return None
        try:
            score = int(value)
        except (TypeError, ValueError):
            raise ValidationFailure(f"{name} must be an integer") from None
        if not MIN_SCORE <= score <= MAX_SCORE:
            raise ValidationFailure(f"{name} must be between {MIN_SCORE} and {MAX_SCORE}")
        return score

    def _validated(self, check: Callable[[], Any]) -> Any:
        """Run a validation step; on failure show the message and re-raise."""
        try:
            return check()
        except ValidationFailure as e:
            self.notifier.error(str(e))
            raise

    def _clean_task_changes(self, changes: Mapping[str, Any]) -> Row:
        unknown = set(changes) - _TASK_EDITABLE
        if unknown:
            raise ValidationFailure(f"Unknown task fields: {', '.join(sorted(unknown))}")
        out: Row = dict(changes)
        if "title" in out:
            out["title"] = self._clean_title(out["title"])
        if "description" in out:
            out["description"] = self._clean_description(out["description"])
        for name in ("ai_speed_score", "ai_importance_score"):
            if name in out:
                out[name] = self._check_score(name, out[name])
        if out.get("group_id") is not None and self._find_group(out["group_id"]) is None:
            raise ValidationFailure("Unknown group")
        return out

    # ---- enrichment ----

    async def _analyze(
            self,
            *,
            title: str,
            description: str | None,
            enable_ai_ranking: bool,
            enable_ai_subtasks: bool,
    ) -> TaskAnalysis | None:
        if self.analyzer is None:
            return None
        settings = self.state.settings
        try:
            api_key = await resolve_api_key(self.gateway, settings)
            return await self.analyzer.analyze_task(
                title=title,
                description=description,
                enable_ai_ranking=enable_ai_ranking,
                enable_ai_subtasks=enable_ai_subtasks,
                api_key=api_key,
                speed_weight=settings.speed_weight if settings else 1.0,
                importance_weight=settings.importance_weight if settings else 1.0,
            )
        except EnrichmentFailure as e:
            logger.warning("Task analysis skipped: %s", e)
            return None

    async def _assign_group_emoji(self, group_id: str, name: str) -> None:
        if self.analyzer is None:
            return
        try:
            api_key = await resolve_api_key(self.gateway, self.state.settings)
            emoji = await self.analyzer.suggest_group_emoji(name, api_key=api_key)
        except EnrichmentFailure as e:
            logger.warning("Group emoji suggestion skipped: %s", e)
            return

        group = self._find_group(group_id)
        if group is None or not emoji or emoji == group.emoji:
            return

        self._replace_group_everywhere(replace(group, emoji=emoji))
        self._emit()
        try:
            rows = await self.gateway.update("task_groups", {"emoji": emoji}, match={"id": group_id})
        except PersistenceFailure as e:
            logger.warning("Failed to store group emoji for id=%s: %s", group_id, e)
            await self.fetch_initial_data()
            return
        if rows:
            self._replace_group_everywhere(TaskGroup.from_row(rows[0]))
            self._emit()

    # ---- tasks ----

    async def add_task(self, draft: TaskDraft) -> Task | None:
        identity = self._require_identity()

        def _check() -> tuple[str, str | None, int | None, int | None]:
            if draft.group_id is not None and self._find_group(draft.group_id) is None:
                raise ValidationFailure("Unknown group")
            return (
                self._clean_title(draft.title),
                self._clean_description(draft.description),
                self._check_score("ai_speed_score", draft.ai_speed_score),
                self._check_score("ai_importance_score", draft.ai_importance_score),
            )

        title, description, speed, importance = self._validated(_check)

        task = Task(
            id=str(uuid.uuid4()),
            user_id=identity.id,
            title=title,
            description=description,
            group_id=draft.group_id,
            due_date=draft.due_date,
            ai_speed_score=speed,
            ai_importance_score=importance,
            emoji=draft.emoji or DEFAULT_TASK_EMOJI,
            enable_ai_ranking=draft.enable_ai_ranking,
            enable_ai_subtasks=draft.enable_ai_subtasks,
            order_index=next_order_index(self.state.tasks, self.order_gap),
            created_at=time.time(),
            group=self._find_group(draft.group_id),
        )
        self.state.tasks = sort_tasks([*self.state.tasks, task])
        self._emit()

        payload: Row = {
            "id": task.id,
            "user_id": task.user_id,
            "title": task.title,
            "description": task.description,
            "is_completed": False,
            "group_id": task.group_id,
            "due_date": task.due_date,
            "ai_speed_score": task.ai_speed_score,
            "ai_importance_score": task.ai_importance_score,
            "emoji": task.emoji,
            "enable_ai_ranking": task.enable_ai_ranking,
            "enable_ai_subtasks": task.enable_ai_subtasks,
            "order_index": task.order_index,
        }

        analysis: TaskAnalysis | None = None
        if draft.enable_ai_ranking or draft.enable_ai_subtasks:
            analysis = await self._analyze(
                title=title,
                description=description,
                enable_ai_ranking=draft.enable_ai_ranking,
                enable_ai_subtasks=draft.enable_ai_subtasks,
            )
            if analysis is not None:
                extra = analysis.task_fields()
                payload.update(extra)
                self._patch_task(task.id, extra)
                self._emit()

        try:
            row = await self.gateway.insert("tasks", payload)
        except PersistenceFailure as e:
            await self._persistence_failed("add task", e, scope=_TASKS)
            return None

        self._merge_task_row(row)
        self._emit()

        titles = [t for t in draft.subtasks if str(t).strip()]
        if analysis is not None and draft.enable_ai_subtasks:
            titles.extend(t for t in analysis.sub_tasks if str(t).strip())
        if titles:
            await self._insert_subtasks(task.id, identity.id, titles)

        self.notifier.success("Task added.")
        logger.info("Task added id=%s ai=%s subtasks=%d", task.id, analysis is not None, len(titles))
        return self._find_task(task.id)

    async def _insert_subtasks(self, task_id: str, user_id: str, titles: Sequence[str]) -> None:
        failed = False
        for raw in titles:
            parent = self._find_task(task_id)
            if parent is None:
                return
            sub = Subtask(
                id=str(uuid.uuid4()),
                task_id=task_id,
                user_id=user_id,
                title=str(raw).strip()[:MAX_TITLE_LEN],
                order_index=max((s.order_index for s in parent.subtasks), default=0) + 1,
                created_at=time.time(),
            )
            self._patch_task(task_id, {"subtasks": [*parent.subtasks, sub]})
            self._emit()
            try:
                row = await self.gateway.insert("subtasks", self._subtask_payload(sub))
            except PersistenceFailure as e:
                logger.warning("Failed to add generated subtask to task id=%s: %s", task_id, e)
                failed = True
                continue
            self._merge_subtask_row(row)
            self._emit()
        if failed:
            self.notifier.error("Some subtasks could not be saved.")
            await self.refresh_tasks()

    async def update_task(self, task_id: str, changes: Mapping[str, Any], *, reanalyze: bool = False) -> Task | None:
        """Partial update; only the given fields are written."""
        self._require_identity()
        clean = self._validated(lambda: self._clean_task_changes(changes))

        task = self._find_task(task_id)
        if task is None:
            logger.warning("update_task: unknown task id=%s", task_id)
            return None

        group_id = clean.get("group_id", task.group_id)
        completed = bool(clean.get("is_completed", task.is_completed))
        if (group_id, completed) != (task.group_id, task.is_completed) and "order_index" not in clean:
            clean["order_index"] = self._tail_key(task_id, group_id, completed=completed)

        self._patch_task(task_id, clean)
        self._emit()

        if reanalyze:
            current = self._find_task(task_id) or task
            analysis = await self._analyze(
                title=current.title,
                description=current.description,
                enable_ai_ranking=current.enable_ai_ranking,
                enable_ai_subtasks=False,
            )
            if analysis is not None:
                extra = analysis.task_fields()
                clean.update(extra)
                self._patch_task(task_id, extra)
                self._emit()

        if not clean:
            return self._find_task(task_id)

        try:
            rows = await self.gateway.update("tasks", clean, match={"id": task_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update task", e, scope=_TASKS)
            return None

        if rows:
            self._merge_task_row(rows[0])
            self._emit()
        self.notifier.success("Task updated.")
        return self._find_task(task_id)

    async def delete_task(self, task_id: str) -> bool:
        self._require_identity()
        if self._find_task(task_id) is None:
            logger.warning("delete_task: unknown task id=%s", task_id)
            return False

        self.state.tasks = [t for t in self.state.tasks if t.id != task_id]
        self._emit()

        try:
            await self.gateway.delete("tasks", match={"id": task_id})
        except PersistenceFailure as e:
            await self._persistence_failed("delete task", e, scope=_TASKS)
            return False

        self.notifier.success("Task deleted.")
        return True

    async def toggle_task_complete(self, task_id: str) -> Task | None:
        """
        Flip completion. Completing a task runs the backend completion routine,
        which owns points/level/streak/achievements; a level increase shows a notice.
        """
        self._require_identity()
        task = self._find_task(task_id)
        if task is None:
            logger.warning("toggle_task_complete: unknown task id=%s", task_id)
            return None

        completing = not task.is_completed
        changes: Row = {
            "is_completed": completing,
            "completed_at": time.time() if completing else None,
            "order_index": self._tail_key(task_id, task.group_id, completed=completing),
        }
        self._patch_task(task_id, changes)
        self._emit()

        try:
            rows = await self.gateway.update("tasks", changes, match={"id": task_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update task", e, scope=_TASKS)
            return None

        if rows:
            self._merge_task_row(rows[0])
            self._emit()

        if not completing:
            self.notifier.success("Task moved back to active.")
            return self._find_task(task_id)

        try:
            result = await self.gateway.rpc("handle_task_completion", {"task_id": task_id})
        except PersistenceFailure as e:
            # The completion itself is already stored; only the reward is missing.
            logger.error("Completion routine failed for task id=%s: %s", task_id, e)
            self.notifier.error("Task completed, but rewards could not be recorded.")
            return self._find_task(task_id)

        if isinstance(result, Mapping) and result.get("id"):
            self._apply_completion_result(result)
        self.notifier.success("Task completed.")
        return self._find_task(task_id)

    def _apply_completion_result(self, row: Mapping[str, Any]) -> None:
        before = self.state.settings
        previous_level = before.level if before is not None else 1
        previous_points = before.aura_points if before is not None else 0

        settings = UserSettings.from_row(dict(row))
        self.state.settings = settings

        gained = settings.aura_points - previous_points
        if gained > 0:
            self.notices.show_award(gained, "Task completed")

        new_level = detect_level_up(previous_level, settings.level)
        if new_level is not None:
            logger.info("Level up: %s -> %s", previous_level, new_level)
            self.notices.show(NoticeKind.LEVEL_UP, new_level)
        self._emit()

    async def _award_points(self, user_id: str, points: int) -> None:
        """Persist an award as a backend-side increment so concurrent sessions add up."""
        try:
            row = await self.gateway.rpc("award_points", {"user_id": user_id, "points": points})
        except PersistenceFailure as e:
            logger.error("award_points failed user=%s points=%d: %s", user_id, points, e)
            self.notifier.error("Points could not be recorded.")
            await self.refresh_settings()
            return

        if isinstance(row, Mapping) and row.get("id"):
            self.state.settings = UserSettings.from_row(dict(row))
            self._emit()

    async def reorder_tasks(self, ordered: Sequence[Task]) -> bool:
        """Persist `ordered` (one partition, new display order) with freshly spaced keys."""
        self._require_identity()
        known = {t.id for t in self.state.tasks}
        keys = [(tid, key) for tid, key in respace(ordered, self.order_gap) if tid in known]
        if not keys:
            return False

        key_map = dict(keys)
        self.state.tasks = sort_tasks(
            replace(t, order_index=key_map[t.id]) if t.id in key_map else t for t in self.state.tasks
        )
        self._emit()

        try:
            await self.gateway.upsert("tasks", [{"id": tid, "order_index": key} for tid, key in keys])
        except PersistenceFailure as e:
            await self._persistence_failed("reorder tasks", e, scope=_TASKS)
            return False

        logger.debug("Reordered %d tasks", len(keys))
        return True

    async def move_task_to_group(self, task_id: str, group_id: str | None) -> Task | None:
        self._require_identity()
        task = self._find_task(task_id)
        if task is None:
            logger.warning("move_task_to_group: unknown task id=%s", task_id)
            return None
        if group_id is not None and self._find_group(group_id) is None:
            self.notifier.error("Unknown group")
            raise ValidationFailure("Unknown group")

        changes: Row = {
            "group_id": group_id,
            "order_index": self._tail_key(task_id, group_id, completed=task.is_completed),
        }
        self._patch_task(task_id, changes)
        self._emit()

        try:
            rows = await self.gateway.update("tasks", changes, match={"id": task_id})
        except PersistenceFailure as e:
            await self._persistence_failed("move task", e, scope=_TASKS)
            return None

        if rows:
            self._merge_task_row(rows[0])
            self._emit()
        self.notifier.success("Task moved.")
        return self._find_task(task_id)

    async def drop_task(self, active_id: str, over_id: str, *, over_group_container: bool = False) -> DropPlan | None:
        """Apply a drag-end: reorder within a group, move to a group, or both."""
        plan = plan_task_drop(self.state.tasks, active_id, over_id, over_group_container=over_group_container)
        if plan is None:
            return None

        if plan.kind == DropKind.REORDER:
            await self.reorder_tasks(plan.sequence)
        elif plan.kind == DropKind.MOVE:
            await self.move_task_to_group(plan.task_id, plan.group_id)
        else:
            if await self.move_task_to_group(plan.task_id, plan.group_id) is not None:
                await self.reorder_tasks(plan.sequence)
        return plan

    # ---- subtasks ----

    @staticmethod
    def _subtask_payload(sub: Subtask) -> Row:
        return {
            "id": sub.id,
            "task_id": sub.task_id,
            "user_id": sub.user_id,
            "title": sub.title,
            "is_completed": sub.is_completed,
            "order_index": sub.order_index,
        }

    async def add_subtask(self, task_id: str, title: str) -> Subtask | None:
        identity = self._require_identity()
        clean_title = self._validated(lambda: self._clean_title(title, what="Subtask title"))

        parent = self._find_task(task_id)
        if parent is None:
            logger.warning("add_subtask: unknown task id=%s", task_id)
            return None

        sub = Subtask(
            id=str(uuid.uuid4()),
            task_id=task_id,
            user_id=identity.id,
            title=clean_title,
            order_index=max((s.order_index for s in parent.subtasks), default=0) + 1,
            created_at=time.time(),
        )
        self._patch_task(task_id, {"subtasks": [*parent.subtasks, sub]})
        self._emit()

        try:
            row = await self.gateway.insert("subtasks", self._subtask_payload(sub))
        except PersistenceFailure as e:
            await self._persistence_failed("add subtask", e, scope=_TASKS)
            return None

        self._merge_subtask_row(row)
        self._emit()
        self.notifier.success("Subtask added.")
        found = self._find_subtask(sub.id)
        return found[1] if found else None

    async def update_subtask(self, subtask_id: str, changes: Mapping[str, Any]) -> Subtask | None:
        self._require_identity()

        def _check() -> Row:
            unknown = set(changes) - _SUBTASK_EDITABLE
            if unknown:
                raise ValidationFailure(f"Unknown subtask fields: {', '.join(sorted(unknown))}")
            out = dict(changes)
            if "title" in out:
                out["title"] = self._clean_title(out["title"], what="Subtask title")
            return out

        clean = self._validated(_check)
        if self._patch_subtask_local(subtask_id, clean) is None:
            logger.warning("update_subtask: unknown subtask id=%s", subtask_id)
            return None
        self._emit()

        try:
            rows = await self.gateway.update("subtasks", clean, match={"id": subtask_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update subtask", e, scope=_TASKS)
            return None

        if rows:
            self._merge_subtask_row(rows[0])
            self._emit()
        self.notifier.success("Subtask updated.")
        found = self._find_subtask(subtask_id)
        return found[1] if found else None

    async def delete_subtask(self, subtask_id: str) -> bool:
        self._require_identity()
        if not self._remove_subtask_local(subtask_id):
            logger.warning("delete_subtask: unknown subtask id=%s", subtask_id)
            return False
        self._emit()

        try:
            await self.gateway.delete("subtasks", match={"id": subtask_id})
        except PersistenceFailure as e:
            await self._persistence_failed("delete subtask", e, scope=_TASKS)
            return False

        self.notifier.success("Subtask deleted.")
        return True

    async def toggle_subtask_complete(self, subtask_id: str) -> Subtask | None:
        """
        Flip a subtask. Completing one awards a small fixed amount of points
        immediately on the client (points only; level is not recomputed).
        """
        identity = self._require_identity()
        found = self._find_subtask(subtask_id)
        if found is None:
            logger.warning("toggle_subtask_complete: unknown subtask id=%s", subtask_id)
            return None

        _, sub = found
        completing = not sub.is_completed
        self._patch_subtask_local(subtask_id, {"is_completed": completing})

        if completing and self.subtask_reward_points > 0:
            current = self.state.settings or UserSettings(id=identity.id)
            self.state.settings = replace(current, aura_points=current.aura_points + self.subtask_reward_points)
            self.notices.show_award(self.subtask_reward_points, "Subtask completed")
        self._emit()

        try:
            rows = await self.gateway.update("subtasks", {"is_completed": completing}, match={"id": subtask_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update subtask", e, scope=_TASKS)
            if completing:
                await self.refresh_settings()
            return None

        if rows:
            self._merge_subtask_row(rows[0])
            self._emit()

        if completing and self.subtask_reward_points > 0:
            await self._award_points(identity.id, self.subtask_reward_points)

        found = self._find_subtask(subtask_id)
        return found[1] if found else None

    # ---- groups ----

    @staticmethod
    def _clean_group_name(raw: Any) -> str:
        name = str(raw or "").strip()
        if not name:
            raise ValidationFailure("Group name is required")
        if len(name) > MAX_GROUP_NAME_LEN:
            raise ValidationFailure(f"Group name must be at most {MAX_GROUP_NAME_LEN} characters")
        return name

    async def add_group(self, name: str, emoji: str | None = None) -> TaskGroup | None:
        """Create a group. Without an explicit emoji the analyzer suggests one afterwards."""
        identity = self._require_identity()
        clean_name = self._validated(lambda: self._clean_group_name(name))

        group = TaskGroup(
            id=str(uuid.uuid4()),
            user_id=identity.id,
            name=clean_name,
            emoji=emoji or DEFAULT_GROUP_EMOJI,
            order_index=next_group_index(self.state.groups),
            created_at=time.time(),
        )
        self.state.groups = sort_groups([*self.state.groups, group])
        self._emit()

        try:
            row = await self.gateway.insert(
                "task_groups",
                {
                    "id": group.id,
                    "user_id": group.user_id,
                    "name": group.name,
                    "emoji": group.emoji,
                    "order_index": group.order_index,
                },
            )
        except PersistenceFailure as e:
            await self._persistence_failed("add group", e, scope=_ALL)
            return None

        self._replace_group_everywhere(TaskGroup.from_row(row))
        self._emit()
        self.notifier.success("Group added.")

        if not emoji:
            await self._assign_group_emoji(group.id, clean_name)
        return self._find_group(group.id)

    async def update_group(self, group_id: str, changes: Mapping[str, Any]) -> TaskGroup | None:
        self._require_identity()

        def _check() -> Row:
            unknown = set(changes) - _GROUP_EDITABLE
            if unknown:
                raise ValidationFailure(f"Unknown group fields: {', '.join(sorted(unknown))}")
            out = dict(changes)
            if "name" in out:
                out["name"] = self._clean_group_name(out["name"])
            return out

        clean = self._validated(_check)
        group = self._find_group(group_id)
        if group is None:
            logger.warning("update_group: unknown group id=%s", group_id)
            return None

        self._replace_group_everywhere(apply_changes(group, clean))
        self._emit()

        try:
            rows = await self.gateway.update("task_groups", clean, match={"id": group_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update group", e, scope=_ALL)
            return None

        if rows:
            self._replace_group_everywhere(TaskGroup.from_row(rows[0]))
            self._emit()
        self.notifier.success("Group updated.")

        if "name" in clean and "emoji" not in clean:
            await self._assign_group_emoji(group_id, clean["name"])
        return self._find_group(group_id)

    async def delete_group(self, group_id: str) -> bool:
        """Delete a group; its tasks become ungrouped, they are not deleted."""
        self._require_identity()
        if self._find_group(group_id) is None:
            logger.warning("delete_group: unknown group id=%s", group_id)
            return False

        self.state.groups = [g for g in self.state.groups if g.id != group_id]
        self.state.tasks = [
            replace(t, group_id=None, group=None) if t.group_id == group_id else t for t in self.state.tasks
        ]
        if self.state.ui.filters.group_id == group_id:
            self.state.ui.filters = replace(self.state.ui.filters, group_id=None)
            self._persist_local()
        self._emit()

        try:
            await self.gateway.delete("task_groups", match={"id": group_id})
        except PersistenceFailure as e:
            await self._persistence_failed("delete group", e, scope=_ALL)
            return False

        self.notifier.success("Group deleted.")
        return True

    async def reorder_groups(self, ordered: Sequence[TaskGroup]) -> bool:
        self._require_identity()
        known = {g.id for g in self.state.groups}
        keys = [(gid, key) for gid, key in position_keys(ordered) if gid in known]
        if not keys:
            return False

        key_map = dict(keys)
        self.state.groups = sort_groups(
            replace(g, order_index=key_map[g.id]) if g.id in key_map else g for g in self.state.groups
        )
        self.state.tasks = [
            replace(t, group=self._find_group(t.group_id)) if t.group_id in key_map else t for t in self.state.tasks
        ]
        self._emit()

        try:
            await self.gateway.upsert("task_groups", [{"id": gid, "order_index": key} for gid, key in keys])
        except PersistenceFailure as e:
            await self._persistence_failed("reorder groups", e, scope=_ALL)
            return False
        return True

    # ---- tags ----

    @staticmethod
    def _clean_tag(changes: Mapping[str, Any]) -> Row:
        out = dict(changes)
        if "name" in out:
            name = str(out["name"] or "").strip()
            if not name:
                raise ValidationFailure("Tag name is required")
            out["name"] = name
        if "color" in out:
            try:
                out["color"] = TagColor(out["color"])
            except ValueError:
                raise ValidationFailure(f"Unknown tag color: {out['color']!r}") from None
        return out

    async def add_tag(self, name: str, color: TagColor | str = TagColor.BLUE) -> Tag | None:
        identity = self._require_identity()
        clean = self._validated(lambda: self._clean_tag({"name": name, "color": color}))

        tag = Tag(
            id=str(uuid.uuid4()),
            user_id=identity.id,
            name=clean["name"],
            color=clean["color"],
            created_at=time.time(),
        )
        self.state.tags = [*self.state.tags, tag]
        self._emit()

        try:
            row = await self.gateway.insert(
                "tags",
                {"id": tag.id, "user_id": tag.user_id, "name": tag.name, "color": tag.color.value},
            )
        except PersistenceFailure as e:
            await self._persistence_failed("add tag", e, scope=_ALL)
            return None

        self._replace_tag_everywhere(Tag.from_row(row))
        self._emit()
        self.notifier.success("Tag added.")
        return self._find_tag(tag.id)

    async def update_tag(self, tag_id: str, changes: Mapping[str, Any]) -> Tag | None:
        self._require_identity()

        def _check() -> Row:
            unknown = set(changes) - _TAG_EDITABLE
            if unknown:
                raise ValidationFailure(f"Unknown tag fields: {', '.join(sorted(unknown))}")
            return self._clean_tag(changes)

        clean = self._validated(_check)
        tag = self._find_tag(tag_id)
        if tag is None:
            logger.warning("update_tag: unknown tag id=%s", tag_id)
            return None

        self._replace_tag_everywhere(apply_changes(tag, clean))
        self._emit()

        wire = {k: (v.value if isinstance(v, TagColor) else v) for k, v in clean.items()}
        try:
            rows = await self.gateway.update("tags", wire, match={"id": tag_id})
        except PersistenceFailure as e:
            await self._persistence_failed("update tag", e, scope=_ALL)
            return None

        if rows:
            self._replace_tag_everywhere(Tag.from_row(rows[0]))
            self._emit()
        self.notifier.success("Tag updated.")
        return self._find_tag(tag_id)

    async def delete_tag(self, tag_id: str) -> bool:
        """Delete a tag and detach it from every task."""
        self._require_identity()
        if self._find_tag(tag_id) is None:
            logger.warning("delete_tag: unknown tag id=%s", tag_id)
            return False

        self.state.tags = [t for t in self.state.tags if t.id != tag_id]
        self.state.tasks = [
            replace(t, tags=[x for x in t.tags if x.id != tag_id]) if any(x.id == tag_id for x in t.tags) else t
            for t in self.state.tasks
        ]
        if self.state.ui.filters.tag_id == tag_id:
            self.state.ui.filters = replace(self.state.ui.filters, tag_id=None)
            self._persist_local()
        self._emit()

        try:
            await self.gateway.delete("tags", match={"id": tag_id})
        except PersistenceFailure as e:
            await self._persistence_failed("delete tag", e, scope=_ALL)
            return False

        self.notifier.success("Tag deleted.")
        return True

    async def add_tag_to_task(self, task_id: str, tag_id: str) -> bool:
        identity = self._require_identity()
        task, tag = self._find_task(task_id), self._find_tag(tag_id)
        if task is None or tag is None:
            logger.warning("add_tag_to_task: unknown task=%s or tag=%s", task_id, tag_id)
            return False
        if any(t.id == tag_id for t in task.tags):
            return True

        self._patch_task(task_id, {"tags": [*task.tags, tag]})
        self._emit()

        try:
            await self.gateway.insert("task_tags", {"task_id": task_id, "tag_id": tag_id, "user_id": identity.id})
        except PersistenceFailure as e:
            await self._persistence_failed("tag task", e, scope=_TASKS)
            return False

        self.notifier.success("Tag added to task.")
        return True

    async def remove_tag_from_task(self, task_id: str, tag_id: str) -> bool:
        self._require_identity()
        task = self._find_task(task_id)
        if task is None or not any(t.id == tag_id for t in task.tags):
            return False

        self._patch_task(task_id, {"tags": [t for t in task.tags if t.id != tag_id]})
        self._emit()

        try:
            await self.gateway.delete("task_tags", match={"task_id": task_id, "tag_id": tag_id})
        except PersistenceFailure as e:
            await self._persistence_failed("untag task", e, scope=_TASKS)
            return False

        self.notifier.success("Tag removed from task.")
        return True

    # ---- settings ----

    def _clean_settings(self, partial: Mapping[str, Any]) -> Row:
        unknown = set(partial) - _SETTINGS_EDITABLE
        if unknown:
            raise ValidationFailure(f"Unknown or read-only settings: {', '.join(sorted(unknown))}")
        out = dict(partial)
        if "theme" in out:
            try:
                out["theme"] = Theme(out["theme"]).value
            except ValueError:
                raise ValidationFailure(f"Unknown theme: {out['theme']!r}") from None
        for name in ("speed_weight", "importance_weight"):
            if name in out:
                try:
                    value = float(out[name])
                except (TypeError, ValueError):
                    raise ValidationFailure(f"{name} must be a number") from None
                if value < 0:
                    raise ValidationFailure(f"{name} must not be negative")
                out[name] = value
        if out.get("api_key"):
            key = str(out["api_key"]).strip()
            if len(key) < MIN_API_KEY_LEN:
                raise ValidationFailure("API key looks too short")
            out["api_key"] = key
        return out

    async def update_settings(self, partial: Mapping[str, Any], *, notify: bool = True) -> UserSettings | None:
        """
        Upsert settings. Only the fields in `partial` are sent, so values the
        backend owns (points, level, streak) are never written back from here.
        """
        identity = self._require_identity()
        clean = self._validated(lambda: self._clean_settings(partial))

        current = self.state.settings or UserSettings(id=identity.id)
        merged = {**current.to_row(), **clean, "id": identity.id}
        self.state.settings = UserSettings.from_row(merged)
        self._emit()

        payload = {**clean, "id": identity.id}
        try:
            rows = await self.gateway.upsert("user_settings", [payload], on_conflict="id")
        except PersistenceFailure as e:
            await self._persistence_failed("save settings", e, scope=_SETTINGS)
            return None

        if rows:
            self.state.settings = UserSettings.from_row(rows[0])
            self._emit()
        if notify:
            self.notifier.success("Settings saved.")
        return self.state.settings

    async def update_username(self, username: str) -> UserSettings | None:
        def _check() -> str:
            name = str(username or "").strip()
            if not name:
                raise ValidationFailure("Username is required")
            return name

        self._require_identity()
        clean = self._validated(_check)
        settings = await self.update_settings({"username": clean})
        if settings is not None:
            self.state.ui.is_username_modal_open = False
            self._emit()
        return settings

    # ---- UI state ----

    def set_active_tab(self, tab: TaskTab | str) -> None:
        self.state.ui.active_tab = TaskTab(tab)
        self._persist_local()
        self._emit()

    def set_filter(self, **changes: Any) -> TaskFilters:
        current = self.state.ui.filters.to_dict()
        unknown = set(changes) - set(current)
        if unknown:
            raise ValidationFailure(f"Unknown filters: {', '.join(sorted(unknown))}")
        current.update({k: (v.value if isinstance(v, (StatusFilter, PriorityFilter)) else v) for k, v in changes.items()})
        self.state.ui.filters = TaskFilters.from_dict(current)
        self._persist_local()
        self._emit()
        return self.state.ui.filters

    def clear_filters(self) -> None:
        self.state.ui.filters = TaskFilters()
        self._persist_local()
        self._emit()

    def toggle_filters(self) -> bool:
        self.state.ui.show_filters = not self.state.ui.show_filters
        self._persist_local()
        self._emit()
        return self.state.ui.show_filters

    def set_dark_mode(self, enabled: bool) -> None:
        self.state.ui.dark_mode = bool(enabled)
        self._persist_local()
        self._emit()

    def toggle_settings_panel(self, is_open: bool | None = None) -> None:
        ui = self.state.ui
        ui.is_settings_panel_open = (not ui.is_settings_panel_open) if is_open is None else bool(is_open)
        self._emit()

    def open_task_form(self, task: Task | None = None) -> None:
        self.state.ui.is_task_form_open = True
        self.state.ui.editing_task = task
        self._emit()

    def close_task_form(self) -> None:
        self.state.ui.is_task_form_open = False
        self.state.ui.editing_task = None
        self._emit()

    def open_group_form(self, group: TaskGroup | None = None) -> None:
        self.state.ui.is_group_form_open = True
        self.state.ui.editing_group = group
        self._emit()

    def close_group_form(self) -> None:
        self.state.ui.is_group_form_open = False
        self.state.ui.editing_group = None
        self._emit()

    def open_tag_form(self, tag: Tag | None = None) -> None:
        self.state.ui.is_tag_form_open = True
        self.state.ui.editing_tag = tag
        self._emit()

    def close_tag_form(self) -> None:
        self.state.ui.is_tag_form_open = False
        self.state.ui.editing_tag = None
        self._emit()

    def open_username_modal(self) -> None:
        self.state.ui.is_username_modal_open = True
        self._emit()

    def close_username_modal(self) -> None:
        self.state.ui.is_username_modal_open = False
        self._emit()

    # ---- selectors ----

    def visible_tasks(self, *, today: date | None = None) -> list[Task]:
        """Tasks for the active tab after filters, in display order."""
        ui = self.state.ui
        f = ui.filters
        today = today or date.today()
        query = f.search_query.strip().lower()

        out: list[Task] = []
        for t in self.state.tasks:
            if ui.active_tab == TaskTab.TODAY and datetime.fromtimestamp(t.created_at).date() != today:
                continue
            if ui.active_tab == TaskTab.IMPORTANT and (t.ai_importance_score or 0) < HIGH_PRIORITY_MIN:
                continue
            if ui.active_tab == TaskTab.COMPLETED and not t.is_completed:
                continue

            if query and query not in t.title.lower() and query not in (t.description or "").lower():
                continue
            if f.group_id is not None and t.group_id != f.group_id:
                continue
            if f.status == StatusFilter.ACTIVE and t.is_completed:
                continue
            if f.status == StatusFilter.COMPLETED and not t.is_completed:
                continue
            if f.tag_id is not None and not any(x.id == f.tag_id for x in t.tags):
                continue
            if f.priority != PriorityFilter.ALL and priority_of(t) != f.priority:
                continue
            out.append(t)
        return sort_tasks(out)

    def active_tasks(self) -> list[Task]:
        return [t for t in self.state.tasks if not t.is_completed]

    def archived_tasks(self) -> list[Task]:
        """Completed tasks, most recently completed first."""
        done = [t for t in self.state.tasks if t.is_archived]
        return sorted(done, key=lambda t: t.completed_at or 0.0, reverse=True)


def priority_of(task: Task) -> PriorityFilter:
    score = task.ai_importance_score or 0
    if score >= HIGH_PRIORITY_MIN:
        return PriorityFilter.HIGH
    if score >= MEDIUM_PRIORITY_MIN:
        return PriorityFilter.MEDIUM
    return PriorityFilter.LOW

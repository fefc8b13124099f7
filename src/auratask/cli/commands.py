# src/auratask/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, cast

from ..admin import AdminKeyPool, mask_key
from ..core.errors import AuraTaskError
from ..core.models import StatusFilter, Tag, TagColor, Task, TaskDraft, TaskGroup, TaskTab
from ..store.app_store import AppStore, priority_of

CommandEmitter = Callable[[str], None]
CommandResult = str | Awaitable[str]
CommandHandler2 = Callable[[Any, list[str]], CommandResult]
CommandHandler3 = Callable[[Any, list[str], CommandEmitter | None], CommandResult]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Slash-command registry used by the console (/help, /add, /done, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(self, ctx: Any, line: str, emit: CommandEmitter | None = None) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Handlers may be sync or async.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except Exception:
            nparams = 3

        try:
            if nparams >= 3:
                result = cast(CommandHandler3, handler)(ctx, args, emit)
            else:
                result = cast(CommandHandler2, handler)(ctx, args)
            if inspect.isawaitable(result):
                return await result
            return result
        except AuraTaskError as e:
            # Validation/auth problems were already surfaced through the notifier.
            logger.debug("Command /%s rejected: %s", name, e)
            return f"Rejected: {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- helpers ----


def _store(ctx: Any) -> AppStore:
    return ctx.store


def _fmt_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M")


def _fmt_task(n: int, t: Task) -> str:
    mark = "x" if t.is_completed else " "
    group = f" [{t.group.emoji} {t.group.name}]" if t.group else ""
    tags = f" #{' #'.join(x.name for x in t.tags)}" if t.tags else ""
    scores = ""
    if t.ai_importance_score is not None or t.ai_speed_score is not None:
        scores = f" (imp={t.ai_importance_score or '-'} spd={t.ai_speed_score or '-'} {priority_of(t).value})"
    subs = ""
    if t.subtasks:
        done = sum(1 for s in t.subtasks if s.is_completed)
        subs = f" {done}/{len(t.subtasks)}"
    return f"{n:>3}. [{mark}] {t.emoji or ''} {t.title}{group}{tags}{scores}{subs}  <{t.id[:8]}>"


def _resolve_task(store: AppStore, ref: str) -> Task | None:
    """A task by its number in the current view or by id prefix."""
    if ref.isdigit():
        visible = store.visible_tasks()
        idx = int(ref) - 1
        return visible[idx] if 0 <= idx < len(visible) else None
    matches = [t for t in store.state.tasks if t.id.startswith(ref)]
    return matches[0] if len(matches) == 1 else None


def _resolve_group(store: AppStore, ref: str) -> TaskGroup | None:
    if ref.isdigit():
        idx = int(ref) - 1
        groups = store.state.groups
        return groups[idx] if 0 <= idx < len(groups) else None
    low = ref.lower()
    return next((g for g in store.state.groups if g.id.startswith(ref) or g.name.lower() == low), None)


def _resolve_tag(store: AppStore, ref: str) -> Tag | None:
    low = ref.lower()
    return next((t for t in store.state.tags if t.id.startswith(ref) or t.name.lower() == low), None)


# ---- commands ----


def cmd_help(ctx: Any, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(ctx: Any, args: list[str]) -> str:
    store = _store(ctx)
    st = store.state
    ident = st.identity
    who = "nobody" if ident is None else f"{ident.id} ({'guest' if ident.is_anonymous else 'signed in'})"
    s = st.settings
    points = f"{s.aura_points} aura, level {s.level}, streak {s.current_streak}" if s else "no settings yet"
    return (
        "Status:\n"
        f"  Identity: {who}\n"
        f"  Progress: {points}\n"
        f"  Tasks: {len(st.tasks)} ({len(store.archived_tasks())} archived), "
        f"groups: {len(st.groups)}, tags: {len(st.tags)}\n"
        f"  Analyzer: {ctx.analyzer.__class__.__name__}\n"
        f"  Tab: {st.ui.active_tab.value}, dark mode: {'on' if st.ui.dark_mode else 'off'}"
    )


def cmd_tasks(ctx: Any, args: list[str]) -> str:
    """
    /tasks            -> list tasks of the active tab (filters applied)
    /tasks <tab>      -> switch tab (all | today | important | completed) and list
    """
    store = _store(ctx)
    if args:
        try:
            store.set_active_tab(TaskTab(args[0].lower()))
        except ValueError:
            return "Usage: /tasks [all|today|important|completed]"

    visible = store.visible_tasks()
    if not visible:
        return f"No tasks in '{store.state.ui.active_tab.value}'."
    lines = [f"Tasks ({store.state.ui.active_tab.value}):"]
    lines += [_fmt_task(i, t) for i, t in enumerate(visible, start=1)]
    return "\n".join(lines)


async def cmd_add(ctx: Any, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /add <title> [--ai] [--subtasks] [--group <name>]
    """
    store = _store(ctx)
    ranking = "--ai" in args
    subtasks = "--subtasks" in args
    group_id: str | None = None
    words: list[str] = []
    it = iter(args)
    for a in it:
        if a in ("--ai", "--subtasks"):
            continue
        if a == "--group":
            ref = next(it, "")
            group = _resolve_group(store, ref)
            if group is None:
                return f"Unknown group: {ref}"
            group_id = group.id
            continue
        words.append(a)

    if not words:
        return "Usage: /add <title> [--ai] [--subtasks] [--group <name>]"

    if (ranking or subtasks) and emit:
        emit("[AI] Analyzing task...")

    task = await store.add_task(
        TaskDraft(
            title=" ".join(words),
            group_id=group_id,
            enable_ai_ranking=ranking,
            enable_ai_subtasks=subtasks,
        )
    )
    if task is None:
        return "Task was not saved."
    return f"Added: {task.emoji or ''} {task.title} <{task.id[:8]}>"


async def cmd_done(ctx: Any, args: list[str]) -> str:
    store = _store(ctx)
    if not args:
        return "Usage: /done <task>"
    task = _resolve_task(store, args[0])
    if task is None:
        return f"Unknown task: {args[0]}"
    updated = await store.toggle_task_complete(task.id)
    if updated is None:
        return "Task was not updated."
    return f"{'Completed' if updated.is_completed else 'Reopened'}: {updated.title}"


async def cmd_edit(ctx: Any, args: list[str]) -> str:
    """
    /edit <task> <new title>        -> rename
    /edit <task> --reanalyze        -> ask the analyzer for fresh scores
    """
    store = _store(ctx)
    if len(args) < 2:
        return "Usage: /edit <task> <new title> | /edit <task> --reanalyze"
    task = _resolve_task(store, args[0])
    if task is None:
        return f"Unknown task: {args[0]}"
    reanalyze = "--reanalyze" in args
    title = " ".join(a for a in args[1:] if a != "--reanalyze")
    changes = {"title": title} if title else {}
    if reanalyze and not task.enable_ai_ranking:
        changes["enable_ai_ranking"] = True
    updated = await store.update_task(task.id, changes, reanalyze=reanalyze)
    return f"Updated: {updated.title}" if updated else "Task was not updated."


async def cmd_del(ctx: Any, args: list[str]) -> str:
    store = _store(ctx)
    if not args:
        return "Usage: /del <task>"
    task = _resolve_task(store, args[0])
    if task is None:
        return f"Unknown task: {args[0]}"
    ok = await store.delete_task(task.id)
    return f"Deleted: {task.title}" if ok else "Task was not deleted."


async def cmd_move(ctx: Any, args: list[str]) -> str:
    """
    /move <task> <group|none>       -> move to the end of a group
    /move <task> before <task>      -> drag-and-drop onto another task
    """
    store = _store(ctx)
    if len(args) < 2:
        return "Usage: /move <task> <group|none> | /move <task> before <task>"
    task = _resolve_task(store, args[0])
    if task is None:
        return f"Unknown task: {args[0]}"

    if args[1].lower() == "before" and len(args) >= 3:
        over = _resolve_task(store, args[2])
        if over is None:
            return f"Unknown task: {args[2]}"
        plan = await store.drop_task(task.id, over.id)
        return f"Dropped ({plan.kind.value})." if plan else "Nothing to do."

    if args[1].lower() == "none":
        group_id = None
    else:
        group = _resolve_group(store, " ".join(args[1:]))
        if group is None:
            return f"Unknown group: {' '.join(args[1:])}"
        group_id = group.id
    moved = await store.move_task_to_group(task.id, group_id)
    return "Moved." if moved else "Task was not moved."


async def cmd_sub(ctx: Any, args: list[str]) -> str:
    """
    /sub <task>                     -> list subtasks
    /sub <task> add <title>         -> add a subtask
    /sub <task> done <n>            -> toggle subtask n
    /sub <task> del <n>             -> delete subtask n
    """
    store = _store(ctx)
    if not args:
        return "Usage: /sub <task> [add <title> | done <n> | del <n>]"
    task = _resolve_task(store, args[0])
    if task is None:
        return f"Unknown task: {args[0]}"

    if len(args) == 1:
        if not task.subtasks:
            return f"No subtasks for {task.title}."
        return "\n".join(
            f"{i}. [{'x' if s.is_completed else ' '}] {s.title}" for i, s in enumerate(task.subtasks, start=1)
        )

    action = args[1].lower()
    if action == "add" and len(args) > 2:
        sub = await store.add_subtask(task.id, " ".join(args[2:]))
        return f"Subtask added: {sub.title}" if sub else "Subtask was not saved."

    if action in ("done", "del") and len(args) > 2 and args[2].isdigit():
        idx = int(args[2]) - 1
        if not 0 <= idx < len(task.subtasks):
            return f"No subtask #{args[2]}."
        target = task.subtasks[idx]
        if action == "done":
            updated = await store.toggle_subtask_complete(target.id)
            return f"Subtask {'done' if updated and updated.is_completed else 'reopened'}: {target.title}"
        ok = await store.delete_subtask(target.id)
        return "Subtask deleted." if ok else "Subtask was not deleted."

    return "Usage: /sub <task> [add <title> | done <n> | del <n>]"


async def cmd_group(ctx: Any, args: list[str]) -> str:
    """
    /group                          -> list groups
    /group add <name>               -> create (emoji suggested automatically)
    /group rename <group> <name>    -> rename
    /group del <group>              -> delete (tasks become ungrouped)
    /group up <group>               -> move one position up
    """
    store = _store(ctx)
    if not args:
        if not store.state.groups:
            return "No groups."
        return "\n".join(f"{i}. {g.emoji} {g.name}" for i, g in enumerate(store.state.groups, start=1))

    action = args[0].lower()
    if action == "add" and len(args) > 1:
        group = await store.add_group(" ".join(args[1:]))
        return f"Group added: {group.emoji} {group.name}" if group else "Group was not saved."

    if action == "rename" and len(args) > 2:
        group = _resolve_group(store, args[1])
        if group is None:
            return f"Unknown group: {args[1]}"
        updated = await store.update_group(group.id, {"name": " ".join(args[2:])})
        return f"Group renamed: {updated.emoji} {updated.name}" if updated else "Group was not updated."

    if action == "del" and len(args) > 1:
        group = _resolve_group(store, " ".join(args[1:]))
        if group is None:
            return f"Unknown group: {' '.join(args[1:])}"
        ok = await store.delete_group(group.id)
        return "Group deleted." if ok else "Group was not deleted."

    if action == "up" and len(args) > 1:
        group = _resolve_group(store, " ".join(args[1:]))
        if group is None:
            return f"Unknown group: {' '.join(args[1:])}"
        groups = list(store.state.groups)
        idx = groups.index(group)
        if idx == 0:
            return "Already first."
        groups[idx - 1], groups[idx] = groups[idx], groups[idx - 1]
        ok = await store.reorder_groups(groups)
        return "Groups reordered." if ok else "Groups were not reordered."

    return "Usage: /group [add <name> | rename <group> <name> | del <group> | up <group>]"


async def cmd_tag(ctx: Any, args: list[str]) -> str:
    """
    /tag                            -> list tags
    /tag add <name> [color]         -> create
    /tag del <tag>                  -> delete
    /tag on <task> <tag>            -> attach to task
    /tag off <task> <tag>           -> detach from task
    """
    store = _store(ctx)
    if not args:
        if not store.state.tags:
            return "No tags."
        return "\n".join(f"#{t.name} ({t.color.value})" for t in store.state.tags)

    action = args[0].lower()
    if action == "add" and len(args) > 1:
        color = TagColor.BLUE
        words = args[1:]
        if len(words) > 1 and words[-1].lower() in {c.value for c in TagColor}:
            color = TagColor(words[-1].lower())
            words = words[:-1]
        tag = await store.add_tag(" ".join(words), color)
        return f"Tag added: #{tag.name}" if tag else "Tag was not saved."

    if action == "del" and len(args) > 1:
        tag = _resolve_tag(store, args[1])
        if tag is None:
            return f"Unknown tag: {args[1]}"
        ok = await store.delete_tag(tag.id)
        return "Tag deleted." if ok else "Tag was not deleted."

    if action in ("on", "off") and len(args) > 2:
        task = _resolve_task(store, args[1])
        tag = _resolve_tag(store, args[2])
        if task is None or tag is None:
            return "Unknown task or tag."
        if action == "on":
            ok = await store.add_tag_to_task(task.id, tag.id)
        else:
            ok = await store.remove_tag_from_task(task.id, tag.id)
        return "Done." if ok else "Nothing changed."

    return "Usage: /tag [add <name> [color] | del <tag> | on <task> <tag> | off <task> <tag>]"


def cmd_filter(ctx: Any, args: list[str]) -> str:
    """
    /filter                          -> show filters
    /filter search <text>            -> title/description search
    /filter group <group|none>
    /filter status <all|active|completed>
    /filter priority <all|high|medium|low>
    /filter tag <tag|none>
    /filter clear
    """
    store = _store(ctx)
    if not args:
        f = store.state.ui.filters
        return (
            f"Filters: search={f.search_query!r} group={f.group_id} status={f.status.value} "
            f"priority={f.priority.value} tag={f.tag_id}"
        )

    key, rest = args[0].lower(), " ".join(args[1:])
    if key == "clear":
        store.clear_filters()
        return "Filters cleared."
    if key == "search":
        store.set_filter(search_query=rest)
    elif key == "group":
        group = None if rest.lower() in ("", "none") else _resolve_group(store, rest)
        if rest and rest.lower() != "none" and group is None:
            return f"Unknown group: {rest}"
        store.set_filter(group_id=group.id if group else None)
    elif key == "status":
        try:
            store.set_filter(status=StatusFilter(rest.lower() or "all"))
        except ValueError:
            return "Usage: /filter status <all|active|completed>"
    elif key == "priority":
        if rest.lower() not in ("all", "high", "medium", "low"):
            return "Usage: /filter priority <all|high|medium|low>"
        store.set_filter(priority=rest.lower())
    elif key == "tag":
        tag = None if rest.lower() in ("", "none") else _resolve_tag(store, rest)
        if rest and rest.lower() != "none" and tag is None:
            return f"Unknown tag: {rest}"
        store.set_filter(tag_id=tag.id if tag else None)
    else:
        return "Unknown filter. Use /filter to see usage."
    return cmd_tasks(ctx, [])


def cmd_archive(ctx: Any, args: list[str]) -> str:
    done = _store(ctx).archived_tasks()
    if not done:
        return "Archive is empty."
    return "\n".join(f"{_fmt_ts(t.completed_at)}  {t.emoji or ''} {t.title}" for t in done)


async def cmd_settings(ctx: Any, args: list[str]) -> str:
    """
    /settings                        -> show
    /settings <field> <value>        -> change (theme, speed_weight, importance_weight, api_key, ...)
    """
    store = _store(ctx)
    s = store.state.settings
    if not args:
        if s is None:
            return "No settings stored yet."
        key = "set" if s.api_key else "not set"
        return (
            f"Settings: username={s.username} theme={s.theme.value} "
            f"speed_weight={s.speed_weight} importance_weight={s.importance_weight} "
            f"auto_ranking={s.auto_ranking} auto_subtasks={s.auto_subtasks} api_key={key}"
        )
    if len(args) < 2:
        return "Usage: /settings <field> <value>"

    field, raw = args[0], " ".join(args[1:])
    value: Any = raw
    if raw.lower() in ("true", "on", "yes"):
        value = True
    elif raw.lower() in ("false", "off", "no"):
        value = False
    updated = await store.update_settings({field: value})
    return "Settings saved." if updated else "Settings were not saved."


async def cmd_username(ctx: Any, args: list[str]) -> str:
    if not args:
        return "Usage: /username <name>"
    updated = await _store(ctx).update_username(" ".join(args))
    return f"Hello, {updated.username}!" if updated else "Username was not saved."


async def cmd_login(ctx: Any, args: list[str]) -> str:
    """
    /login <provider> [email]        -> sign in (guest data is moved to the account)
    """
    if not args:
        return "Usage: /login <provider> [email]"
    user = await _store(ctx).sign_in_with_oauth(args[0], email=args[1] if len(args) > 1 else None)
    return f"Signed in as {user.email or user.id}."


async def cmd_guest(ctx: Any, args: list[str]) -> str:
    user = await _store(ctx).sign_in_anonymously()
    return f"Guest session started ({user.id[:8]})."


async def cmd_logout(ctx: Any, args: list[str]) -> str:
    await _store(ctx).sign_out()
    return "Signed out. Use /guest or /login to continue."


def cmd_dark(ctx: Any, args: list[str]) -> str:
    store = _store(ctx)
    if not args:
        return f"Dark mode is {'on' if store.state.ui.dark_mode else 'off'}. Use /dark on or /dark off."
    arg = args[0].lower()
    if arg not in ("on", "off"):
        return "Usage: /dark on or /dark off."
    store.set_dark_mode(arg == "on")
    return f"Dark mode {arg}."


def cmd_achievements(ctx: Any, args: list[str]) -> str:
    st = _store(ctx).state
    unlocked = {u.achievement_id for u in st.unlocked}
    if not st.achievements:
        return "No achievements defined."
    return "\n".join(
        f"[{'*' if a.id in unlocked else ' '}] {a.name} ({a.rarity}, +{a.reward_points}) - {a.description}"
        for a in st.achievements
    )


async def cmd_keys(ctx: Any, args: list[str]) -> str:
    """
    /keys                            -> list the shared API-key pool (admins only)
    /keys add <key>
    /keys toggle <n>                 -> activate / deactivate
    /keys del <n>
    """
    store = _store(ctx)
    identity = store.identity
    pool = AdminKeyPool(store.gateway, identity.id if identity is not None else None)

    action = args[0].lower() if args else "list"
    if action == "add":
        if len(args) < 2:
            return "Usage: /keys add <key>"
        row = await pool.add_key(args[1])
        return f"Key added: {mask_key(row['api_key'])}"

    rows = await pool.list_keys()
    if action == "list":
        if not rows:
            return "The key pool is empty."
        return "\n".join(
            f"{n}. {mask_key(r['api_key'])} {'active' if r.get('is_active') else 'off'} used={r.get('usage_count', 0)}"
            for n, r in enumerate(rows, 1)
        )

    if action not in ("toggle", "del") or len(args) < 2:
        return "Usage: /keys [add <key> | toggle <n> | del <n>]"
    if not args[1].isdigit() or not 1 <= int(args[1]) <= len(rows):
        return f"Unknown key: {args[1]}"
    key_id = str(rows[int(args[1]) - 1]["id"])

    if action == "toggle":
        row = await pool.toggle_key(key_id)
        return f"Key {mask_key(row['api_key'])} is now {'active' if row.get('is_active') else 'off'}."
    deleted = await pool.delete_key(key_id)
    return "Key deleted." if deleted else "Key was not deleted."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show identity, progress and counts.")
registry.register("tasks", cmd_tasks, help_text="List tasks: /tasks [all|today|important|completed].", aliases=["ls"])
registry.register("add", cmd_add, help_text="Add a task: /add <title> [--ai] [--subtasks] [--group <name>].")
registry.register("done", cmd_done, help_text="Toggle completion: /done <task>.")
registry.register("edit", cmd_edit, help_text="Rename or re-analyze: /edit <task> <title> | --reanalyze.")
registry.register("del", cmd_del, help_text="Delete a task: /del <task>.", aliases=["rm"])
registry.register("move", cmd_move, help_text="Move: /move <task> <group|none> | /move <task> before <task>.")
registry.register("sub", cmd_sub, help_text="Subtasks: /sub <task> [add <title> | done <n> | del <n>].")
registry.register("group", cmd_group, help_text="Groups: /group [add | rename | del | up].", aliases=["groups"])
registry.register("tag", cmd_tag, help_text="Tags: /tag [add | del | on | off].", aliases=["tags"])
registry.register("filter", cmd_filter, help_text="Filters: /filter [search | group | status | priority | tag | clear].")
registry.register("archive", cmd_archive, help_text="Show completed tasks.")
registry.register("settings", cmd_settings, help_text="Show or change settings: /settings <field> <value>.")
registry.register("username", cmd_username, help_text="Set your username: /username <name>.")
registry.register("login", cmd_login, help_text="Sign in: /login <provider> [email].")
registry.register("guest", cmd_guest, help_text="Start an anonymous session.")
registry.register("logout", cmd_logout, help_text="Sign out.")
registry.register("dark", cmd_dark, help_text="Dark mode: /dark on | /dark off.")
registry.register("achievements", cmd_achievements, help_text="List achievements (* = unlocked).")
registry.register("keys", cmd_keys, help_text="Admin key pool: /keys [add <key> | toggle <n> | del <n>].", aliases=["admin-keys"])

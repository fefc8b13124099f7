# src/auratask/backend/sqlite_gateway.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

from ..core.errors import PersistenceFailure
from ..core.models import (
    Achievement,
    AuthEventType,
    ChangeEvent,
    ChangeType,
    Row,
    Task,
    User,
    UserSettings,
)
from ..core.ports import AuthCallback, ChangeCallback
from ..store.gamification import (
    achievements_to_unlock,
    completion_points,
    level_for_points,
    next_streak,
)

logger = logging.getLogger(__name__)

_SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT,
        provider TEXT,
        is_anonymous INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        slot INTEGER PRIMARY KEY CHECK (slot = 1),
        user_id TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_groups (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        emoji TEXT NOT NULL DEFAULT '📁',
        order_index INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        is_completed INTEGER NOT NULL DEFAULT 0,
        completed_at REAL,
        group_id TEXT REFERENCES task_groups(id) ON DELETE SET NULL,
        due_date TEXT,
        ai_speed_score INTEGER,
        ai_importance_score INTEGER,
        speed_tag TEXT,
        importance_tag TEXT,
        emoji TEXT,
        ai_generated INTEGER NOT NULL DEFAULT 0,
        enable_ai_ranking INTEGER NOT NULL DEFAULT 0,
        enable_ai_subtasks INTEGER NOT NULL DEFAULT 0,
        order_index INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subtasks (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        is_completed INTEGER NOT NULL DEFAULT 0,
        order_index INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        color TEXT NOT NULL DEFAULT 'blue',
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_tags (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        created_at REAL NOT NULL,
        PRIMARY KEY (task_id, tag_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_settings (
        id TEXT PRIMARY KEY,
        username TEXT,
        api_key TEXT,
        aura_points INTEGER NOT NULL DEFAULT 0,
        level INTEGER NOT NULL DEFAULT 1,
        speed_weight REAL NOT NULL DEFAULT 1.0,
        importance_weight REAL NOT NULL DEFAULT 1.0,
        theme TEXT NOT NULL DEFAULT 'default',
        haptic_feedback INTEGER NOT NULL DEFAULT 1,
        auto_ranking INTEGER NOT NULL DEFAULT 0,
        auto_subtasks INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS achievements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT '',
        icon_name TEXT NOT NULL DEFAULT 'Trophy',
        reward_points INTEGER NOT NULL DEFAULT 0,
        category TEXT NOT NULL DEFAULT 'general',
        rarity TEXT NOT NULL DEFAULT 'common',
        required_tasks_completed INTEGER,
        required_streak_days INTEGER,
        required_level INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_achievements (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        achievement_id INTEGER NOT NULL REFERENCES achievements(id) ON DELETE CASCADE,
        unlocked_at REAL NOT NULL,
        UNIQUE (user_id, achievement_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_api_keys (
        id TEXT PRIMARY KEY,
        api_key TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        usage_count INTEGER NOT NULL DEFAULT 0,
        last_used_at REAL,
        created_at REAL NOT NULL
    )
    """,
)

# Columns added after the first schema version (old DBs get them via ALTER TABLE).
_ADDED_COLUMNS: dict[str, tuple[tuple[str, str], ...]] = {
    "user_settings": (
        ("current_streak", "INTEGER NOT NULL DEFAULT 0"),
        ("last_completed_on", "TEXT"),
        ("is_admin", "INTEGER NOT NULL DEFAULT 0"),
    ),
}

_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_order ON tasks(user_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_groups_user ON task_groups(user_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_tags_user ON tags(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_achievements_user ON user_achievements(user_id)",
)

# Tables reachable through the generic CRUD calls.
_PUBLIC_TABLES = frozenset(
    {
        "tasks",
        "subtasks",
        "task_groups",
        "tags",
        "task_tags",
        "user_settings",
        "achievements",
        "user_achievements",
        "admin_api_keys",
    }
)

_BOOL_COLUMNS: dict[str, frozenset[str]] = {
    "tasks": frozenset({"is_completed", "ai_generated", "enable_ai_ranking", "enable_ai_subtasks"}),
    "subtasks": frozenset({"is_completed"}),
    "user_settings": frozenset({"haptic_feedback", "auto_ranking", "auto_subtasks", "is_admin"}),
    "admin_api_keys": frozenset({"is_active"}),
}

# Tables whose id is generated here when the caller does not provide one.
_TEXT_ID_TABLES = frozenset(
    {"tasks", "subtasks", "task_groups", "tags", "user_settings", "user_achievements", "admin_api_keys"}
)

# Owner-scoped tables moved by migrate_guest_data.
_OWNED_TABLES: tuple[str, ...] = ("task_groups", "tasks", "subtasks", "tags", "task_tags")

DEFAULT_ACHIEVEMENTS: tuple[dict[str, Any], ...] = (
    {
        "name": "First Step",
        "description": "Complete your first task.",
        "icon_name": "Target",
        "reward_points": 10,
        "category": "tasks",
        "rarity": "common",
        "required_tasks_completed": 1,
    },
    {
        "name": "Getting Things Done",
        "description": "Complete 10 tasks.",
        "icon_name": "Award",
        "reward_points": 25,
        "category": "tasks",
        "rarity": "common",
        "required_tasks_completed": 10,
    },
    {
        "name": "Task Master",
        "description": "Complete 50 tasks.",
        "icon_name": "Trophy",
        "reward_points": 100,
        "category": "tasks",
        "rarity": "rare",
        "required_tasks_completed": 50,
    },
    {
        "name": "Centurion",
        "description": "Complete 100 tasks.",
        "icon_name": "Crown",
        "reward_points": 250,
        "category": "tasks",
        "rarity": "epic",
        "required_tasks_completed": 100,
    },
    {
        "name": "On Fire",
        "description": "Complete tasks 3 days in a row.",
        "icon_name": "Flame",
        "reward_points": 30,
        "category": "streak",
        "rarity": "common",
        "required_streak_days": 3,
    },
    {
        "name": "Unstoppable",
        "description": "Complete tasks 7 days in a row.",
        "icon_name": "Fire",
        "reward_points": 75,
        "category": "streak",
        "rarity": "rare",
        "required_streak_days": 7,
    },
    {
        "name": "Rising Aura",
        "description": "Reach level 5.",
        "icon_name": "Star",
        "reward_points": 50,
        "category": "level",
        "rarity": "rare",
        "required_level": 5,
    },
    {
        "name": "Aura Legend",
        "description": "Reach level 10.",
        "icon_name": "Gem",
        "reward_points": 150,
        "category": "level",
        "rarity": "legendary",
        "required_level": 10,
    },
)

_Pending = list[tuple[str, ChangeType, "Row | None", "Row | None"]]


@dataclass(slots=True)
class _Channel:
    table: str
    callback: ChangeCallback
    match: Row


class _Handle:
    """Subscription handle; unsubscribe() is idempotent."""

    def __init__(self, remove: Callable[[], None]) -> None:
        self._remove: Callable[[], None] | None = remove

    def unsubscribe(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None


class SqliteGateway:
    """
    Reference backend over SQLite.

    - generic CRUD + upsert over whitelisted tables and columns
    - server-side routines (rpc): handle_task_completion, migrate_guest_data,
      increment_api_key_usage, award_points
    - in-process realtime feed: every committed write is published to the
      matching subscribers
    - local auth with a single persisted session

    Schema handling follows the usual pattern: create tables if missing, then
    add missing columns found through PRAGMA table_info.

    Thread-safety:
    - each call opens its own SQLite connection
    """

    def __init__(
            self,
            db_path: str | Path = "auratask.sqlite3",
            *,
            task_base_points: int = 10,
            points_per_level: int = 100,
            seed_achievements: bool = True,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._task_base_points = int(task_base_points)
        self._points_per_level = max(1, int(points_per_level))

        self._lock = threading.RLock()
        self._channels: list[_Channel] = []
        self._auth_listeners: list[AuthCallback] = []
        self._last_ts = 0.0
        self._columns: dict[str, tuple[str, ...]] = {}

        self._ensure_schema()
        if seed_achievements:
            self._seed_achievements()
        logger.info("SqliteGateway ready db=%s tables=%d", self._db_path, len(self._columns))

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Drop every realtime/auth listener (no persistent connections to close)."""
        with self._lock:
            self._channels.clear()
            self._auth_listeners.clear()

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        with contextlib.suppress(Exception):
            conn.execute("PRAGMA journal_mode=WAL")

    @contextlib.contextmanager
    def _connect(self, table: str | None = None) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction. sqlite3 errors become PersistenceFailure."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.warning("SQLite error table=%s: %s", table, e)
            raise PersistenceFailure(str(e), table=table) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _now(self) -> float:
        # Strictly increasing, so updated_at can order writes.
        with self._lock:
            now = max(time.time(), self._last_ts + 1e-6)
            self._last_ts = now
            return now

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()
            for ddl in _SCHEMA:
                cur.execute(ddl)

            for table, added in _ADDED_COLUMNS.items():
                cur.execute(f"PRAGMA table_info({table})")
                cols = {row["name"] for row in cur.fetchall()}
                for name, decl in added:
                    if name in cols:
                        continue
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                    logger.info("SqliteGateway migration: added column %s.%s", table, name)

            for ddl in _INDEXES:
                cur.execute(ddl)

            for table in _PUBLIC_TABLES:
                cur.execute(f"PRAGMA table_info({table})")
                self._columns[table] = tuple(row["name"] for row in cur.fetchall())

    def _seed_achievements(self) -> None:
        with self._connect("achievements") as conn:
            for a in DEFAULT_ACHIEVEMENTS:
                cols = list(a)
                conn.execute(
                    f"INSERT OR IGNORE INTO achievements({', '.join(cols)}) "
                    f"VALUES ({', '.join('?' for _ in cols)})",
                    [a[c] for c in cols],
                )

    def _check_table(self, table: str) -> tuple[str, ...]:
        cols = self._columns.get(table)
        if table not in _PUBLIC_TABLES or cols is None:
            raise PersistenceFailure(f"Unknown table: {table}", table=table)
        return cols

    def _check_columns(self, table: str, names: Iterable[str]) -> None:
        cols = self._check_table(table)
        unknown = [n for n in names if n not in cols]
        if unknown:
            raise PersistenceFailure(f"Unknown columns for {table}: {', '.join(unknown)}", table=table)

    def _to_row(self, table: str, row: sqlite3.Row) -> Row:
        out = dict(row)
        for col in _BOOL_COLUMNS.get(table, ()):
            if col in out and out[col] is not None:
                out[col] = bool(out[col])
        return out

    def _where(self, table: str, match: Row | None) -> tuple[str, list[Any]]:
        if not match:
            return "", []
        self._check_columns(table, match)
        clauses: list[str] = []
        params: list[Any] = []
        for col, val in match.items():
            if isinstance(val, (list, tuple, set, frozenset)):
                vals = list(val)
                if not vals:
                    clauses.append("0")
                    continue
                clauses.append(f"{col} IN ({', '.join('?' for _ in vals)})")
                params.extend(vals)
            elif val is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = ?")
                params.append(val)
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _key_columns(table: str) -> tuple[str, ...]:
        return ("task_id", "tag_id") if table == "task_tags" else ("id",)

    def _fetch(self, conn: sqlite3.Connection, table: str, match: Row) -> list[Row]:
        where, params = self._where(table, match)
        return [self._to_row(table, r) for r in conn.execute(f"SELECT * FROM {table}{where}", params).fetchall()]

    def _insert_row(self, conn: sqlite3.Connection, table: str, row: Row, pending: _Pending) -> Row:
        cols = self._check_table(table)
        data = dict(row)
        if table in _TEXT_ID_TABLES and not data.get("id"):
            data["id"] = str(uuid.uuid4())
        now = self._now()
        if "created_at" in cols and not data.get("created_at"):
            data["created_at"] = now
        if "updated_at" in cols:
            data["updated_at"] = now
        self._check_columns(table, data)

        names = list(data)
        cur = conn.execute(
            f"INSERT INTO {table}({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
            [data[n] for n in names],
        )
        if "id" in data:
            key = {"id": data["id"]}
        elif table == "task_tags":
            key = {"task_id": data["task_id"], "tag_id": data["tag_id"]}
        else:
            key = {"id": cur.lastrowid}
        stored = self._fetch(conn, table, key)[0]
        pending.append((table, ChangeType.INSERT, stored, None))
        return stored

    def _update_rows(
            self,
            conn: sqlite3.Connection,
            table: str,
            changes: Row,
            match: Row,
            pending: _Pending,
    ) -> list[Row]:
        cols = self._check_table(table)
        data = {k: v for k, v in changes.items() if k not in ("id", "created_at")}
        if "updated_at" in cols:
            data["updated_at"] = self._now()
        self._check_columns(table, data)
        if not data:
            return self._fetch(conn, table, match)

        before = self._fetch(conn, table, match)
        if not before:
            return []

        where, params = self._where(table, match)
        assignments = ", ".join(f"{k} = ?" for k in data)
        conn.execute(f"UPDATE {table} SET {assignments}{where}", [*data.values(), *params])

        keys = self._key_columns(table)
        after: list[Row] = []
        for old in before:
            rows = self._fetch(conn, table, {k: old[k] for k in keys})
            if rows:
                after.append(rows[0])
                pending.append((table, ChangeType.UPDATE, rows[0], old))
        return after

    # ---- realtime ----

    def subscribe(self, table: str, callback: ChangeCallback, *, match: Row | None = None) -> _Handle:
        self._check_table(table)
        channel = _Channel(table=table, callback=callback, match=dict(match or {}))
        with self._lock:
            self._channels.append(channel)
        logger.debug("Realtime subscribe table=%s match=%s", table, channel.match)

        def _remove() -> None:
            with self._lock:
                if channel in self._channels:
                    self._channels.remove(channel)

        return _Handle(_remove)

    @staticmethod
    def _matches(match: Row, row: Row | None) -> bool:
        if row is None:
            return False
        for col, val in match.items():
            if isinstance(val, (list, tuple, set, frozenset)):
                if row.get(col) not in val:
                    return False
            elif row.get(col) != val:
                return False
        return True

    def _publish(self, pending: _Pending) -> None:
        with self._lock:
            channels = list(self._channels)
        for table, event_type, new, old in pending:
            event = ChangeEvent(table=table, event_type=event_type, new=new, old=old)
            for ch in channels:
                if ch.table != table:
                    continue
                if ch.match and not (self._matches(ch.match, new) or self._matches(ch.match, old)):
                    continue
                try:
                    ch.callback(event)
                except Exception:
                    logger.exception("Realtime callback failed table=%s", table)

    # ---- CRUD ----

    async def select(
            self,
            table: str,
            *,
            match: Row | None = None,
            order_by: Iterable[str] = (),
            limit: int | None = None,
    ) -> list[Row]:
        order = list(order_by)
        self._check_columns(table, order)
        where, params = self._where(table, match)
        sql = f"SELECT * FROM {table}{where}"
        if order:
            sql += " ORDER BY " + ", ".join(order)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._connect(table) as conn:
            return [self._to_row(table, r) for r in conn.execute(sql, params).fetchall()]

    async def insert(self, table: str, row: Row) -> Row:
        pending: _Pending = []
        with self._connect(table) as conn:
            stored = self._insert_row(conn, table, row, pending)
        self._publish(pending)
        logger.debug("Inserted into %s id=%s", table, stored.get("id"))
        return stored

    async def update(self, table: str, changes: Row, *, match: Row) -> list[Row]:
        if not match:
            raise PersistenceFailure("update requires a match filter", table=table)
        pending: _Pending = []
        with self._connect(table) as conn:
            rows = self._update_rows(conn, table, changes, match, pending)
        self._publish(pending)
        return rows

    async def delete(self, table: str, *, match: Row) -> int:
        if not match:
            raise PersistenceFailure("delete requires a match filter", table=table)
        pending: _Pending = []
        with self._connect(table) as conn:
            before = self._fetch(conn, table, match)
            if table == "task_groups" and before:
                # Tasks of a deleted group become ungrouped; publish those updates too.
                self._update_rows(
                    conn,
                    "tasks",
                    {"group_id": None},
                    {"group_id": [g["id"] for g in before]},
                    pending,
                )
            where, params = self._where(table, match)
            deleted = int(conn.execute(f"DELETE FROM {table}{where}", params).rowcount)
            pending.extend((table, ChangeType.DELETE, None, old) for old in before)
        self._publish(pending)
        return deleted

    async def upsert(self, table: str, rows: list[Row], *, on_conflict: str = "id") -> list[Row]:
        """
        Insert rows, or update the provided columns of rows that already exist
        (matched on the `on_conflict` column list).
        """
        keys = tuple(c.strip() for c in on_conflict.split(",") if c.strip())
        self._check_columns(table, keys)
        pending: _Pending = []
        out: list[Row] = []
        with self._connect(table) as conn:
            for row in rows:
                key = {k: row.get(k) for k in keys}
                if all(v is not None for v in key.values()) and self._fetch(conn, table, key):
                    changes = {k: v for k, v in row.items() if k not in keys}
                    out.extend(self._update_rows(conn, table, changes, key, pending))
                else:
                    out.append(self._insert_row(conn, table, row, pending))
        self._publish(pending)
        return out

    # ---- server-side routines ----

    async def rpc(self, name: str, params: Row) -> Any:
        routines: dict[str, Callable[[sqlite3.Connection, Row, _Pending], Any]] = {
            "handle_task_completion": self._rpc_handle_task_completion,
            "migrate_guest_data": self._rpc_migrate_guest_data,
            "increment_api_key_usage": self._rpc_increment_api_key_usage,
            "award_points": self._rpc_award_points,
        }
        fn = routines.get(name)
        if fn is None:
            raise PersistenceFailure(f"Unknown routine: {name}")

        pending: _Pending = []
        with self._connect(name) as conn:
            result = fn(conn, dict(params or {}), pending)
        self._publish(pending)
        logger.debug("rpc %s -> %r", name, result)
        return result

    def _ensure_settings(self, conn: sqlite3.Connection, user_id: str, pending: _Pending) -> Row:
        rows = self._fetch(conn, "user_settings", {"id": user_id})
        if rows:
            return rows[0]
        return self._insert_row(conn, "user_settings", {"id": user_id}, pending)

    def _rpc_handle_task_completion(self, conn: sqlite3.Connection, params: Row, pending: _Pending) -> Row:
        """
        Reward a completed task: points, level, daily streak and achievements
        (each achievement unlocked at most once). Returns the settings row.
        """
        task_id = params.get("task_id")
        tasks = self._fetch(conn, "tasks", {"id": task_id})
        if not tasks:
            raise PersistenceFailure(f"Task not found: {task_id}", table="tasks")
        task_row = tasks[0]
        if not task_row["is_completed"]:
            raise PersistenceFailure(f"Task is not completed: {task_id}", table="tasks")

        user_id = str(task_row["user_id"])
        settings_row = self._ensure_settings(conn, user_id, pending)
        settings = UserSettings.from_row(settings_row)

        today = date.today()
        last = date.fromisoformat(settings.last_completed_on) if settings.last_completed_on else None
        streak = next_streak(settings.current_streak, last, today)

        points = settings.aura_points + completion_points(
            Task.from_row(task_row), settings, self._task_base_points
        )
        level = max(settings.level, level_for_points(points, self._points_per_level))

        (completed_count,) = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE user_id = ? AND is_completed = 1", (user_id,)
        ).fetchone()

        unlocked_ids = {
            int(r["achievement_id"])
            for r in conn.execute("SELECT achievement_id FROM user_achievements WHERE user_id = ?", (user_id,))
        }
        catalog = [Achievement.from_row(dict(r)) for r in conn.execute("SELECT * FROM achievements ORDER BY id")]
        for a in achievements_to_unlock(
                catalog,
                unlocked_ids,
                completed_count=int(completed_count),
                streak=streak,
                level=level,
        ):
            ua_id = str(uuid.uuid4())
            cur = conn.execute(
                "INSERT OR IGNORE INTO user_achievements(id, user_id, achievement_id, unlocked_at) "
                "VALUES (?, ?, ?, ?)",
                (ua_id, user_id, a.id, self._now()),
            )
            if cur.rowcount != 1:
                continue
            points += a.reward_points
            pending.append(
                ("user_achievements", ChangeType.INSERT, self._fetch(conn, "user_achievements", {"id": ua_id})[0], None)
            )
            logger.info("Achievement unlocked user=%s achievement=%s", user_id, a.name)

        level = max(level, level_for_points(points, self._points_per_level))
        rows = self._update_rows(
            conn,
            "user_settings",
            {
                "aura_points": points,
                "level": level,
                "current_streak": streak,
                "last_completed_on": today.isoformat(),
            },
            {"id": user_id},
            pending,
        )
        return rows[0]

    def _rpc_migrate_guest_data(self, conn: sqlite3.Connection, params: Row, pending: _Pending) -> Row:
        """Reassign every guest-owned row to the signed-in user. Returns moved counts."""
        guest_id = str(params.get("guest_id") or "")
        user_id = str(params.get("user_id") or "")
        if not guest_id or not user_id:
            raise PersistenceFailure("guest_id and user_id are required")
        if guest_id == user_id:
            return {}

        moved: Row = {}
        for table in _OWNED_TABLES:
            cur = conn.execute(f"UPDATE {table} SET user_id = ? WHERE user_id = ?", (user_id, guest_id))
            moved[table] = cur.rowcount

        cur = conn.execute(
            "UPDATE OR IGNORE user_achievements SET user_id = ? WHERE user_id = ?", (user_id, guest_id)
        )
        moved["user_achievements"] = cur.rowcount
        conn.execute("DELETE FROM user_achievements WHERE user_id = ?", (guest_id,))

        guest_settings = self._fetch(conn, "user_settings", {"id": guest_id})
        if guest_settings:
            g = guest_settings[0]
            if self._fetch(conn, "user_settings", {"id": user_id}):
                conn.execute(
                    "UPDATE user_settings SET aura_points = aura_points + ?, level = MAX(level, ?), "
                    "updated_at = ? WHERE id = ?",
                    (int(g["aura_points"] or 0), int(g["level"] or 1), self._now(), user_id),
                )
                conn.execute("DELETE FROM user_settings WHERE id = ?", (guest_id,))
            else:
                conn.execute(
                    "UPDATE user_settings SET id = ?, updated_at = ? WHERE id = ?",
                    (user_id, self._now(), guest_id),
                )
            moved["user_settings"] = 1

        logger.info("Guest data migrated guest=%s -> user=%s moved=%s", guest_id, user_id, moved)
        return moved

    def _rpc_award_points(self, conn: sqlite3.Connection, params: Row, pending: _Pending) -> Row:
        """Add a positive amount to aura_points in place; level is left alone. Returns the settings row."""
        user_id = str(params.get("user_id") or "")
        try:
            points = int(params.get("points"))
        except (TypeError, ValueError):
            raise PersistenceFailure(f"Invalid points amount: {params.get('points')!r}") from None
        if not user_id or points <= 0:
            raise PersistenceFailure("user_id and a positive points amount are required")

        before = self._ensure_settings(conn, user_id, pending)
        conn.execute(
            "UPDATE user_settings SET aura_points = aura_points + ?, updated_at = ? WHERE id = ?",
            (points, self._now(), user_id),
        )
        (after,) = self._fetch(conn, "user_settings", {"id": user_id})
        pending.append(("user_settings", ChangeType.UPDATE, after, before))
        return after

    def _rpc_increment_api_key_usage(self, conn: sqlite3.Connection, params: Row, pending: _Pending) -> int:
        cur = conn.execute(
            "UPDATE admin_api_keys SET usage_count = usage_count + 1, last_used_at = ? WHERE id = ?",
            (self._now(), params.get("key_id")),
        )
        return int(cur.rowcount)

    # ---- auth ----

    def _user_from_row(self, row: sqlite3.Row) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            is_anonymous=bool(row["is_anonymous"]),
            metadata={"provider": row["provider"]} if row["provider"] else {},
        )

    def on_auth_state_change(self, callback: AuthCallback) -> _Handle:
        with self._lock:
            self._auth_listeners.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._auth_listeners:
                    self._auth_listeners.remove(callback)

        return _Handle(_remove)

    def _fire_auth(self, event: AuthEventType, user: User | None) -> None:
        with self._lock:
            listeners = list(self._auth_listeners)
        for cb in listeners:
            try:
                cb(event, user)
            except Exception:
                logger.exception("Auth listener failed event=%s", event.value)

    async def get_user(self) -> User | None:
        with self._connect("auth_session") as conn:
            row = conn.execute(
                "SELECT u.* FROM auth_session s JOIN users u ON u.id = s.user_id WHERE s.slot = 1"
            ).fetchone()
        return self._user_from_row(row) if row else None

    def _start_session(self, conn: sqlite3.Connection, user_id: str) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO auth_session(slot, user_id, created_at) VALUES (1, ?, ?)",
            (user_id, self._now()),
        )

    async def sign_in_anonymously(self) -> User:
        user_id = str(uuid.uuid4())
        with self._connect("users") as conn:
            conn.execute(
                "INSERT INTO users(id, email, provider, is_anonymous, created_at) VALUES (?, NULL, NULL, 1, ?)",
                (user_id, self._now()),
            )
            self._start_session(conn, user_id)
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        user = self._user_from_row(row)
        logger.info("Anonymous session started id=%s", user.id)
        self._fire_auth(AuthEventType.SIGNED_IN, user)
        return user

    async def sign_in_with_oauth(self, provider: str, *, email: str | None = None) -> User:
        """
        Local stand-in for an OAuth round-trip: the (provider, email) pair
        identifies the account, created on first sign-in.
        """
        provider = (provider or "").strip().lower()
        if not provider:
            raise PersistenceFailure("provider is required", table="users")
        email = (email or f"{provider}-user@localhost").strip().lower()

        with self._connect("users") as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE provider = ? AND email = ? AND is_anonymous = 0",
                (provider, email),
            ).fetchone()
            if row is None:
                user_id = str(uuid.uuid4())
                conn.execute(
                    "INSERT INTO users(id, email, provider, is_anonymous, created_at) VALUES (?, ?, ?, 0, ?)",
                    (user_id, email, provider, self._now()),
                )
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            self._start_session(conn, str(row["id"]))
        user = self._user_from_row(row)
        logger.info("Signed in with %s id=%s", provider, user.id)
        self._fire_auth(AuthEventType.SIGNED_IN, user)
        return user

    async def sign_out(self) -> None:
        with self._connect("auth_session") as conn:
            conn.execute("DELETE FROM auth_session")
        self._fire_auth(AuthEventType.SIGNED_OUT, None)

    # ---- diagnostics ----

    def count_rows(self, table: str) -> int:
        self._check_table(table)
        with self._connect(table) as conn:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
            return int(n)

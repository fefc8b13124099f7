# tests/fakes.py

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable
from typing import Any

from auratask.core.errors import EnrichmentFailure, PersistenceFailure
from auratask.core.models import AuthEventType, ChangeEvent, ChangeType, Row, TaskAnalysis, User
from auratask.core.ports import AuthCallback, ChangeCallback


class FakeSubscription:
    def __init__(self, remove: Callable[[], None]) -> None:
        self._remove = remove
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._remove()
            self.active = False


def _matches(row: Row, match: Row | None) -> bool:
    for col, val in (match or {}).items():
        if isinstance(val, (list, tuple, set, frozenset)):
            if row.get(col) not in val:
                return False
        elif row.get(col) != val:
            return False
    return True


class FakeBackend:
    """
    In-memory BackendGateway for store tests.

    - `fail` holds (operation, table) pairs that raise PersistenceFailure
      (use ("rpc", <routine name>) for routines)
    - `gate`, when set, blocks every write until the event is set, so tests
      can inspect optimistic state while the backend is "in flight"
    - realtime events are never emitted automatically; use push()
    """

    def __init__(self, user: User | None = None) -> None:
        self.tables: dict[str, list[Row]] = defaultdict(list)
        self.calls: list[tuple[str, str, Any]] = []
        self.fail: set[tuple[str, str]] = set()
        self.gate: asyncio.Event | None = None
        self.rpc_handlers: dict[str, Callable[[Row], Any]] = {"award_points": self._award_points}
        self.channels: list[tuple[str, ChangeCallback, Row]] = []
        self.auth_listeners: list[AuthCallback] = []
        self.user = user
        self._clock = 1000.0

    # ---- helpers for tests ----

    def tick(self) -> float:
        self._clock += 1.0
        return self._clock

    def seed(self, table: str, **row: Any) -> Row:
        data = dict(row)
        data.setdefault("id", str(uuid.uuid4()))
        data.setdefault("created_at", self.tick())
        data.setdefault("updated_at", self.tick())
        self.tables[table].append(data)
        return dict(data)

    def rows(self, table: str, **match: Any) -> list[Row]:
        return [dict(r) for r in self.tables[table] if _matches(r, match)]

    def ops(self, op: str | None = None, table: str | None = None) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if (op is None or c[0] == op) and (table is None or c[1] == table)]

    def push(self, table: str, event_type: ChangeType, *, new: Row | None = None, old: Row | None = None) -> None:
        event = ChangeEvent(table=table, event_type=event_type, new=new, old=old)
        for t, cb, match in list(self.channels):
            if t != table:
                continue
            if match and not (_matches(new or {}, match) or _matches(old or {}, match)):
                continue
            cb(event)

    def _award_points(self, params: Row) -> Row:
        """Backend-side increment, like the SQLite routine."""
        row = next((r for r in self.tables["user_settings"] if r.get("id") == params["user_id"]), None)
        if row is None:
            self.seed("user_settings", id=params["user_id"], aura_points=0, level=1)
            row = self.tables["user_settings"][-1]
        row["aura_points"] = int(row.get("aura_points") or 0) + int(params["points"])
        row["updated_at"] = self.tick()
        return dict(row)

    async def _enter(self, op: str, table: str, payload: Any = None) -> None:
        self.calls.append((op, table, payload))
        if op != "select" and self.gate is not None:
            await self.gate.wait()
        if (op, table) in self.fail:
            raise PersistenceFailure(f"{op} on {table} failed", table=table)

    # ---- CRUD ----

    async def select(
            self,
            table: str,
            *,
            match: Row | None = None,
            order_by: Iterable[str] = (),
            limit: int | None = None,
    ) -> list[Row]:
        await self._enter("select", table, match)
        out = [dict(r) for r in self.tables[table] if _matches(r, match)]
        for key in reversed(list(order_by)):
            out.sort(key=lambda r: (r.get(key) is None, r.get(key) or 0))
        return out[:limit] if limit is not None else out

    async def insert(self, table: str, row: Row) -> Row:
        await self._enter("insert", table, row)
        data = dict(row)
        data.setdefault("id", str(uuid.uuid4()))
        data.setdefault("created_at", self.tick())
        data["updated_at"] = self.tick()
        self.tables[table].append(data)
        return dict(data)

    async def update(self, table: str, changes: Row, *, match: Row) -> list[Row]:
        await self._enter("update", table, changes)
        out: list[Row] = []
        for r in self.tables[table]:
            if _matches(r, match):
                r.update(changes)
                r["updated_at"] = self.tick()
                out.append(dict(r))
        return out

    async def delete(self, table: str, *, match: Row) -> int:
        await self._enter("delete", table, match)
        before = len(self.tables[table])
        self.tables[table] = [r for r in self.tables[table] if not _matches(r, match)]
        return before - len(self.tables[table])

    async def upsert(self, table: str, rows: list[Row], *, on_conflict: str = "id") -> list[Row]:
        await self._enter("upsert", table, rows)
        out: list[Row] = []
        for row in rows:
            existing = next((r for r in self.tables[table] if r.get(on_conflict) == row.get(on_conflict)), None)
            if existing is None:
                data = dict(row)
                data.setdefault("created_at", self.tick())
                data["updated_at"] = self.tick()
                self.tables[table].append(data)
                out.append(dict(data))
            else:
                existing.update(row)
                existing["updated_at"] = self.tick()
                out.append(dict(existing))
        return out

    async def rpc(self, name: str, params: Row) -> Any:
        await self._enter("rpc", name, params)
        handler = self.rpc_handlers.get(name)
        return handler(params) if handler is not None else None

    # ---- realtime ----

    def subscribe(self, table: str, callback: ChangeCallback, *, match: Row | None = None) -> FakeSubscription:
        entry = (table, callback, dict(match or {}))
        self.channels.append(entry)
        return FakeSubscription(lambda: self.channels.remove(entry))

    # ---- auth ----

    def _fire(self, event: AuthEventType, user: User | None) -> None:
        for cb in list(self.auth_listeners):
            cb(event, user)

    async def get_user(self) -> User | None:
        return self.user

    async def sign_in_anonymously(self) -> User:
        self.user = User(id="anon-1", is_anonymous=True)
        self._fire(AuthEventType.SIGNED_IN, self.user)
        return self.user

    async def sign_in_with_oauth(self, provider: str, *, email: str | None = None) -> User:
        self.user = User(id="user-1", email=email or "user@example.com", metadata={"provider": provider})
        self._fire(AuthEventType.SIGNED_IN, self.user)
        return self.user

    async def sign_out(self) -> None:
        self.user = None
        self._fire(AuthEventType.SIGNED_OUT, None)

    def on_auth_state_change(self, callback: AuthCallback) -> FakeSubscription:
        self.auth_listeners.append(callback)
        return FakeSubscription(lambda: self.auth_listeners.remove(callback))


class RecordingNotifier:
    def __init__(self) -> None:
        self.successes: list[str] = []
        self.errors: list[str] = []

    def success(self, message: str) -> None:
        self.successes.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class FakeAnalyzer:
    """
    Scripted TaskAnalyzer.

    - returns `analysis` (or raises `error`) for analyze_task
    - returns `emoji` for suggest_group_emoji
    - records every call
    """

    def __init__(
            self,
            analysis: TaskAnalysis | None = None,
            *,
            error: Exception | None = None,
            emoji: str = "💼",
    ) -> None:
        self.analysis = analysis or TaskAnalysis(
            ai_speed_score=12,
            ai_importance_score=16,
            speed_tag="سریع",
            importance_tag="بالا",
            emoji="🚀",
            sub_tasks=["step one", "step two"],
        )
        self.error = error
        self.emoji = emoji
        self.calls: list[dict[str, Any]] = []
        self.emoji_calls: list[str] = []

    async def analyze_task(self, **kwargs: Any) -> TaskAnalysis:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.analysis

    async def suggest_group_emoji(self, group_name: str, *, api_key: str | None = None) -> str:
        self.emoji_calls.append(group_name)
        if isinstance(self.error, EnrichmentFailure):
            raise self.error
        return self.emoji

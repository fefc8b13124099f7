# src/auratask/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the store.

The store depends on Protocols instead of concrete implementations.
This keeps the backend, the task analyzer and the UI-facing notifier
swappable and makes testing easier (tests/fakes.py).
"""

from collections.abc import Callable, Iterable
from typing import Any, Protocol

from .models import AuthEventType, ChangeEvent, Row, TaskAnalysis, User

ChangeCallback = Callable[[ChangeEvent], None]
AuthCallback = Callable[[AuthEventType, "User | None"], None]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class BackendGateway(Protocol):
    """
    Relational backend with row filters, upsert, server-side routines,
    a realtime change feed and an auth subsystem.

    Every failing call raises PersistenceFailure.
    `match` values that are lists/tuples/sets mean "column IN (...)".
    """

    # ---- CRUD ----
    async def select(
            self,
            table: str,
            *,
            match: Row | None = None,
            order_by: Iterable[str] = (),
            limit: int | None = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, row: Row) -> Row: ...

    async def update(self, table: str, changes: Row, *, match: Row) -> list[Row]: ...

    async def delete(self, table: str, *, match: Row) -> int: ...

    async def upsert(self, table: str, rows: list[Row], *, on_conflict: str = "id") -> list[Row]: ...

    # ---- server-side routines ----
    async def rpc(self, name: str, params: Row) -> Any: ...

    # ---- realtime ----
    def subscribe(
            self,
            table: str,
            callback: ChangeCallback,
            *,
            match: Row | None = None,
    ) -> Subscription: ...

    # ---- auth ----
    async def get_user(self) -> User | None: ...
    async def sign_in_anonymously(self) -> User: ...
    async def sign_in_with_oauth(self, provider: str, *, email: str | None = None) -> User: ...
    async def sign_out(self) -> None: ...
    def on_auth_state_change(self, callback: AuthCallback) -> Subscription: ...


class TaskAnalyzer(Protocol):
    """
    LLM-backed enrichment service.

    analyze_task raises EnrichmentFailure on transport errors and returns the
    fixed fallback analysis when the model output cannot be parsed.
    """

    async def analyze_task(
            self,
            *,
            title: str,
            description: str | None = None,
            enable_ai_ranking: bool = False,
            enable_ai_subtasks: bool = False,
            api_key: str | None = None,
            speed_weight: float = 1.0,
            importance_weight: float = 1.0,
    ) -> TaskAnalysis: ...

    async def suggest_group_emoji(self, group_name: str, *, api_key: str | None = None) -> str: ...


class Notifier(Protocol):
    """Toast-style user feedback (one per mutation)."""

    def success(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...


class LocalStorage(Protocol):
    """Small persisted key/value area (guest id, UI preferences)."""

    def load(self) -> dict[str, Any]: ...
    def save(self, data: dict[str, Any]) -> None: ...

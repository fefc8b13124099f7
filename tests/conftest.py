# tests/conftest.py

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from auratask.backend.sqlite_gateway import SqliteGateway
from auratask.store.app_store import AppStore
from auratask.store.local_storage import MemoryStorage

from .fakes import FakeAnalyzer, FakeBackend, RecordingNotifier


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the store, gateway and analyzers.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="auratask-test",
        data_dir=tmp_path,
        db_path=tmp_path / "auratask.sqlite3",
        local_storage_path=tmp_path / "local_storage.json",
        analyzer_url="",
        analyzer_timeout_seconds=5.0,
        openrouter_api_key=None,
        openrouter_base_url="https://openrouter.example/api/v1",
        llm_models=["model-a", "model-b"],
        extra_headers={},
        order_gap=10000,
        task_base_points=10,
        subtask_reward_points=5,
        points_per_level=100,
        notice_seconds_aura=3.0,
        notice_seconds_level_up=6.0,
        notice_seconds_achievement=7.0,
    )


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture()
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture()
def store(
        backend: FakeBackend,
        analyzer: FakeAnalyzer,
        notifier: RecordingNotifier,
        storage: MemoryStorage,
        settings: SimpleNamespace,
) -> AppStore:
    """
    AppStore wired with deterministic fakes.

    Tests call `await store.initialize()` themselves (guest identity, realtime, fetch).
    """
    return AppStore(backend, analyzer=analyzer, notifier=notifier, storage=storage, settings=settings)


@pytest.fixture()
def gateway(settings: SimpleNamespace) -> Iterator[SqliteGateway]:
    """Real SQLite gateway on a temporary database."""
    gw = SqliteGateway(settings.db_path, task_base_points=10, points_per_level=100)
    yield gw
    gw.close()

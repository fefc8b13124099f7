# tests/test_local_storage.py

from __future__ import annotations

from pathlib import Path

from auratask.store.app_store import AppStore
from auratask.store.local_storage import JsonFileStorage

from .fakes import FakeBackend


def test_json_storage_roundtrip(tmp_path: Path) -> None:
    storage = JsonFileStorage(tmp_path / "nested" / "state.json")
    assert storage.load() == {}

    storage.save({"guest_id": "guest_1_abcdef0123", "dark_mode": True, "filters": {"search_query": "گزارش"}})

    again = JsonFileStorage(storage.path)
    assert again.load()["dark_mode"] is True
    assert again.load()["filters"]["search_query"] == "گزارش"


def test_json_storage_tolerates_garbage(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", "utf-8")
    assert JsonFileStorage(path).load() == {}

    path.write_text("[1, 2]", "utf-8")
    assert JsonFileStorage(path).load() == {}


def test_store_restores_with_unknown_values(tmp_path: Path) -> None:
    storage = JsonFileStorage(tmp_path / "state.json")
    storage.save({"active_tab": "someday", "filters": {"status": "weird", "priority": "high"}})

    store = AppStore(FakeBackend(), storage=storage)

    assert store.state.ui.active_tab.value == "all"
    assert store.state.ui.filters.status.value == "all"
    assert store.state.ui.filters.priority.value == "high"

# src/auratask/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- picks a task analyzer (remote service, in-process LLM, or offline),
- wires gateway + analyzer + local storage into an AppStore.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..analyzer.http import HttpTaskAnalyzer
from ..analyzer.llm import LlmTaskAnalyzer
from ..analyzer.offline import OfflineTaskAnalyzer
from ..backend.sqlite_gateway import SqliteGateway
from ..config import get_settings
from ..core.ports import Notifier, TaskAnalyzer
from ..store.app_store import AppStore
from ..store.local_storage import JsonFileStorage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppContext:
    settings: Any
    gateway: SqliteGateway
    analyzer: TaskAnalyzer
    store: AppStore


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.local_storage_path.parent.mkdir(parents=True, exist_ok=True)


def create_analyzer(settings) -> TaskAnalyzer:
    """
    Analyzer selection:
    - AURA_ANALYZER_URL set -> remote HTTP service
    - OpenRouter key set    -> in-process LLM analyzer
    - otherwise             -> deterministic offline analyzer
    """
    url = str(getattr(settings, "analyzer_url", "") or "").strip()
    if url:
        logger.info("Task analyzer: HTTP service at %s", url)
        return HttpTaskAnalyzer(url, timeout_seconds=float(getattr(settings, "analyzer_timeout_seconds", 15.0)))

    if getattr(settings, "openrouter_api_key", None):
        logger.info("Task analyzer: in-process LLM (%d models)", len(getattr(settings, "llm_models", []) or []))
        return LlmTaskAnalyzer(settings)

    logger.info("Task analyzer: offline (no external service configured)")
    return OfflineTaskAnalyzer()


def create_app(*, settings=None, notifier: Notifier | None = None) -> AppContext:
    """
    Build the application graph from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    gateway = SqliteGateway(
        settings.db_path,
        task_base_points=int(getattr(settings, "task_base_points", 10)),
        points_per_level=int(getattr(settings, "points_per_level", 100)),
    )
    analyzer = create_analyzer(settings)
    store = AppStore(
        gateway,
        analyzer=analyzer,
        notifier=notifier,
        storage=JsonFileStorage(settings.local_storage_path),
        settings=settings,
    )
    return AppContext(settings=settings, gateway=gateway, analyzer=analyzer, store=store)


async def shutdown_app(ctx: AppContext) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await ctx.store.close()
    except Exception:
        logger.exception("Store close failed.")

    try:
        aclose = getattr(ctx.analyzer, "aclose", None)
        if aclose is not None:
            await aclose()
    except Exception:
        logger.debug("Analyzer close failed.", exc_info=True)

    ctx.gateway.close()

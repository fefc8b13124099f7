# src/auratask/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Every component takes settings by injection; get_settings() is only the default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

ENV_PREFIX = "AURA"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path
    local_storage_path: Path

    # ---- Task Analyzer ----
    analyzer_url: str
    analyzer_timeout_seconds: float

    # ---- LLM / OpenRouter (in-process analyzer) ----
    openrouter_api_key: Optional[str]
    openrouter_base_url: str
    llm_models: List[str]
    extra_headers: Dict[str, str]

    # ---- Ordering ----
    order_gap: int

    # ---- Gamification ----
    task_base_points: int
    subtask_reward_points: int
    points_per_level: int

    notice_seconds_aura: float
    notice_seconds_level_up: float
    notice_seconds_achievement: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _first_env(_k("APP_NAME"), default="auratask") or "auratask"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/auratask"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "auratask.sqlite3")
        local_storage_path = _env_path(_k("LOCAL_STORAGE_PATH"), data_dir / "local_storage.json")

        analyzer_url = (_env(_k("ANALYZER_URL"), "") or "").strip()
        analyzer_timeout_seconds = _env_float(_k("ANALYZER_TIMEOUT_SECONDS"), 15.0)

        openrouter_api_key = _first_env(_k("OPENROUTER_API_KEY"), "OPENROUTER_API_KEY", default=None)
        openrouter_base_url = _env(_k("OPENROUTER_BASE_URL"), "https://openrouter.ai/api/v1")

        http_referer = _env(_k("HTTP_REFERER"), "https://example.com")
        title = _env(_k("APP_TITLE"), app_name)

        extra_headers = {
            "HTTP-Referer": http_referer,
            "X-Title": title,
        }

        llm_models = _env_list(
            _k("LLM_MODELS"),
            [
                "google/gemini-flash-1.5",
                "qwen/qwen-2.5-72b-instruct:free",
                "deepseek/deepseek-chat-v3-0324:free",
            ],
        )

        order_gap = max(1, _env_int(_k("ORDER_GAP"), 10000))

        task_base_points = _env_int(_k("TASK_BASE_POINTS"), 10)
        subtask_reward_points = _env_int(_k("SUBTASK_REWARD_POINTS"), 5)
        points_per_level = max(1, _env_int(_k("POINTS_PER_LEVEL"), 100))

        notice_seconds_aura = _env_float(_k("NOTICE_SECONDS_AURA"), 3.0)
        notice_seconds_level_up = _env_float(_k("NOTICE_SECONDS_LEVEL_UP"), 6.0)
        notice_seconds_achievement = _env_float(_k("NOTICE_SECONDS_ACHIEVEMENT"), 7.0)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            local_storage_path=local_storage_path,
            analyzer_url=analyzer_url,
            analyzer_timeout_seconds=analyzer_timeout_seconds,
            openrouter_api_key=openrouter_api_key,
            openrouter_base_url=openrouter_base_url,
            llm_models=llm_models,
            extra_headers=extra_headers,
            order_gap=order_gap,
            task_base_points=task_base_points,
            subtask_reward_points=subtask_reward_points,
            points_per_level=points_per_level,
            notice_seconds_aura=notice_seconds_aura,
            notice_seconds_level_up=notice_seconds_level_up,
            notice_seconds_achievement=notice_seconds_achievement,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS

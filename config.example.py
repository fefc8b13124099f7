# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets. Use .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "AURA_APP_NAME": "App display name (default: auratask).",
    "AURA_LOG_LEVEL": "Console logging level (default: INFO).",
    # Paths (gitignored)
    "AURA_DATA_DIR": "Local data directory (default: .local/auratask).",
    "AURA_DB_PATH": "SQLite backend path (default: <data_dir>/auratask.sqlite3).",
    "AURA_LOCAL_STORAGE_PATH": (
        "Persisted UI preferences + guest id (default: <data_dir>/local_storage.json)."
    ),
    # Task analyzer
    "AURA_ANALYZER_URL": "Remote Task Analyzer base URL (empty => in-process analyzer).",
    "AURA_ANALYZER_TIMEOUT_SECONDS": "Analyzer request timeout (default: 15).",
    # LLM / OpenRouter (in-process analyzer)
    "AURA_OPENROUTER_API_KEY": "OpenRouter API key (without it the offline analyzer is used).",
    "AURA_OPENROUTER_BASE_URL": "OpenRouter base URL (default: https://openrouter.ai/api/v1).",
    "AURA_LLM_MODELS": "Comma/space separated list of models to try in order.",
    "AURA_HTTP_REFERER": "Optional OpenRouter metadata header.",
    "AURA_APP_TITLE": "Optional OpenRouter metadata header title.",
    # Ordering
    "AURA_ORDER_GAP": "Spacing between task order keys (default: 10000).",
    # Gamification
    "AURA_TASK_BASE_POINTS": "Base aura points for a completed task (default: 10).",
    "AURA_SUBTASK_REWARD_POINTS": "Aura points for a completed subtask (default: 5).",
    "AURA_POINTS_PER_LEVEL": "Aura points per level (default: 100).",
    "AURA_NOTICE_SECONDS_AURA": "Aura award notice lifetime (default: 3).",
    "AURA_NOTICE_SECONDS_LEVEL_UP": "Level-up notice lifetime (default: 6).",
    "AURA_NOTICE_SECONDS_ACHIEVEMENT": "Achievement notice lifetime (default: 7).",
}

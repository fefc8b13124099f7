# src/auratask/analyzer/llm.py

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from ..config import get_settings
from ..core.errors import EnrichmentFailure
from ..core.models import DEFAULT_GROUP_EMOJI, TaskAnalysis
from .parsing import MAX_SUBTASKS, clean_emoji, fallback_analysis, parse_model_output

logger = logging.getLogger(__name__)

SPEED_TAGS = ("خیلی سریع", "سریع", "متوسط", "کند", "خیلی کند")
IMPORTANCE_TAGS = ("بحرانی", "بالا", "متوسط", "پایین")

# Model that returned 404 -> skipped until this monotonic time.
_BAD_MODEL_TTL_SECONDS = 3600.0


def build_task_prompt(
        title: str,
        description: str | None,
        *,
        enable_ai_ranking: bool,
        enable_ai_subtasks: bool,
) -> str:
    lines = [
        "Analyze this task and answer with a single JSON object.",
        f"Title: {title}",
        f"Description: {description or 'none'}",
        "",
    ]
    if enable_ai_ranking:
        lines += [
            "Fill in:",
            "1. ai_speed_score: how quickly it can be done (1-20)",
            "2. ai_importance_score: how important it is (1-20)",
            f"3. speed_tag: one of {', '.join(SPEED_TAGS)}",
            f"4. importance_tag: one of {', '.join(IMPORTANCE_TAGS)}",
            "5. emoji: one fitting emoji",
        ]
    if enable_ai_subtasks:
        lines.append(f"6. sub_tasks: array of at most {MAX_SUBTASKS} short subtask titles")
    lines += ["", "Return JSON only."]
    return "\n".join(lines)


def build_emoji_prompt(group_name: str) -> str:
    return (
        "You assign emojis to task groups. Given a group name (often Persian), "
        "reply with the single most fitting, commonly used emoji and nothing else.\n"
        "Examples: work -> 💼, home -> 🏠, study -> 📚, sport -> ⚽, shopping -> 🛒, travel -> ✈️\n\n"
        f'Group name: "{group_name}"'
    )


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError))


def _is_rate_limit_error(exc: Exception) -> bool:
    return isinstance(exc, openai.RateLimitError)


def _is_connection_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError, httpx.TransportError))


def _is_not_found_error(exc: Exception) -> bool:
    return isinstance(exc, openai.NotFoundError)


class LlmTaskAnalyzer:
    """
    Task analyzer over an OpenAI-compatible API (OpenRouter by default).

    Behavior:
    - tries models in configured order (AURA_LLM_MODELS)
    - 404 (model not available) -> skip that model for an hour, try next
    - rate limit / network issues -> try next
    - auth issues -> fail fast
    - every model failed -> EnrichmentFailure
    - unparseable output -> fixed fallback analysis
    """

    def __init__(
            self,
            settings: Any | None = None,
            *,
            client_factory: Callable[[str], AsyncOpenAI] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client_factory = client_factory or self._make_client
        self._clients: dict[str, AsyncOpenAI] = {}
        self._bad_models: dict[str, float] = {}

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        base_url = str(getattr(self._settings, "openrouter_base_url", "") or "").strip()
        if not base_url:
            raise EnrichmentFailure("LLM base URL is not set. Set AURA_OPENROUTER_BASE_URL in your .env.")
        timeout_s = float(getattr(self._settings, "analyzer_timeout_seconds", 15.0) or 15.0)
        # Retries disabled so fallback across models stays quick.
        return AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            timeout=httpx.Timeout(connect=5.0, read=timeout_s, write=10.0, pool=5.0),
            max_retries=0,
            default_headers=dict(getattr(self._settings, "extra_headers", {}) or {}),
        )

    def _client_for(self, api_key: str | None) -> AsyncOpenAI:
        key = (api_key or getattr(self._settings, "openrouter_api_key", None) or "").strip()
        if not key:
            raise EnrichmentFailure("No API key available for task analysis")
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(key)
            self._clients[key] = client
        return client

    async def _complete(self, prompt: str, *, api_key: str | None, max_tokens: int = 1000) -> str:
        models = [m.strip() for m in (getattr(self._settings, "llm_models", None) or []) if m and m.strip()]
        if not models:
            raise EnrichmentFailure("LLM model list is empty. Set AURA_LLM_MODELS in your .env.")

        client = self._client_for(api_key)
        last_error: Exception | None = None
        now = time.monotonic()

        for model in models:
            retry_at = self._bad_models.get(model)
            if retry_at is not None and retry_at > now:
                continue

            logger.info("LLM: trying model=%s", model)
            t0 = time.monotonic()
            try:
                resp = await client.chat.completions.create(
                    model=model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.7,
                    max_tokens=max_tokens,
                )
            except Exception as e:
                last_error = e
                if _is_auth_error(e):
                    raise EnrichmentFailure("LLM authentication failed. Check the API key.") from e
                if _is_not_found_error(e):
                    self._bad_models[model] = time.monotonic() + _BAD_MODEL_TTL_SECONDS
                    logger.info("LLM: model not available (404): %s", model)
                elif _is_rate_limit_error(e):
                    logger.info("LLM: rate-limited on model=%s, trying next", model)
                elif _is_connection_error(e):
                    logger.info("LLM: network/timeout error on model=%s, trying next", model)
                else:
                    logger.info("LLM: error on model=%s (%s), trying next", model, e.__class__.__name__)
                continue

            content = ""
            try:
                content = resp.choices[0].message.content or ""
            except (AttributeError, IndexError):
                content = ""
            if content.strip():
                logger.debug("LLM: completed with model=%s (%.2fs)", model, time.monotonic() - t0)
                return content
            last_error = RuntimeError(f"Model returned no content: {model}")

        raise EnrichmentFailure("All LLM models failed.") from last_error

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
    ) -> TaskAnalysis:
        if not enable_ai_ranking and not enable_ai_subtasks:
            return fallback_analysis()

        text = await self._complete(
            build_task_prompt(
                title,
                description,
                enable_ai_ranking=enable_ai_ranking,
                enable_ai_subtasks=enable_ai_subtasks,
            ),
            api_key=api_key,
        )
        return parse_model_output(
            text,
            enable_ai_ranking=enable_ai_ranking,
            enable_ai_subtasks=enable_ai_subtasks,
            speed_weight=speed_weight,
            importance_weight=importance_weight,
        )

    async def suggest_group_emoji(self, group_name: str, *, api_key: str | None = None) -> str:
        try:
            text = await self._complete(build_emoji_prompt(group_name), api_key=api_key, max_tokens=16)
        except EnrichmentFailure as e:
            logger.info("Group emoji fallback for %r: %s", group_name, e)
            return DEFAULT_GROUP_EMOJI
        return clean_emoji(text)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

# src/auratask/analyzer/http.py

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.errors import EnrichmentFailure
from ..core.models import DEFAULT_GROUP_EMOJI, TaskAnalysis
from .parsing import analysis_from_mapping, clean_emoji, fallback_analysis

logger = logging.getLogger(__name__)

PROCESS_TASK_PATH = "/api/process-task"
GROUP_EMOJI_PATH = "/api/assign-group-emoji"


class HttpTaskAnalyzer:
    """
    Client for a remote Task Analyzer service.

    POST {base_url}/api/process-task with the task fields; the service replies
    with the (already weighted) analysis object. Transport errors and non-2xx
    statuses raise EnrichmentFailure; a malformed body yields the fallback.
    """

    def __init__(
            self,
            base_url: str,
            *,
            timeout_seconds: float = 15.0,
            client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
        )

    async def _post(self, path: str, payload: dict[str, Any], *, api_key: str | None) -> Any:
        headers = {"X-Api-Key": api_key} if api_key else {}
        try:
            resp = await self._client.post(path, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EnrichmentFailure(f"Analyzer returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise EnrichmentFailure(f"Analyzer request failed: {e.__class__.__name__}") from e

        try:
            return resp.json()
        except ValueError:
            logger.warning("Analyzer %s returned a non-JSON body", path)
            return None

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
        data = await self._post(
            PROCESS_TASK_PATH,
            {
                "title": title,
                "description": description,
                "enable_ai_ranking": enable_ai_ranking,
                "enable_ai_subtasks": enable_ai_subtasks,
                "speed_weight": speed_weight,
                "importance_weight": importance_weight,
            },
            api_key=api_key,
        )
        if not isinstance(data, dict):
            return fallback_analysis()
        return analysis_from_mapping(
            data,
            enable_ai_ranking=enable_ai_ranking,
            enable_ai_subtasks=enable_ai_subtasks,
            ai_generated=bool(data.get("ai_generated", True)),
        )

    async def suggest_group_emoji(self, group_name: str, *, api_key: str | None = None) -> str:
        try:
            data = await self._post(GROUP_EMOJI_PATH, {"groupName": group_name}, api_key=api_key)
        except EnrichmentFailure as e:
            logger.info("Group emoji fallback for %r: %s", group_name, e)
            return DEFAULT_GROUP_EMOJI
        if not isinstance(data, dict):
            return DEFAULT_GROUP_EMOJI
        return clean_emoji(data.get("emoji"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

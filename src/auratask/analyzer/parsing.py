# src/auratask/analyzer/parsing.py

from __future__ import annotations

"""
Turning analyzer output into a TaskAnalysis.

Model output is not trusted:
- optional ``` fences are stripped
- anything that is not a JSON object yields the fixed fallback analysis
- scores are weighted, rounded half-up and clamped to 1..20
"""

import json
import logging
import math
import re
from collections.abc import Mapping
from typing import Any

from ..core.models import DEFAULT_GROUP_EMOJI, DEFAULT_TASK_EMOJI, MAX_SCORE, MIN_SCORE, TaskAnalysis

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 10
DEFAULT_TAG = "متوسط"
MAX_SUBTASKS = 5
MAX_EMOJI_LEN = 4

_FENCE_RE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)


def fallback_analysis() -> TaskAnalysis:
    return TaskAnalysis(
        ai_speed_score=DEFAULT_SCORE,
        ai_importance_score=DEFAULT_SCORE,
        speed_tag=DEFAULT_TAG,
        importance_tag=DEFAULT_TAG,
        emoji=DEFAULT_TASK_EMOJI,
        sub_tasks=[],
        ai_generated=False,
    )


def strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def weighted_score(raw: Any, weight: float = 1.0) -> int:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_SCORE
    if math.isnan(value):
        return DEFAULT_SCORE
    scaled = math.floor(value * float(weight) + 0.5)
    return max(MIN_SCORE, min(MAX_SCORE, scaled))


def analysis_from_mapping(
        data: Mapping[str, Any],
        *,
        enable_ai_ranking: bool = True,
        enable_ai_subtasks: bool = True,
        speed_weight: float = 1.0,
        importance_weight: float = 1.0,
        ai_generated: bool = True,
) -> TaskAnalysis:
    """Merge a decoded analyzer object over the fallback values."""
    out = fallback_analysis()
    out.ai_generated = ai_generated

    if "ai_speed_score" in data:
        out.ai_speed_score = weighted_score(data["ai_speed_score"], speed_weight if enable_ai_ranking else 1.0)
    if "ai_importance_score" in data:
        out.ai_importance_score = weighted_score(
            data["ai_importance_score"], importance_weight if enable_ai_ranking else 1.0
        )

    for name in ("speed_tag", "importance_tag", "emoji"):
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            setattr(out, name, value.strip())

    subs = data.get("sub_tasks")
    if enable_ai_subtasks and isinstance(subs, list):
        out.sub_tasks = [str(s).strip() for s in subs if str(s).strip()][:MAX_SUBTASKS]
    return out


def parse_model_output(
        text: str,
        *,
        enable_ai_ranking: bool,
        enable_ai_subtasks: bool,
        speed_weight: float = 1.0,
        importance_weight: float = 1.0,
) -> TaskAnalysis:
    cleaned = strip_fences(text)
    try:
        data = json.loads(cleaned)
    except (TypeError, ValueError):
        logger.warning("Analyzer output is not valid JSON; using fallback. head=%r", cleaned[:120])
        return fallback_analysis()
    if not isinstance(data, dict):
        logger.warning("Analyzer output is not a JSON object; using fallback.")
        return fallback_analysis()
    return analysis_from_mapping(
        data,
        enable_ai_ranking=enable_ai_ranking,
        enable_ai_subtasks=enable_ai_subtasks,
        speed_weight=speed_weight,
        importance_weight=importance_weight,
    )


def clean_emoji(text: str | None) -> str:
    emoji = (text or "").strip()
    if not emoji or len(emoji) > MAX_EMOJI_LEN:
        return DEFAULT_GROUP_EMOJI
    return emoji

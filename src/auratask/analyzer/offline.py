# src/auratask/analyzer/offline.py

from __future__ import annotations

import hashlib

from ..core.models import DEFAULT_GROUP_EMOJI, TaskAnalysis
from .parsing import fallback_analysis, weighted_score

_KEYWORD_EMOJI: tuple[tuple[tuple[str, ...], str], ...] = (
    (("work", "job", "office", "کار", "شغل"), "💼"),
    (("home", "house", "خانه"), "🏠"),
    (("study", "read", "book", "مطالعه", "درس"), "📚"),
    (("sport", "gym", "run", "ورزش"), "⚽"),
    (("shop", "buy", "خرید"), "🛒"),
    (("travel", "trip", "سفر"), "✈️"),
    (("project", "پروژه"), "🎯"),
)


def _keyword_emoji(text: str) -> str | None:
    low = (text or "").lower()
    for words, emoji in _KEYWORD_EMOJI:
        if any(w in low for w in words):
            return emoji
    return None


class OfflineTaskAnalyzer:
    """
    Deterministic analyzer used when no external service is configured.

    Behavior:
    - scores derive from a hash of the title (stable across runs), then weights apply
    - subtasks are simple "Plan / Do / Review" steps
    - group emoji comes from a small keyword table, else the default folder
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
    ) -> TaskAnalysis:
        out = fallback_analysis()
        if not enable_ai_ranking and not enable_ai_subtasks:
            return out

        out.ai_generated = True
        if enable_ai_ranking:
            digest = hashlib.sha256(title.strip().lower().encode("utf-8")).digest()
            out.ai_speed_score = weighted_score(1 + digest[0] % 20, speed_weight)
            out.ai_importance_score = weighted_score(1 + digest[1] % 20, importance_weight)
            out.emoji = _keyword_emoji(f"{title} {description or ''}") or out.emoji
        if enable_ai_subtasks:
            out.sub_tasks = [f"Plan: {title}", f"Do: {title}", f"Review: {title}"]
        return out

    async def suggest_group_emoji(self, group_name: str, *, api_key: str | None = None) -> str:
        return _keyword_emoji(group_name) or DEFAULT_GROUP_EMOJI

# src/auratask/analyzer/keys.py

from __future__ import annotations

import logging

from ..core.errors import PersistenceFailure
from ..core.models import UserSettings
from ..core.ports import BackendGateway

logger = logging.getLogger(__name__)


async def resolve_api_key(gateway: BackendGateway, settings: UserSettings | None) -> str | None:
    """
    API key for the task analyzer:
    - the user's own key if set
    - else the least-used active key of the admin pool (its usage counter is bumped)
    - else None (the analyzer decides what that means)
    """
    if settings is not None and settings.api_key and settings.api_key.strip():
        return settings.api_key.strip()

    try:
        rows = await gateway.select(
            "admin_api_keys",
            match={"is_active": True},
            order_by=("usage_count",),
            limit=1,
        )
    except PersistenceFailure as e:
        logger.warning("Admin key pool lookup failed: %s", e)
        return None

    if not rows:
        logger.debug("No active admin API keys in pool.")
        return None

    key_row = rows[0]
    try:
        await gateway.rpc("increment_api_key_usage", {"key_id": key_row["id"]})
    except PersistenceFailure as e:
        logger.warning("Failed to bump usage for admin key id=%s: %s", key_row.get("id"), e)

    return str(key_row["api_key"])

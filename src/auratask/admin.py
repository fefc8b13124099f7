# src/auratask/admin.py

from __future__ import annotations

"""
Admin API-key pool management.

Pool keys serve users without their own key (see analyzer/keys.py).
Only identities whose settings row has is_admin set may change the pool.
"""

import logging

from .core.errors import AuthFailure, PersistenceFailure, ValidationFailure
from .core.models import Row
from .core.ports import BackendGateway

logger = logging.getLogger(__name__)

MIN_KEY_LEN = 10
_TABLE = "admin_api_keys"


def mask_key(api_key: str) -> str:
    key = api_key or ""
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}...{key[-4:]}"


class AdminKeyPool:
    def __init__(self, gateway: BackendGateway, actor_id: str | None) -> None:
        self._gateway = gateway
        self._actor_id = actor_id

    async def _require_admin(self) -> None:
        if not self._actor_id:
            raise AuthFailure("Unauthorized")
        rows = await self._gateway.select("user_settings", match={"id": self._actor_id}, limit=1)
        if not rows or not rows[0].get("is_admin"):
            raise AuthFailure("Forbidden")

    async def list_keys(self) -> list[Row]:
        await self._require_admin()
        return await self._gateway.select(_TABLE, order_by=("created_at",))

    async def add_key(self, api_key: str) -> Row:
        await self._require_admin()
        key = (api_key or "").strip()
        if len(key) < MIN_KEY_LEN:
            raise ValidationFailure(f"API key must be at least {MIN_KEY_LEN} characters")

        existing = await self._gateway.select(_TABLE, match={"api_key": key}, limit=1)
        if existing:
            raise ValidationFailure("API key already exists")

        row = await self._gateway.insert(_TABLE, {"api_key": key, "is_active": True, "usage_count": 0})
        logger.info("Admin key added id=%s key=%s", row.get("id"), mask_key(key))
        return row

    async def toggle_key(self, key_id: str) -> Row:
        await self._require_admin()
        rows = await self._gateway.select(_TABLE, match={"id": key_id}, limit=1)
        if not rows:
            raise PersistenceFailure(f"API key not found: {key_id}", table=_TABLE)

        active = not bool(rows[0].get("is_active"))
        updated = await self._gateway.update(_TABLE, {"is_active": active}, match={"id": key_id})
        logger.info("Admin key id=%s %s", key_id, "activated" if active else "deactivated")
        return updated[0] if updated else {**rows[0], "is_active": active}

    async def delete_key(self, key_id: str) -> bool:
        await self._require_admin()
        deleted = await self._gateway.delete(_TABLE, match={"id": key_id})
        logger.info("Admin key id=%s deleted=%s", key_id, deleted)
        return deleted > 0

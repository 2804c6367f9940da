"""Supabase-backed tenant configuration store (``tenant_configs``).

Configurations are unique by name; saving an existing name overwrites it
through a PostgREST upsert on the ``name`` column.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..errors import ValidationError
from .supabase_client import SupabaseClient

TABLE = "tenant_configs"


class SupabaseConfigStore:
    """Satisfies the ``ConfigStore`` protocol from ``protocols.py``."""

    def __init__(self, client: SupabaseClient, *, table: str = TABLE) -> None:
        self._client = client
        self._table = table

    async def get_config(self, config_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(self._table, {"id": config_id}, limit=1)
        return rows[0] if rows else None

    async def save_config(self, data: dict[str, Any]) -> dict[str, Any]:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("config name is required", field="name")
        row = {
            **data,
            "name": name,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        rows = await self._client.insert(self._table, row, upsert_on="name")
        return rows[0]

    async def list_configs(self) -> list[dict[str, Any]]:
        return await self._client.select(self._table, order="name.asc")

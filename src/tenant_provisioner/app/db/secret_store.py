"""Supabase-backed tenant secret store (``tenant_secrets``).

One row per tenant key (the external workspace id); later saves replace the
token. Tokens are never logged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..errors import ValidationError
from .supabase_client import SupabaseClient

TABLE = "tenant_secrets"


class SupabaseSecretStore:
    """Satisfies the ``SecretStore`` protocol from ``protocols.py``."""

    def __init__(self, client: SupabaseClient, *, table: str = TABLE) -> None:
        self._client = client
        self._table = table

    async def get_secret(self, tenant_key: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            self._table, {"tenant_key": tenant_key}, limit=1,
        )
        return rows[0] if rows else None

    async def save_secret(
        self,
        tenant_key: str,
        token: str,
        *,
        external_id: str | None = None,
        account_id: str | None = None,
    ) -> None:
        if not tenant_key or not token:
            raise ValidationError("tenant_key and token are required")
        await self._client.insert(
            self._table,
            {
                "tenant_key": tenant_key,
                "token": token,
                "external_id": external_id,
                "account_id": account_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            upsert_on="tenant_key",
        )

"""Async PostgREST client for the provisioner's Supabase tables.

This is the single point of Supabase HTTP interaction for the stores.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

import httpx

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)

# Module-level shared client for connection pooling in app runtimes/tests.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


Filters = Mapping[str, tuple[str, Any] | Any]
"""``column -> value`` (equality) or ``column -> (op, value)``."""


def _encode_value(op: str, value: Any) -> str:
    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        # PostgREST expects quoted strings inside `in.(...)`.
        items = [json.dumps(v) if isinstance(v, str) else str(v) for v in value]
        return f"({','.join(items)})"
    if value is None:
        if op != "is":
            raise ValueError(f"{op} does not support None; use op='is'")
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filters_to_params(filters: Filters | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, spec in (filters or {}).items():
        if isinstance(spec, tuple) and len(spec) == 2:
            op, value = spec
        else:
            op, value = "eq", spec
        params[str(column)] = f"{op}.{_encode_value(str(op), value)}"
    return params


_ERRORS_BY_STATUS: dict[int, type[SupabaseError]] = {
    401: SupabaseAuthError,
    403: SupabaseAuthError,
    404: SupabaseNotFoundError,
    409: SupabaseConflictError,
}


class SupabaseClient:
    """Minimal async PostgREST client (service role)."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._rest_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._service_role_key = service_role_key
        self._schema = schema
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    def _headers(self, method: str, prefer: str | None) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
            "Accept-Profile": self._schema,
        }
        if method != "GET":
            headers["Content-Profile"] = self._schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message") or message
            code = payload.get("code")
            details = payload.get("details")
            hint = payload.get("hint")

        err_cls = _ERRORS_BY_STATUS.get(resp.status_code, SupabaseError)
        raise err_cls(
            status_code=resp.status_code,
            message=message,
            postgrest_code=code,
            details=details,
            hint=hint,
        )

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        try:
            resp = await self._client.request(
                method,
                f"{self._rest_url}/{table}",
                params=params,
                json=json_body,
                headers=self._headers(method, prefer),
                timeout=self._timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise SupabaseError(status_code=0, message=f"{type(exc).__name__}: {exc}") from exc
        self._raise_for_error(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(
                status_code=500, message=f"expected list response from {method} {table}",
            )
        return payload

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = filters_to_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if order:
            params["order"] = order
        return await self._send("GET", table, params=params)

    async def insert(
        self,
        table: str,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        upsert_on: str | None = None,
    ) -> list[dict[str, Any]]:
        """Insert rows; with ``upsert_on`` rows that collide on that column merge."""
        params = {"on_conflict": upsert_on} if upsert_on else None
        prefer = "return=representation"
        if upsert_on:
            prefer = f"{prefer},resolution=merge-duplicates"
        return await self._send("POST", table, params=params, json_body=data, prefer=prefer)

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._send(
            "PATCH",
            table,
            params=filters_to_params(filters),
            json_body=data,
            prefer="return=representation",
        )

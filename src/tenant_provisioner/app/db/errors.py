"""Supabase (PostgREST) error hierarchy.

Errors carry the PostgREST message/code/details but never the request
headers, so they are safe to log and to surface in the progress log.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import StoreError


@dataclass(eq=False, slots=True)
class SupabaseError(StoreError):
    """A PostgREST request failed."""

    status_code: int
    message: str
    postgrest_code: str | None = None
    details: str | None = None
    hint: str | None = None

    def __str__(self) -> str:
        parts = [f"store request failed (status={self.status_code}): {self.message}"]
        if self.postgrest_code:
            parts.append(f"code={self.postgrest_code}")
        if self.details:
            parts.append(f"details={self.details}")
        return " ".join(parts)


class SupabaseAuthError(SupabaseError):
    """401/403: bad service key or row-level security."""


class SupabaseNotFoundError(SupabaseError):
    """404: missing table, view or route."""


class SupabaseConflictError(SupabaseError):
    """409: unique violation."""

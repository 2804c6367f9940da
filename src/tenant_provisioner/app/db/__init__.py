"""Supabase-backed stores for configurations, secrets and deployments."""

from .config_store import SupabaseConfigStore
from .deployment_store import SupabaseDeploymentStore
from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .secret_store import SupabaseSecretStore
from .supabase_client import SupabaseClient

__all__ = [
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseConfigStore",
    "SupabaseConflictError",
    "SupabaseDeploymentStore",
    "SupabaseError",
    "SupabaseNotFoundError",
    "SupabaseSecretStore",
]

"""Tenant provisioner configuration settings.

ProvisionerSettings is the single configuration object accepted by create_app().
It is a plain dataclass (not env-coupled) so tests can inject config without
touching os.environ.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass

DEFAULT_CONTROL_PLANE_URL = "https://api.systeminit.com"
DEFAULT_TENANT_EMAIL_TEMPLATE = "technical-operations+{account_name}@systeminit.com"
DEFAULT_ACCESS_ROLE_PRINCIPAL = "arn:aws:iam::058264381944:user/si-access-prod-manager"


@dataclass(frozen=True, slots=True)
class ProvisionerSettings:
    """Configuration for the tenant provisioner FastAPI application.

    All fields have sensible defaults for local development, where every
    collaborator is in-memory. Non-local environments must supply Supabase
    and control-plane credentials.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    """Supabase project URL (e.g. https://xyz.supabase.co)."""

    supabase_service_role_key: str = ""
    """Supabase service-role key for PostgREST calls. Never log this."""

    # ── Control plane ──────────────────────────────────────────────
    control_plane_url: str = DEFAULT_CONTROL_PLANE_URL
    """Base URL of the infrastructure control-plane API."""

    control_plane_workspace_id: str = ""
    """Operator workspace in which tenant change sets are opened."""

    control_plane_api_token: str = ""
    """Fallback operator token when none is stored for the workspace. Never log this."""

    # ── Downstream template ────────────────────────────────────────
    template_command: tuple[str, ...] = ()
    """CLI used to run the downstream template, e.g. ("si", "template", "run")."""

    template_ref: str = ""
    """Template to run after credentials are stored. Empty skips the step."""

    template_input_ref: str = ""
    """Optional input file passed to the template."""

    # ── Pipeline ───────────────────────────────────────────────────
    commit_timeout_seconds: float = 120.0
    pipeline_timeout_seconds: float = 900.0
    progress_retention_seconds: float = 600.0

    hold_action_kinds: tuple[str, ...] = ()
    """Action kinds held on the account resource before commit."""

    tenant_email_template: str = DEFAULT_TENANT_EMAIL_TEMPLATE

    # ── Access role seeding ────────────────────────────────────────
    access_role_principal_arn: str = DEFAULT_ACCESS_ROLE_PRINCIPAL
    """Principal trusted by the role seeded into each tenant account.

    Empty disables seeding.
    """

    access_role_settle_seconds: float = 240.0
    """Wait between creating the StackSet resources and applying them."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if not self.control_plane_workspace_id:
                errors.append(
                    f"{self.environment}: control_plane_workspace_id is required"
                )
        if self.template_ref and not self.template_command:
            errors.append("template_command is required when template_ref is set")
        if "{account_name}" not in self.tenant_email_template:
            errors.append("tenant_email_template must contain {account_name}")
        for name in (
            "commit_timeout_seconds",
            "pipeline_timeout_seconds",
            "progress_retention_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")
        if self.access_role_settle_seconds < 0:
            errors.append("access_role_settle_seconds must be >= 0")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ProvisionerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ProvisionerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        hold_raw = env.get("HOLD_ACTION_KINDS", "")
        hold_kinds = tuple(k.strip() for k in hold_raw.split(",") if k.strip())

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            control_plane_url=env.get("CONTROL_PLANE_URL", DEFAULT_CONTROL_PLANE_URL),
            control_plane_workspace_id=env.get("CONTROL_PLANE_WORKSPACE_ID", ""),
            control_plane_api_token=env.get("CONTROL_PLANE_API_TOKEN", ""),
            template_command=tuple(shlex.split(env.get("TEMPLATE_COMMAND", ""))),
            template_ref=env.get("TEMPLATE_REF", ""),
            template_input_ref=env.get("TEMPLATE_INPUT_REF", ""),
            commit_timeout_seconds=float(env.get("COMMIT_TIMEOUT_SECONDS", "120")),
            pipeline_timeout_seconds=float(env.get("PIPELINE_TIMEOUT_SECONDS", "900")),
            progress_retention_seconds=float(
                env.get("PROGRESS_RETENTION_SECONDS", "600")
            ),
            hold_action_kinds=hold_kinds,
            tenant_email_template=env.get(
                "TENANT_EMAIL_TEMPLATE", DEFAULT_TENANT_EMAIL_TEMPLATE,
            ),
            access_role_principal_arn=env.get(
                "ACCESS_ROLE_PRINCIPAL_ARN", DEFAULT_ACCESS_ROLE_PRINCIPAL,
            ),
            access_role_settle_seconds=float(
                env.get("ACCESS_ROLE_SETTLE_SECONDS", "240")
            ),
        )

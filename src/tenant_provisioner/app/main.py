"""Tenant provisioner FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires the request-id middleware and the route modules, and
injects store and collaborator implementations.

Usage:
    # Local development (in-memory stores and control plane)
    from tenant_provisioner.app import create_app, ProvisionerSettings
    app = create_app(ProvisionerSettings())

    # Non-local (Supabase stores, HTTP control-plane client)
    app = create_app(ProvisionerSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, config_store=store, control_plane_factory=...)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI

from .observability import RequestIdMiddleware, configure_logging
from .protocols import ConfigStore, DeploymentStore, SecretStore, TemplateRunner
from .provisioning.blueprint import TenantBlueprint
from .provisioning.orchestrator import PipelineTimeouts
from .provisioning.service import ControlPlaneFactory, DeploymentService, ProgressRegistry
from .provisioning.template_runner import SubprocessTemplateRunner
from .settings import ProvisionerSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for injected stores and the deployment service.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    config_store: ConfigStore
    secret_store: SecretStore
    deployment_store: DeploymentStore
    deployment_service: DeploymentService


def _build_inmemory_stores() -> tuple[ConfigStore, SecretStore, DeploymentStore]:
    from .inmemory import InMemoryConfigStore, InMemoryDeploymentStore, InMemorySecretStore

    return InMemoryConfigStore(), InMemorySecretStore(), InMemoryDeploymentStore()


def _build_supabase_stores(
    settings: ProvisionerSettings,
) -> tuple[ConfigStore, SecretStore, DeploymentStore]:
    from .db import (
        SupabaseClient,
        SupabaseConfigStore,
        SupabaseDeploymentStore,
        SupabaseSecretStore,
    )

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
    )
    return (
        SupabaseConfigStore(client),
        SupabaseSecretStore(client),
        SupabaseDeploymentStore(client),
    )


def _default_control_plane_factory(settings: ProvisionerSettings) -> ControlPlaneFactory:
    if settings.is_local:
        from .inmemory import InMemoryControlPlane

        control_plane = InMemoryControlPlane()
        return lambda token: control_plane

    from .upstream.api_client import ControlPlaneClient

    def factory(token: str) -> ControlPlaneClient:
        return ControlPlaneClient(
            workspace_id=settings.control_plane_workspace_id,
            api_token=token,
            base_url=settings.control_plane_url,
        )

    return factory


def build_deployment_service(
    settings: ProvisionerSettings,
    *,
    config_store: ConfigStore,
    secret_store: SecretStore,
    deployment_store: DeploymentStore,
    control_plane_factory: ControlPlaneFactory | None = None,
    template_runner: TemplateRunner | None = None,
) -> DeploymentService:
    """Build a ``DeploymentService`` from settings and injected collaborators."""
    if template_runner is None and settings.template_command:
        template_runner = SubprocessTemplateRunner(settings.template_command)

    return DeploymentService(
        config_store=config_store,
        secret_store=secret_store,
        deployment_store=deployment_store,
        control_plane_factory=(
            control_plane_factory or _default_control_plane_factory(settings)
        ),
        operator_workspace_id=settings.control_plane_workspace_id,
        operator_token=settings.control_plane_api_token,
        blueprint=TenantBlueprint(
            email_template=settings.tenant_email_template,
            hold_action_kinds=settings.hold_action_kinds,
            access_role_principal=settings.access_role_principal_arn,
        ),
        template_runner=template_runner,
        template_ref=settings.template_ref or None,
        template_input_ref=settings.template_input_ref or None,
        timeouts=PipelineTimeouts(
            commit_seconds=settings.commit_timeout_seconds,
            access_role_settle_seconds=settings.access_role_settle_seconds,
        ),
        pipeline_timeout_seconds=settings.pipeline_timeout_seconds,
        registry=ProgressRegistry(
            retention_seconds=settings.progress_retention_seconds,
        ),
    )


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: ProvisionerSettings | None = None,
    *,
    config_store: ConfigStore | None = None,
    secret_store: SecretStore | None = None,
    deployment_store: DeploymentStore | None = None,
    control_plane_factory: ControlPlaneFactory | None = None,
    template_runner: TemplateRunner | None = None,
    deployment_service: DeploymentService | None = None,
) -> FastAPI:
    """Create a configured tenant provisioner FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        config_store..template_runner: Collaborator overrides. When None,
            local mode uses in-memory implementations and non-local mode
            builds Supabase stores and an HTTP control-plane client.
        deployment_service: Prebuilt service; overrides the collaborators
            above for pipeline execution.

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = ProvisionerSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Provisioner settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if config_store is None or secret_store is None or deployment_store is None:
        defaults = (
            _build_inmemory_stores()
            if settings.is_local
            else _build_supabase_stores(settings)
        )
        config_store = config_store or defaults[0]
        secret_store = secret_store or defaults[1]
        deployment_store = deployment_store or defaults[2]

    service = deployment_service or build_deployment_service(
        settings,
        config_store=config_store,
        secret_store=secret_store,
        deployment_store=deployment_store,
        control_plane_factory=control_plane_factory,
        template_runner=template_runner,
    )
    deps = AppDependencies(
        config_store=config_store,
        secret_store=secret_store,
        deployment_store=deployment_store,
        deployment_service=service,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Tenant provisioner startup (environment=%s)", settings.environment)
        yield
        await service.shutdown()
        logger.info("Tenant provisioner shutdown")

    app = FastAPI(
        title="Tenant Provisioner",
        description="Provisions tenant accounts and workspaces on the control plane",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.deps = deps
    app.state.settings = settings

    app.add_middleware(RequestIdMiddleware)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "running_deployments": service.running,
        }

    from .routes.configs import create_configs_router
    from .routes.deployments import create_deployments_router

    app.include_router(create_configs_router(config_store))
    app.include_router(create_deployments_router(service))

    return app


# For uvicorn, use --factory flag:
#   uvicorn tenant_provisioner.app.main:create_app --factory

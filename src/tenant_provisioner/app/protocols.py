"""Repository and collaborator protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase / HTTP for non-local) must satisfy. The app
factory and the deployment service accept any implementation that matches.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .provisioning.state_machine import Deployment, StepRecord
    from .provisioning.template_runner import CredentialScope


@runtime_checkable
class ControlPlaneAPI(Protocol):
    """Raw control-plane calls (see ``upstream.api_client.ControlPlaneClient``)."""

    async def create_change_set(self, name: str) -> dict[str, Any]: ...
    async def force_apply(self, unit_id: str) -> dict[str, Any]: ...
    async def merge_status(self, unit_id: str) -> dict[str, Any]: ...
    async def create_component(
        self,
        unit_id: str,
        *,
        schema_name: str,
        name: str,
        attributes: dict[str, Any],
        view_name: str | None = None,
    ) -> dict[str, Any]: ...
    async def get_component(self, unit_id: str, component_id: str) -> dict[str, Any]: ...
    async def list_actions(self, unit_id: str) -> dict[str, Any]: ...
    async def put_action_on_hold(self, unit_id: str, action_id: str) -> dict[str, Any]: ...


@runtime_checkable
class ConfigStore(Protocol):
    """Tenant configuration records."""

    async def get_config(self, config_id: str) -> dict[str, Any] | None: ...
    async def save_config(self, data: dict[str, Any]) -> dict[str, Any]: ...
    async def list_configs(self) -> list[dict[str, Any]]: ...


@runtime_checkable
class SecretStore(Protocol):
    """One secret value per external tenant key."""

    async def get_secret(self, tenant_key: str) -> dict[str, Any] | None: ...
    async def save_secret(
        self,
        tenant_key: str,
        token: str,
        *,
        external_id: str | None = None,
        account_id: str | None = None,
    ) -> None: ...


@runtime_checkable
class DeploymentStore(Protocol):
    """Deployment records with an append-only step log."""

    async def create_deployment(self, deployment: Deployment) -> None: ...
    async def append_step(self, deployment: Deployment, record: StepRecord) -> None: ...
    async def get_deployment(self, deployment_id: str) -> Deployment | None: ...
    async def list_deployments(self, limit: int = 50) -> list[Deployment]: ...


@runtime_checkable
class TemplateRunner(Protocol):
    """Runs an infrastructure template inside a tenant workspace."""

    async def run(
        self,
        template_ref: str,
        *,
        key: str,
        input_ref: str | None,
        credential_scope: CredentialScope,
    ) -> None: ...

"""In-memory collaborator implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but store everything in dicts (no persistence across restarts).
``InMemoryControlPlane`` imitates the eventually-consistent behaviour the
pipeline has to cope with: 428 before dependent values settle, actions that
stay in flight for a few polls and derived values that appear late.
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import NotFoundError, PreconditionRequiredError, UpstreamNotFoundError, ValidationError
from .provisioning.state_machine import Deployment, StepRecord
from .provisioning.template_runner import CredentialScope
from .upstream.api_client import HEAD


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Stores ───────────────────────────────────────────────────────────


class InMemoryConfigStore:
    def __init__(self) -> None:
        self._configs: dict[str, dict[str, Any]] = {}

    async def get_config(self, config_id: str) -> dict[str, Any] | None:
        return self._configs.get(config_id)

    async def save_config(self, data: dict[str, Any]) -> dict[str, Any]:
        """Insert a configuration, or overwrite the one with the same name."""
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("config name is required", field="name")
        existing = next(
            (c for c in self._configs.values() if c["name"] == name), None,
        )
        now = _utcnow()
        if existing is not None:
            config = {**existing, **data, "id": existing["id"], "name": name, "updated_at": now}
        else:
            config_id = data.get("id") or f"cfg_{uuid.uuid4().hex[:8]}"
            config = {"created_at": now, **data, "id": config_id, "name": name, "updated_at": now}
        self._configs[config["id"]] = config
        return config

    async def list_configs(self) -> list[dict[str, Any]]:
        return sorted(self._configs.values(), key=lambda c: c["name"])


class InMemorySecretStore:
    def __init__(self) -> None:
        self._secrets: dict[str, dict[str, Any]] = {}

    async def get_secret(self, tenant_key: str) -> dict[str, Any] | None:
        return self._secrets.get(tenant_key)

    async def save_secret(
        self,
        tenant_key: str,
        token: str,
        *,
        external_id: str | None = None,
        account_id: str | None = None,
    ) -> None:
        self._secrets[tenant_key] = {
            "tenant_key": tenant_key,
            "token": token,
            "external_id": external_id,
            "account_id": account_id,
            "updated_at": _utcnow(),
        }


class InMemoryDeploymentStore:
    def __init__(self) -> None:
        self._deployments: dict[str, Deployment] = {}
        self.appended: list[tuple[str, StepRecord]] = []

    async def create_deployment(self, deployment: Deployment) -> None:
        self._deployments[deployment.id] = deployment

    async def append_step(self, deployment: Deployment, record: StepRecord) -> None:
        if deployment.id not in self._deployments:
            raise NotFoundError(f"deployment {deployment.id!r} not found")
        self._deployments[deployment.id] = deployment
        self.appended.append((deployment.id, record))

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        return self._deployments.get(deployment_id)

    async def list_deployments(self, limit: int = 50) -> list[Deployment]:
        newest_first = sorted(
            self._deployments.values(), key=lambda d: d.start_time, reverse=True,
        )
        return newest_first[:limit]


# ── Template runner ──────────────────────────────────────────────────


class RecordingTemplateRunner:
    """Test template runner that records each run and the env it was given."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.runs: list[dict[str, Any]] = []

    async def run(
        self,
        template_ref: str,
        *,
        key: str,
        input_ref: str | None,
        credential_scope: CredentialScope,
    ) -> None:
        async with credential_scope.acquire() as env:
            self.runs.append({
                "template_ref": template_ref,
                "key": key,
                "input_ref": input_ref,
                "scope": credential_scope.name,
                "env": dict(env),
            })
        if self.fail_with is not None:
            raise self.fail_with


# ── Control plane ────────────────────────────────────────────────────

DEFAULT_DERIVED_PAYLOADS: Mapping[str, Mapping[str, Any]] = {
    "AWS::Organizations::Account": {"AccountId": "000000000000"},
    "Workspace Management": {
        "id": "ws_{id}",
        "externalId": "ext_{id}",
        "initialApiToken": {"token": "tok_{id}"},
    },
}


def _render(value: Any, component_id: str) -> Any:
    if isinstance(value, str):
        return value.replace("{id}", component_id)
    if isinstance(value, Mapping):
        return {k: _render(v, component_id) for k, v in value.items()}
    return value


@dataclass
class _Unit:
    id: str
    name: str
    components: dict[str, dict[str, Any]] = field(default_factory=dict)
    actions: dict[str, dict[str, Any]] = field(default_factory=dict)
    applied: bool = False
    polls_left: int = 0


class InMemoryControlPlane:
    """Scriptable fake of the control-plane API.

    Args:
        derived_payloads: schema name -> derived payload that appears on HEAD
            once the unit is applied. ``{id}`` in strings is replaced by the
            component id. Schemas without an entry never derive values.
        precondition_failures: Number of commits answered with 428 before one
            succeeds.
        action_polls: Merge-status reads after commit during which actions
            stay in flight.
        derive_after_reads: HEAD reads of a component before its derived
            payload appears.
        failures: method name -> exception raised on every call.
    """

    def __init__(
        self,
        *,
        derived_payloads: Mapping[str, Mapping[str, Any]] | None = None,
        precondition_failures: int = 0,
        action_polls: int = 0,
        derive_after_reads: int = 0,
        failures: Mapping[str, Exception] | None = None,
    ) -> None:
        self.derived_payloads = dict(
            DEFAULT_DERIVED_PAYLOADS if derived_payloads is None else derived_payloads
        )
        self.precondition_failures = precondition_failures
        self.action_polls = action_polls
        self.derive_after_reads = derive_after_reads
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, ...]] = []
        self._units: dict[str, _Unit] = {}
        self._head: dict[str, dict[str, Any]] = {}
        self._head_reads: dict[str, int] = {}
        self._ids = itertools.count(1)

    def _enter(self, method: str, *args: str) -> None:
        self.calls.append((method, *args))
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def _unit(self, unit_id: str) -> _Unit:
        unit = self._units.get(unit_id)
        if unit is None:
            raise UpstreamNotFoundError(f"change set {unit_id} not found")
        return unit

    def call_count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def create_change_set(self, name: str) -> dict[str, Any]:
        self._enter("create_change_set", name)
        unit = _Unit(id=f"cs_{next(self._ids)}", name=name)
        self._units[unit.id] = unit
        return {"changeSet": {"id": unit.id, "name": name, "status": "Open"}}

    async def force_apply(self, unit_id: str) -> dict[str, Any]:
        self._enter("force_apply", unit_id)
        unit = self._unit(unit_id)
        if self.precondition_failures > 0:
            self.precondition_failures -= 1
            raise PreconditionRequiredError("dependent values still being computed")
        unit.applied = True
        unit.polls_left = self.action_polls
        self._head.update(unit.components)
        for action in unit.actions.values():
            if action["state"] != "OnHold":
                action["state"] = "Dispatched"
        return {}

    async def merge_status(self, unit_id: str) -> dict[str, Any]:
        self._enter("merge_status", unit_id)
        unit = self._unit(unit_id)
        if unit.applied:
            if unit.polls_left > 0:
                unit.polls_left -= 1
            else:
                for action in unit.actions.values():
                    if action["state"] != "OnHold":
                        action["state"] = "Success"
        return {
            "changeSet": {"id": unit.id, "status": "Applied" if unit.applied else "Open"},
            "actions": [dict(a) for a in unit.actions.values()],
        }

    async def create_component(
        self,
        unit_id: str,
        *,
        schema_name: str,
        name: str,
        attributes: dict[str, Any],
        view_name: str | None = None,
    ) -> dict[str, Any]:
        self._enter("create_component", unit_id, schema_name)
        unit = self._unit(unit_id)
        component_id = f"comp_{next(self._ids)}"
        component = {
            "id": component_id,
            "schemaName": schema_name,
            "name": name,
            "viewName": view_name,
            "attributes": dict(attributes),
        }
        unit.components[component_id] = component
        action_id = f"act_{next(self._ids)}"
        unit.actions[action_id] = {
            "id": action_id,
            "kind": "Create",
            "componentId": component_id,
            "state": "Queued",
        }
        return {"component": {"id": component_id, "name": name}}

    async def get_component(self, unit_id: str, component_id: str) -> dict[str, Any]:
        self._enter("get_component", unit_id, component_id)
        if unit_id == HEAD:
            component = self._head.get(component_id)
        else:
            component = self._unit(unit_id).components.get(component_id)
        if component is None:
            raise UpstreamNotFoundError(f"component {component_id} not found")

        rendered = {**component, "attributes": dict(component["attributes"])}
        if unit_id == HEAD:
            reads = self._head_reads.get(component_id, 0) + 1
            self._head_reads[component_id] = reads
            payload = self.derived_payloads.get(component["schemaName"])
            if payload is not None and reads > self.derive_after_reads:
                rendered["attributes"]["/resource/payload"] = _render(payload, component_id)
                rendered["resourceId"] = f"res_{component_id}"
        return {"component": rendered}

    async def list_actions(self, unit_id: str) -> dict[str, Any]:
        self._enter("list_actions", unit_id)
        unit = self._unit(unit_id)
        return {"actions": [dict(a) for a in unit.actions.values()]}

    async def put_action_on_hold(self, unit_id: str, action_id: str) -> dict[str, Any]:
        self._enter("put_action_on_hold", unit_id, action_id)
        action = self._unit(unit_id).actions.get(action_id)
        if action is None:
            raise UpstreamNotFoundError(f"action {action_id} not found")
        action["state"] = "OnHold"
        return {}

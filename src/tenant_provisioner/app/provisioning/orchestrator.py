"""Tenant deployment orchestrator: drives one deployment through the pipeline.

Flow (see ``state_machine.DEPLOYMENT_SEQUENCE``):
  initialize -> open_unit -> create_primary_resource
  -> create_secondary_resource -> commit_unit
  -> extract_secondary_derived_value -> extract_primary_derived_value
  -> persist_derived_values -> trigger_downstream_infra -> complete

At each step the orchestrator:
  1. Appends an ``in_progress`` record.
  2. Performs the step through the injected collaborators.
  3. Appends ``completed`` (possibly flagged as a warning) or ``failed``.

Soft conditions (commit precondition unconfirmed, actions still in flight,
account id not yet derived, downstream template or access role seeding
failure) complete the step with ``details['warning']``. Classified errors fail
the step with their own message. Anything else fails the in-flight step with a
generic message; the exception is logged but never surfaced to readers of
the progress log.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from ..errors import NotFoundError, ProvisioningError, StepTimeoutError
from ..protocols import ControlPlaneAPI, SecretStore, TemplateRunner
from ..upstream.api_client import HEAD
from ..upstream.change_sets import DEFAULT_COMMIT_TIMEOUT_SECONDS, ChangeSetClient
from ..upstream.derived_values import (
    DEFAULT_EXTRACT_INTERVAL_SECONDS,
    NOT_FOUND,
    DerivedValueExtractor,
    first_match,
)
from ..upstream.models import pending_references
from ..upstream.resources import ResourceClient
from .blueprint import TenantBlueprint
from .polling import HardError, Ok, SoftTimeout
from .progress import ProgressRecorder
from .state_machine import DEPLOYMENT_SEQUENCE, TERMINAL_STEP, StepRecord
from .template_runner import CredentialScope

logger = logging.getLogger(__name__)


# ── Request / result ─────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class DeploymentRequest:
    """Inputs for one tenant deployment."""

    deployment_id: str
    config_id: str
    account_name: str
    config_snapshot: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DeploymentResult:
    """Outcome of one orchestrator run."""

    deployment_id: str
    success: bool
    unit_id: str | None = None
    error: str | None = None
    steps: tuple[StepRecord, ...] = ()


@dataclass(frozen=True, slots=True)
class PipelineTimeouts:
    commit_seconds: float = DEFAULT_COMMIT_TIMEOUT_SECONDS
    secondary_extract_seconds: float = 60.0
    primary_extract_seconds: float = 60.0
    extract_interval_seconds: float = DEFAULT_EXTRACT_INTERVAL_SECONDS
    access_role_settle_seconds: float = 240.0


@dataclass(frozen=True, slots=True)
class StepOutcome:
    message: str
    details: Mapping[str, Any] | None = None
    warning: bool = False

    def record_details(self) -> dict[str, Any] | None:
        details = dict(self.details or {})
        if self.warning:
            details['warning'] = True
        return details or None


@dataclass
class _RunContext:
    request: DeploymentRequest
    environment_id: str = ''
    unit_id: str | None = None
    primary_id: str | None = None
    secondary_id: str | None = None
    tenant_key: str | None = None
    tenant_token: str | None = field(default=None, repr=False)
    external_id: str | None = None
    account_id: str | None = None


_STEP_STARTED = {
    'initialize': 'Initializing tenant deployment',
    'open_unit': 'Creating change set',
    'create_primary_resource': 'Creating account resource',
    'create_secondary_resource': 'Creating workspace resource',
    'commit_unit': 'Applying change set',
    'extract_secondary_derived_value': 'Waiting for workspace token',
    'extract_primary_derived_value': 'Waiting for account id',
    'persist_derived_values': 'Storing tenant credentials',
    'trigger_downstream_infra': 'Starting downstream infrastructure template',
}

_STEP_FAILED = {
    'initialize': 'Initialization failed',
    'open_unit': 'Failed to create change set',
    'create_primary_resource': 'Failed to create account resource',
    'create_secondary_resource': 'Failed to create workspace resource',
    'commit_unit': 'Failed to apply change set',
    'extract_secondary_derived_value': 'Failed to extract workspace token',
    'extract_primary_derived_value': 'Failed to extract account id',
    'persist_derived_values': 'Failed to store tenant credentials',
    'trigger_downstream_infra': 'Failed to start downstream template',
}


# ── Orchestrator ─────────────────────────────────────────────────────


class TenantDeploymentOrchestrator:
    """Runs the tenant deployment pipeline against one control plane.

    Collaborators are injected; nothing here reads environment variables or
    module-level state, so any number of orchestrators may run concurrently.
    """

    def __init__(
        self,
        *,
        control_plane: ControlPlaneAPI,
        recorder: ProgressRecorder,
        secret_store: SecretStore,
        blueprint: TenantBlueprint | None = None,
        template_runner: TemplateRunner | None = None,
        template_ref: str | None = None,
        template_input_ref: str | None = None,
        timeouts: PipelineTimeouts | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._timeouts = timeouts or PipelineTimeouts()
        self._blueprint = blueprint or TenantBlueprint()
        self._recorder = recorder
        self._secrets = secret_store
        self._template_runner = template_runner
        self._template_ref = template_ref
        self._template_input_ref = template_input_ref
        self._sleep = sleep
        self._change_sets = ChangeSetClient(control_plane, clock=clock, sleep=sleep)
        self._resources = ResourceClient(control_plane)
        self._extractor = DerivedValueExtractor(
            self._resources,
            interval=self._timeouts.extract_interval_seconds,
            clock=clock,
            sleep=sleep,
        )
        self._handlers: dict[str, Callable[[_RunContext], Awaitable[StepOutcome]]] = {
            'initialize': self._initialize,
            'open_unit': self._open_unit,
            'create_primary_resource': self._create_primary,
            'create_secondary_resource': self._create_secondary,
            'commit_unit': self._commit_unit,
            'extract_secondary_derived_value': self._extract_secondary,
            'extract_primary_derived_value': self._extract_primary,
            'persist_derived_values': self._persist,
            'trigger_downstream_infra': self._trigger_downstream,
        }

    async def run(self, request: DeploymentRequest) -> DeploymentResult:
        """Execute every step for an already-created deployment record.

        Never raises for step failures; they end up in the progress log and
        in the returned result. Errors writing the progress log itself do
        propagate.
        """
        ctx = _RunContext(request=request)
        deployment_id = request.deployment_id

        for step in DEPLOYMENT_SEQUENCE:
            if step == TERMINAL_STEP:
                break
            await self._recorder.append_step(
                deployment_id, step, 'in_progress', _STEP_STARTED[step],
            )
            try:
                outcome = await self._handlers[step](ctx)
            except ProvisioningError as exc:
                message = f'{_STEP_FAILED[step]}: {exc}'
                await self._recorder.append_step(
                    deployment_id, step, 'failed', message,
                    {'error_code': exc.code},
                )
                return await self._result(ctx, success=False, error=message)
            except Exception:
                logger.exception(
                    'Deployment %s: unexpected error during %s', deployment_id, step,
                )
                message = f'Unexpected error during {step}'
                await self._recorder.append_step(
                    deployment_id, step, 'failed', message,
                )
                return await self._result(ctx, success=False, error=message)

            await self._recorder.append_step(
                deployment_id, step, 'completed', outcome.message,
                outcome.record_details(),
            )

        await self._recorder.append_step(
            deployment_id,
            TERMINAL_STEP,
            'completed',
            'Tenant deployment completed successfully',
            {
                'environment_id': ctx.environment_id,
                'unit_id': ctx.unit_id,
                'tenant_key': ctx.tenant_key,
                'account_id': ctx.account_id,
            },
        )
        return await self._result(ctx, success=True)

    async def _result(
        self, ctx: _RunContext, *, success: bool, error: str | None = None,
    ) -> DeploymentResult:
        deployment = await self._recorder.get_deployment(ctx.request.deployment_id)
        return DeploymentResult(
            deployment_id=ctx.request.deployment_id,
            success=success,
            unit_id=ctx.unit_id,
            error=error,
            steps=deployment.steps if deployment is not None else (),
        )

    # ── Steps ────────────────────────────────────────────────────────

    async def _initialize(self, ctx: _RunContext) -> StepOutcome:
        ctx.environment_id = uuid.uuid4().hex[:8]
        return StepOutcome(
            f'Generated environment ID: {ctx.environment_id}',
            {
                'environment_id': ctx.environment_id,
                'account_name': ctx.request.account_name,
            },
        )

    async def _open_unit(self, ctx: _RunContext) -> StepOutcome:
        ctx.unit_id = await self._change_sets.open(
            self._blueprint.unit_name(ctx.environment_id),
        )
        return StepOutcome(
            f'Change set created: {ctx.unit_id}', {'unit_id': ctx.unit_id},
        )

    async def _create_primary(self, ctx: _RunContext) -> StepOutcome:
        bp = self._blueprint
        name = ctx.request.account_name
        attributes = bp.primary_attributes(name)
        ctx.primary_id = await self._resources.create(
            ctx.unit_id,
            bp.primary_schema,
            bp.primary_name(name),
            attributes,
            view_name=bp.view_name,
        )
        return StepOutcome(
            f'Account resource created: {ctx.primary_id}',
            {
                'resource_id': ctx.primary_id,
                'pending_references': sorted(pending_references(attributes)),
            },
        )

    async def _create_secondary(self, ctx: _RunContext) -> StepOutcome:
        bp = self._blueprint
        name = ctx.request.account_name
        attributes = bp.secondary_attributes(name)
        ctx.secondary_id = await self._resources.create(
            ctx.unit_id,
            bp.secondary_schema,
            bp.secondary_name(name),
            attributes,
            view_name=bp.view_name,
        )
        return StepOutcome(
            f'Workspace resource created: {ctx.secondary_id}',
            {
                'resource_id': ctx.secondary_id,
                'pending_references': sorted(pending_references(attributes)),
            },
        )

    async def _commit_unit(self, ctx: _RunContext) -> StepOutcome:
        held: list[str] = []
        if self._blueprint.hold_action_kinds:
            held = await self._resources.suspend_pending_actions(
                ctx.unit_id, ctx.primary_id, self._blueprint.hold_action_kinds,
            )

        report = await self._change_sets.commit(
            ctx.unit_id,
            monitored_resource_ids=(ctx.primary_id, ctx.secondary_id),
            timeout_seconds=self._timeouts.commit_seconds,
        )
        details: dict[str, Any] = {
            'attempts': report.attempts,
            'precondition_confirmed': report.precondition_confirmed,
            'actions_drained': report.drained,
        }
        if held:
            details['held_actions'] = held

        warnings = report.warnings
        if warnings:
            details['warnings'] = warnings
            return StepOutcome(
                'Change set applied with warnings: ' + '; '.join(warnings),
                details,
                warning=True,
            )
        return StepOutcome(
            'Change set applied; all monitored actions completed', details,
        )

    async def _extract_secondary(self, ctx: _RunContext) -> StepOutcome:
        bp = self._blueprint
        timeout = self._timeouts.secondary_extract_seconds
        outcome = await self._extractor.extract_with_polling(
            HEAD, ctx.secondary_id, bp.token_locations, timeout=timeout,
        )
        if isinstance(outcome, HardError):
            raise outcome.error
        if isinstance(outcome, SoftTimeout):
            raise StepTimeoutError(
                'extract_secondary_derived_value',
                timeout,
                'workspace token not available',
            )
        ctx.tenant_token = str(outcome.value)

        resource = await self._resources.get(HEAD, ctx.secondary_id)
        tenant_key = first_match(resource, bp.tenant_id_locations)
        if tenant_key is NOT_FOUND:
            tenant_key = resource.resource_id
        if not tenant_key:
            raise NotFoundError(
                f'workspace id not found on resource {ctx.secondary_id}',
            )
        ctx.tenant_key = str(tenant_key)
        external_id = first_match(resource, bp.external_id_locations)
        ctx.external_id = None if external_id is NOT_FOUND else str(external_id)

        return StepOutcome(
            f'Workspace token extracted for workspace {ctx.tenant_key}',
            {
                'tenant_key': ctx.tenant_key,
                'external_id': ctx.external_id,
                'attempts': outcome.attempts,
            },
        )

    async def _extract_primary(self, ctx: _RunContext) -> StepOutcome:
        timeout = self._timeouts.primary_extract_seconds
        outcome = await self._extractor.extract_with_polling(
            HEAD,
            ctx.primary_id,
            self._blueprint.account_id_locations,
            timeout=timeout,
        )
        if isinstance(outcome, HardError):
            raise outcome.error
        if isinstance(outcome, Ok):
            ctx.account_id = str(outcome.value)
            return StepOutcome(
                f'Account ID extracted: {ctx.account_id}',
                {'account_id': ctx.account_id, 'attempts': outcome.attempts},
            )
        return StepOutcome(
            f'Account ID not available after {timeout:g}s; continuing without it',
            {'attempts': outcome.attempts},
            warning=True,
        )

    async def _persist(self, ctx: _RunContext) -> StepOutcome:
        await self._secrets.save_secret(
            ctx.tenant_key,
            ctx.tenant_token,
            external_id=ctx.external_id,
            account_id=ctx.account_id,
        )
        return StepOutcome(
            f'Tenant credentials stored for workspace {ctx.tenant_key}',
            {'tenant_key': ctx.tenant_key},
        )

    async def _trigger_downstream(self, ctx: _RunContext) -> StepOutcome:
        seeding = await self._seed_access_role(ctx)
        template = await self._start_template(ctx)
        return StepOutcome(
            f'{template.message}; {seeding.message}',
            {
                'template': dict(template.details or {}),
                'access_role': dict(seeding.details or {}),
            },
            warning=template.warning or seeding.warning,
        )

    async def _start_template(self, ctx: _RunContext) -> StepOutcome:
        if self._template_runner is None or not self._template_ref:
            return StepOutcome(
                'Skipped: no downstream template configured', {'skipped': True},
            )

        key = self._blueprint.template_key(ctx.request.account_name, ctx.environment_id)
        scope = CredentialScope(name=f'tenant:{ctx.tenant_key}', token=ctx.tenant_token)
        try:
            await self._template_runner.run(
                self._template_ref,
                key=key,
                input_ref=self._template_input_ref,
                credential_scope=scope,
            )
        except Exception as exc:
            # The tenant already exists at this point; the template can be
            # re-run by hand.
            logger.warning(
                'Deployment %s: downstream template %s failed: %s',
                ctx.request.deployment_id,
                self._template_ref,
                exc,
            )
            return StepOutcome(
                f'Downstream template failed: {exc}',
                {'template_ref': self._template_ref, 'key': key},
                warning=True,
            )
        return StepOutcome(
            f'Downstream template {self._template_ref} started with key {key}',
            {'template_ref': self._template_ref, 'key': key},
        )

    async def _seed_access_role(self, ctx: _RunContext) -> StepOutcome:
        """Create and apply the StackSet that seeds the operator access role.

        Runs in its own change set so a failure never touches the tenant's
        resources. Missing inputs skip it; errors become a warning.
        """
        bp = self._blueprint
        if not bp.access_role_principal:
            return StepOutcome(
                'Access role seeding disabled', {'skipped': True},
            )
        inputs = {'account_id': ctx.account_id, 'external_id': ctx.external_id}
        missing = [key for key, value in inputs.items() if not value]
        if missing:
            return StepOutcome(
                'Access role seeding skipped: missing ' + ', '.join(missing),
                {'skipped': True, 'missing': missing},
            )

        name = ctx.request.account_name
        details: dict[str, Any] = {}
        try:
            unit_id = details['unit_id'] = await self._change_sets.open(
                bp.access_role_unit_name(name),
            )
            template_id = details['template_resource_id'] = await self._resources.create(
                unit_id,
                bp.role_template_schema,
                bp.role_template_name(name),
                bp.role_template_attributes(ctx.account_id, ctx.external_id),
                view_name=bp.view_name,
            )
            stackset_id = details['stackset_resource_id'] = await self._resources.create(
                unit_id,
                bp.stackset_schema,
                bp.stackset_name(name),
                bp.stackset_attributes(name, ctx.account_id, template_id),
                view_name=bp.view_name,
            )
            # The template resource must render before the StackSet can read it.
            if self._timeouts.access_role_settle_seconds > 0:
                await self._sleep(self._timeouts.access_role_settle_seconds)
            report = await self._change_sets.commit(
                unit_id,
                monitored_resource_ids=(template_id, stackset_id),
                timeout_seconds=self._timeouts.commit_seconds,
            )
        except Exception as exc:
            logger.warning(
                'Deployment %s: access role seeding failed: %s',
                ctx.request.deployment_id,
                exc,
            )
            return StepOutcome(f'Access role seeding failed: {exc}', details, warning=True)

        details['attempts'] = report.attempts
        if report.warnings:
            details['warnings'] = report.warnings
            return StepOutcome(
                'Access role change set applied with warnings: '
                + '; '.join(report.warnings),
                details,
                warning=True,
            )
        return StepOutcome(f'Access role change set applied: {unit_id}', details)

"""Deployment service: start deployments in the background and report progress.

``start_deployment`` validates the request synchronously (configuration
exists, account name is acceptable, an operator token is available), creates
the durable deployment record and only then schedules the pipeline as an
``asyncio.Task``. Callers get the deployment id back immediately and poll
``get_progress``.

Progress is served from the in-process ``ProgressRegistry`` while a
deployment is fresh and from the durable store afterwards. A deployment is
never left in ``started``: a pipeline that exceeds its overall timeout or
dies unexpectedly is marked ``failed``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import structlog

from ..errors import NotFoundError, ValidationError
from ..protocols import (
    ConfigStore,
    ControlPlaneAPI,
    DeploymentStore,
    SecretStore,
    TemplateRunner,
)
from .blueprint import TenantBlueprint, validate_account_name
from .orchestrator import (
    DeploymentRequest,
    DeploymentResult,
    PipelineTimeouts,
    TenantDeploymentOrchestrator,
)
from .progress import ProgressRecorder
from .state_machine import Deployment

logger = logging.getLogger(__name__)

ControlPlaneFactory = Callable[[str], ControlPlaneAPI]
"""Builds a control-plane client for an operator API token."""

DEFAULT_PIPELINE_TIMEOUT_SECONDS = 900.0
DEFAULT_PROGRESS_RETENTION_SECONDS = 600.0


def deployment_progress(deployment: Deployment) -> dict[str, Any]:
    """Shape a deployment snapshot as a progress report."""
    return {
        'deployment_id': deployment.id,
        'status': deployment.status,
        'current_step': deployment.current_step,
        'completed': deployment.is_terminal,
        'success': deployment.status == 'completed',
        'error': deployment.error,
        'steps': [s.to_dict() for s in deployment.steps],
    }


# ── Progress registry ────────────────────────────────────────────────


@dataclass
class _Entry:
    deployment: Deployment
    finished_at: float | None = None


class ProgressRegistry:
    """Latest snapshot per deployment, evicted some time after it finishes."""

    def __init__(
        self,
        *,
        retention_seconds: float = DEFAULT_PROGRESS_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    @property
    def retention_seconds(self) -> float:
        return self._retention

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, deployment_id: object) -> bool:
        return deployment_id in self._entries

    def update(self, deployment: Deployment) -> None:
        entry = self._entries.get(deployment.id)
        if entry is None:
            entry = self._entries[deployment.id] = _Entry(deployment)
        entry.deployment = deployment
        if deployment.is_terminal and entry.finished_at is None:
            entry.finished_at = self._clock()
        self.evict_expired()

    def get(self, deployment_id: str) -> Deployment | None:
        self.evict_expired()
        entry = self._entries.get(deployment_id)
        return entry.deployment if entry is not None else None

    def evict_expired(self) -> list[str]:
        now = self._clock()
        expired = [
            deployment_id
            for deployment_id, entry in self._entries.items()
            if entry.finished_at is not None
            and now - entry.finished_at >= self._retention
        ]
        for deployment_id in expired:
            del self._entries[deployment_id]
        return expired


# ── Service ──────────────────────────────────────────────────────────


class DeploymentService:
    """Starts tenant deployments and serves their progress.

    Each deployment runs on its own orchestrator and recorder, so concurrent
    deployments share nothing but the stores and the registry.
    """

    def __init__(
        self,
        *,
        config_store: ConfigStore,
        secret_store: SecretStore,
        deployment_store: DeploymentStore,
        control_plane_factory: ControlPlaneFactory,
        operator_workspace_id: str = '',
        operator_token: str = '',
        blueprint: TenantBlueprint | None = None,
        template_runner: TemplateRunner | None = None,
        template_ref: str | None = None,
        template_input_ref: str | None = None,
        timeouts: PipelineTimeouts | None = None,
        pipeline_timeout_seconds: float = DEFAULT_PIPELINE_TIMEOUT_SECONDS,
        registry: ProgressRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._configs = config_store
        self._secrets = secret_store
        self._deployments = deployment_store
        self._control_plane_factory = control_plane_factory
        self._operator_workspace_id = operator_workspace_id
        self._operator_token = operator_token
        self._blueprint = blueprint or TenantBlueprint()
        self._template_runner = template_runner
        self._template_ref = template_ref
        self._template_input_ref = template_input_ref
        self._timeouts = timeouts or PipelineTimeouts()
        self._pipeline_timeout = pipeline_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self.registry = registry if registry is not None else ProgressRegistry()
        self._tasks: dict[str, asyncio.Task] = {}

    async def start_deployment(self, config_id: str, account_name: str) -> str:
        """Validate, create the deployment record and start the pipeline.

        Returns the new deployment id. The pipeline runs in the background.

        Raises:
            ValidationError: Unknown configuration, invalid account name or
                no operator token available.
        """
        try:
            account_name = validate_account_name(account_name)
        except ValueError as exc:
            raise ValidationError(str(exc), field='account_name') from exc

        if not (config_id or '').strip():
            raise ValidationError('config_id is required', field='config_id')
        config = await self._configs.get_config(config_id)
        if config is None:
            raise ValidationError(
                f'configuration {config_id!r} not found', field='config_id',
            )

        token = await self._resolve_operator_token()

        deployment_id = str(uuid.uuid4())
        recorder = ProgressRecorder(self._deployments, listener=self.registry.update)
        await recorder.create_deployment(
            deployment_id,
            config_id,
            {**config, 'account_name': account_name},
        )

        orchestrator = TenantDeploymentOrchestrator(
            control_plane=self._control_plane_factory(token),
            recorder=recorder,
            secret_store=self._secrets,
            blueprint=self._blueprint,
            template_runner=self._template_runner,
            template_ref=self._template_ref,
            template_input_ref=self._template_input_ref,
            timeouts=self._timeouts,
            clock=self._clock,
            sleep=self._sleep,
        )
        request = DeploymentRequest(
            deployment_id=deployment_id,
            config_id=config_id,
            account_name=account_name,
            config_snapshot=config,
        )
        task = asyncio.create_task(
            self._run(orchestrator, recorder, request),
            name=f'tenant-deployment-{deployment_id}',
        )
        self._tasks[deployment_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(deployment_id, None))

        logger.info(
            'Deployment %s started for account %s (config %s)',
            deployment_id,
            account_name,
            config_id,
        )
        return deployment_id

    async def get_progress(self, deployment_id: str) -> dict[str, Any]:
        """Return ``{completed, success, error, steps, ...}`` for a deployment.

        Raises:
            NotFoundError: Unknown deployment id.
        """
        deployment = self.registry.get(deployment_id)
        if deployment is None:
            deployment = await self._deployments.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f'deployment {deployment_id!r} not found')
        return deployment_progress(deployment)

    async def get_deployment(self, deployment_id: str) -> Deployment:
        deployment = await self._deployments.get_deployment(deployment_id)
        if deployment is None:
            raise NotFoundError(f'deployment {deployment_id!r} not found')
        return deployment

    async def list_deployments(self, limit: int = 50) -> list[Deployment]:
        return await self._deployments.list_deployments(limit)

    async def wait(self, deployment_id: str) -> DeploymentResult | None:
        """Wait for a running deployment; returns None if none is running."""
        task = self._tasks.get(deployment_id)
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        """Cancel running pipelines (application shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def _resolve_operator_token(self) -> str:
        if self._operator_workspace_id:
            secret = await self._secrets.get_secret(self._operator_workspace_id)
            if secret and secret.get('token'):
                return secret['token']
        if self._operator_token:
            return self._operator_token
        raise ValidationError(
            'No API token available for workspace '
            f'{self._operator_workspace_id or "<unset>"}',
            field='workspace',
        )

    async def _run(
        self,
        orchestrator: TenantDeploymentOrchestrator,
        recorder: ProgressRecorder,
        request: DeploymentRequest,
    ) -> DeploymentResult | None:
        with structlog.contextvars.bound_contextvars(
            deployment_id=request.deployment_id,
        ):
            try:
                return await asyncio.wait_for(
                    orchestrator.run(request), timeout=self._pipeline_timeout,
                )
            except asyncio.CancelledError:
                logger.warning('Deployment %s: cancelled', request.deployment_id)
                await asyncio.shield(
                    self._mark_failed(
                        recorder,
                        request.deployment_id,
                        'Deployment cancelled during shutdown',
                    )
                )
                raise
            except asyncio.TimeoutError:
                message = f'Deployment timed out after {self._pipeline_timeout:g}s'
                logger.error('Deployment %s: %s', request.deployment_id, message)
            except Exception:
                logger.exception('Deployment %s: pipeline aborted', request.deployment_id)
                message = 'Deployment aborted by an unexpected error'
            await self._mark_failed(recorder, request.deployment_id, message)
            return None

    async def _mark_failed(
        self, recorder: ProgressRecorder, deployment_id: str, message: str,
    ) -> None:
        deployment = await recorder.get_deployment(deployment_id)
        if deployment is None or deployment.is_terminal:
            return
        try:
            await recorder.append_step(
                deployment_id, deployment.current_step, 'failed', message,
            )
        except Exception:
            logger.exception(
                'Deployment %s: could not record failure; progress shows it failed',
                deployment_id,
            )
            self.registry.update(
                replace(
                    deployment,
                    status='failed',
                    error=message,
                    end_time=datetime.now(timezone.utc),
                )
            )

"""Tenant deployment API.

  POST /api/v1/deployments                     -> start a deployment (202)
  GET  /api/v1/deployments                     -> recent deployments
  GET  /api/v1/deployments/{deployment_id}     -> durable record with full log
  GET  /api/v1/deployments/{deployment_id}/progress -> progress report

Starting validates synchronously and returns the deployment id immediately;
the pipeline runs in the background and is followed through ``progress``.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tenant_provisioner.app.errors import NotFoundError, ValidationError
from tenant_provisioner.app.provisioning.service import DeploymentService


# ── Request schemas ───────────────────────────────────────────────────


class StartDeploymentRequest(BaseModel):
    config_id: str = Field(description='Tenant configuration to deploy with.')
    account_name: str = Field(description='Name of the tenant account to create.')


# ── Response helpers ──────────────────────────────────────────────────


def _error(status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': error, 'detail': detail, **extra},
    )


def _not_found(deployment_id: str) -> JSONResponse:
    return _error(
        404, 'deployment_not_found', f'No deployment found with id {deployment_id!r}.',
    )


# ── Route factory ─────────────────────────────────────────────────────


def create_deployments_router(service: DeploymentService) -> APIRouter:
    """Create the deployment start/progress router."""
    router = APIRouter(prefix='/api/v1/deployments', tags=['deployments'])

    @router.post('', status_code=202)
    async def start_deployment(body: StartDeploymentRequest):
        try:
            deployment_id = await service.start_deployment(
                body.config_id, body.account_name,
            )
        except ValidationError as exc:
            return _error(400, exc.code, str(exc), field=exc.field)
        return {'deployment_id': deployment_id}

    @router.get('')
    async def list_deployments(limit: int = 50):
        deployments = await service.list_deployments(max(1, min(limit, 200)))
        return {
            'deployments': [
                {
                    'id': d.id,
                    'config_id': d.config_id,
                    'status': d.status,
                    'current_step': d.current_step,
                    'start_time': d.start_time.isoformat(),
                    'end_time': d.end_time.isoformat() if d.end_time else None,
                    'error': d.error,
                }
                for d in deployments
            ],
        }

    @router.get('/{deployment_id}')
    async def get_deployment(deployment_id: str):
        try:
            deployment = await service.get_deployment(deployment_id)
        except NotFoundError:
            return _not_found(deployment_id)
        return deployment.to_dict()

    @router.get('/{deployment_id}/progress')
    async def get_progress(deployment_id: str):
        try:
            return await service.get_progress(deployment_id)
        except NotFoundError:
            return _not_found(deployment_id)

    return router

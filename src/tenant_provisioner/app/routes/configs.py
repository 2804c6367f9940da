"""Tenant configuration API.

  POST /api/v1/configs -> save a configuration (same name overwrites)
  GET  /api/v1/configs -> list configurations
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from tenant_provisioner.app.errors import ValidationError
from tenant_provisioner.app.protocols import ConfigStore


class SaveConfigRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    root_ou: str = Field(default='', description='Parent organizational unit.')
    emails: list[str] = Field(default_factory=list)

    @field_validator('name')
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError('name must not be blank')
        return value


def create_configs_router(config_store: ConfigStore) -> APIRouter:
    """Create the configuration router."""
    router = APIRouter(prefix='/api/v1/configs', tags=['configs'])

    @router.post('', status_code=201)
    async def save_config(body: SaveConfigRequest):
        try:
            return await config_store.save_config(body.model_dump())
        except ValidationError as exc:
            return JSONResponse(
                status_code=400,
                content={'error': exc.code, 'detail': str(exc), 'field': exc.field},
            )

    @router.get('')
    async def list_configs():
        return {'configs': await config_store.list_configs()}

    return router

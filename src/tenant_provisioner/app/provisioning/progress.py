"""Durable, append-only progress recorder for tenant deployments.

Each append is awaited before the orchestrator moves on, so a reader polling
the store mid-flight always sees the log up to the step being executed.
The recorder keeps the latest snapshot of every deployment it writes, which
gives read-your-writes for its own appends even if the backing store lags.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from ..errors import NotFoundError
from ..protocols import DeploymentStore
from .state_machine import (
    Deployment,
    StepRecord,
    StepStatus,
    apply_step_record,
    create_deployment,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[Deployment], Awaitable[None] | None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressRecorder:
    """Creates deployment records and appends step records in order."""

    def __init__(
        self,
        store: DeploymentStore,
        *,
        listener: ProgressListener | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._listener = listener
        self._now = now
        self._latest: dict[str, Deployment] = {}

    async def create_deployment(
        self,
        deployment_id: str,
        config_id: str,
        snapshot: Mapping[str, Any] | None = None,
    ) -> Deployment:
        deployment = create_deployment(
            deployment_id=deployment_id,
            config_id=config_id,
            now=self._now(),
            config_snapshot=snapshot,
        )
        await self._store.create_deployment(deployment)
        self._latest[deployment_id] = deployment
        await self._notify(deployment)
        return deployment

    async def append_step(
        self,
        deployment_id: str,
        step: str,
        status: StepStatus,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> Deployment:
        """Durably append one record and return the updated deployment.

        Raises:
            NotFoundError: No deployment with that id was created here or
                exists in the store.
        """
        current = await self._current(deployment_id)

        timestamp = self._now()
        last = current.last_timestamp
        if last is not None and timestamp < last:
            # Wall clocks can step backwards; the log must not.
            timestamp = last

        record = StepRecord(
            step=step,
            status=status,
            message=message,
            timestamp=timestamp,
            details=dict(details) if details is not None else None,
        )
        updated = apply_step_record(current, record)
        await self._store.append_step(updated, record)
        self._latest[deployment_id] = updated

        log = logger.warning if status == 'failed' or record.is_warning else logger.info
        log('[%s] %s %s: %s', deployment_id, step, status, message)

        await self._notify(updated)
        return updated

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        cached = self._latest.get(deployment_id)
        if cached is not None:
            return cached
        return await self._store.get_deployment(deployment_id)

    async def list_deployments(self, limit: int = 50) -> list[Deployment]:
        return await self._store.list_deployments(limit)

    async def _current(self, deployment_id: str) -> Deployment:
        current = self._latest.get(deployment_id)
        if current is None:
            current = await self._store.get_deployment(deployment_id)
        if current is None:
            raise NotFoundError(f'deployment {deployment_id!r} not found')
        return current

    async def _notify(self, deployment: Deployment) -> None:
        if self._listener is None:
            return
        result = self._listener(deployment)
        if result is not None:
            await result

"""Supabase-backed deployment store.

Two tables:

  - ``tenant_deployments``: one row per deployment with the summary fields
    (status, current_step, start/end time, error, config snapshot).
  - ``tenant_deployment_steps``: the append-only progress log, one row per
    StepRecord keyed by ``(deployment_id, seq)``.

``append_step`` inserts the step row first and then updates the summary, so
a reader never sees a summary that is ahead of the log.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any

from ..provisioning.state_machine import Deployment, StepRecord
from .supabase_client import SupabaseClient

DEPLOYMENTS_TABLE = "tenant_deployments"
STEPS_TABLE = "tenant_deployment_steps"


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _summary_row(deployment: Deployment) -> dict[str, Any]:
    return {
        "status": deployment.status,
        "current_step": deployment.current_step,
        "end_time": deployment.end_time.isoformat() if deployment.end_time else None,
        "error": deployment.error,
    }


def _deployment_from_rows(row: dict[str, Any], step_rows: list[dict[str, Any]]) -> Deployment:
    steps = tuple(
        StepRecord.from_dict({**s, "timestamp": s.get("timestamp") or s.get("created_at")})
        for s in sorted(step_rows, key=lambda s: s["seq"])
    )
    return Deployment(
        id=row["id"],
        config_id=row.get("config_id") or "",
        start_time=_parse_ts(row["start_time"]),
        status=row.get("status") or "started",
        current_step=row.get("current_step") or "initialize",
        end_time=_parse_ts(row.get("end_time")),
        error=row.get("error"),
        config_snapshot=row.get("config_snapshot") or {},
        steps=steps,
    )


class SupabaseDeploymentStore:
    """Satisfies the ``DeploymentStore`` protocol from ``protocols.py``."""

    def __init__(
        self,
        client: SupabaseClient,
        *,
        deployments_table: str = DEPLOYMENTS_TABLE,
        steps_table: str = STEPS_TABLE,
    ) -> None:
        self._client = client
        self._deployments = deployments_table
        self._steps = steps_table

    async def create_deployment(self, deployment: Deployment) -> None:
        await self._client.insert(
            self._deployments,
            {
                "id": deployment.id,
                "config_id": deployment.config_id,
                "start_time": deployment.start_time.isoformat(),
                "config_snapshot": dict(deployment.config_snapshot),
                **_summary_row(deployment),
            },
        )

    async def append_step(self, deployment: Deployment, record: StepRecord) -> None:
        """Persist ``record`` as the last entry of ``deployment.steps``."""
        await self._client.insert(
            self._steps,
            {
                "deployment_id": deployment.id,
                "seq": len(deployment.steps) - 1,
                **record.to_dict(),
            },
        )
        await self._client.update(
            self._deployments, {"id": deployment.id}, _summary_row(deployment),
        )

    async def get_deployment(self, deployment_id: str) -> Deployment | None:
        rows = await self._client.select(self._deployments, {"id": deployment_id}, limit=1)
        if not rows:
            return None
        step_rows = await self._client.select(
            self._steps, {"deployment_id": deployment_id}, order="seq.asc",
        )
        return _deployment_from_rows(rows[0], step_rows)

    async def list_deployments(self, limit: int = 50) -> list[Deployment]:
        rows = await self._client.select(
            self._deployments, order="start_time.desc", limit=limit,
        )
        if not rows:
            return []
        step_rows = await self._client.select(
            self._steps,
            {"deployment_id": ("in", [r["id"] for r in rows])},
            order="seq.asc",
        )
        by_deployment: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for step in step_rows:
            by_deployment[step["deployment_id"]].append(step)
        return [_deployment_from_rows(r, by_deployment[r["id"]]) for r in rows]

"""Tenant deployment state machine and progress-log records.

Canonical pipeline:
  initialize -> open_unit -> create_primary_resource
  -> create_secondary_resource -> commit_unit
  -> extract_secondary_derived_value -> extract_primary_derived_value
  -> persist_derived_values -> trigger_downstream_infra -> complete

Any active step may end in ``failed``. Deployments are never retried in
place; a new deployment is started instead.

The log is append-only: ``apply_step_record`` returns a new ``Deployment``
with the record appended and the summary fields (``status``,
``current_step``, ``end_time``, ``error``) recomputed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Literal, Mapping

DEPLOYMENT_SEQUENCE = (
    'initialize',
    'open_unit',
    'create_primary_resource',
    'create_secondary_resource',
    'commit_unit',
    'extract_secondary_derived_value',
    'extract_primary_derived_value',
    'persist_derived_values',
    'trigger_downstream_infra',
    'complete',
)

TERMINAL_STEP = 'complete'

StepStatus = Literal['pending', 'in_progress', 'completed', 'failed']
DeploymentStatus = Literal['started', 'completed', 'failed']

STEP_STATUSES = frozenset({'pending', 'in_progress', 'completed', 'failed'})
TERMINAL_DEPLOYMENT_STATUSES = frozenset({'completed', 'failed'})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        step: frozenset({DEPLOYMENT_SEQUENCE[i + 1]})
        for i, step in enumerate(DEPLOYMENT_SEQUENCE[:-1])
    }
    | {TERMINAL_STEP: frozenset()}
)


@dataclass(frozen=True, slots=True)
class StepRecord:
    """One immutable entry of a deployment's progress log."""

    step: str
    status: StepStatus
    message: str
    timestamp: datetime
    details: Mapping[str, Any] | None = None

    @property
    def is_warning(self) -> bool:
        return bool(self.details and self.details.get('warning'))

    def to_dict(self) -> dict[str, Any]:
        return {
            'step': self.step,
            'status': self.status,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'details': dict(self.details) if self.details is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepRecord:
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
        return cls(
            step=data['step'],
            status=data['status'],
            message=data.get('message') or '',
            timestamp=timestamp,
            details=data.get('details'),
        )


@dataclass(frozen=True, slots=True)
class Deployment:
    """Snapshot of one tenant deployment and its progress log."""

    id: str
    config_id: str
    start_time: datetime
    status: DeploymentStatus = 'started'
    current_step: str = DEPLOYMENT_SEQUENCE[0]
    end_time: datetime | None = None
    error: str | None = None
    config_snapshot: Mapping[str, Any] = field(default_factory=dict)
    steps: tuple[StepRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DEPLOYMENT_STATUSES

    @property
    def last_timestamp(self) -> datetime | None:
        return self.steps[-1].timestamp if self.steps else None

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'config_id': self.config_id,
            'status': self.status,
            'current_step': self.current_step,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'error': self.error,
            'config_snapshot': dict(self.config_snapshot),
            'steps': [s.to_dict() for s in self.steps],
        }


class InvalidStepRecord(ValueError):
    """Raised when a record would break the append-only log invariants."""


def create_deployment(
    *,
    deployment_id: str,
    config_id: str,
    now: datetime,
    config_snapshot: Mapping[str, Any] | None = None,
) -> Deployment:
    """Create a ``started`` deployment with an empty log."""
    _require_aware_datetime(now)
    return Deployment(
        id=deployment_id,
        config_id=config_id,
        start_time=now,
        config_snapshot=dict(config_snapshot or {}),
    )


def next_step(step: str) -> str | None:
    """Return the step that follows ``step``, or None after ``complete``."""
    allowed = ALLOWED_TRANSITIONS.get(step)
    if allowed is None:
        raise InvalidStepRecord(f'unknown step {step!r}')
    return next(iter(allowed), None)


def apply_step_record(deployment: Deployment, record: StepRecord) -> Deployment:
    """Append ``record`` and recompute the deployment summary fields."""
    _require_aware_datetime(record.timestamp)
    if deployment.is_terminal:
        raise InvalidStepRecord(
            f'deployment {deployment.id!r} is already {deployment.status}'
        )
    if record.status not in STEP_STATUSES:
        raise InvalidStepRecord(f'invalid step status {record.status!r}')
    last = deployment.last_timestamp
    if last is not None and record.timestamp < last:
        raise InvalidStepRecord(
            f'timestamp {record.timestamp.isoformat()} precedes last record '
            f'{last.isoformat()}'
        )

    status: DeploymentStatus = deployment.status
    end_time = deployment.end_time
    error = deployment.error
    if record.status == 'failed':
        status, end_time, error = 'failed', record.timestamp, record.message
    elif record.status == 'completed' and record.step == TERMINAL_STEP:
        status, end_time = 'completed', record.timestamp

    return replace(
        deployment,
        status=status,
        current_step=record.step,
        end_time=end_time,
        error=error,
        steps=(*deployment.steps, record),
    )


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('timestamps must be timezone-aware')

"""Transactional unit (change set) client: open, commit, drain.

The control plane runs side effects asynchronously after a commit, so the
commit call's return says nothing about convergence. ``commit`` therefore
bundles two bounded waits, both built on ``poll_until``:

1. Precondition retry. While the control plane answers 428 (dependent values
   still being computed) the commit is retried every 5 s. Retrying stops once
   5 s or less remain in the caller's budget; the attempt made at that point
   is the final one. A final 428 is a soft give-up: the pipeline proceeds and
   the report carries a warning. Any other failure raises immediately.

2. Action drain. When resource ids are monitored, merge status is polled every
   2 s for up to 60 s until no in-flight action references them. Timeouts and
   merge-status read failures are soft warnings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

from ..errors import PreconditionRequiredError, UpstreamError
from ..protocols import ControlPlaneAPI
from ..provisioning.polling import (
    NOT_YET,
    Clock,
    HardError,
    Ok,
    Outcome,
    Sleep,
    SoftTimeout,
    poll_until,
)
from .models import Action

logger = logging.getLogger(__name__)

COMMIT_RETRY_INTERVAL_SECONDS = 5.0
DRAIN_POLL_INTERVAL_SECONDS = 2.0
DRAIN_TIMEOUT_SECONDS = 60.0
DEFAULT_COMMIT_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True, slots=True)
class CommitReport:
    """What happened during ``ChangeSetClient.commit``."""

    unit_id: str
    commit: Outcome
    drain: Outcome | None = None
    pending_actions: tuple[Action, ...] = ()

    @property
    def attempts(self) -> int:
        return self.commit.attempts

    @property
    def precondition_confirmed(self) -> bool:
        return isinstance(self.commit, Ok)

    @property
    def drained(self) -> bool:
        return self.drain is None or isinstance(self.drain, Ok)

    @property
    def warnings(self) -> list[str]:
        notes: list[str] = []
        if isinstance(self.commit, SoftTimeout):
            notes.append(
                'commit precondition still outstanding after '
                f'{self.commit.attempts} attempts; proceeded without confirmation'
            )
        if isinstance(self.drain, SoftTimeout):
            kinds = ', '.join(
                f'{a.kind}:{a.resource_id}' for a in self.pending_actions
            ) or 'unknown'
            notes.append(
                f'actions still in flight after {self.drain.timeout_seconds:g}s '
                f'({kinds}); some actions may still be processing'
            )
        elif isinstance(self.drain, HardError):
            notes.append(f'could not read merge status: {self.drain.message}')
        return notes


@dataclass
class _DrainState:
    last_in_flight: tuple[Action, ...] = field(default_factory=tuple)


class ChangeSetClient:
    """Opens and commits transactional units against the control plane."""

    def __init__(
        self,
        api: ControlPlaneAPI,
        *,
        retry_interval: float = COMMIT_RETRY_INTERVAL_SECONDS,
        drain_interval: float = DRAIN_POLL_INTERVAL_SECONDS,
        drain_timeout: float = DRAIN_TIMEOUT_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._api = api
        self._retry_interval = retry_interval
        self._drain_interval = drain_interval
        self._drain_timeout = drain_timeout
        self._clock = clock
        self._sleep = sleep

    async def open(self, name: str) -> str:
        """Create a change set and return its id.

        Raises:
            UpstreamError: The control plane rejected the request or returned
                no id.
        """
        payload = await self._api.create_change_set(name)
        change_set = payload.get('changeSet')
        unit_id = None
        if isinstance(change_set, dict):
            unit_id = change_set.get('id')
        unit_id = unit_id or payload.get('id')
        if not unit_id:
            raise UpstreamError(
                status_code=0, message='No change set id in create response',
            )
        logger.info('Change set opened: id=%s name=%s', unit_id, name)
        return str(unit_id)

    async def merge_status(self, unit_id: str) -> list[Action]:
        payload = await self._api.merge_status(unit_id)
        return [
            Action.from_payload(item)
            for item in payload.get('actions') or ()
            if isinstance(item, dict)
        ]

    async def commit(
        self,
        unit_id: str,
        monitored_resource_ids: Sequence[str] = (),
        timeout_seconds: float = DEFAULT_COMMIT_TIMEOUT_SECONDS,
    ) -> CommitReport:
        """Commit ``unit_id`` and wait for monitored actions to drain.

        Raises:
            UpstreamError: The commit failed with anything other than 428.
        """

        async def attempt_commit():
            try:
                await self._api.force_apply(unit_id)
            except PreconditionRequiredError:
                logger.info(
                    'Change set %s: dependent values outstanding, retrying', unit_id,
                )
                return NOT_YET
            return True

        commit = await poll_until(
            attempt_commit,
            interval=self._retry_interval,
            timeout=timeout_seconds - self._retry_interval,
            clock=self._clock,
            sleep=self._sleep,
            label=f'commit {unit_id}',
        )
        if isinstance(commit, HardError):
            raise commit.error

        if isinstance(commit, SoftTimeout):
            logger.warning(
                'Change set %s: precondition not confirmed after %d attempts; proceeding',
                unit_id,
                commit.attempts,
            )
        else:
            logger.info('Change set %s applied', unit_id)

        if not monitored_resource_ids:
            return CommitReport(unit_id=unit_id, commit=commit)

        drain, pending = await self._wait_for_actions(unit_id, monitored_resource_ids)
        return CommitReport(
            unit_id=unit_id,
            commit=commit,
            drain=drain,
            pending_actions=pending,
        )

    async def _wait_for_actions(
        self,
        unit_id: str,
        monitored_resource_ids: Sequence[str],
    ) -> tuple[Outcome, tuple[Action, ...]]:
        monitored = frozenset(monitored_resource_ids)
        state = _DrainState()

        async def no_actions_in_flight():
            actions = await self.merge_status(unit_id)
            in_flight = tuple(
                a for a in actions if a.in_flight and a.resource_id in monitored
            )
            state.last_in_flight = in_flight
            if in_flight:
                logger.info(
                    'Change set %s: %d monitored actions still in flight',
                    unit_id,
                    len(in_flight),
                )
                return NOT_YET
            return True

        drain = await poll_until(
            no_actions_in_flight,
            interval=self._drain_interval,
            timeout=self._drain_timeout,
            clock=self._clock,
            sleep=self._sleep,
            label=f'drain {unit_id}',
        )
        if isinstance(drain, SoftTimeout):
            logger.warning(
                'Change set %s: action polling timed out after %.0fs; '
                'some actions may still be processing',
                unit_id,
                self._drain_timeout,
            )
        elif isinstance(drain, HardError):
            logger.warning(
                'Change set %s: error during merge status polling: %s',
                unit_id,
                drain.message,
            )
        return drain, state.last_in_flight

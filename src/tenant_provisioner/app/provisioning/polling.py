"""Bounded polling primitive shared by every asynchronous wait.

The control plane executes side effects after a call returns, so callers that
depend on post-commit state poll for it. ``poll_until`` is the only polling
loop in the package; callers choose the probe, the cadence and the deadline.

A probe is an async callable that either returns a value, returns
``NOT_YET`` (soft absence, keep polling) or raises (hard failure, stop).
The outcome is always one of three tagged results:

  - ``Ok(value)``: the probe produced a value.
  - ``SoftTimeout``: the deadline passed with the value absent on every cycle.
  - ``HardError``: the probe raised; polling stopped immediately.

``poll_until`` never raises for timeouts or probe errors. Cancellation still
propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _NotYet:
    __slots__ = ()

    def __repr__(self) -> str:
        return 'NOT_YET'

    def __bool__(self) -> bool:
        return False


NOT_YET: Any = _NotYet()
"""Sentinel a probe returns while its target has not appeared yet."""


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T
    attempts: int = 1
    elapsed_seconds: float = 0.0

    ok = True


@dataclass(frozen=True, slots=True)
class SoftTimeout:
    attempts: int
    elapsed_seconds: float
    timeout_seconds: float

    ok = False
    reason = 'timeout'


@dataclass(frozen=True, slots=True)
class HardError:
    error: Exception
    attempts: int
    elapsed_seconds: float = 0.0

    ok = False
    reason = 'error'

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


Outcome = Union[Ok[T], SoftTimeout, HardError]

Probe = Callable[[], Awaitable[Any]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


async def poll_until(
    probe: Probe,
    *,
    interval: float,
    timeout: float,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
    label: str = 'poll',
) -> Outcome:
    """Invoke ``probe`` on a fixed cadence until it yields a value.

    The probe runs once immediately. After each absent result the loop checks
    the deadline: once ``timeout`` seconds have elapsed it returns
    ``SoftTimeout``, otherwise it sleeps ``min(interval, remaining)`` and
    probes again.

    Args:
        probe: Async callable returning a value or ``NOT_YET``.
        interval: Seconds between probes.
        timeout: Total wait budget in seconds. Zero or less means one probe.
        clock: Monotonic clock, injectable for tests.
        sleep: Cooperative sleep, injectable for tests.
        label: Name used in log lines.
    """
    if interval <= 0:
        raise ValueError('interval must be > 0')

    start = clock()
    deadline = start + timeout
    attempts = 0

    while True:
        attempts += 1
        try:
            value = await probe()
        except Exception as exc:
            logger.warning(
                '%s: probe failed on attempt %d: %s', label, attempts, exc,
            )
            return HardError(
                error=exc, attempts=attempts, elapsed_seconds=clock() - start,
            )

        if value is not NOT_YET:
            return Ok(
                value=value, attempts=attempts, elapsed_seconds=clock() - start,
            )

        remaining = deadline - clock()
        if remaining <= 0:
            logger.info(
                '%s: gave up after %d attempts (%.1fs)',
                label,
                attempts,
                clock() - start,
            )
            return SoftTimeout(
                attempts=attempts,
                elapsed_seconds=clock() - start,
                timeout_seconds=timeout,
            )

        delay = min(interval, remaining)
        logger.debug(
            '%s: not ready, polling again in %.1fs (%.1fs remaining)',
            label,
            delay,
            remaining,
        )
        await sleep(delay)

"""Derived-value extraction from resource descriptors.

A derived value (a generated token, an account id) appears on a resource only
after its action has executed, and different control-plane versions expose
the same value at different places. Callers pass an ordered list of
candidate locations; the first one holding a value wins.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Sequence

from ..provisioning.polling import NOT_YET, Clock, Outcome, Sleep, poll_until
from .models import ResourceDescriptor
from .resources import ResourceClient

logger = logging.getLogger(__name__)

ValueSource = Literal['derived', 'prop', 'attribute']

DEFAULT_EXTRACT_INTERVAL_SECONDS = 5.0


class _NotFound:
    __slots__ = ()

    def __repr__(self) -> str:
        return 'NOT_FOUND'

    def __bool__(self) -> bool:
        return False


NOT_FOUND: Any = _NotFound()
"""Returned by ``extract`` when no candidate location holds a value."""


@dataclass(frozen=True, slots=True)
class ValueLocation:
    """One place a derived value may live on a resource.

    ``derived``: slash-separated path inside the derived payload.
    ``prop``: exact path in the derived props list.
    ``attribute``: exact attribute key.
    """

    source: ValueSource
    path: str

    @classmethod
    def parse(cls, spec: str) -> ValueLocation:
        """Parse ``"<source>:<path>"``, e.g. ``"derived:initialApiToken/token"``."""
        source, sep, path = spec.partition(':')
        if not sep or source not in ('derived', 'prop', 'attribute') or not path:
            raise ValueError(f'invalid value location {spec!r}')
        return cls(source=source, path=path)  # type: ignore[arg-type]

    def __str__(self) -> str:
        return f'{self.source}:{self.path}'


def _walk(payload: Mapping[str, Any] | None, path: str) -> Any:
    node: Any = payload
    for part in path.strip('/').split('/'):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _present(value: Any) -> bool:
    return value is not None and value != ''


def read_location(resource: ResourceDescriptor, location: ValueLocation) -> Any:
    if location.source == 'derived':
        value = _walk(resource.derived_state, location.path)
    elif location.source == 'prop':
        value = next(
            (p.value for p in resource.derived_props if p.path == location.path),
            None,
        )
    else:
        value = resource.attributes.get(location.path)
    return value if _present(value) else NOT_FOUND


def first_match(resource: ResourceDescriptor, candidates: Sequence[ValueLocation]) -> Any:
    for location in candidates:
        value = read_location(resource, location)
        if value is not NOT_FOUND:
            return value
    return NOT_FOUND


class DerivedValueExtractor:
    """Reads derived values, optionally polling until they appear."""

    def __init__(
        self,
        resources: ResourceClient,
        *,
        interval: float = DEFAULT_EXTRACT_INTERVAL_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._resources = resources
        self._interval = interval
        self._clock = clock
        self._sleep = sleep

    async def extract(
        self,
        unit_id: str,
        resource_id: str,
        candidates: Sequence[ValueLocation],
    ) -> Any:
        """Return the first candidate value, or ``NOT_FOUND``.

        Raises:
            UpstreamNotFoundError: The resource itself does not exist.
        """
        resource = await self._resources.get(unit_id, resource_id)
        return first_match(resource, candidates)

    async def extract_with_polling(
        self,
        unit_id: str,
        resource_id: str,
        candidates: Sequence[ValueLocation],
        *,
        timeout: float,
        interval: float | None = None,
    ) -> Outcome:
        """Poll ``extract`` until a value appears or ``timeout`` elapses."""

        async def probe():
            value = await self.extract(unit_id, resource_id, candidates)
            return NOT_YET if value is NOT_FOUND else value

        return await poll_until(
            probe,
            interval=interval or self._interval,
            timeout=timeout,
            clock=self._clock,
            sleep=self._sleep,
            label=f'extract {resource_id}',
        )

"""Resource descriptor client: create, read, and hold pending actions."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from ..errors import UpstreamError
from ..protocols import ControlPlaneAPI
from .models import Action, ResourceDescriptor, serialize_attributes

logger = logging.getLogger(__name__)


class ResourceClient:
    """Creates and reads resource descriptors within a change set or HEAD."""

    def __init__(self, api: ControlPlaneAPI) -> None:
        self._api = api

    async def create(
        self,
        unit_id: str,
        schema_name: str,
        name: str,
        attributes: Mapping[str, Any],
        *,
        view_name: str | None = None,
    ) -> str:
        """Create a resource descriptor and return its id.

        ``attributes`` may contain ``ResourceReference`` values; they are sent
        in wire form and resolved by the control plane after commit.
        """
        payload = await self._api.create_component(
            unit_id,
            schema_name=schema_name,
            name=name,
            attributes=serialize_attributes(attributes),
            view_name=view_name,
        )
        component = payload.get('component')
        resource_id = component.get('id') if isinstance(component, dict) else None
        if not resource_id:
            raise UpstreamError(
                status_code=0,
                message=f'No component id in create response for {name!r}',
            )
        return str(resource_id)

    async def get(self, unit_id: str, resource_id: str) -> ResourceDescriptor:
        """Read a resource from an open unit, or from merged state via ``HEAD``.

        Raises:
            UpstreamNotFoundError: The resource does not exist in that view.
        """
        payload = await self._api.get_component(unit_id, resource_id)
        descriptor = ResourceDescriptor.from_payload(payload)
        if not descriptor.id:
            descriptor = ResourceDescriptor(
                id=resource_id,
                schema_name=descriptor.schema_name,
                name=descriptor.name,
                resource_id=descriptor.resource_id,
                attributes=descriptor.attributes,
                derived_state=descriptor.derived_state,
                derived_props=descriptor.derived_props,
            )
        return descriptor

    async def suspend_pending_actions(
        self,
        unit_id: str,
        resource_id: str,
        action_kinds: Iterable[str],
    ) -> list[str]:
        """Best-effort: put matching pending actions on hold before commit.

        Never raises. Returns the ids of actions that were put on hold.
        """
        kinds = frozenset(action_kinds)
        if not kinds:
            return []

        try:
            payload = await self._api.list_actions(unit_id)
        except Exception as exc:
            logger.warning(
                'Could not list actions for resource %s: %s', resource_id, exc,
            )
            return []

        targets = [
            action
            for action in (
                Action.from_payload(item)
                for item in payload.get('actions') or ()
                if isinstance(item, dict)
            )
            if action.resource_id == resource_id and action.kind in kinds
        ]
        if not targets:
            logger.info(
                'No %s actions found for resource %s',
                ', '.join(sorted(kinds)),
                resource_id,
            )
            return []

        held: list[str] = []
        for action in targets:
            try:
                await self._api.put_action_on_hold(unit_id, action.id)
            except Exception as exc:
                logger.warning(
                    'Could not put action %s on hold: %s', action.id, exc,
                )
                continue
            logger.info(
                'Put %s action %s on hold for resource %s',
                action.kind,
                action.id,
                resource_id,
            )
            held.append(action.id)
        return held

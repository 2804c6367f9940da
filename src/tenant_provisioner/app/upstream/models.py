"""Domain views of control-plane payloads: actions, resources, references."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

# Control-plane action states, normalised to lowercase snake case.
ACTION_STATES = frozenset({
    'pending',
    'queued',
    'dispatched',
    'running',
    'on_hold',
    'success',
    'failed',
})

# Actions in these states still have side effects to execute.
IN_FLIGHT_ACTION_STATES = frozenset({'pending', 'queued', 'dispatched', 'running'})

_STATE_ALIASES = MappingProxyType({
    'onhold': 'on_hold',
    'on-hold': 'on_hold',
    'succeeded': 'success',
    'completed': 'success',
    'error': 'failed',
})

REFERENCE_KEY = '$source'


def normalize_action_state(raw: Any) -> str:
    """Map control-plane spellings (``OnHold``, ``Queued``) onto ACTION_STATES."""
    value = str(raw or 'pending').strip().lower()
    value = _STATE_ALIASES.get(value, value)
    return value if value in ACTION_STATES else 'pending'


@dataclass(frozen=True, slots=True)
class Action:
    """An asynchronous unit of work the control plane runs for a resource."""

    id: str
    kind: str
    resource_id: str | None
    state: str = 'pending'

    @property
    def in_flight(self) -> bool:
        return self.state in IN_FLIGHT_ACTION_STATES

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Action:
        component = payload.get('component')
        resource_id = payload.get('componentId')
        if resource_id is None and isinstance(component, Mapping):
            resource_id = component.get('id')
        return cls(
            id=str(payload.get('id', '')),
            kind=str(payload.get('kind', '')),
            resource_id=str(resource_id) if resource_id is not None else None,
            state=normalize_action_state(payload.get('state')),
        )


@dataclass(frozen=True, slots=True)
class ResourceReference:
    """Edge in the reference graph: a value owned by another resource.

    The control plane resolves it after commit, so its value is never
    computable locally.
    """

    target_resource: str
    target_path: str

    def to_wire(self) -> dict[str, Any]:
        return {
            REFERENCE_KEY: {
                'component': self.target_resource,
                'path': self.target_path,
            },
        }

    @classmethod
    def from_wire(cls, value: Any) -> ResourceReference | None:
        if not isinstance(value, Mapping):
            return None
        source = value.get(REFERENCE_KEY)
        if not isinstance(source, Mapping):
            return None
        return cls(
            target_resource=str(source.get('component', '')),
            target_path=str(source.get('path', '')),
        )


def serialize_attributes(attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Convert an attribute map into its wire form."""
    return {
        path: value.to_wire() if isinstance(value, ResourceReference) else value
        for path, value in attributes.items()
    }


def pending_references(attributes: Mapping[str, Any]) -> dict[str, ResourceReference]:
    """Return ``attribute path -> reference`` for every unresolved attribute.

    Accepts both domain values and wire-form ``$source`` objects.
    """
    graph: dict[str, ResourceReference] = {}
    for path, value in attributes.items():
        ref = value if isinstance(value, ResourceReference) else ResourceReference.from_wire(value)
        if ref is not None:
            graph[path] = ref
    return graph


def is_locally_computable(value: Any) -> bool:
    return not isinstance(value, ResourceReference) and ResourceReference.from_wire(value) is None


@dataclass(frozen=True, slots=True)
class DerivedProp:
    path: str
    value: Any


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """A managed resource definition plus its runtime-resolved state."""

    id: str
    schema_name: str = ''
    name: str = ''
    resource_id: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    derived_state: Mapping[str, Any] | None = None
    derived_props: tuple[DerivedProp, ...] = ()

    @property
    def references(self) -> dict[str, ResourceReference]:
        return pending_references(self.attributes)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ResourceDescriptor:
        """Build a descriptor from a ``GET component`` response.

        The derived payload has appeared under different keys across
        control-plane versions: ``attributes['/resource/payload']`` or a
        top-level ``resource`` object. Both are accepted.
        """
        component = payload.get('component', payload)
        if not isinstance(component, Mapping):
            component = {}

        attributes = component.get('attributes') or {}
        if not isinstance(attributes, Mapping):
            attributes = {}

        derived = attributes.get('/resource/payload')
        if not isinstance(derived, Mapping):
            resource = component.get('resource')
            if isinstance(resource, Mapping):
                derived = resource.get('payload', resource)
            else:
                derived = None

        props = []
        for prop in component.get('resourceProps') or ():
            if isinstance(prop, Mapping) and 'path' in prop:
                props.append(DerivedProp(path=str(prop['path']), value=prop.get('value')))

        return cls(
            id=str(component.get('id', '')),
            schema_name=str(component.get('schemaName', '')),
            name=str(component.get('name', '')),
            resource_id=component.get('resourceId'),
            attributes=dict(attributes),
            derived_state=dict(derived) if isinstance(derived, Mapping) else None,
            derived_props=tuple(props),
        )

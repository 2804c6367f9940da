"""Control-plane clients: HTTP transport, change sets, resources, derived values."""

from .api_client import HEAD, ControlPlaneClient, UpstreamTimeoutError
from .change_sets import ChangeSetClient, CommitReport
from .derived_values import NOT_FOUND, DerivedValueExtractor, ValueLocation
from .models import Action, ResourceDescriptor, ResourceReference, pending_references
from .resources import ResourceClient

__all__ = [
    'Action',
    'ChangeSetClient',
    'CommitReport',
    'ControlPlaneClient',
    'DerivedValueExtractor',
    'HEAD',
    'NOT_FOUND',
    'ResourceClient',
    'ResourceDescriptor',
    'ResourceReference',
    'UpstreamTimeoutError',
    'ValueLocation',
    'pending_references',
]

"""Error taxonomy for tenant provisioning.

Every error raised across the pipeline derives from ``ProvisioningError`` so
the orchestrator can tell a classified failure (surfaced verbatim in the
progress log) from an unexpected runtime exception (converted into a generic
failure message).

  - ``ValidationError``: bad caller input, rejected before any external call.
  - ``UpstreamError``: the control plane answered with a failure status.
  - ``PreconditionRequiredError``: the control plane answered 428 because
    dependent-value computations are still outstanding.
  - ``NotFoundError``: an expected resource or value is structurally absent.
  - ``StepTimeoutError``: a bounded wait for a mandatory value expired.
  - ``StoreError``: a backing store rejected a read or write.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for classified provisioning failures."""

    code = 'provisioning_error'


class ValidationError(ProvisioningError, ValueError):
    """Missing or invalid input to a deployment request."""

    code = 'validation_error'

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class UpstreamError(ProvisioningError):
    """Control-plane call failed with a non-retryable status."""

    code = 'upstream_error'

    def __init__(
        self,
        status_code: int,
        message: str = '',
        *,
        response_body: str = '',
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f'Control plane error {status_code}: {message}')


class PreconditionRequiredError(UpstreamError):
    """HTTP 428: outstanding dependent-value computations block the commit."""

    code = 'precondition_required'

    def __init__(self, message: str = 'Precondition required', **kwargs) -> None:
        super().__init__(428, message, **kwargs)


class NotFoundError(ProvisioningError):
    """An expected record, resource or derived value does not exist."""

    code = 'not_found'


class UpstreamNotFoundError(UpstreamError, NotFoundError):
    """Control plane answered 404 for a resource."""

    code = 'upstream_not_found'

    def __init__(self, message: str = 'Resource not found', **kwargs) -> None:
        super().__init__(404, message, **kwargs)


class StepTimeoutError(ProvisioningError, TimeoutError):
    """A mandatory bounded wait exceeded its deadline."""

    code = 'step_timeout'

    def __init__(self, step: str, timeout_seconds: float, detail: str = '') -> None:
        self.step = step
        self.timeout_seconds = timeout_seconds
        message = f'step {step!r} timed out after {timeout_seconds:g}s'
        if detail:
            message = f'{message}: {detail}'
        super().__init__(message)


class StoreError(ProvisioningError):
    """A configuration, secret or deployment store request failed."""

    code = 'store_error'

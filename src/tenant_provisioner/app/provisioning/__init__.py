"""Tenant deployment pipeline: polling, progress log, orchestration."""

from .blueprint import TenantBlueprint, validate_account_name
from .orchestrator import (
    DeploymentRequest,
    DeploymentResult,
    PipelineTimeouts,
    TenantDeploymentOrchestrator,
)
from .polling import NOT_YET, HardError, Ok, SoftTimeout, poll_until
from .progress import ProgressRecorder
from .service import DeploymentService, ProgressRegistry, deployment_progress
from .state_machine import (
    DEPLOYMENT_SEQUENCE,
    TERMINAL_STEP,
    Deployment,
    InvalidStepRecord,
    StepRecord,
    apply_step_record,
    create_deployment,
)
from .template_runner import CredentialScope, SubprocessTemplateRunner, TemplateRunError

__all__ = [
    'CredentialScope',
    'DEPLOYMENT_SEQUENCE',
    'Deployment',
    'DeploymentRequest',
    'DeploymentResult',
    'DeploymentService',
    'HardError',
    'InvalidStepRecord',
    'NOT_YET',
    'Ok',
    'PipelineTimeouts',
    'ProgressRecorder',
    'ProgressRegistry',
    'SoftTimeout',
    'StepRecord',
    'SubprocessTemplateRunner',
    'TERMINAL_STEP',
    'TemplateRunError',
    'TenantBlueprint',
    'TenantDeploymentOrchestrator',
    'apply_step_record',
    'create_deployment',
    'deployment_progress',
    'poll_until',
    'validate_account_name',
]

"""Tenant blueprint: what gets created for each tenant, and where to find
the values the control plane derives for it.

Two resources are created per tenant in one change set:

  - primary: the tenant cloud account. Its derived value is the account id.
  - secondary: the tenant workspace. Its derived values are the workspace
    API token, the workspace id (the tenant key used for secret storage)
    and an optional external id.

A second, optional change set seeds an operator access role into the new
account: a CloudFormation template resource plus a self-managed StackSet
that renders it into the tenant account.

Attributes that depend on pre-existing resources are expressed as
``ResourceReference`` edges and resolved by the control plane after commit.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from ..upstream.derived_values import ValueLocation
from ..upstream.models import ResourceReference

_ACCOUNT_NAME_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$')

DEFAULT_ACCESS_ROLE_PRINCIPAL = 'arn:aws:iam::058264381944:user/si-access-prod-manager'

# Ordered by preference. Control-plane versions differ in where the derived
# payload is exposed.
WORKSPACE_TOKEN_LOCATIONS = (
    ValueLocation('derived', 'initialApiToken/token'),
    ValueLocation('prop', 'root/resource_value/initialApiToken/token'),
    ValueLocation('attribute', '/resource_value/initialApiToken/token'),
)
WORKSPACE_ID_LOCATIONS = (
    ValueLocation('derived', 'id'),
    ValueLocation('prop', 'root/resource_value/id'),
    ValueLocation('attribute', '/resource_value/id'),
)
WORKSPACE_EXTERNAL_ID_LOCATIONS = (
    ValueLocation('derived', 'externalId'),
    ValueLocation('prop', 'root/resource_value/externalId'),
)
ACCOUNT_ID_LOCATIONS = (
    ValueLocation('derived', 'AccountId'),
    ValueLocation('prop', 'root/resource_value/AccountId'),
    ValueLocation('attribute', '/resource_value/AccountId'),
)


def validate_account_name(account_name: str) -> str:
    """Return the trimmed account name or raise ``ValueError``."""
    name = (account_name or '').strip()
    if not name:
        raise ValueError('account name is required')
    if not _ACCOUNT_NAME_RE.match(name):
        raise ValueError(
            f'account name {name!r} must be 1-63 characters of letters, '
            'digits, ".", "_" or "-", starting with a letter or digit'
        )
    return name


@dataclass(frozen=True, slots=True)
class TenantBlueprint:
    """Schema names, references and value locations for one tenant."""

    primary_schema: str = 'AWS::Organizations::Account'
    secondary_schema: str = 'Workspace Management'
    view_name: str = 'Tenants'
    email_template: str = 'technical-operations+{account_name}@systeminit.com'
    parent_ou: ResourceReference = ResourceReference(
        'Root/experimental/pluto', '/resource_value/Id',
    )
    region: ResourceReference = ResourceReference('AWS Region', '/domain/region')
    cloud_credential: ResourceReference = ResourceReference(
        'Org Root Account ADMIN', '/secrets/AWS Credential',
    )
    workspace_credential: ResourceReference = ResourceReference(
        'Pluto API Token', '/secrets/SI Credential',
    )
    workspace_instance_url: str = 'https://app.systeminit.com'
    token_locations: tuple[ValueLocation, ...] = WORKSPACE_TOKEN_LOCATIONS
    tenant_id_locations: tuple[ValueLocation, ...] = WORKSPACE_ID_LOCATIONS
    external_id_locations: tuple[ValueLocation, ...] = WORKSPACE_EXTERNAL_ID_LOCATIONS
    account_id_locations: tuple[ValueLocation, ...] = ACCOUNT_ID_LOCATIONS
    hold_action_kinds: tuple[str, ...] = field(default_factory=tuple)
    access_role_principal: str = DEFAULT_ACCESS_ROLE_PRINCIPAL
    """IAM principal allowed to assume the seeded role. Empty disables seeding."""
    access_role_name: str = 'si-access-prod-manager'
    access_role_policy_arns: tuple[str, ...] = (
        'arn:aws:iam::aws:policy/AdministratorAccess',
    )
    role_template_schema: str = 'String Template'
    stackset_schema: str = 'AWS::CloudFormation::StackSet'
    stackset_regions: tuple[str, ...] = ('us-east-1',)

    def unit_name(self, environment_id: str) -> str:
        return f'Tenant Deployment {environment_id}'

    def primary_name(self, account_name: str) -> str:
        return account_name

    def secondary_name(self, account_name: str) -> str:
        return f'{account_name}-workspace'

    def primary_attributes(self, account_name: str) -> dict[str, Any]:
        return {
            '/domain/AccountName': account_name,
            '/domain/Email': self.email_template.format(account_name=account_name),
            '/domain/ParentIds/0': self.parent_ou,
            '/domain/extra/Region': self.region,
            '/secrets/AWS Credential': self.cloud_credential,
        }

    def secondary_attributes(self, account_name: str) -> dict[str, Any]:
        return {
            '/domain/displayName': account_name,
            '/domain/description': (
                f'Workspace for {account_name} tenant - automated deployment'
            ),
            '/domain/instanceUrl': self.workspace_instance_url,
            '/domain/isDefault': False,
            '/secrets/SI Credential': self.workspace_credential,
        }

    def template_key(self, account_name: str, environment_id: str) -> str:
        return f'{account_name}-vpc-{environment_id}'

    # ── Access role seeding ─────────────────────────────────────────

    def access_role_unit_name(self, account_name: str) -> str:
        return f'{account_name}-stackset-seeding'

    def role_template_name(self, account_name: str) -> str:
        return f'{account_name}-iam-template'

    def stackset_name(self, account_name: str) -> str:
        return f'{account_name}-iam-seeding'

    def access_role_template(self, account_id: str, external_id: str) -> dict[str, Any]:
        """CloudFormation template creating the operator role in the account."""
        return {
            'AWSTemplateFormatVersion': '2010-09-09',
            'Description': f'SI access role for tenant account {account_id}',
            'Resources': {
                'SIAccessProdManagerRole': {
                    'Type': 'AWS::IAM::Role',
                    'Properties': {
                        'RoleName': self.access_role_name,
                        'AssumeRolePolicyDocument': {
                            'Version': '2012-10-17',
                            'Statement': [
                                {
                                    'Effect': 'Allow',
                                    'Principal': {'AWS': self.access_role_principal},
                                    'Action': 'sts:AssumeRole',
                                    'Condition': {
                                        'StringEquals': {'sts:ExternalId': external_id},
                                    },
                                }
                            ],
                        },
                        'ManagedPolicyArns': list(self.access_role_policy_arns),
                    },
                }
            },
            'Outputs': {
                'SIAccessRoleArn': {
                    'Description': 'ARN of the SI access role',
                    'Value': {'Fn::GetAtt': ['SIAccessProdManagerRole', 'Arn']},
                }
            },
        }

    def role_template_attributes(self, account_id: str, external_id: str) -> dict[str, Any]:
        template = self.access_role_template(account_id, external_id)
        return {'/domain/Template': json.dumps(template, indent=2)}

    def stackset_attributes(
        self, account_name: str, account_id: str, template_resource_id: str,
    ) -> dict[str, Any]:
        """StackSet attributes; the body is read from the rendered template."""
        attributes: dict[str, Any] = {
            '/domain/StackSetName': self.stackset_name(account_name),
            '/domain/PermissionModel': 'SELF_MANAGED',
            '/domain/Description': f'SI access role for tenant account {account_id}',
            '/domain/Capabilities/0': 'CAPABILITY_NAMED_IAM',
            '/domain/StackInstancesGroup/0/DeploymentTargets/Accounts/0': account_id,
            '/domain/TemplateBody': ResourceReference(
                template_resource_id, '/domain/Rendered/Value',
            ),
            '/domain/extra/Region': self.region,
            '/secrets/AWS Credential': self.cloud_credential,
        }
        for index, region in enumerate(self.stackset_regions):
            attributes[f'/domain/StackInstancesGroup/0/Regions/{index}'] = region
        return attributes

"""ProvisionerSettings defaults, validation and env parsing."""

from tenant_provisioner.app.settings import (
    DEFAULT_CONTROL_PLANE_URL,
    DEFAULT_TENANT_EMAIL_TEMPLATE,
    ProvisionerSettings,
)


def test_local_defaults_are_valid():
    settings = ProvisionerSettings()

    assert settings.is_local
    assert settings.validate() == []
    assert settings.control_plane_url == DEFAULT_CONTROL_PLANE_URL
    assert settings.pipeline_timeout_seconds == 900.0
    assert settings.progress_retention_seconds == 600.0


def test_non_local_requires_stores_and_workspace():
    errors = ProvisionerSettings(environment="production").validate()

    assert "production: supabase_url is required" in errors
    assert "production: supabase_service_role_key is required" in errors
    assert "production: control_plane_workspace_id is required" in errors


def test_template_ref_needs_command():
    errors = ProvisionerSettings(template_ref="network/vpc").validate()

    assert errors == ["template_command is required when template_ref is set"]


def test_email_template_needs_account_placeholder():
    errors = ProvisionerSettings(tenant_email_template="ops@example.com").validate()

    assert errors == ["tenant_email_template must contain {account_name}"]


def test_timeouts_must_be_positive():
    errors = ProvisionerSettings(
        commit_timeout_seconds=0, pipeline_timeout_seconds=-1,
    ).validate()

    assert errors == [
        "commit_timeout_seconds must be > 0",
        "pipeline_timeout_seconds must be > 0",
    ]


def test_access_role_settle_may_be_zero_but_not_negative():
    assert ProvisionerSettings(access_role_settle_seconds=0).validate() == []
    assert ProvisionerSettings(access_role_settle_seconds=-1).validate() == [
        "access_role_settle_seconds must be >= 0"
    ]


def test_from_env_parses_every_field():
    settings = ProvisionerSettings.from_env({
        "ENVIRONMENT": "staging",
        "SUPABASE_URL": "https://test.supabase.co",
        "SUPABASE_SERVICE_ROLE_KEY": "svc",
        "CONTROL_PLANE_URL": "https://cp.example.com",
        "CONTROL_PLANE_WORKSPACE_ID": "ws-ops",
        "CONTROL_PLANE_API_TOKEN": "tok",
        "TEMPLATE_COMMAND": "si template run --verbose",
        "TEMPLATE_REF": "network/vpc",
        "TEMPLATE_INPUT_REF": "inputs/'prod env'.json",
        "COMMIT_TIMEOUT_SECONDS": "45",
        "PIPELINE_TIMEOUT_SECONDS": "300",
        "PROGRESS_RETENTION_SECONDS": "60",
        "HOLD_ACTION_KINDS": "Create, Refresh,,",
        "ACCESS_ROLE_PRINCIPAL_ARN": "",
        "ACCESS_ROLE_SETTLE_SECONDS": "30",
    })

    assert settings.environment == "staging"
    assert settings.control_plane_url == "https://cp.example.com"
    assert settings.template_command == ("si", "template", "run", "--verbose")
    assert settings.template_input_ref == "inputs/'prod env'.json"
    assert settings.commit_timeout_seconds == 45.0
    assert settings.pipeline_timeout_seconds == 300.0
    assert settings.progress_retention_seconds == 60.0
    assert settings.hold_action_kinds == ("Create", "Refresh")
    assert settings.tenant_email_template == DEFAULT_TENANT_EMAIL_TEMPLATE
    assert settings.access_role_principal_arn == ""
    assert settings.access_role_settle_seconds == 30.0
    assert settings.validate() == []


def test_from_env_empty_is_local():
    settings = ProvisionerSettings.from_env({})

    assert settings == ProvisionerSettings()

"""Structured logging configuration and request-id correlation."""

import json
import logging

import pytest
import structlog

from tenant_provisioner.app.observability.logging import (
    configure_logging,
    get_logger,
    request_id_ctx,
)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _last_json_line(capsys) -> dict:
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return json.loads(lines[-1])


def test_stdlib_records_render_as_json_with_context(capsys):
    configure_logging(level="INFO", json_output=True, force=True)
    token = request_id_ctx.set("req-12345678")
    try:
        with structlog.contextvars.bound_contextvars(deployment_id="dep-1"):
            logging.getLogger("tenant_provisioner.test").info("step %s done", "open_unit")
    finally:
        request_id_ctx.reset(token)

    entry = _last_json_line(capsys)
    assert entry["event"] == "step open_unit done"
    assert entry["request_id"] == "req-12345678"
    assert entry["deployment_id"] == "dep-1"
    assert entry["level"] == "info"
    assert entry["logger"] == "tenant_provisioner.test"


def test_structlog_logger_shares_the_pipeline(capsys):
    configure_logging(level="DEBUG", json_output=True, force=True)

    get_logger("tenant_provisioner.test").warning("held actions", count=2)

    entry = _last_json_line(capsys)
    assert entry["event"] == "held actions"
    assert entry["count"] == 2
    assert entry["level"] == "warning"


def test_configure_is_idempotent_without_force():
    configure_logging(level="INFO", force=True)
    handlers = list(logging.getLogger().handlers)

    configure_logging(level="DEBUG")

    assert logging.getLogger().handlers == handlers
    assert logging.getLogger().level == logging.INFO


def test_every_line_names_the_service(capsys):
    configure_logging(level="INFO", json_output=True, force=True)

    logging.getLogger("tenant_provisioner.test").info("ready")

    entry = _last_json_line(capsys)
    assert entry["service"] == "tenant-provisioner"
    assert "timestamp" in entry


def test_credentials_are_masked(capsys):
    configure_logging(level="INFO", json_output=True, force=True)

    logging.getLogger("tenant_provisioner.test").info(
        "token resolved", extra={"operator_token": "op-secret", "workspace": "ws-ops"},
    )
    stdlib_entry = _last_json_line(capsys)
    get_logger("tenant_provisioner.test").info(
        "tenant stored", tenant_token="tok-secret", tenant_key="ws_1",
    )
    structlog_entry = _last_json_line(capsys)

    assert stdlib_entry["operator_token"] == "***"
    assert stdlib_entry["workspace"] == "ws-ops"
    assert structlog_entry["tenant_token"] == "***"
    assert structlog_entry["tenant_key"] == "ws_1"

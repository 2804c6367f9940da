"""Structured logging for the tenant provisioner.

Every line the service emits is a JSON object carrying:

  - ``service``: always ``tenant-provisioner``;
  - ``request_id``: set by ``RequestIdMiddleware`` while an HTTP request is
    being served;
  - ``deployment_id``: bound with ``structlog.contextvars`` for the lifetime
    of a pipeline task, so control-plane and store calls made on behalf of a
    deployment are attributable to it.

Operator and tenant tokens pass through the pipeline, so any event key that
names a credential is masked before rendering, whether the record came from
a structlog logger or a stdlib ``logging.getLogger(__name__)`` call with
``extra=``.

Usage::

    from tenant_provisioner.app.observability.logging import configure_logging

    configure_logging()  # once, from the app lifespan
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

import structlog

SERVICE_NAME = "tenant-provisioner"
REDACTED = "***"

# Event keys whose values are never rendered.
SECRET_KEYS = frozenset({
    "token",
    "api_token",
    "tenant_token",
    "operator_token",
    "authorization",
    "service_role_key",
    "supabase_service_role_key",
    "control_plane_api_token",
})

# Per-request chatter that drowns out pipeline progress at INFO.
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_configured = False


def _add_service(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _add_request_id(logger: Any, method_name: str, event_dict: dict) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def _context_processors() -> list:
    """Processors shared by structlog loggers and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        _add_service,
        _add_request_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
    ]


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    force: bool = False,
) -> None:
    """Route stdlib and structlog records through one JSON pipeline.

    Args:
        level: Log level name. Defaults to LOG_LEVEL or INFO.
        json_output: JSON lines when True, console output when False.
            Defaults to LOG_FORMAT == "json" (the default).
        force: Reconfigure even if already configured.
    """
    global _configured
    if _configured and not force:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    structlog.configure(
        processors=[
            *_context_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderers: list = (
        [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        if json_output
        else [structlog.dev.ConsoleRenderer()]
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *_context_processors(),
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _redact_secrets,
            *renderers,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

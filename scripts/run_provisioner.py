#!/usr/bin/env python3
"""Run the tenant provisioner API with explicit args."""
from __future__ import annotations

import argparse
import os

import uvicorn

from tenant_provisioner.app import ProvisionerSettings, create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--environment",
        default=None,
        help="Override ENVIRONMENT (local uses in-memory collaborators).",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    env = dict(os.environ)
    if args.environment:
        env["ENVIRONMENT"] = args.environment
    app = create_app(ProvisionerSettings.from_env(env))
    # Logging is configured by the app lifespan.
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

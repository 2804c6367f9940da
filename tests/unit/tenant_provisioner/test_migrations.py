"""The shipped schema covers every table the Supabase stores use."""

import re
from pathlib import Path

import pytest

from tenant_provisioner.app.db import config_store, deployment_store, secret_store

MIGRATION = (
    Path(__file__).resolve().parents[3]
    / "src" / "tenant_provisioner" / "migrations" / "001_tenant_provisioner.sql"
)


@pytest.fixture(scope="module")
def sql() -> str:
    return MIGRATION.read_text()


@pytest.mark.parametrize(
    "table",
    [
        config_store.TABLE,
        secret_store.TABLE,
        deployment_store.DEPLOYMENTS_TABLE,
        deployment_store.STEPS_TABLE,
    ],
)
def test_store_tables_are_created(sql, table):
    assert f"CREATE TABLE IF NOT EXISTS public.{table} (" in sql


def test_every_create_is_idempotent(sql):
    creates = re.findall(r"CREATE\s+(?:UNIQUE\s+)?(TABLE|INDEX)\s+(\S+\s+\S+\s+\S+)", sql)
    assert creates
    for _, rest in creates:
        assert rest.startswith("IF NOT EXISTS")


def test_upsert_columns_are_unique(sql):
    assert "ux_tenant_configs_name ON public.tenant_configs (name)" in sql
    assert "tenant_key text PRIMARY KEY" in sql
    assert "PRIMARY KEY (deployment_id, seq)" in sql

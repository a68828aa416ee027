from __future__ import annotations

import asyncio

import pytest

from reporter.core.errors import (
    ConfigurationError,
    DataSourceConnectionError,
    SchemaAmbiguousError,
    UnsupportedDataSourceTypeError,
)
from reporter.datasources.config import build_registry, load_datasource_configs
from reporter.datasources.registry import STATUS_AVAILABLE, STATUS_UNAVAILABLE, DataSource, DataSourceRegistry
from reporter.datasources.schema_resolver import check_ambiguous_references, schemas_with_table
from reporter.tests.utils.stubs import StaticSqlSchemaRepository, sql_source, table


def test_registry_membership_is_frozen() -> None:
    registry = DataSourceRegistry([sql_source("midaz", StaticSqlSchemaRepository(tables=[]))])
    assert registry.ids == frozenset({"midaz"})
    assert registry.is_valid("midaz")
    assert not registry.is_valid("other")
    assert registry.get("other") is None

    # Mutating the returned map does not change the registry.
    registry.all().pop("midaz")
    assert registry.get("midaz") is not None


@pytest.mark.asyncio
async def test_connect_is_idempotent_under_concurrency() -> None:
    repository = StaticSqlSchemaRepository(tables=[])
    registry = DataSourceRegistry([sql_source("midaz", repository)])

    await asyncio.gather(*(registry.connect("midaz") for _ in range(5)))

    source = registry.get("midaz")
    assert repository.connects == 1
    assert source is not None and source.is_ready
    assert source.status == STATUS_AVAILABLE


@pytest.mark.asyncio
async def test_close_resets_and_next_use_reconnects() -> None:
    repository = StaticSqlSchemaRepository(tables=[])
    registry = DataSourceRegistry([sql_source("midaz", repository)])

    await registry.connect("midaz")
    await registry.close("midaz")
    source = registry.get("midaz")
    assert source is not None and not source.is_ready
    assert repository.closed == 1

    await registry.connect("midaz")
    assert repository.connects == 2


@pytest.mark.asyncio
async def test_connect_rejects_unregistered_source() -> None:
    registry = DataSourceRegistry([])
    with pytest.raises(DataSourceConnectionError):
        await registry.connect("ghost")


@pytest.mark.asyncio
async def test_connect_rejects_unsupported_kind() -> None:
    registry = DataSourceRegistry([DataSource(id="legacy", kind="oracle")])
    with pytest.raises(UnsupportedDataSourceTypeError) as exc:
        await registry.connect("legacy")
    assert "unsupported database type: oracle" in str(exc.value)


@pytest.mark.asyncio
async def test_connector_failure_is_wrapped() -> None:
    async def broken(_source: DataSource) -> StaticSqlSchemaRepository:
        raise OSError("connection refused")

    registry = DataSourceRegistry([DataSource(id="midaz", kind="postgresql", connector=broken)])
    with pytest.raises(DataSourceConnectionError) as exc:
        await registry.connect("midaz")
    assert "connection refused" in str(exc.value)
    source = registry.get("midaz")
    assert source is not None
    assert source.status == STATUS_UNAVAILABLE
    assert source.retry_count == 1


def test_schemas_with_table_lists_every_match() -> None:
    tables = [table("public", "orders"), table("sales", "orders"), table("sales", "items")]
    assert schemas_with_table(tables, "orders") == ["public", "sales"]
    assert schemas_with_table(tables, "missing") == []


def test_public_schema_breaks_the_tie() -> None:
    tables = [table("public", "orders"), table("sales", "orders")]
    check_ambiguous_references("midaz", tables, ["orders"])


def test_ambiguous_bare_reference_names_every_schema() -> None:
    tables = [table("billing", "orders"), table("sales", "orders")]
    with pytest.raises(SchemaAmbiguousError) as exc:
        check_ambiguous_references("midaz", tables, ["orders"])
    assert exc.value.schemas == ["billing", "sales"]
    assert "midaz:billing.orders" in exc.value.message


def test_check_ambiguous_references_ignores_qualified_and_unknown() -> None:
    tables = [table("billing", "orders"), table("sales", "orders")]
    check_ambiguous_references("midaz", tables, ["sales__orders", "missing"])
    with pytest.raises(SchemaAmbiguousError):
        check_ambiguous_references("midaz", tables, ["orders"])


def test_load_datasource_configs_from_environment() -> None:
    environ = {
        "DATASOURCE_MIDAZ_CONFIG_NAME": "midaz_onboarding",
        "DATASOURCE_MIDAZ_HOST": "db",
        "DATASOURCE_MIDAZ_PORT": "5432",
        "DATASOURCE_MIDAZ_USER": "reader",
        "DATASOURCE_MIDAZ_PASSWORD": "s3cret",
        "DATASOURCE_MIDAZ_DATABASE": "onboarding",
        "DATASOURCE_MIDAZ_TYPE": "PostgreSQL",
        "DATASOURCE_MIDAZ_SCHEMAS": "public, sales",
        "DATASOURCE_CRM_CONFIG_NAME": "plugin_crm",
        "DATASOURCE_CRM_TYPE": "mongodb",
        "DATASOURCE_CRM_HOST": "mongo",
        "DATASOURCE_CRM_DATABASE": "crm",
        "DATASOURCE_CRM_MIDAZ_ORGANIZATION_ID": "org1",
        "UNRELATED": "x",
    }
    configs = load_datasource_configs(environ)
    assert [config.name for config in configs] == ["crm", "midaz"]

    midaz = configs[1]
    assert midaz.type == "postgresql"
    assert midaz.schemas == ["public", "sales"]
    assert midaz.postgres_dsn() == "postgresql+asyncpg://reader:s3cret@db:5432/onboarding"

    registry = build_registry(configs)
    assert registry.ids == frozenset({"midaz_onboarding", "plugin_crm"})
    crm = registry.get("plugin_crm")
    assert crm is not None and crm.organization_id == "org1"
    assert crm.dsn == "mongodb://mongo/crm"


def test_build_registry_rejects_duplicate_ids() -> None:
    environ = {
        "DATASOURCE_A_CONFIG_NAME": "shared",
        "DATASOURCE_A_TYPE": "postgresql",
        "DATASOURCE_B_CONFIG_NAME": "shared",
        "DATASOURCE_B_TYPE": "postgresql",
    }
    with pytest.raises(ConfigurationError):
        build_registry(load_datasource_configs(environ))

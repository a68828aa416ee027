from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from reporter.datasources.base import ColumnInformation, TableSchema
from reporter.datasources.registry import DataSource


logger = logging.getLogger(__name__)

# External pools stay small; discovery is rare and short-lived.
POOL_SIZE = 2
MAX_OVERFLOW = 3


def _inspect_schemas(connection: Connection, schemas: list[str]) -> list[TableSchema]:
    inspector = inspect(connection)
    tables: list[TableSchema] = []
    for schema in schemas:
        for table_name in sorted(inspector.get_table_names(schema=schema)):
            primary_key = inspector.get_pk_constraint(table_name, schema=schema) or {}
            pk_columns = set(primary_key.get("constrained_columns") or [])
            columns = [
                ColumnInformation(
                    name=column["name"],
                    data_type=str(column["type"]),
                    is_nullable=bool(column.get("nullable", True)),
                    is_primary_key=column["name"] in pk_columns,
                )
                for column in inspector.get_columns(table_name, schema=schema)
            ]
            tables.append(TableSchema(schema_name=schema, table_name=table_name, columns=columns))
    return tables


class PostgresSchemaRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_database_schema(self, schemas: list[str]) -> list[TableSchema]:
        logger.info("datasource_schema_discovery schemas=%s", ",".join(schemas))
        async with self._engine.connect() as connection:
            tables = await connection.run_sync(_inspect_schemas, schemas)
        logger.info("datasource_schema_discovered tables=%s schemas=%s", len(tables), len(schemas))
        return tables

    async def close_connection(self) -> None:
        await self._engine.dispose()


async def connect_postgres(source: DataSource) -> PostgresSchemaRepository:
    connect_args: dict[str, Any] = {}
    sslmode = source.options.get("sslmode", "")
    if sslmode and sslmode != "disable":
        # asyncpg takes the libpq sslmode names through its ssl argument.
        connect_args["ssl"] = sslmode
    engine = create_async_engine(
        source.dsn,
        pool_pre_ping=True,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        connect_args=connect_args,
    )
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
    except Exception:
        await engine.dispose()
        raise
    return PostgresSchemaRepository(engine)

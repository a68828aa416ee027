from __future__ import annotations

# Re-export the registry surface for centralized imports.

from reporter.datasources.base import (
    DEFAULT_SQL_SCHEMAS,
    MONGODB_TYPE,
    POSTGRESQL_TYPE,
    CollectionSchema,
    ColumnInformation,
    FieldInformation,
    TableSchema,
)
from reporter.datasources.config import build_registry, default_connectors, load_datasource_configs
from reporter.datasources.registry import DataSource, DataSourceRegistry

__all__ = [
    "DEFAULT_SQL_SCHEMAS",
    "MONGODB_TYPE",
    "POSTGRESQL_TYPE",
    "CollectionSchema",
    "ColumnInformation",
    "FieldInformation",
    "TableSchema",
    "DataSource",
    "DataSourceRegistry",
    "build_registry",
    "default_connectors",
    "load_datasource_configs",
]

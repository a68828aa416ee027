from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


POSTGRESQL_TYPE = "postgresql"
MONGODB_TYPE = "mongodb"
DEFAULT_SQL_SCHEMAS = ("public",)


@dataclass(frozen=True)
class ColumnInformation:
    name: str
    data_type: str = ""
    is_nullable: bool = True
    is_primary_key: bool = False


@dataclass(frozen=True)
class TableSchema:
    schema_name: str
    table_name: str
    columns: list[ColumnInformation] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"


@dataclass(frozen=True)
class FieldInformation:
    # Nested document paths are flattened with dots, e.g. "contact.primary_email".
    name: str
    data_type: str = ""


@dataclass(frozen=True)
class CollectionSchema:
    collection_name: str
    fields: list[FieldInformation] = field(default_factory=list)


class SqlSchemaRepository(Protocol):
    async def get_database_schema(self, schemas: list[str]) -> list[TableSchema]:
        ...

    async def close_connection(self) -> None:
        ...


class DocumentSchemaRepository(Protocol):
    async def get_database_schema(self) -> list[CollectionSchema]:
        ...

    async def get_database_schema_for_organization(
        self, organization_id: str
    ) -> list[CollectionSchema]:
        ...

    async def close_connection(self) -> None:
        ...

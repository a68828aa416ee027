from __future__ import annotations

import logging

from reporter.core.config import PLUGIN_CRM_DATASOURCE
from reporter.core.context import RequestContext
from reporter.core.errors import (
    MissingDataSourceError,
    MissingSchemaTableError,
    MissingTableFieldsError,
    UnsupportedDataSourceTypeError,
)
from reporter.datasources.base import DEFAULT_SQL_SCHEMAS, CollectionSchema, TableSchema
from reporter.datasources.registry import DataSource, DataSourceRegistry
from reporter.datasources.schema_resolver import check_ambiguous_references
from reporter.domain.entities import MappedFields


logger = logging.getLogger(__name__)

ORGANIZATION_PSEUDO_TABLE = "organization"


def missing_sql_fields(expected: list[str], table: TableSchema) -> list[str]:
    # JSON column paths ("fee.amount") are checked on their root column only.
    columns = {column.name.lower() for column in table.columns}
    return [field for field in expected if field.split(".", 1)[0].lower() not in columns]


def missing_document_fields(expected: list[str], collection: CollectionSchema) -> list[str]:
    known = {field.name.lower() for field in collection.fields}
    missing: list[str] = []
    for field in expected:
        lowered = field.lower()
        if lowered in known or lowered.split(".", 1)[0] in known:
            continue
        missing.append(field)
    return missing


def copy_for_validation(mapped_fields: MappedFields, registry: DataSourceRegistry) -> MappedFields:
    """Deep copy ``mapped_fields``, renaming plugin_crm tables to their physical names."""
    copied: MappedFields = {}
    for datasource_id, tables in mapped_fields.items():
        suffix = ""
        if datasource_id == PLUGIN_CRM_DATASOURCE:
            source = registry.get(datasource_id)
            suffix = f"_{source.organization_id}" if source is not None else "_"
        copied[datasource_id] = {f"{table}{suffix}": list(fields) for table, fields in tables.items()}
    return copied


def transform_mapped_fields_for_storage(
    mapped_fields: MappedFields, registry: DataSourceRegistry
) -> MappedFields:
    """Return the field map as persisted on a template.

    plugin_crm maps gain an ``organization`` pseudo-table holding the external
    organization ID, but only when that ID is configured. Other sources are copied as is.
    """
    transformed: MappedFields = {}
    for datasource_id, tables in mapped_fields.items():
        copied = {table: list(fields) for table, fields in tables.items()}
        if datasource_id == PLUGIN_CRM_DATASOURCE:
            source = registry.get(datasource_id)
            organization_id = source.organization_id if source is not None else ""
            if organization_id:
                copied[ORGANIZATION_PSEUDO_TABLE] = [organization_id]
        transformed[datasource_id] = copied
    return transformed


def _leftover_error(datasource_id: str, remaining: dict[str, list[str]]) -> MissingSchemaTableError | None:
    if not remaining:
        return None
    return MissingSchemaTableError(sorted(remaining), datasource_id)


def _validate_sql_tables(
    datasource_id: str, catalog: list[TableSchema], remaining: dict[str, list[str]]
) -> None:
    check_ambiguous_references(datasource_id, catalog, list(remaining))
    for table in catalog:
        qualified = table.qualified_name
        # Preference: "schema__table", then "schema.table", then the bare name.
        candidates = (qualified.replace(".", "__", 1), qualified, table.table_name)
        key = next((candidate for candidate in candidates if candidate in remaining), None)
        if key is None:
            continue
        fields = remaining.pop(key)
        missing = missing_sql_fields(fields, table)
        if missing:
            raise MissingTableFieldsError(missing)


def _validate_document_collections(
    collections: list[CollectionSchema], remaining: dict[str, list[str]]
) -> None:
    for collection in collections:
        if collection.collection_name not in remaining:
            continue
        fields = remaining.pop(collection.collection_name)
        missing = missing_document_fields(fields, collection)
        if missing:
            raise MissingTableFieldsError(missing)


class MappedFieldValidator:
    """Checks a template field map against the live schemas of its data sources."""

    def __init__(self, registry: DataSourceRegistry) -> None:
        self._registry = registry

    def _require_registered(self, mapped_fields: MappedFields) -> None:
        # Both the frozen ID set and the descriptor map must know the source.
        for datasource_id in mapped_fields:
            if not self._registry.is_valid(datasource_id):
                logger.error("datasource_unknown datasource=%s", datasource_id)
                raise MissingDataSourceError(datasource_id)
            if datasource_id not in self._registry.all():
                logger.error("datasource_descriptor_missing datasource=%s", datasource_id)
                raise MissingDataSourceError(datasource_id)

    async def _validate_source(
        self, source: DataSource, remaining: dict[str, list[str]]
    ) -> None:
        if source.is_sql:
            schemas = source.schemas or list(DEFAULT_SQL_SCHEMAS)
            catalog = await source.sql_repository.get_database_schema(schemas)  # type: ignore[union-attr]
            _validate_sql_tables(source.id, catalog, remaining)
        else:
            repository = source.document_repository
            if source.id == PLUGIN_CRM_DATASOURCE:
                collections = await repository.get_database_schema_for_organization(  # type: ignore[union-attr]
                    source.organization_id
                )
            else:
                collections = await repository.get_database_schema()  # type: ignore[union-attr]
            _validate_document_collections(collections, remaining)
        leftover = _leftover_error(source.id, remaining)
        if leftover is not None:
            raise leftover

    async def validate(self, ctx: RequestContext, mapped_fields: MappedFields) -> None:
        self._require_registered(mapped_fields)
        to_validate = copy_for_validation(mapped_fields, self._registry)

        for datasource_id in mapped_fields:
            source = self._registry.get(datasource_id)
            if source is None:
                raise MissingDataSourceError(datasource_id)
            if not (source.is_sql or source.is_document):
                raise UnsupportedDataSourceTypeError(source.kind, datasource_id)
            await self._registry.connect(datasource_id, source)
            try:
                await self._validate_source(source, to_validate[datasource_id])
            except Exception:
                logger.warning(
                    "mapped_fields_invalid datasource=%s request_id=%s", datasource_id, ctx.request_id
                )
                # The validation error wins over a close error.
                try:
                    await self._registry.close(datasource_id)
                except Exception:
                    logger.exception("datasource_close_failed datasource=%s", datasource_id)
                raise
            await self._registry.close(datasource_id)

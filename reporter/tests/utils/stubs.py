from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from reporter.cache.keys import scoped_key
from reporter.core.context import RequestContext
from reporter.datasources.base import (
    MONGODB_TYPE,
    POSTGRESQL_TYPE,
    CollectionSchema,
    ColumnInformation,
    FieldInformation,
    TableSchema,
)
from reporter.datasources.registry import DataSource
from reporter.domain.entities import (
    ListFilter,
    MappedFields,
    ReportRecord,
    ReportStatus,
    TemplateRecord,
    ensure_transition,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCache:
    """Cache double that applies tenant scoping the way RedisCache does."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, timedelta] = {}
        self.fail_set_if_absent: Exception | None = None
        self.fail_set: Exception | None = None
        self.set_calls = 0

    async def set_if_absent(self, ctx: RequestContext, key: str, value: str, ttl: timedelta) -> bool:
        if self.fail_set_if_absent is not None:
            raise self.fail_set_if_absent
        full_key = scoped_key(ctx, key)
        if full_key in self.values:
            return False
        self.values[full_key] = value
        self.ttls[full_key] = ttl
        return True

    async def get(self, ctx: RequestContext, key: str) -> str:
        return self.values.get(scoped_key(ctx, key), "")

    async def set(self, ctx: RequestContext, key: str, value: str, ttl: timedelta) -> None:
        self.set_calls += 1
        if self.fail_set is not None:
            raise self.fail_set
        full_key = scoped_key(ctx, key)
        self.values[full_key] = value
        self.ttls[full_key] = ttl


class InMemoryTemplateRepository:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, UUID], TemplateRecord] = {}
        self.calls: list[str] = []
        self.fail_update: Exception | None = None

    @staticmethod
    def _key(ctx: RequestContext, template_id: UUID) -> tuple[str, UUID]:
        return (ctx.tenant_id or "", template_id)

    def _visible(self, ctx: RequestContext, template_id: UUID) -> TemplateRecord | None:
        record = self.rows.get(self._key(ctx, template_id))
        if record is None or record.deleted_at is not None:
            return None
        return record

    async def create(self, ctx: RequestContext, record: TemplateRecord) -> TemplateRecord:
        self.calls.append("create")
        self.rows[self._key(ctx, record.id)] = record
        return record

    async def find_by_id(self, ctx: RequestContext, template_id: UUID) -> TemplateRecord | None:
        self.calls.append("find_by_id")
        return self._visible(ctx, template_id)

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[TemplateRecord]:
        tenant = ctx.tenant_id or ""
        records = [
            record
            for (row_tenant, _), record in self.rows.items()
            if row_tenant == tenant and record.deleted_at is None
        ]
        if filters.output_format:
            records = [r for r in records if r.output_format == filters.output_format.lower()]
        records.sort(key=lambda r: r.created_at, reverse=filters.sort_order == "desc")
        return records[filters.offset : filters.offset + filters.limit]

    async def update(self, ctx: RequestContext, template_id: UUID, patch: dict[str, Any]) -> bool:
        self.calls.append("update")
        if self.fail_update is not None:
            raise self.fail_update
        record = self._visible(ctx, template_id)
        if record is None:
            return False
        self.rows[self._key(ctx, template_id)] = record.model_copy(update=patch)
        return True

    async def delete(self, ctx: RequestContext, template_id: UUID, hard_delete: bool) -> bool:
        self.calls.append("hard_delete" if hard_delete else "delete")
        key = self._key(ctx, template_id)
        if hard_delete:
            return self.rows.pop(key, None) is not None
        record = self._visible(ctx, template_id)
        if record is None:
            return False
        self.rows[key] = record.model_copy(update={"deleted_at": _utc_now()})
        return True

    async def find_output_format_by_id(self, ctx: RequestContext, template_id: UUID) -> str | None:
        self.calls.append("find_output_format_by_id")
        record = self._visible(ctx, template_id)
        return record.output_format if record is not None else None

    async def find_mapped_fields_and_output_format_by_id(
        self, ctx: RequestContext, template_id: UUID
    ) -> tuple[str, MappedFields] | None:
        record = self._visible(ctx, template_id)
        if record is None:
            return None
        return record.output_format, record.mapped_fields


class InMemoryReportRepository:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, UUID], ReportRecord] = {}
        self.create_calls = 0
        self.status_updates: list[tuple[str, UUID, dict[str, Any] | None]] = []
        self.fail_status_update: Exception | None = None

    async def create(self, ctx: RequestContext, record: ReportRecord) -> ReportRecord:
        self.create_calls += 1
        self.rows[(ctx.tenant_id or "", record.id)] = record
        return record

    async def find_by_id(self, ctx: RequestContext, report_id: UUID) -> ReportRecord | None:
        record = self.rows.get((ctx.tenant_id or "", report_id))
        if record is None or record.deleted_at is not None:
            return None
        return record

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[ReportRecord]:
        tenant = ctx.tenant_id or ""
        records = [r for (t, _), r in self.rows.items() if t == tenant and r.deleted_at is None]
        if filters.status is not None:
            records = [r for r in records if r.status is filters.status]
        return records[filters.offset : filters.offset + filters.limit]

    async def update_report_status_by_id(
        self,
        ctx: RequestContext,
        status: str,
        report_id: UUID,
        completed_at: datetime,
        metadata: dict[str, Any] | None,
    ) -> bool:
        if self.fail_status_update is not None:
            raise self.fail_status_update
        self.status_updates.append((status, report_id, metadata))
        key = (ctx.tenant_id or "", report_id)
        record = self.rows.get(key)
        if record is None:
            return False
        ensure_transition(record.status.value, status)
        self.rows[key] = record.model_copy(
            update={
                "status": ReportStatus(status),
                "completed_at": completed_at,
                "metadata": metadata,
                "updated_at": completed_at,
            }
        )
        return True


class InMemoryObjectStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_put: BaseException | None = None

    async def put(self, name: str, content_type: str, data: bytes) -> None:
        if self.fail_put is not None:
            raise self.fail_put
        self.objects[name] = data
        self.content_types[name] = content_type

    async def get(self, name: str) -> bytes:
        if name not in self.objects:
            raise KeyError(name)
        return self.objects[name]


class RecordingPublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    async def publish_default(
        self, ctx: RequestContext, exchange: str, routing_key: str, message: dict[str, Any]
    ) -> None:
        if self.error is not None:
            raise self.error
        self.messages.append((exchange, routing_key, message))


@dataclass
class StaticSqlSchemaRepository:
    tables: list[TableSchema]
    close_error: Exception | None = None
    fetch_error: Exception | None = None
    requested_schemas: list[list[str]] = field(default_factory=list)
    connects: int = 0
    closed: int = 0

    async def get_database_schema(self, schemas: list[str]) -> list[TableSchema]:
        self.requested_schemas.append(list(schemas))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [table for table in self.tables if table.schema_name in schemas]

    async def close_connection(self) -> None:
        self.closed += 1
        if self.close_error is not None:
            raise self.close_error


@dataclass
class StaticDocumentSchemaRepository:
    collections: list[CollectionSchema]
    organization_calls: list[str] = field(default_factory=list)
    closed: int = 0

    async def get_database_schema(self) -> list[CollectionSchema]:
        return list(self.collections)

    async def get_database_schema_for_organization(self, organization_id: str) -> list[CollectionSchema]:
        self.organization_calls.append(organization_id)
        suffix = f"_{organization_id}"
        return [c for c in self.collections if c.collection_name.endswith(suffix)]

    async def close_connection(self) -> None:
        self.closed += 1


def table(schema_name: str, table_name: str, *columns: str) -> TableSchema:
    return TableSchema(
        schema_name=schema_name,
        table_name=table_name,
        columns=[ColumnInformation(name=column) for column in columns],
    )


def collection(collection_name: str, *fields: str) -> CollectionSchema:
    return CollectionSchema(
        collection_name=collection_name,
        fields=[FieldInformation(name=name) for name in fields],
    )


def sql_source(
    datasource_id: str,
    repository: StaticSqlSchemaRepository,
    *,
    schemas: list[str] | None = None,
    database: str = "",
) -> DataSource:
    async def connector(_source: DataSource) -> StaticSqlSchemaRepository:
        repository.connects += 1
        return repository

    return DataSource(
        id=datasource_id,
        kind=POSTGRESQL_TYPE,
        database=database or datasource_id,
        schemas=schemas or ["public"],
        connector=connector,
    )


def document_source(
    datasource_id: str,
    repository: StaticDocumentSchemaRepository,
    *,
    organization_id: str = "",
    database: str = "",
) -> DataSource:
    async def connector(_source: DataSource) -> StaticDocumentSchemaRepository:
        return repository

    return DataSource(
        id=datasource_id,
        kind=MONGODB_TYPE,
        database=database or datasource_id,
        organization_id=organization_id,
        connector=connector,
    )

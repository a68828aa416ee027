from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reporter.core.context import RequestContext
from reporter.domain.entities import ListFilter, MappedFields, TemplateRecord
from reporter.domain.models import Template
from reporter.persistence.db import session_scope
from reporter.persistence.guards import not_deleted, tenant_predicate, tenant_value


# Columns a sparse update may touch.
_PATCHABLE = {"description", "output_format", "mapped_fields", "updated_at"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_record(row: Template) -> TemplateRecord:
    return TemplateRecord(
        id=row.id,
        output_format=row.output_format,
        description=row.description or "",
        file_name=row.file_name,
        mapped_fields=row.mapped_fields or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


class SqlTemplateRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    def _visible(self, ctx: RequestContext, template_id: UUID) -> list[object]:
        # Soft-deleted and foreign-tenant rows behave as missing.
        return [Template.id == template_id, tenant_predicate(Template, ctx), not_deleted(Template)]

    async def create(self, ctx: RequestContext, record: TemplateRecord) -> TemplateRecord:
        async with session_scope(self._sessions) as session:
            session.add(
                Template(
                    id=record.id,
                    tenant_id=tenant_value(ctx),
                    output_format=record.output_format,
                    description=record.description,
                    file_name=record.file_name,
                    mapped_fields=record.mapped_fields,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                    deleted_at=None,
                )
            )
        return record

    async def find_by_id(self, ctx: RequestContext, template_id: UUID) -> TemplateRecord | None:
        async with self._sessions() as session:
            result = await session.execute(select(Template).where(*self._visible(ctx, template_id)))
            row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[TemplateRecord]:
        stmt = select(Template).where(tenant_predicate(Template, ctx), not_deleted(Template))
        if filters.output_format:
            stmt = stmt.where(Template.output_format == filters.output_format.lower())
        order = Template.created_at.asc() if filters.sort_order == "asc" else Template.created_at.desc()
        stmt = stmt.order_by(order, Template.id).offset(filters.offset).limit(filters.limit)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]

    async def update(self, ctx: RequestContext, template_id: UUID, patch: dict[str, Any]) -> bool:
        values = {key: value for key, value in patch.items() if key in _PATCHABLE}
        if not values:
            return True
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                update(Template).where(*self._visible(ctx, template_id)).values(**values)
            )
        return bool(result.rowcount)

    async def delete(self, ctx: RequestContext, template_id: UUID, hard_delete: bool) -> bool:
        async with session_scope(self._sessions) as session:
            if hard_delete:
                # Hard delete also erases soft-deleted rows; used by create rollback.
                stmt = delete(Template).where(
                    Template.id == template_id, tenant_predicate(Template, ctx)
                )
            else:
                stmt = (
                    update(Template)
                    .where(*self._visible(ctx, template_id))
                    .values(deleted_at=_utc_now())
                )
            result = await session.execute(stmt)
        return bool(result.rowcount)

    async def find_output_format_by_id(self, ctx: RequestContext, template_id: UUID) -> str | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Template.output_format).where(*self._visible(ctx, template_id))
            )
            return result.scalar_one_or_none()

    async def find_mapped_fields_and_output_format_by_id(
        self, ctx: RequestContext, template_id: UUID
    ) -> tuple[str, MappedFields] | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Template.output_format, Template.mapped_fields).where(
                    *self._visible(ctx, template_id)
                )
            )
            row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1] or {}

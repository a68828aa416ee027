from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reporter.core.context import RequestContext
from reporter.domain.entities import ListFilter, ReportRecord, ensure_transition
from reporter.domain.models import Report
from reporter.persistence.db import session_scope
from reporter.persistence.guards import not_deleted, tenant_predicate, tenant_value


def _dump_filters(record: ReportRecord) -> dict[str, Any] | None:
    if record.filters is None:
        return None
    return {
        datasource: {
            table: {
                field: condition.model_dump(mode="json", by_alias=True, exclude_none=True)
                for field, condition in fields.items()
            }
            for table, fields in tables.items()
        }
        for datasource, tables in record.filters.items()
    }


def _to_record(row: Report) -> ReportRecord:
    return ReportRecord(
        id=row.id,
        template_id=row.template_id,
        filters=row.filters,
        status=row.status,
        metadata=row.metadata_json,
        completed_at=row.completed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


class SqlReportRepository:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def create(self, ctx: RequestContext, record: ReportRecord) -> ReportRecord:
        async with session_scope(self._sessions) as session:
            session.add(
                Report(
                    id=record.id,
                    tenant_id=tenant_value(ctx),
                    template_id=record.template_id,
                    filters=_dump_filters(record),
                    status=record.status.value,
                    metadata_json=record.metadata,
                    completed_at=record.completed_at,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                    deleted_at=None,
                )
            )
        return record

    async def find_by_id(self, ctx: RequestContext, report_id: UUID) -> ReportRecord | None:
        async with self._sessions() as session:
            result = await session.execute(
                select(Report).where(
                    Report.id == report_id, tenant_predicate(Report, ctx), not_deleted(Report)
                )
            )
            row = result.scalar_one_or_none()
        return _to_record(row) if row is not None else None

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[ReportRecord]:
        stmt = select(Report).where(tenant_predicate(Report, ctx), not_deleted(Report))
        if filters.status is not None:
            stmt = stmt.where(Report.status == filters.status.value)
        order = Report.created_at.asc() if filters.sort_order == "asc" else Report.created_at.desc()
        stmt = stmt.order_by(order, Report.id).offset(filters.offset).limit(filters.limit)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]

    async def update_report_status_by_id(
        self,
        ctx: RequestContext,
        status: str,
        report_id: UUID,
        completed_at: datetime,
        metadata: dict[str, Any] | None,
    ) -> bool:
        async with session_scope(self._sessions) as session:
            # Lock the row so concurrent status writers serialize on the transition check.
            result = await session.execute(
                select(Report)
                .where(Report.id == report_id, tenant_predicate(Report, ctx), not_deleted(Report))
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return False
            ensure_transition(row.status, status)
            row.status = status
            row.completed_at = completed_at
            row.metadata_json = metadata
            row.updated_at = datetime.now(timezone.utc)
        return True

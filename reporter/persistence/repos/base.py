from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from reporter.core.context import RequestContext
from reporter.domain.entities import ListFilter, MappedFields, ReportRecord, TemplateRecord


class TemplateRepository(Protocol):
    async def create(self, ctx: RequestContext, record: TemplateRecord) -> TemplateRecord:
        ...

    async def find_by_id(self, ctx: RequestContext, template_id: UUID) -> TemplateRecord | None:
        ...

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[TemplateRecord]:
        ...

    async def update(self, ctx: RequestContext, template_id: UUID, patch: dict[str, Any]) -> bool:
        ...

    async def delete(self, ctx: RequestContext, template_id: UUID, hard_delete: bool) -> bool:
        ...

    async def find_output_format_by_id(self, ctx: RequestContext, template_id: UUID) -> str | None:
        ...

    async def find_mapped_fields_and_output_format_by_id(
        self, ctx: RequestContext, template_id: UUID
    ) -> tuple[str, MappedFields] | None:
        ...


class ReportRepository(Protocol):
    async def create(self, ctx: RequestContext, record: ReportRecord) -> ReportRecord:
        ...

    async def find_by_id(self, ctx: RequestContext, report_id: UUID) -> ReportRecord | None:
        ...

    async def find_list(self, ctx: RequestContext, filters: ListFilter) -> list[ReportRecord]:
        ...

    async def update_report_status_by_id(
        self,
        ctx: RequestContext,
        status: str,
        report_id: UUID,
        completed_at: datetime,
        metadata: dict[str, Any] | None,
    ) -> bool:
        ...

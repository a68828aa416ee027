from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from reporter.cache.base import Cache
from reporter.core.config import get_settings
from reporter.core.context import RequestContext
from reporter.core.errors import (
    ConfigurationError,
    EntityNotFoundError,
    InvalidTemplateIDError,
    ReportStatusNotFinishedError,
)
from reporter.core.ids import new_uuid7, parse_uuid
from reporter.domain.entities import (
    CreateReportInput,
    ListFilter,
    MappedFields,
    ReportFilters,
    ReportMessage,
    ReportRecord,
    ReportStatus,
)
from reporter.persistence.repos.base import ReportRepository, TemplateRepository
from reporter.queue.publisher import QueuePublisher
from reporter.services.field_validation import MappedFieldValidator
from reporter.services.idempotency import IdempotencyCoordinator
from reporter.services.telemetry import increment_counter
from reporter.storage.base import ObjectStorage
from reporter.templating.formats import mime_type_for


logger = logging.getLogger(__name__)

REPORT_ENTITY = "report"
TEMPLATES_ENTITY = "templates"
QUEUE_FAILURE_MESSAGE = "Failed to send report to queue"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def filters_to_mapped_fields(filters: ReportFilters, max_keys: int) -> MappedFields:
    """Derive the field map a filter set touches, capped at ``max_keys`` fields per table."""
    mapped: MappedFields = {}
    for datasource_id, tables in filters.items():
        mapped[datasource_id] = {}
        for table, conditions in tables.items():
            # First max_keys fields in request body order.
            mapped[datasource_id][table] = list(conditions)[:max_keys]
    return mapped


def report_object_name(template_id: UUID, report_id: UUID, output_format: str) -> str:
    return f"{template_id}/{report_id}.{output_format}"


class ReportService:
    def __init__(
        self,
        *,
        report_repository: ReportRepository,
        template_repository: TemplateRepository,
        publisher: QueuePublisher,
        storage: ObjectStorage,
        validator: MappedFieldValidator,
        cache: Cache | None = None,
        exchange: str | None = None,
        routing_key: str | None = None,
        max_schema_preview_keys: int | None = None,
    ) -> None:
        settings = get_settings()
        # Queue coordinates are read once; empty values are rejected here.
        self._exchange = exchange if exchange is not None else settings.report_queue_exchange
        self._routing_key = routing_key if routing_key is not None else settings.report_queue_routing_key
        if not self._exchange or not self._routing_key:
            raise ConfigurationError("report queue exchange and routing key are required")
        self._reports = report_repository
        self._templates = template_repository
        self._publisher = publisher
        self._storage = storage
        self._validator = validator
        self._max_keys = max_schema_preview_keys or settings.max_schema_preview_keys
        self._idempotency: IdempotencyCoordinator[ReportRecord] | None = None
        if cache is not None:
            self._idempotency = IdempotencyCoordinator(cache, ReportRecord)

    async def _mark_publish_failed(self, ctx: RequestContext, report_id: UUID) -> None:
        try:
            await self._reports.update_report_status_by_id(
                ctx,
                ReportStatus.ERROR.value,
                report_id,
                _utc_now(),
                {"error": QUEUE_FAILURE_MESSAGE},
            )
        except Exception:
            # The publish error is what the caller sees.
            logger.exception("report_status_update_failed report_id=%s", report_id)

    async def create(self, ctx: RequestContext, report_input: CreateReportInput) -> ReportRecord:
        logger.info(
            "report_create template_id=%s request_id=%s", report_input.template_id, ctx.request_id
        )
        acquisition = None
        if self._idempotency is not None:
            acquisition = await self._idempotency.acquire(ctx, report_input.canonical_payload())
            if not acquisition.first_call and acquisition.cached is not None:
                return acquisition.cached

        template_id = parse_uuid(report_input.template_id)
        if template_id is None:
            raise InvalidTemplateIDError()

        found = await self._templates.find_mapped_fields_and_output_format_by_id(ctx, template_id)
        if found is None:
            logger.error("report_template_missing template_id=%s", template_id)
            raise EntityNotFoundError(TEMPLATES_ENTITY, entity_type=TEMPLATES_ENTITY)
        output_format, mapped_fields = found

        if report_input.filters is not None:
            filter_fields = filters_to_mapped_fields(report_input.filters, self._max_keys)
            await self._validator.validate(ctx, filter_fields)

        now = _utc_now()
        record = ReportRecord(
            id=new_uuid7(),
            template_id=template_id,
            filters=report_input.filters,
            status=ReportStatus.PROCESSING,
            metadata=None,
            completed_at=None,
            created_at=now,
            updated_at=now,
        )
        created = await self._reports.create(ctx, record)

        message = ReportMessage(
            report_id=created.id,
            template_id=template_id,
            output_format=output_format,
            mapped_fields=mapped_fields,
            filters=report_input.filters,
        )
        try:
            await self._publisher.publish_default(
                ctx, self._exchange, self._routing_key, message.to_wire()
            )
        except Exception:
            increment_counter("report_publish_failed")
            logger.error("report_publish_failed report_id=%s queue=%s", created.id, self._exchange)
            await self._mark_publish_failed(ctx, created.id)
            raise

        increment_counter("report_created")
        logger.info("report_created report_id=%s request_id=%s", created.id, ctx.request_id)
        if self._idempotency is not None and acquisition is not None:
            await self._idempotency.publish(ctx, acquisition.key, created)
        return created

    async def get_by_id(self, ctx: RequestContext, report_id: UUID) -> ReportRecord:
        record = await self._reports.find_by_id(ctx, report_id)
        if record is None:
            raise EntityNotFoundError(REPORT_ENTITY, entity_type=REPORT_ENTITY)
        return record

    async def list(self, ctx: RequestContext, filters: ListFilter | None = None) -> list[ReportRecord]:
        return await self._reports.find_list(ctx, filters or ListFilter())

    async def download(self, ctx: RequestContext, report_id: UUID) -> tuple[bytes, str, str]:
        """Return ``(content, file_name, mime_type)`` for a finished report."""
        record = await self.get_by_id(ctx, report_id)
        if record.status is not ReportStatus.FINISHED:
            logger.info("report_not_finished report_id=%s status=%s", report_id, record.status.value)
            raise ReportStatusNotFinishedError()

        template = await self._templates.find_by_id(ctx, record.template_id)
        if template is None:
            raise EntityNotFoundError("template", entity_type="template")

        object_name = report_object_name(template.id, record.id, template.output_format)
        content = await self._storage.get(object_name)
        logger.info("report_downloaded object=%s size=%s", object_name, len(content))
        file_name = f"{record.id}.{template.output_format}"
        return content, file_name, mime_type_for(template.output_format)

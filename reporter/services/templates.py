from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from reporter.cache.base import Cache
from reporter.core.context import RequestContext
from reporter.core.errors import (
    EntityNotFoundError,
    OutputFormatWithoutTemplateFileError,
)
from reporter.core.ids import new_uuid7
from reporter.datasources.registry import DataSourceRegistry
from reporter.domain.entities import ListFilter, MappedFields, TemplateRecord
from reporter.persistence.repos.base import TemplateRepository
from reporter.services.field_validation import (
    MappedFieldValidator,
    transform_mapped_fields_for_storage,
)
from reporter.services.idempotency import IdempotencyCoordinator
from reporter.services.telemetry import increment_counter
from reporter.storage.base import ObjectStorage
from reporter.templating.fields import extract_mapped_fields
from reporter.templating.formats import (
    ensure_valid_output_format,
    normalize_output_format,
    validate_file_format,
)


logger = logging.getLogger(__name__)

TEMPLATE_ENTITY = "template"
TEMPLATE_IDEMPOTENCY_NAMESPACE = "template"
# Upper bound for the compensating delete when the request is being cancelled.
ROLLBACK_TIMEOUT_S = 5.0


def template_file_name(template_id: UUID) -> str:
    return f"{template_id}.tpl"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _decode(template_file: bytes) -> str:
    return template_file.decode("utf-8", errors="replace")


class TemplateService:
    """Template use-cases: validate, persist metadata, and keep the blob in sync."""

    def __init__(
        self,
        *,
        repository: TemplateRepository,
        storage: ObjectStorage,
        registry: DataSourceRegistry,
        validator: MappedFieldValidator | None = None,
        cache: Cache | None = None,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._registry = registry
        self._validator = validator or MappedFieldValidator(registry)
        self._idempotency: IdempotencyCoordinator[TemplateRecord] | None = None
        if cache is not None:
            self._idempotency = IdempotencyCoordinator(
                cache, TemplateRecord, namespace=TEMPLATE_IDEMPOTENCY_NAMESPACE
            )

    async def _process_template_file(self, ctx: RequestContext, template_file: bytes) -> MappedFields:
        # Extraction rejects script tags before any I/O happens.
        mapped_fields = extract_mapped_fields(template_file)
        logger.info(
            "template_fields_mapped datasources=%s request_id=%s",
            ",".join(sorted(mapped_fields)),
            ctx.request_id,
        )
        await self._validator.validate(ctx, mapped_fields)
        return mapped_fields

    async def _rollback_create(self, ctx: RequestContext, template_id: UUID) -> None:
        increment_counter("template_create_rollback")
        try:
            await asyncio.wait_for(
                self._repository.delete(ctx, template_id, True), timeout=ROLLBACK_TIMEOUT_S
            )
        except Exception:
            logger.exception("template_rollback_failed template_id=%s", template_id)

    async def create(
        self,
        ctx: RequestContext,
        template_file: bytes,
        output_format: str,
        description: str = "",
    ) -> TemplateRecord:
        acquisition = None
        if self._idempotency is not None:
            payload = {
                "templateFile": _decode(template_file),
                "outputFormat": output_format,
                "description": description,
            }
            acquisition = await self._idempotency.acquire(ctx, payload)
            if not acquisition.first_call and acquisition.cached is not None:
                return acquisition.cached

        mapped_fields = extract_mapped_fields(template_file)
        normalized_format = ensure_valid_output_format(output_format)
        validate_file_format(normalized_format, template_file)
        await self._validator.validate(ctx, mapped_fields)
        stored_fields = transform_mapped_fields_for_storage(mapped_fields, self._registry)

        template_id = new_uuid7()
        now = _utc_now()
        record = TemplateRecord(
            id=template_id,
            output_format=normalized_format,
            description=description,
            file_name=template_file_name(template_id),
            mapped_fields=stored_fields,
            created_at=now,
            updated_at=now,
            deleted_at=None,
        )
        created = await self._repository.create(ctx, record)

        # Metadata first, blob second; a failed upload removes the metadata again.
        try:
            await self._storage.put(created.file_name, normalized_format, template_file)
        except BaseException:
            logger.error("template_upload_failed template_id=%s", created.id)
            await self._rollback_create(ctx, created.id)
            raise

        logger.info("template_created template_id=%s request_id=%s", created.id, ctx.request_id)
        if self._idempotency is not None and acquisition is not None:
            await self._idempotency.publish(ctx, acquisition.key, created)
        return created

    async def _validate_output_format_and_file(
        self,
        ctx: RequestContext,
        template_id: UUID,
        output_format: str,
        template_file: bytes | None,
    ) -> None:
        if template_file is not None and not output_format:
            current_format = await self._repository.find_output_format_by_id(ctx, template_id)
            if current_format is None:
                raise EntityNotFoundError(TEMPLATE_ENTITY, entity_type=TEMPLATE_ENTITY)
            validate_file_format(current_format, template_file)
        if output_format:
            normalized = ensure_valid_output_format(output_format)
            if template_file is None:
                raise OutputFormatWithoutTemplateFileError()
            validate_file_format(normalized, template_file)

    async def _upload_template_file(
        self, ctx: RequestContext, template_id: UUID, output_format: str, template_file: bytes
    ) -> None:
        current = await self._repository.find_by_id(ctx, template_id)
        if current is None:
            raise EntityNotFoundError(TEMPLATE_ENTITY, entity_type=TEMPLATE_ENTITY)
        content_type = output_format or current.output_format
        await self._storage.put(current.file_name, content_type, template_file)

    @staticmethod
    def _build_patch(
        description: str | None, output_format: str, mapped_fields: MappedFields | None
    ) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if description:
            patch["description"] = description
        if output_format:
            patch["output_format"] = output_format
        if mapped_fields is not None:
            patch["mapped_fields"] = mapped_fields
        patch["updated_at"] = _utc_now()
        return patch

    async def update(
        self,
        ctx: RequestContext,
        template_id: UUID,
        *,
        output_format: str | None = None,
        description: str | None = None,
        template_file: bytes | None = None,
    ) -> TemplateRecord:
        normalized_format = normalize_output_format(output_format or "")
        mapped_fields: MappedFields | None = None
        if template_file is not None:
            extracted = await self._process_template_file(ctx, template_file)
            mapped_fields = transform_mapped_fields_for_storage(extracted, self._registry)

        await self._validate_output_format_and_file(ctx, template_id, normalized_format, template_file)

        # Blob first, metadata second; blob writes are idempotent.
        if template_file is not None:
            await self._upload_template_file(ctx, template_id, normalized_format, template_file)

        patch = self._build_patch(description, normalized_format, mapped_fields)
        try:
            updated = await self._repository.update(ctx, template_id, patch)
        except Exception:
            if template_file is not None:
                logger.warning(
                    "template_update_diverged template_id=%s storage=updated metadata=failed",
                    template_id,
                )
            raise
        if not updated:
            raise EntityNotFoundError(TEMPLATE_ENTITY, entity_type=TEMPLATE_ENTITY)

        logger.info("template_updated template_id=%s request_id=%s", template_id, ctx.request_id)
        return await self.get_by_id(ctx, template_id)

    async def delete(self, ctx: RequestContext, template_id: UUID, hard_delete: bool = False) -> None:
        deleted = await self._repository.delete(ctx, template_id, hard_delete)
        if not deleted:
            raise EntityNotFoundError(TEMPLATE_ENTITY, entity_type=TEMPLATE_ENTITY)
        logger.info("template_deleted template_id=%s hard=%s", template_id, hard_delete)

    async def get_by_id(self, ctx: RequestContext, template_id: UUID) -> TemplateRecord:
        record = await self._repository.find_by_id(ctx, template_id)
        if record is None:
            raise EntityNotFoundError(TEMPLATE_ENTITY, entity_type=TEMPLATE_ENTITY)
        return record

    async def list(self, ctx: RequestContext, filters: ListFilter | None = None) -> list[TemplateRecord]:
        return await self._repository.find_list(ctx, filters or ListFilter())


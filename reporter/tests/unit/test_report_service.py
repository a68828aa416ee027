from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

import pytest

from reporter.core.context import RequestContext
from reporter.core.errors import (
    ConfigurationError,
    DuplicateRequestInFlightError,
    EntityNotFoundError,
    InvalidStatusTransitionError,
    InvalidTemplateIDError,
    MissingTableFieldsError,
    ReportStatusNotFinishedError,
)
from reporter.datasources.registry import DataSourceRegistry
from reporter.domain.entities import (
    CreateReportInput,
    FilterCondition,
    ListFilter,
    ReportStatus,
    TemplateRecord,
    ensure_transition,
)
from reporter.queue.publisher import QueuePublishError
from reporter.services.field_validation import MappedFieldValidator
from reporter.services.reports import ReportService, filters_to_mapped_fields
from reporter.services.telemetry import get_counters
from reporter.tests.utils.stubs import (
    InMemoryCache,
    InMemoryObjectStorage,
    InMemoryReportRepository,
    InMemoryTemplateRepository,
    RecordingPublisher,
    StaticSqlSchemaRepository,
    sql_source,
    table,
)


TEMPLATE_ID = UUID("0190f6a2-6c3e-7b1a-9f00-000000000001")


class _Harness:
    def __init__(self, *, publisher: RecordingPublisher | None = None, cache: InMemoryCache | None = None) -> None:
        self.sql = StaticSqlSchemaRepository(
            tables=[table("public", "accounts", "id", "name", "status", "created_at")]
        )
        registry = DataSourceRegistry([sql_source("midaz", self.sql)])
        self.templates = InMemoryTemplateRepository()
        self.reports = InMemoryReportRepository()
        self.publisher = publisher or RecordingPublisher()
        self.storage = InMemoryObjectStorage()
        self.cache = cache
        self.service = ReportService(
            report_repository=self.reports,
            template_repository=self.templates,
            publisher=self.publisher,
            storage=self.storage,
            validator=MappedFieldValidator(registry),
            cache=cache,
            exchange="reporter.generate-report",
            routing_key="generate_report",
        )

    async def seed_template(self, ctx: RequestContext, output_format: str = "pdf") -> TemplateRecord:
        now = datetime.now(timezone.utc)
        record = TemplateRecord(
            id=TEMPLATE_ID,
            output_format=output_format,
            description="Accounts",
            file_name=f"{TEMPLATE_ID}.tpl",
            mapped_fields={"midaz": {"accounts": ["name"]}},
            created_at=now,
            updated_at=now,
        )
        return await self.templates.create(ctx, record)


def _input(**filters: FilterCondition) -> CreateReportInput:
    payload = {"midaz": {"accounts": filters}} if filters else None
    return CreateReportInput(template_id=str(TEMPLATE_ID), filters=payload)


@pytest.mark.asyncio
async def test_create_persists_processing_report_and_publishes_job() -> None:
    harness = _Harness()
    ctx = RequestContext(tenant_id="acme")
    await harness.seed_template(ctx)

    report = await harness.service.create(ctx, _input(status=FilterCondition(equals=["ACTIVE"])))

    assert report.status is ReportStatus.PROCESSING
    assert report.template_id == TEMPLATE_ID
    assert harness.reports.rows[("acme", report.id)] == report

    exchange, routing_key, message = harness.publisher.messages[0]
    assert (exchange, routing_key) == ("reporter.generate-report", "generate_report")
    assert message["reportID"] == str(report.id)
    assert message["templateID"] == str(TEMPLATE_ID)
    assert message["outputFormat"] == "pdf"
    assert message["mappedFields"] == {"midaz": {"accounts": ["name"]}}
    assert message["filters"]["midaz"]["accounts"]["status"]["eq"] == ["ACTIVE"]


@pytest.mark.asyncio
async def test_create_without_filters_skips_field_validation() -> None:
    harness = _Harness()
    ctx = RequestContext()
    await harness.seed_template(ctx)

    report = await harness.service.create(ctx, _input())

    assert report.filters is None
    assert harness.sql.connects == 0
    assert harness.publisher.messages[0][2]["filters"] is None


@pytest.mark.asyncio
async def test_create_rejects_unknown_filter_field() -> None:
    harness = _Harness()
    ctx = RequestContext()
    await harness.seed_template(ctx)

    with pytest.raises(MissingTableFieldsError):
        await harness.service.create(ctx, _input(nickname=FilterCondition(like=["a%"])))
    assert harness.reports.create_calls == 0
    assert harness.publisher.messages == []


@pytest.mark.asyncio
async def test_create_rejects_invalid_template_id() -> None:
    harness = _Harness()
    with pytest.raises(InvalidTemplateIDError):
        await harness.service.create(RequestContext(), CreateReportInput(template_id="not-a-uuid"))


@pytest.mark.asyncio
async def test_create_with_unknown_template_is_not_found() -> None:
    harness = _Harness()
    with pytest.raises(EntityNotFoundError) as exc:
        await harness.service.create(RequestContext(), _input())
    assert exc.value.entity_type == "templates"


@pytest.mark.asyncio
async def test_queue_failure_marks_report_as_error() -> None:
    harness = _Harness(publisher=RecordingPublisher(error=QueuePublishError("enqueue refused")))
    ctx = RequestContext()
    await harness.seed_template(ctx)

    with pytest.raises(QueuePublishError):
        await harness.service.create(ctx, _input())

    status, report_id, metadata = harness.reports.status_updates[0]
    assert status == "error"
    assert metadata == {"error": "Failed to send report to queue"}
    stored = harness.reports.rows[("", report_id)]
    assert stored.status is ReportStatus.ERROR
    assert stored.completed_at is not None
    assert get_counters()["report_publish_failed"] == 1


@pytest.mark.asyncio
async def test_queue_failure_is_returned_even_if_status_patch_fails() -> None:
    harness = _Harness(publisher=RecordingPublisher(error=QueuePublishError("enqueue refused")))
    harness.reports.fail_status_update = RuntimeError("db down")
    ctx = RequestContext()
    await harness.seed_template(ctx)

    with pytest.raises(QueuePublishError):
        await harness.service.create(ctx, _input())


@pytest.mark.asyncio
async def test_identical_request_is_replayed_without_new_writes() -> None:
    harness = _Harness(cache=InMemoryCache())
    ctx = RequestContext(tenant_id="acme")
    await harness.seed_template(ctx)
    body = _input(status=FilterCondition(equals=["ACTIVE"]))

    first = await harness.service.create(ctx, body)
    second = await harness.service.create(ctx, _input(status=FilterCondition(equals=["ACTIVE"])))

    assert second == first
    assert harness.reports.create_calls == 1
    assert len(harness.publisher.messages) == 1


@pytest.mark.asyncio
async def test_duplicate_while_first_request_in_flight() -> None:
    cache = InMemoryCache()
    harness = _Harness(cache=cache)
    ctx = RequestContext(idempotency_key="client-key")
    await harness.seed_template(ctx)
    cache.values["idempotency:client-key"] = "processing"

    with pytest.raises(DuplicateRequestInFlightError):
        await harness.service.create(ctx, _input())
    assert harness.reports.create_calls == 0


@pytest.mark.asyncio
async def test_failed_create_keeps_idempotency_marker() -> None:
    cache = InMemoryCache()
    harness = _Harness(publisher=RecordingPublisher(error=QueuePublishError("down")), cache=cache)
    ctx = RequestContext(idempotency_key="client-key")
    await harness.seed_template(ctx)

    with pytest.raises(QueuePublishError):
        await harness.service.create(ctx, _input())
    assert cache.values["idempotency:client-key"] == "processing"


def test_filter_fields_are_capped_per_table() -> None:
    condition = FilterCondition(equals=[1])
    filters = {"midaz": {"accounts": {"a": condition, "b": condition, "c": condition, "d": condition}}}
    assert filters_to_mapped_fields(filters, 3) == {"midaz": {"accounts": ["a", "b", "c"]}}


def test_empty_queue_configuration_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        ReportService(
            report_repository=InMemoryReportRepository(),
            template_repository=InMemoryTemplateRepository(),
            publisher=RecordingPublisher(),
            storage=InMemoryObjectStorage(),
            validator=MappedFieldValidator(DataSourceRegistry([])),
            exchange="",
            routing_key="generate_report",
        )


@pytest.mark.asyncio
async def test_download_finished_report() -> None:
    harness = _Harness()
    ctx = RequestContext()
    await harness.seed_template(ctx, output_format="pdf")
    report = await harness.service.create(ctx, _input())
    await harness.reports.update_report_status_by_id(
        ctx, "finished", report.id, datetime.now(timezone.utc), None
    )
    harness.storage.objects[f"{TEMPLATE_ID}/{report.id}.pdf"] = b"%PDF-1.7"

    content, file_name, mime_type = await harness.service.download(ctx, report.id)

    assert content == b"%PDF-1.7"
    assert file_name == f"{report.id}.pdf"
    assert mime_type == "application/pdf"


@pytest.mark.asyncio
async def test_download_requires_finished_status() -> None:
    harness = _Harness()
    ctx = RequestContext()
    await harness.seed_template(ctx)
    report = await harness.service.create(ctx, _input())

    with pytest.raises(ReportStatusNotFinishedError):
        await harness.service.download(ctx, report.id)


@pytest.mark.asyncio
async def test_get_and_list_reports_are_tenant_scoped() -> None:
    harness = _Harness()
    ctx = RequestContext(tenant_id="a")
    await harness.seed_template(ctx)
    report = await harness.service.create(ctx, _input())

    assert await harness.service.get_by_id(ctx, report.id) == report
    with pytest.raises(EntityNotFoundError):
        await harness.service.get_by_id(RequestContext(tenant_id="b"), report.id)
    with pytest.raises(EntityNotFoundError):
        await harness.service.get_by_id(ctx, uuid4())

    listed = await harness.service.list(ctx, ListFilter(status=ReportStatus.PROCESSING))
    assert [r.id for r in listed] == [report.id]
    assert await harness.service.list(RequestContext(tenant_id="b")) == []


def test_status_transitions() -> None:
    ensure_transition("processing", "finished")
    ensure_transition("processing", "error")
    with pytest.raises(InvalidStatusTransitionError):
        ensure_transition("finished", "error")
    with pytest.raises(InvalidStatusTransitionError):
        ensure_transition("error", "processing")
    with pytest.raises(InvalidStatusTransitionError):
        ensure_transition("processing", "processing")

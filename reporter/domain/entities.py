from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from reporter.core.errors import InvalidStatusTransitionError


# datasource -> table -> [field, ...]
MappedFields = Dict[str, Dict[str, List[str]]]


class ReportStatus(str, Enum):
    PROCESSING = "processing"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ReportStatus.PROCESSING


def ensure_transition(current: str, target: str) -> None:
    # Only processing -> finished and processing -> error are legal.
    current_status = ReportStatus(current)
    target_status = ReportStatus(target)
    if current_status.is_terminal or not target_status.is_terminal:
        raise InvalidStatusTransitionError(
            f"report status cannot move from {current_status.value} to {target_status.value}"
        )


class FilterCondition(BaseModel):
    # Each comparator holds the operand list; absent means "not used".
    model_config = ConfigDict(populate_by_name=True)

    equals: Optional[List[Any]] = Field(default=None, alias="eq")
    not_equals: Optional[List[Any]] = Field(default=None, alias="ne")
    in_: Optional[List[Any]] = Field(default=None, alias="in")
    not_in: Optional[List[Any]] = Field(default=None, alias="nin")
    greater_than: Optional[List[Any]] = Field(default=None, alias="gt")
    greater_or_equal: Optional[List[Any]] = Field(default=None, alias="gte")
    less_than: Optional[List[Any]] = Field(default=None, alias="lt")
    less_or_equal: Optional[List[Any]] = Field(default=None, alias="lte")
    between: Optional[List[Any]] = None
    like: Optional[List[Any]] = None


# datasource -> table -> field -> condition
ReportFilters = Dict[str, Dict[str, Dict[str, FilterCondition]]]


class TemplateRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    output_format: str = Field(alias="outputFormat")
    description: str = ""
    file_name: str = Field(alias="fileName")
    mapped_fields: MappedFields = Field(default_factory=dict, alias="mappedFields")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    deleted_at: Optional[datetime] = Field(default=None, alias="deletedAt")

    @field_validator("output_format")
    @classmethod
    def _lower_output_format(cls, value: str) -> str:
        return value.lower()


class ReportRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: UUID
    template_id: UUID = Field(alias="templateId")
    filters: Optional[ReportFilters] = None
    status: ReportStatus = ReportStatus.PROCESSING
    metadata: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    deleted_at: Optional[datetime] = Field(default=None, alias="deletedAt")


class CreateReportInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_id: str = Field(alias="templateId")
    filters: Optional[ReportFilters] = None

    def canonical_payload(self) -> dict[str, Any]:
        # Stable JSON-ready shape used to fingerprint the request body.
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReportMessage(BaseModel):
    # Job payload consumed by the report worker; consumers ignore unknown keys.
    model_config = ConfigDict(populate_by_name=True)

    report_id: UUID = Field(alias="reportID")
    template_id: UUID = Field(alias="templateID")
    output_format: str = Field(alias="outputFormat")
    mapped_fields: MappedFields = Field(alias="mappedFields")
    filters: Optional[ReportFilters] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=False)


class TableDetails(BaseModel):
    name: str
    fields: List[str] = Field(default_factory=list)


class DataSourceDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    external_name: str = Field(default="", alias="externalName")
    type: str
    tables: List[TableDetails] = Field(default_factory=list)


class DataSourceInformation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    external_name: str = Field(default="", alias="externalName")
    type: str


class ListFilter(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    status: Optional[ReportStatus] = None
    output_format: Optional[str] = None
    sort_order: str = Field(default="desc", pattern="^(asc|desc)$")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

from __future__ import annotations

from typing import Any


class ReporterError(Exception):
    """Base error for the report manager."""


class ConfigurationError(ReporterError):
    """Missing or invalid runtime configuration."""


class UnsupportedDataSourceTypeError(ReporterError):
    """A registered data source declares a kind the manager cannot query."""

    def __init__(self, kind: str, datasource_id: str) -> None:
        super().__init__(f"unsupported database type: {kind} for database: {datasource_id}")
        self.kind = kind
        self.datasource_id = datasource_id


class DataSourceConnectionError(ReporterError):
    """Opening a connection to an external data source failed."""


class InvalidStatusTransitionError(ReporterError):
    """A report already in a terminal state was asked to transition again."""


class BusinessError(ReporterError):
    # End-user visible failure with a stable code the transport can render as 4xx.
    code: str = "TPL-0017"
    title: str = "Bad Request"
    http_status: int = 400

    def __init__(self, *args: Any, entity_type: str = "") -> None:
        self.entity_type = entity_type
        self.args_list = list(args)
        self.message = self.render(*args)
        super().__init__(self.message)

    def render(self, *args: Any) -> str:
        return self.title

    def __str__(self) -> str:
        return f"{self.code} - {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "title": self.title, "message": self.message}
        if self.entity_type:
            payload["entityType"] = self.entity_type
        return payload


class EmptyFileError(BusinessError):
    code = "TPL-0006"
    title = "Error File Empty"

    def render(self, *args: Any) -> str:
        return "The file you submitted is empty. Please check the uploaded file."


class InvalidOutputFormatError(BusinessError):
    code = "TPL-0003"
    title = "Invalid output format"

    def render(self, *args: Any) -> str:
        return "The outputFormat field must be one of: html, pdf, csv or xml."


class FileContentInvalidError(BusinessError):
    code = "TPL-0007"
    title = "Error File Content Invalid"

    def render(self, output_format: str = "", *args: Any) -> str:
        return (
            f"The file content is invalid because is not {output_format}. "
            "Please check the uploaded file."
        )


class OutputFormatWithoutTemplateFileError(BusinessError):
    code = "TPL-0010"
    title = "Update Output format without template File"

    def render(self, *args: Any) -> str:
        return (
            "Can not update output format without passing template file. "
            "Please check information passed and try again."
        )


class EntityNotFoundError(BusinessError):
    code = "TPL-0011"
    title = "Entity Not Found"
    http_status = 404

    def render(self, entity: str = "", *args: Any) -> str:
        return (
            f"No {entity} entity was found for the given ID. Please make sure to use "
            "the correct ID for the entity you are trying to manage."
        )


class InvalidTemplateIDError(BusinessError):
    code = "TPL-0012"
    title = "Invalid templateID"

    def render(self, *args: Any) -> str:
        return "The specified templateID is not a valid UUID. Please check the value passed."


class MissingTableFieldsError(BusinessError):
    code = "TPL-0014"
    title = "Missing required fields"

    def render(self, fields: list[str] | None = None, *args: Any) -> str:
        return (
            "The fields mapped on template file is missing on tables schema. "
            f"Please check the fields passed {fields or []}."
        )


class ReportStatusNotFinishedError(BusinessError):
    code = "TPL-0029"
    title = "Report status not Finished"

    def render(self, *args: Any) -> str:
        return "The Report is not ready to download. Report is processing yet."


class MissingSchemaTableError(BusinessError):
    code = "TPL-0030"
    title = "Missing schema table"

    def render(self, tables: list[str] | None = None, datasource: str = "", *args: Any) -> str:
        return (
            f"The tables {tables or []} mapped on template file do not exist on data source "
            f"{datasource}. Please check the tables passed."
        )


class MissingDataSourceError(BusinessError):
    code = "TPL-0031"
    title = "Missing data source"

    def render(self, datasource: str = "", *args: Any) -> str:
        return f"The data source {datasource} is not registered. Please check the data source passed."


class ScriptTagDetectedError(BusinessError):
    code = "TPL-0032"
    title = "Script tag detected"

    def render(self, *args: Any) -> str:
        return "The template contains a <script> tag, which is not allowed."


class SchemaAmbiguousError(BusinessError):
    code = "TPL-0035"
    title = "Ambiguous schema reference"

    def render(
        self,
        datasource: str = "",
        table: str = "",
        schemas: list[str] | None = None,
        *args: Any,
    ) -> str:
        schemas = schemas or []
        suggestions = ", ".join(f"{datasource}:{schema}.{table}" for schema in schemas)
        return (
            f"ambiguous table reference: '{datasource}.{table}' exists in multiple schemas: "
            f"[{', '.join(schemas)}]. Please use explicit schema syntax: {suggestions}"
        )

    @property
    def schemas(self) -> list[str]:
        return list(self.args_list[2]) if len(self.args_list) > 2 else []


class DuplicateRequestInFlightError(BusinessError):
    code = "TPL-0039"
    title = "Duplicate request in flight"
    http_status = 409

    def render(self, *args: Any) -> str:
        return (
            "An identical request is already being processed. "
            "Please wait for it to complete before retrying."
        )

from __future__ import annotations

from typing import Iterable

from reporter.core.errors import SchemaAmbiguousError
from reporter.datasources.base import TableSchema


PUBLIC_SCHEMA = "public"


def is_bare_reference(reference: str) -> bool:
    # "schema__table" and "schema.table" already name their schema.
    return "." not in reference and "__" not in reference


def schemas_with_table(tables: Iterable[TableSchema], table: str) -> list[str]:
    return sorted({t.schema_name for t in tables if t.table_name == table})


def check_ambiguous_references(
    datasource_id: str, tables: list[TableSchema], references: Iterable[str]
) -> None:
    """Raise SchemaAmbiguousError for the first bare reference found in several schemas.

    public breaks the tie when it is one of them. Unknown tables are left
    alone; the field validator reports them as missing.
    """
    for reference in sorted(references):
        if not is_bare_reference(reference):
            continue
        schemas = schemas_with_table(tables, reference)
        if len(schemas) > 1 and PUBLIC_SCHEMA not in schemas:
            raise SchemaAmbiguousError(datasource_id, reference, schemas)

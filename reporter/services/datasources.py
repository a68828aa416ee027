from __future__ import annotations

import json
import logging
from datetime import timedelta

from pydantic import ValidationError

from reporter.cache.base import Cache
from reporter.cache.keys import datasource_details_key
from reporter.core.config import PLUGIN_CRM_DATASOURCE, get_settings
from reporter.core.context import RequestContext
from reporter.core.errors import MissingDataSourceError
from reporter.datasources.base import (
    DEFAULT_SQL_SCHEMAS,
    CollectionSchema,
    TableSchema,
)
from reporter.datasources.registry import DataSource, DataSourceRegistry
from reporter.domain.entities import DataSourceDetails, DataSourceInformation, TableDetails
from reporter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# plugin_crm stores these encrypted; they are never offered to template authors.
ENCRYPTED_FIELDS = frozenset({"document", "name"})
NESTED_ENCRYPTED_FIELDS = frozenset(
    {
        "contact.primary_email",
        "contact.secondary_email",
        "contact.mobile_phone",
        "contact.other_phone",
        "banking_details.account",
        "banking_details.iban",
        "legal_person.representative.name",
        "legal_person.representative.document",
        "legal_person.representative.email",
        "natural_person.mother_name",
        "natural_person.father_name",
        "regulatory_fields.participant_document",
        "related_parties.document",
        "related_parties.name",
    }
)
# Hashed search projections of the encrypted fields are safe to expose.
SEARCH_FIELDS = frozenset(
    {
        "search",
        "search.document",
        "search.banking_details_account",
        "search.banking_details_iban",
        "search.contact_primary_email",
        "search.contact_secondary_email",
        "search.contact_mobile_phone",
        "search.contact_other_phone",
    }
)
EXPANDED_CRM_FIELDS: dict[str, tuple[str, ...]] = {
    "holders": (
        "_id",
        "external_id",
        "type",
        "addresses",
        "created_at",
        "updated_at",
        "deleted_at",
        "metadata",
        "search.document",
        "natural_person.favorite_name",
        "natural_person.social_name",
        "natural_person.gender",
        "natural_person.birth_date",
        "natural_person.civil_status",
        "natural_person.nationality",
        "natural_person.status",
        "legal_person.trade_name",
        "legal_person.activity",
        "legal_person.type",
        "legal_person.founding_date",
        "legal_person.size",
        "legal_person.status",
        "legal_person.representative.role",
    ),
    "aliases": (
        "_id",
        "account_id",
        "holder_id",
        "ledger_id",
        "type",
        "created_at",
        "updated_at",
        "deleted_at",
        "metadata",
        "search.document",
        "search.banking_details_account",
        "search.banking_details_iban",
        "search.regulatory_fields_participant_document",
        "search.related_party_documents",
        "banking_details.branch",
        "banking_details.type",
        "banking_details.opening_date",
        "banking_details.closing_date",
        "banking_details.country_code",
        "banking_details.bank_id",
        "regulatory_fields",
        "related_parties",
        "related_parties._id",
        "related_parties.role",
        "related_parties.start_date",
        "related_parties.end_date",
    ),
}


def base_collection_name(collection_name: str) -> str:
    # "holders_<org>" -> "holders"; names without "_" are returned as is.
    if "_" not in collection_name:
        return collection_name
    return collection_name.rsplit("_", 1)[0]


def display_name_for_collection(collection_name: str, datasource_id: str) -> str:
    if datasource_id == PLUGIN_CRM_DATASOURCE:
        return base_collection_name(collection_name)
    return collection_name


def is_crm_field_visible(field_name: str) -> bool:
    if field_name == "search" or field_name.startswith("search."):
        return True
    leaf = field_name.rsplit(".", 1)[-1]
    if field_name in ENCRYPTED_FIELDS or field_name in NESTED_ENCRYPTED_FIELDS:
        return False
    # Encrypted leaves stay hidden at any depth.
    return leaf not in ENCRYPTED_FIELDS


def crm_fields_for_collection(collection: CollectionSchema) -> list[str]:
    expanded = EXPANDED_CRM_FIELDS.get(base_collection_name(collection.collection_name))
    if expanded is not None:
        return list(expanded)
    return [field.name for field in collection.fields if is_crm_field_visible(field.name)]


def project_collections(datasource_id: str, collections: list[CollectionSchema]) -> list[TableDetails]:
    tables: list[TableDetails] = []
    for collection in collections:
        if datasource_id == PLUGIN_CRM_DATASOURCE:
            fields = crm_fields_for_collection(collection)
        else:
            fields = [field.name for field in collection.fields]
        tables.append(
            TableDetails(
                name=display_name_for_collection(collection.collection_name, datasource_id),
                fields=fields,
            )
        )
    return tables


def project_tables(tables: list[TableSchema]) -> list[TableDetails]:
    return [
        TableDetails(name=table.qualified_name, fields=[column.name for column in table.columns])
        for table in tables
    ]


class DataSourceService:
    """Lists registered data sources and discovers their schemas through a cache."""

    def __init__(
        self,
        registry: DataSourceRegistry,
        cache: Cache | None = None,
        *,
        cache_ttl: timedelta | None = None,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._cache_ttl = cache_ttl or timedelta(seconds=get_settings().redis_ttl_seconds)

    def list_information(self, ctx: RequestContext) -> list[DataSourceInformation]:
        logger.info("datasource_list request_id=%s", ctx.request_id)
        result: list[DataSourceInformation] = []
        for datasource_id, source in sorted(self._registry.all().items()):
            if not self._registry.is_valid(datasource_id):
                logger.warning("datasource_list_skipped datasource=%s reason=unregistered", datasource_id)
                continue
            if not (source.is_sql or source.is_document) or not datasource_id.strip():
                continue
            result.append(
                DataSourceInformation(id=datasource_id, external_name=source.database, type=source.kind)
            )
        return result

    async def _cached_details(self, ctx: RequestContext, key: str) -> DataSourceDetails | None:
        if self._cache is None:
            return None
        raw = await self._cache.get(ctx, key)
        if not raw:
            return None
        try:
            return DataSourceDetails.model_validate_json(raw)
        except ValidationError:
            # Unreadable entries are treated as a miss and overwritten below.
            logger.warning("datasource_details_cache_corrupt key=%s", key)
            return None

    async def _discover(self, source: DataSource) -> list[TableDetails]:
        if source.is_sql:
            schemas = source.schemas or list(DEFAULT_SQL_SCHEMAS)
            tables = await source.sql_repository.get_database_schema(schemas)  # type: ignore[union-attr]
            return project_tables(tables)
        repository = source.document_repository
        if source.id == PLUGIN_CRM_DATASOURCE:
            collections = await repository.get_database_schema_for_organization(  # type: ignore[union-attr]
                source.organization_id
            )
        else:
            collections = await repository.get_database_schema()  # type: ignore[union-attr]
        return project_collections(source.id, collections)

    async def get_details(self, ctx: RequestContext, datasource_id: str) -> DataSourceDetails:
        key = datasource_details_key(datasource_id)
        cached = await self._cached_details(ctx, key)
        if cached is not None:
            increment_counter("datasource_details_cache_hit")
            logger.info("datasource_details_cache_hit datasource=%s", datasource_id)
            return cached
        increment_counter("datasource_details_cache_miss")

        source = self._registry.get(datasource_id)
        if source is None:
            raise MissingDataSourceError(datasource_id)
        await self._registry.connect(datasource_id, source)

        discovery_error: Exception | None = None
        tables: list[TableDetails] = []
        try:
            tables = await self._discover(source)
        except Exception as exc:
            discovery_error = exc
            logger.error(
                "datasource_discovery_failed datasource=%s error=%s", datasource_id, exc
            )
        finally:
            # A close failure replaces whatever discovery produced.
            await self._registry.close(datasource_id)

        if discovery_error is not None:
            raise MissingDataSourceError(datasource_id) from discovery_error

        details = DataSourceDetails(
            id=datasource_id,
            external_name=source.database,
            type=source.kind,
            tables=tables,
        )
        if self._cache is not None:
            payload = json.dumps(details.model_dump(mode="json", by_alias=True))
            await self._cache.set(ctx, key, payload, self._cache_ttl)
        return details

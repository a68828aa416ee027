from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Mapping, Union

from reporter.core.errors import DataSourceConnectionError, UnsupportedDataSourceTypeError
from reporter.datasources.base import (
    DEFAULT_SQL_SCHEMAS,
    MONGODB_TYPE,
    POSTGRESQL_TYPE,
    DocumentSchemaRepository,
    SqlSchemaRepository,
)
from reporter.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

SchemaRepository = Union[SqlSchemaRepository, DocumentSchemaRepository]
Connector = Callable[["DataSource"], Awaitable[SchemaRepository]]

STATUS_UNKNOWN = "unknown"
STATUS_AVAILABLE = "available"
STATUS_UNAVAILABLE = "unavailable"


@dataclass
class DataSource:
    """Live descriptor for one pre-declared external database."""

    id: str
    kind: str
    # External database name reported to clients.
    database: str = ""
    schemas: list[str] = field(default_factory=lambda: list(DEFAULT_SQL_SCHEMAS))
    # Only meaningful for plugin_crm, whose collections are suffixed "_<organization_id>".
    organization_id: str = ""
    dsn: str = ""
    options: dict[str, str] = field(default_factory=dict)
    connector: Connector | None = None
    sql_repository: SqlSchemaRepository | None = None
    document_repository: DocumentSchemaRepository | None = None
    initialized: bool = False
    connected: bool = False
    status: str = STATUS_UNKNOWN
    last_error: str | None = None
    last_attempt: datetime | None = None
    retry_count: int = 0
    # Guards the initialized/connected flags against first-use contention.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def is_sql(self) -> bool:
        return self.kind == POSTGRESQL_TYPE

    @property
    def is_document(self) -> bool:
        return self.kind == MONGODB_TYPE

    @property
    def is_ready(self) -> bool:
        if not self.initialized:
            return False
        # SQL pools can drop underneath an initialized descriptor.
        if self.is_sql:
            return self.connected and self.sql_repository is not None
        return self.document_repository is not None


class DataSourceRegistry:
    """Frozen set of allowed data source IDs plus their live descriptors.

    The allowed set is fixed at construction; nothing can add or remove a data
    source afterwards. Callers must check both set membership and descriptor
    presence before touching a data source.
    """

    def __init__(self, sources: Iterable[DataSource] | Mapping[str, DataSource]) -> None:
        if isinstance(sources, Mapping):
            descriptors = dict(sources)
        else:
            descriptors = {source.id: source for source in sources}
        self._allowed: frozenset[str] = frozenset(descriptors)
        self._sources: dict[str, DataSource] = descriptors

    @property
    def ids(self) -> frozenset[str]:
        return self._allowed

    def is_valid(self, datasource_id: str) -> bool:
        return datasource_id in self._allowed

    def get(self, datasource_id: str) -> DataSource | None:
        if not self.is_valid(datasource_id):
            return None
        return self._sources.get(datasource_id)

    def all(self) -> dict[str, DataSource]:
        # Shallow copy so callers cannot mutate the registry map.
        return dict(self._sources)

    async def connect(self, datasource_id: str, descriptor: DataSource | None = None) -> DataSource:
        if not self.is_valid(datasource_id):
            logger.error("datasource_connect_rejected datasource=%s reason=unregistered", datasource_id)
            raise DataSourceConnectionError(
                f"cannot connect to unregistered datasource: {datasource_id}"
            )
        source = descriptor or self._sources.get(datasource_id)
        if source is None or datasource_id not in self._sources:
            logger.error("datasource_connect_rejected datasource=%s reason=missing_descriptor", datasource_id)
            raise DataSourceConnectionError(f"datasource {datasource_id} not found in runtime map")

        async with source.lock:
            if source.is_ready:
                return source
            if source.kind not in (POSTGRESQL_TYPE, MONGODB_TYPE):
                source.status = STATUS_UNAVAILABLE
                source.last_error = f"unsupported database type: {source.kind}"
                raise UnsupportedDataSourceTypeError(source.kind, datasource_id)
            if source.connector is None:
                source.status = STATUS_UNAVAILABLE
                raise DataSourceConnectionError(
                    f"no {source.kind} connector configured for datasource {datasource_id}"
                )

            source.last_attempt = datetime.now(timezone.utc)
            source.retry_count += 1
            start = time.monotonic()
            try:
                repository = await source.connector(source)
            except Exception as exc:
                record_external_call(
                    integration=f"datasource.{source.kind}",
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    success=False,
                )
                source.status = STATUS_UNAVAILABLE
                source.last_error = str(exc)
                logger.error("datasource_connect_failed datasource=%s kind=%s", datasource_id, source.kind)
                raise DataSourceConnectionError(
                    f"failed to establish {source.kind} connection to {datasource_id}: {exc}"
                ) from exc
            record_external_call(
                integration=f"datasource.{source.kind}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=True,
            )

            if source.is_sql:
                source.sql_repository = repository  # type: ignore[assignment]
                source.connected = True
            else:
                source.document_repository = repository  # type: ignore[assignment]
            source.initialized = True
            source.status = STATUS_AVAILABLE
            source.last_error = None
            source.retry_count = 0
            logger.info("datasource_connected datasource=%s kind=%s", datasource_id, source.kind)
        return source

    async def close(self, datasource_id: str) -> None:
        # Connections live for one discovery or validation; the next use reconnects.
        source = self._sources.get(datasource_id)
        if source is None:
            return
        async with source.lock:
            repository: SchemaRepository | None = (
                source.sql_repository if source.is_sql else source.document_repository
            )
            source.initialized = False
            source.connected = False
            source.sql_repository = None
            source.document_repository = None
            if repository is not None:
                await repository.close_connection()

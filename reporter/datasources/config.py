from __future__ import annotations

import logging
import os
from typing import Mapping
from urllib.parse import quote

from pydantic import BaseModel
from sqlalchemy.engine import URL

from reporter.core.errors import ConfigurationError
from reporter.datasources.base import DEFAULT_SQL_SCHEMAS, MONGODB_TYPE, POSTGRESQL_TYPE
from reporter.datasources.postgres import connect_postgres
from reporter.datasources.registry import Connector, DataSource, DataSourceRegistry


logger = logging.getLogger(__name__)

ENV_PREFIX = "DATASOURCE_"
ENV_MARKER_SUFFIX = "_CONFIG_NAME"


class DataSourceConfig(BaseModel):
    # Parsed from DATASOURCE_<NAME>_* environment variables.
    name: str
    config_name: str
    host: str = ""
    port: str = ""
    user: str = ""
    password: str = ""
    database: str = ""
    type: str = ""
    sslmode: str = ""
    schemas: list[str] = list(DEFAULT_SQL_SCHEMAS)
    options: str = ""
    midaz_organization_id: str = ""

    def postgres_dsn(self) -> str:
        url = URL.create(
            "postgresql+asyncpg",
            username=self.user or None,
            password=self.password or None,
            host=self.host or None,
            port=int(self.port) if self.port else None,
            database=self.database or None,
        )
        return url.render_as_string(hide_password=False)

    def mongo_uri(self) -> str:
        credentials = ""
        if self.user:
            credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}@"
        port = f":{self.port}" if self.port else ""
        uri = f"mongodb://{credentials}{self.host}{port}/{self.database}"
        if self.options:
            uri += f"?{self.options.lstrip('?')}"
        return uri


def _parse_schemas(raw: str) -> list[str]:
    schemas = [item.strip() for item in raw.split(",") if item.strip()]
    return schemas or list(DEFAULT_SQL_SCHEMAS)


def collect_datasource_names(environ: Mapping[str, str]) -> list[str]:
    names = {
        key[len(ENV_PREFIX) : -len(ENV_MARKER_SUFFIX)].lower()
        for key in environ
        if key.startswith(ENV_PREFIX) and key.endswith(ENV_MARKER_SUFFIX)
    }
    return sorted(name for name in names if name)


def load_datasource_configs(environ: Mapping[str, str] | None = None) -> list[DataSourceConfig]:
    environ = os.environ if environ is None else environ
    configs: list[DataSourceConfig] = []
    for name in collect_datasource_names(environ):
        prefix = f"{ENV_PREFIX}{name.upper()}_"

        def _env(suffix: str) -> str:
            return environ.get(prefix + suffix, "").strip()

        config = DataSourceConfig(
            name=name,
            config_name=_env("CONFIG_NAME"),
            host=_env("HOST"),
            port=_env("PORT"),
            user=_env("USER"),
            password=environ.get(prefix + "PASSWORD", ""),
            database=_env("DATABASE"),
            type=_env("TYPE").lower(),
            sslmode=_env("SSLMODE"),
            schemas=_parse_schemas(_env("SCHEMAS")),
            options=_env("OPTIONS"),
            midaz_organization_id=_env("MIDAZ_ORGANIZATION_ID"),
        )
        logger.info(
            "datasource_config_found name=%s config_name=%s database=%s type=%s",
            name,
            config.config_name,
            config.database,
            config.type,
        )
        configs.append(config)
    if not configs:
        logger.warning("datasource_config_empty prefix=%s", ENV_PREFIX)
    return configs


def build_registry(
    configs: list[DataSourceConfig],
    connectors: Mapping[str, Connector] | None = None,
) -> DataSourceRegistry:
    """Build the immutable registry once at startup; nothing is connected yet."""
    connectors = connectors or {}
    sources: dict[str, DataSource] = {}
    for config in configs:
        datasource_id = config.config_name or config.name
        if datasource_id in sources:
            raise ConfigurationError(f"datasource {datasource_id} is declared twice")
        if config.type == POSTGRESQL_TYPE:
            dsn = config.postgres_dsn()
        elif config.type == MONGODB_TYPE:
            dsn = config.mongo_uri()
        else:
            # Kept so the failure surfaces on use with the unsupported type message.
            dsn = ""
        sources[datasource_id] = DataSource(
            id=datasource_id,
            kind=config.type,
            database=config.database,
            schemas=list(config.schemas),
            organization_id=config.midaz_organization_id,
            dsn=dsn,
            options={"sslmode": config.sslmode} if config.sslmode else {},
            connector=connectors.get(config.type),
        )
    return DataSourceRegistry(sources)


def default_connectors() -> dict[str, Connector]:
    # Document stores need an injected connector; only SQL ships one.
    return {POSTGRESQL_TYPE: connect_postgres}

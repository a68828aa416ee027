from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from reporter.core.config import Settings, get_settings
from reporter.core.errors import ConfigurationError
from reporter.services.telemetry import record_external_call
from reporter.templating.formats import mime_type_for


logger = logging.getLogger(__name__)


def build_s3_client(settings: Settings | None = None) -> Any:
    settings = settings or get_settings()
    import boto3

    return boto3.client(
        "s3",
        endpoint_url=settings.object_storage_endpoint_url,
        region_name=settings.object_storage_region,
        aws_access_key_id=settings.object_storage_access_key,
        aws_secret_access_key=settings.object_storage_secret_key,
    )


class S3ObjectStorage:
    """Blob store for one bucket of an S3-compatible service.

    boto3 is synchronous, so every call is off-loaded with ``asyncio.to_thread``.
    Client errors propagate unchanged to the caller.
    """

    def __init__(self, bucket: str, client: Any | None = None) -> None:
        if not bucket:
            raise ConfigurationError("object storage bucket is required")
        self._bucket = bucket
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = build_s3_client()
        return self._client

    async def put(self, name: str, content_type: str, data: bytes) -> None:
        client = self._get_client()
        start = time.monotonic()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=self._bucket,
                Key=name,
                Body=data,
                # Output formats are stored as their MIME type.
                ContentType=mime_type_for(content_type),
            )
        except (BotoCoreError, ClientError):
            record_external_call(
                integration="storage.s3", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            logger.warning("object_put_failed bucket=%s name=%s", self._bucket, name)
            raise
        record_external_call(
            integration="storage.s3", latency_ms=(time.monotonic() - start) * 1000.0, success=True
        )

    async def get(self, name: str) -> bytes:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(client.get_object, Bucket=self._bucket, Key=name)
            body = response["Body"]
            data = await asyncio.to_thread(body.read)
        except (BotoCoreError, ClientError):
            record_external_call(
                integration="storage.s3", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            logger.warning("object_get_failed bucket=%s name=%s", self._bucket, name)
            raise
        record_external_call(
            integration="storage.s3", latency_ms=(time.monotonic() - start) * 1000.0, success=True
        )
        return data

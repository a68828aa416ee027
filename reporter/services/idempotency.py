from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Generic, Type, TypeVar

from pydantic import BaseModel, ValidationError

from reporter.cache.base import Cache
from reporter.cache.keys import idempotency_key
from reporter.core.config import IDEMPOTENCY_PROCESSING_MARKER, get_settings
from reporter.core.context import RequestContext
from reporter.core.errors import DuplicateRequestInFlightError, ReporterError
from reporter.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def derive_key(ctx: RequestContext, payload: Any, namespace: str | None = None) -> str:
    # A client-supplied key always wins over the body fingerprint.
    client_key = (ctx.idempotency_key or "").strip()
    fingerprint = client_key or compute_request_hash(payload)
    return idempotency_key(fingerprint, namespace)


@dataclass(frozen=True)
class IdempotencyAcquisition(Generic[RecordT]):
    key: str
    first_call: bool
    cached: RecordT | None = None


class IdempotencyCoordinator(Generic[RecordT]):
    """Lock-or-replay guard around a create operation.

    The first caller for a key stores a processing marker and proceeds; later
    callers either replay the stored record or are rejected while the first
    call is still running.
    """

    def __init__(
        self,
        cache: Cache,
        record_type: Type[RecordT],
        *,
        namespace: str | None = None,
        ttl: timedelta | None = None,
    ) -> None:
        self._cache = cache
        self._record_type = record_type
        self._namespace = namespace
        self._ttl = ttl or timedelta(hours=get_settings().idempotency_ttl_hours)

    def key_for(self, ctx: RequestContext, payload: Any) -> str:
        return derive_key(ctx, payload, self._namespace)

    async def acquire(self, ctx: RequestContext, payload: Any) -> IdempotencyAcquisition[RecordT]:
        key = self.key_for(ctx, payload)
        # Cache errors propagate: without the lock the request is refused.
        acquired = await self._cache.set_if_absent(ctx, key, IDEMPOTENCY_PROCESSING_MARKER, self._ttl)
        if acquired:
            return IdempotencyAcquisition(key=key, first_call=True)

        stored = await self._cache.get(ctx, key)
        if not stored or stored == IDEMPOTENCY_PROCESSING_MARKER:
            increment_counter("idempotency_in_flight_rejected")
            logger.info("idempotency_in_flight key=%s request_id=%s", key, ctx.request_id)
            raise DuplicateRequestInFlightError()
        try:
            cached = self._record_type.model_validate_json(stored)
        except ValidationError as exc:
            logger.error("idempotency_record_corrupt key=%s", key)
            raise ReporterError(f"failed to decode cached idempotency response for {key}") from exc
        increment_counter("idempotency_replayed")
        logger.info("idempotency_replay key=%s request_id=%s", key, ctx.request_id)
        return IdempotencyAcquisition(key=key, first_call=False, cached=cached)

    async def publish(self, ctx: RequestContext, key: str, record: RecordT) -> None:
        payload = record.model_dump_json(by_alias=True)
        try:
            await self._cache.set(ctx, key, payload, self._ttl)
        except Exception:
            # Best effort once the create itself succeeded.
            increment_counter("idempotency_publish_failed")
            logger.exception("idempotency_publish_failed key=%s", key)

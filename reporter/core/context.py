from __future__ import annotations

from dataclasses import dataclass, replace
from uuid import uuid4


@dataclass(frozen=True)
class RequestContext:
    # Per-request identity carried explicitly through every service call.
    tenant_id: str | None = None
    # Client-supplied Idempotency-Key header value, if any.
    idempotency_key: str | None = None
    request_id: str = ""

    def __post_init__(self) -> None:
        if not self.request_id:
            object.__setattr__(self, "request_id", uuid4().hex)

    def with_tenant(self, tenant_id: str | None) -> "RequestContext":
        return replace(self, tenant_id=tenant_id)

    def with_idempotency_key(self, key: str | None) -> "RequestContext":
        return replace(self, idempotency_key=key)

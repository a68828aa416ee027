from __future__ import annotations

from reporter.core.config import DATASOURCE_DETAILS_KEY_PREFIX, IDEMPOTENCY_KEY_PREFIX
from reporter.core.context import RequestContext


TENANT_KEY_PREFIX = "tenant"


def tenant_scoped_key(tenant_id: str | None, key: str) -> str:
    """Prefix ``key`` with the tenant namespace.

    Pure and deterministic: the same ``(tenant_id, key)`` always yields the same
    string, distinct tenants never share a key, and no tenant leaves the key as is.
    """
    if not tenant_id:
        return key
    return f"{TENANT_KEY_PREFIX}:{tenant_id}:{key}"


def scoped_key(ctx: RequestContext, key: str) -> str:
    return tenant_scoped_key(ctx.tenant_id, key)


def datasource_details_key(datasource_id: str) -> str:
    return f"{DATASOURCE_DETAILS_KEY_PREFIX}:{datasource_id}"


def idempotency_key(fingerprint: str, namespace: str | None = None) -> str:
    # Report keys have no namespace; template keys use "template".
    if namespace:
        return f"{IDEMPOTENCY_KEY_PREFIX}:{namespace}:{fingerprint}"
    return f"{IDEMPOTENCY_KEY_PREFIX}:{fingerprint}"

from __future__ import annotations

from reporter.core.context import RequestContext


def tenant_value(ctx: RequestContext) -> str:
    # Single-tenant mode stores rows under the empty tenant.
    return ctx.tenant_id or ""


def tenant_predicate(model, ctx: RequestContext) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    return model.tenant_id == tenant_value(ctx)


def not_deleted(model) -> object:
    return model.deleted_at.is_(None)

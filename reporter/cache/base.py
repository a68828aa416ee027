from __future__ import annotations

from datetime import timedelta
from typing import Protocol

from reporter.core.context import RequestContext


class Cache(Protocol):
    # Implementations apply tenant key scoping from ctx before touching storage.
    async def set_if_absent(
        self, ctx: RequestContext, key: str, value: str, ttl: timedelta
    ) -> bool:
        ...

    async def get(self, ctx: RequestContext, key: str) -> str:
        ...

    async def set(self, ctx: RequestContext, key: str, value: str, ttl: timedelta) -> None:
        ...

from __future__ import annotations

from typing import Protocol


class ObjectStorage(Protocol):
    async def put(self, name: str, content_type: str, data: bytes) -> None:
        ...

    async def get(self, name: str) -> bytes:
        ...

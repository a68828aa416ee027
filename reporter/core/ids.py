from __future__ import annotations

from uuid import UUID

from uuid_utils.compat import uuid7


def new_uuid7() -> UUID:
    """Return a time-ordered UUID (RFC 9562 version 7) as a stdlib ``uuid.UUID``."""
    return uuid7()


def parse_uuid(value: str) -> UUID | None:
    # Return None instead of raising so callers can map to their own business error.
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None

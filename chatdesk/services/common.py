from __future__ import annotations

import uuid
from datetime import UTC, datetime

from chatdesk.errors import ChatDeskError


def now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def coerce_uuid(value, *, field: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ChatDeskError(code="invalid_id", detail=f"Invalid {field}", status_code=400) from exc

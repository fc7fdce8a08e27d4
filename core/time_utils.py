from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        # Naive datetimes are assumed to already be UTC.
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def elapsed_ms(start: float) -> int:
    """Milliseconds since a time.monotonic() reading."""
    return int((time.monotonic() - start) * 1000)

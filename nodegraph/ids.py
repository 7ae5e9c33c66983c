"""
nodegraph identifiers and clocks

Node ids are ULIDs rendered in UUID form, so string order follows
creation order. Timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from ulid import ULID


class IdGenerator:
    """Monotonic ULID generator (strictly increasing within one process)."""

    def __init__(self):
        self._last: Optional[ULID] = None

    def new_id(self) -> str:
        candidate = ULID()
        if self._last is not None and int(candidate) <= int(self._last):
            candidate = ULID.from_int(int(self._last) + 1)
        self._last = candidate
        return str(candidate.to_uuid())


class Clock:
    """UTC clock that never returns the same instant twice."""

    def __init__(self):
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        if self._last is not None and current <= self._last:
            current = self._last + timedelta(microseconds=1)
        self._last = current
        return current


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

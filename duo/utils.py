"""Shared utility functions for the broker."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import AfterValidator


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset on storage)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Cut text to limit characters, marking the cut with suffix."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix

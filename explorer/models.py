from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredValue(SQLModel, table=True):
    """One entry of the flat key-value store backing client-side state."""

    key: str = Field(primary_key=True)
    value: str = Field(default="", description="JSON encoded payload")
    updated_at: datetime = Field(default_factory=_utcnow)

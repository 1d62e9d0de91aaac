"""Durable key-value entry model"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from taskbridge.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (SQLite has no tz support)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KVEntry(Base):
    """A single key/value record with optional expiry.

    Holds the persisted sync state (`sync:state`) and the task -> issue URL
    links (`task:<id>`).
    """

    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True, index=True)
    value = Column(Text, nullable=False)

    # NULL means the entry never expires
    expires_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self):
        return f"<KVEntry(key='{self.key}', expires_at={self.expires_at})>"

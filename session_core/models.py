"""
SQLAlchemy models for the durable session store: current values plus a change feed
that other instances read to stay in sync.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class KeyValueEntry(Base):
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class ChangeRecord(Base):
    """One write to kv_entries. value is None when the key was removed."""
    __tablename__ = "kv_changes"
    # Ids must never be reused after prune(), readers keep a cursor on them
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin: Mapped[str] = mapped_column(String(64), nullable=False)  # instance that wrote it
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)

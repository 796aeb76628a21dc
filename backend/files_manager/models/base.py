"""Declarative base and the column mixins shared by the models."""
from datetime import datetime, timezone
from sqlalchemy import String, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    """created_at/updated_at, stamped in Python so SQLite and Postgres agree on precision."""
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, onupdate=_now
    )


class UserMixin:
    """Owner of the row: the user's UUID as a string."""
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

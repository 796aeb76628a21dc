"""AuthToken model - session tokens handed out by /api/connect."""
from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from files_manager.models.base import Base, UserMixin


class AuthToken(Base, UserMixin):
    __tablename__ = "auth_tokens"

    token: Mapped[str] = mapped_column(String(36), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

"""FileRecord model - file/folder metadata (actual bytes live in the blob store)."""
import uuid
from sqlalchemy import String, Boolean, Uuid, Index
from sqlalchemy.orm import Mapped, mapped_column
from files_manager.models.base import Base, TimestampMixin, UserMixin

ROOT_PARENT_ID = "0"

FILE_TYPES = ("folder", "file", "image")


class FileRecord(Base, TimestampMixin, UserMixin):
    __tablename__ = "files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    parent_id: Mapped[str] = mapped_column(String(36), default=ROOT_PARENT_ID)
    # Always NULL for folders
    local_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    __table_args__ = (
        Index("idx_files_user_parent", "user_id", "parent_id"),
    )

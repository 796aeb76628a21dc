"""Job response schemas (operator endpoints)."""
import uuid
from typing import Optional
from datetime import datetime
from files_manager.schemas.base import CamelORMModel


class JobResponse(CamelORMModel):
    id: uuid.UUID
    lane: str
    status: str
    payload: dict
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    available_at: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

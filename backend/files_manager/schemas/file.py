"""File request/response schemas."""
from typing import Optional
from pydantic import field_validator
from files_manager.models.file_record import ROOT_PARENT_ID
from files_manager.schemas.base import CamelModel, CamelORMModel


class FileUploadCreate(CamelModel):
    # Presence and value checks happen in the upload handler so the API
    # answers with the same error messages as before.
    name: Optional[str] = None
    type: Optional[str] = None
    is_public: bool = False
    parent_id: str = ROOT_PARENT_ID
    data: Optional[str] = None

    @field_validator("parent_id", mode="before")
    @classmethod
    def parent_to_str(cls, v):
        if v is None or v == 0:
            return ROOT_PARENT_ID
        return str(v)


class FileResponse(CamelORMModel):
    id: str
    user_id: str
    name: str
    type: str
    is_public: bool
    parent_id: str

    @field_validator("id", mode="before")
    @classmethod
    def id_to_str(cls, v):
        return str(v)

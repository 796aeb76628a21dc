"""User and session schemas."""
from typing import Optional
from files_manager.schemas.base import CamelModel


class UserCreate(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserResponse(CamelModel):
    id: str
    email: str


class TokenResponse(CamelModel):
    token: str

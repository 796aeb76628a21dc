"""Session routes: trade Basic credentials for an X-Token and back."""
import asyncio
import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.config import Settings
from files_manager.database import get_db
from files_manager.dependencies import get_settings
from files_manager.models.user import User
from files_manager.schemas.user import TokenResponse
from files_manager.services.auth import (
    create_token,
    get_current_user,
    parse_basic_auth,
    revoke_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


@router.get("/connect", response_model=TokenResponse)
async def connect(
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Sign in with HTTP Basic credentials and get a session token."""
    credentials = parse_basic_auth(authorization)
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    email, password = credentials

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user or not await asyncio.to_thread(verify_password, password, user.password):
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = await create_token(db, user, settings.AUTH_TOKEN_TTL_SECONDS)
    logger.info(f"User {user.id} connected")
    return {"token": token}


@router.get("/disconnect", status_code=204)
async def disconnect(
    x_token: str | None = Header(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Revoke the current session token."""
    await revoke_token(db, x_token)
    logger.info(f"User {user.id} disconnected")
    return Response(status_code=204)

"""Users API routes."""
import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.config import Settings
from files_manager.database import get_db
from files_manager.dependencies import get_job_queue, get_settings
from files_manager.models.user import User
from files_manager.schemas.user import UserCreate, UserResponse
from files_manager.services.auth import get_current_user, hash_password
from files_manager.services.job_queue import WELCOMES_LANE, JobQueue, enqueue_with_retry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=201)
async def create_user(
    body: UserCreate,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    settings: Settings = Depends(get_settings),
):
    """Register a new user and queue their welcome."""
    if not body.email:
        raise HTTPException(status_code=400, detail="Missing email")
    if not body.password:
        raise HTTPException(status_code=400, detail="Missing password")

    existing = await db.execute(select(User.id).where(User.email == body.email))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=400, detail="Already exist")

    # PBKDF2 is CPU-bound
    password_hash = await asyncio.to_thread(hash_password, body.password)
    user = User(email=body.email, password=password_hash)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email
        await db.rollback()
        raise HTTPException(status_code=400, detail="Already exist")

    logger.info(f"Registered user {user.id}")
    await enqueue_with_retry(
        queue, WELCOMES_LANE, {"userId": str(user.id)}, retries=settings.ENQUEUE_RETRIES
    )
    return {"id": str(user.id), "email": user.email}


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)):
    """Return the authenticated user."""
    return {"id": str(user.id), "email": user.email}

"""Password hashing and X-Token session lookup."""
import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Depends, Header, HTTPException
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.database import get_db
from files_manager.models.auth_token import AuthToken
from files_manager.models.user import User

logger = logging.getLogger(__name__)

_PBKDF2_ITERATIONS = 200_000


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, expected = stored.partition("$")
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


def parse_basic_auth(header: str | None) -> tuple[str, str] | None:
    """Decode an 'Authorization: Basic <base64 email:password>' header."""
    if not header:
        return None
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    email, sep, password = decoded.partition(":")
    if not sep:
        return None
    return email, password


async def create_token(db: AsyncSession, user: User, ttl_seconds: int) -> str:
    token = str(uuid.uuid4())
    db.add(AuthToken(
        token=token,
        user_id=str(user.id),
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
    ))
    await db.commit()
    return token


async def revoke_token(db: AsyncSession, token: str) -> None:
    await db.execute(delete(AuthToken).where(AuthToken.token == token))
    await db.commit()


async def resolve_token(db: AsyncSession, token: str | None) -> User | None:
    """Return the user a live token belongs to, or None."""
    if not token:
        return None
    result = await db.execute(
        select(AuthToken).where(
            AuthToken.token == token,
            AuthToken.expires_at > datetime.now(timezone.utc),
        )
    )
    auth_token = result.scalar_one_or_none()
    if not auth_token:
        return None
    try:
        user_id = uuid.UUID(auth_token.user_id)
    except ValueError:
        logger.warning(f"Auth token {token} references a malformed user id")
        return None
    return await db.get(User, user_id)


async def get_current_user(
    x_token: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: the authenticated user or 401."""
    user = await resolve_token(db, x_token)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


async def get_optional_user(
    x_token: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    return await resolve_token(db, x_token)

"""Welcome side effect for newly registered users."""
import logging

from files_manager.errors import PermanentError
from files_manager.models.user import User
from files_manager.services.thumbnails import parse_uuid

logger = logging.getLogger(__name__)


async def send_welcome(payload: dict, delivery, ctx) -> dict:
    user_id = parse_uuid(payload, "userId")
    async with ctx.session_factory() as db:
        user = await db.get(User, user_id)
    if user is None:
        raise PermanentError(f"User {user_id} not found")

    logger.info(f"Welcome {user.email}")
    return {"email": user.email}

"""Upload handler: validate, store bytes, write the record, enqueue thumbnails.

Ordering matters because the blob write and the record insert are not one
transaction: bytes go first, then the record, then the thumbnail job. A
record therefore never points at missing bytes, and a worker that sees the
job can always resolve the record.
"""
import base64
import binascii
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.errors import TransientError, ValidationError
from files_manager.models.file_record import FILE_TYPES, ROOT_PARENT_ID, FileRecord
from files_manager.models.user import User
from files_manager.schemas.file import FileUploadCreate
from files_manager.services.blob_store import BlobStore
from files_manager.services.job_queue import THUMBNAILS_LANE, JobQueue, enqueue_with_retry

logger = logging.getLogger(__name__)


def decode_data(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid data") from e


async def _check_parent(db: AsyncSession, parent_id: str) -> None:
    try:
        parent_uuid = uuid.UUID(parent_id)
    except ValueError:
        raise ValidationError("Parent not found")
    parent = await db.get(FileRecord, parent_uuid)
    if not parent:
        raise ValidationError("Parent not found")
    if parent.type != "folder":
        raise ValidationError("Parent is not a folder")


async def upload_file(
    db: AsyncSession,
    blob_store: BlobStore,
    queue: JobQueue,
    user: User,
    body: FileUploadCreate,
    enqueue_retries: int = 3,
) -> FileRecord:
    """Create a file, image or folder for user.

    Raises ValidationError before anything is written, TransientError when
    storage or the database fails and the client should retry.
    """
    if not body.name:
        raise ValidationError("Missing name")
    if body.type not in FILE_TYPES:
        raise ValidationError("Missing type")
    if body.type != "folder" and not body.data:
        raise ValidationError("Missing data")

    content = decode_data(body.data) if body.type != "folder" else None
    if body.parent_id != ROOT_PARENT_ID:
        await _check_parent(db, body.parent_id)

    record = FileRecord(
        user_id=str(user.id),
        name=body.name,
        type=body.type,
        is_public=body.is_public,
        parent_id=body.parent_id,
    )

    if body.type == "folder":
        db.add(record)
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to save folder '{body.name}': {e}")
            raise TransientError("Folder was not created, retry the request") from e
        logger.info(f"Created folder {record.id} for user {user.id}")
        return record

    local_path = blob_store.new_path()
    try:
        await blob_store.write(local_path, content)
    except OSError as e:
        logger.error(f"Failed to store bytes for '{body.name}': {e}")
        raise TransientError("File data could not be stored, retry the upload") from e

    record.local_path = local_path
    db.add(record)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to save file record for {local_path}: {e}")
        try:
            await blob_store.delete(local_path)
        except OSError as cleanup_err:
            logger.warning(f"Could not remove orphaned blob {local_path}: {cleanup_err}")
        raise TransientError("File record was not created, retry the upload") from e

    logger.info(f"Stored {body.type} {record.id} ({len(content)} bytes) for user {user.id}")

    if record.type == "image":
        await enqueue_with_retry(
            queue,
            THUMBNAILS_LANE,
            {"fileId": str(record.id), "userId": record.user_id},
            retries=enqueue_retries,
        )
    return record

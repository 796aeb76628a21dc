"""Files API routes."""
import mimetypes
import uuid
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.config import Settings
from files_manager.database import get_db
from files_manager.dependencies import get_blob_store, get_job_queue, get_settings
from files_manager.errors import TransientError, ValidationError
from files_manager.models.file_record import ROOT_PARENT_ID, FileRecord
from files_manager.models.user import User
from files_manager.schemas.file import FileResponse, FileUploadCreate
from files_manager.services.auth import get_current_user, get_optional_user
from files_manager.services.blob_store import BlobStore
from files_manager.services.job_queue import JobQueue
from files_manager.services.thumbnails import THUMBNAIL_WIDTHS, variant_path
from files_manager.services.uploads import upload_file

router = APIRouter(prefix="/api/files", tags=["files"])


@router.post("", response_model=FileResponse, status_code=201)
async def post_upload(
    body: FileUploadCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    queue: JobQueue = Depends(get_job_queue),
    settings: Settings = Depends(get_settings),
):
    """Upload a file, an image (base64 `data`) or create a folder."""
    try:
        record = await upload_file(
            db, blob_store, queue, user, body, enqueue_retries=settings.ENQUEUE_RETRIES
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except TransientError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return _to_response(record)


@router.get("", response_model=list[FileResponse])
async def list_files(
    parent_id: str = Query(ROOT_PARENT_ID, alias="parentId"),
    page: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """List the user's files under a folder, 20 per page."""
    if parent_id != ROOT_PARENT_ID:
        folder = await _find_file(db, parent_id)
        if not folder or folder.type != "folder":
            return []

    page_size = settings.FILES_PAGE_SIZE
    result = await db.execute(
        select(FileRecord)
        .where(FileRecord.user_id == str(user.id), FileRecord.parent_id == parent_id)
        .order_by(FileRecord.created_at, FileRecord.name)
        .offset(page * page_size)
        .limit(page_size)
    )
    return [_to_response(f) for f in result.scalars().all()]


@router.get("/{file_id}", response_model=FileResponse)
async def get_show(
    file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get one of the user's files by ID."""
    return _to_response(await _get_owned_file(db, file_id, user))


@router.put("/{file_id}/publish", response_model=FileResponse)
async def put_publish(
    file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Make a file publicly readable."""
    return await _set_visibility(db, file_id, user, True)


@router.put("/{file_id}/unpublish", response_model=FileResponse)
async def put_unpublish(
    file_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Make a file private again."""
    return await _set_visibility(db, file_id, user, False)


@router.get("/{file_id}/data")
async def get_file_data(
    file_id: str,
    size: int = Query(0, description="0 for the original, or a thumbnail width"),
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Download file content, or one of its thumbnails.

    A thumbnail that has not been generated (yet) is a plain 404.
    """
    if size != 0 and size not in THUMBNAIL_WIDTHS:
        raise HTTPException(status_code=400, detail="Invalid size")

    file_rec = await _find_file(db, file_id)
    if not file_rec:
        raise HTTPException(status_code=404, detail="Not found")
    if not file_rec.is_public and (user is None or str(user.id) != file_rec.user_id):
        raise HTTPException(status_code=404, detail="Not found")
    if file_rec.type == "folder":
        raise HTTPException(status_code=400, detail="A folder doesn't have content")

    path = file_rec.local_path if size == 0 else variant_path(file_rec.local_path, size)
    try:
        content = await blob_store.read(path)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")

    mime_type, _ = mimetypes.guess_type(file_rec.name)
    return Response(content=content, media_type=mime_type or "application/octet-stream")


async def _find_file(db: AsyncSession, file_id: str) -> FileRecord | None:
    try:
        file_uuid = uuid.UUID(file_id)
    except ValueError:
        return None
    return await db.get(FileRecord, file_uuid)


async def _get_owned_file(db: AsyncSession, file_id: str, user: User) -> FileRecord:
    file_rec = await _find_file(db, file_id)
    if not file_rec or file_rec.user_id != str(user.id):
        raise HTTPException(status_code=404, detail="Not found")
    return file_rec


async def _set_visibility(db: AsyncSession, file_id: str, user: User, is_public: bool) -> dict:
    file_rec = await _get_owned_file(db, file_id, user)
    file_rec.is_public = is_public
    await db.commit()
    await db.refresh(file_rec)
    return _to_response(file_rec)


def _to_response(file_rec: FileRecord) -> dict:
    """Convert SQLAlchemy model to response dict."""
    return {
        "id": str(file_rec.id),
        "user_id": file_rec.user_id,
        "name": file_rec.name,
        "type": file_rec.type,
        "is_public": file_rec.is_public,
        "parent_id": file_rec.parent_id,
    }

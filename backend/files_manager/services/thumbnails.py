"""Thumbnail generation for uploaded images.

Each width is derived and written independently: a codec failure on one
width is logged and the remaining widths still run, and the job counts as
processed. A failed variant write is different: the other widths are still
attempted, then the job is retried. Variants are written with
overwrite-by-path, so running the same job twice leaves byte-identical files.
"""
import asyncio
import io
import logging
import uuid

from PIL import Image

from files_manager.errors import PermanentError, TransientError
from files_manager.models.file_record import FileRecord

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTHS = (500, 250, 100)


def variant_path(path: str, width: int) -> str:
    return f"{path}_{width}"


def resize_image(data: bytes, width: int) -> bytes:
    """Resize to an exact width, keeping the aspect ratio and the source format."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        fmt = img.format or "PNG"
        height = max(1, round(img.height * width / img.width))
        resized = img.resize((width, height), Image.Resampling.LANCZOS)
        if fmt == "JPEG" and resized.mode not in ("RGB", "L"):
            resized = resized.convert("RGB")
        buffer = io.BytesIO()
        resized.save(buffer, format=fmt)
        return buffer.getvalue()


def parse_uuid(payload: dict, key: str) -> uuid.UUID:
    value = payload.get(key)
    if not value:
        raise PermanentError(f"Missing {key}")
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise PermanentError(f"Malformed {key}: {value!r}")


async def generate_thumbnails(payload: dict, delivery, ctx) -> dict:
    """Derive every thumbnail width for the image a job points at."""
    file_id = parse_uuid(payload, "fileId")
    user_id = parse_uuid(payload, "userId")

    # One read: ownership and path must come from the same row version
    async with ctx.session_factory() as db:
        record = await db.get(FileRecord, file_id)

    if record is None:
        grace = ctx.settings.THUMBNAIL_RECORD_GRACE_SECONDS
        if delivery.age_seconds() < grace:
            raise TransientError(f"File {file_id} is not visible yet")
        raise PermanentError(f"File {file_id} not found")
    if record.user_id != str(user_id):
        raise PermanentError(f"File {file_id} is not owned by user {user_id}")
    if record.type != "image" or not record.local_path:
        raise PermanentError(f"File {file_id} is a {record.type}, not an image")

    path = record.local_path
    try:
        original = await ctx.blob_store.read(path)
    except FileNotFoundError as e:
        raise PermanentError(f"Original bytes for file {file_id} are missing") from e
    except OSError as e:
        raise TransientError(f"Could not read original for file {file_id}: {e}") from e

    results: dict[str, str] = {}
    write_errors: list[str] = []
    for width in THUMBNAIL_WIDTHS:
        try:
            thumbnail = await asyncio.to_thread(resize_image, original, width)
        except Exception as e:
            logger.warning(f"Thumbnail {width}px for file {file_id} failed: {e}")
            results[str(width)] = "failed"
            continue
        try:
            await ctx.blob_store.write(variant_path(path, width), thumbnail)
        except OSError as e:
            logger.warning(f"Could not store {width}px thumbnail for file {file_id}: {e}")
            results[str(width)] = "unstored"
            write_errors.append(f"{width}px: {e}")
            continue
        results[str(width)] = "ok"

    logger.info(f"Thumbnails for file {file_id}: {results}")
    # Storage failures are retryable, unlike images the codec cannot handle
    if write_errors:
        raise TransientError(f"Thumbnail storage failed for file {file_id}: {'; '.join(write_errors)}")
    return results

"""Blob storage abstraction. Local filesystem is the shipped backend.

Paths handed out by new_path() are opaque. Derived thumbnails live next to
the original at "<path>_<width>", so every write is an overwrite-by-path.
"""
import logging
import os
import uuid
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class BlobStore:
    """Durable byte storage keyed by path."""

    def new_path(self) -> str:
        raise NotImplementedError

    async def write(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    async def read(self, path: str) -> bytes:
        """Raises FileNotFoundError when nothing is stored at path."""
        raise NotImplementedError

    async def exists(self, path: str) -> bool:
        raise NotImplementedError

    async def delete(self, path: str) -> None:
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    """Stores blobs as files under a single base directory."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def new_path(self) -> str:
        return str(self.base_path / str(uuid.uuid4()))

    async def write(self, path: str, data: bytes) -> None:
        """Write bytes to path, replacing whatever is there.

        Goes through a temp file and os.replace so concurrent readers never
        see a half-written blob.
        """
        target = Path(path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, target)
        except BaseException:
            if tmp_path.exists():
                os.remove(tmp_path)
            raise
        logger.debug(f"Wrote {len(data)} bytes to {target}")

    async def read(self, path: str) -> bytes:
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def exists(self, path: str) -> bool:
        return await aiofiles.os.path.isfile(path)

    async def delete(self, path: str) -> None:
        if await self.exists(path):
            await aiofiles.os.remove(path)
